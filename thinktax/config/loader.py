"""
Configuration management and loading.

Reads the YAML config file, interpolates environment variables and
validates every section strictly so that a typo never silently disables
a collector.
"""

import os
import re
import sys
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import urljoin

import yaml

from .paths import get_paths

BILLING_MODES = ("estimate", "api", "subscription")
HTTP_METHODS = ("GET", "POST")

_BRACED_ENV = re.compile(r"\$\{([A-Za-z0-9_]+)\}")
_BARE_ENV = re.compile(r"\$([A-Za-z0-9_]+)")


@dataclass(frozen=True)
class UiConfig:
    timezone: Optional[str] = None
    include_unknown: bool = False


@dataclass(frozen=True)
class BillingConfig:
    """Billing tag applied to events that carry no explicit tag."""
    default_mode: str = "estimate"

    def __post_init__(self):
        if self.default_mode not in BILLING_MODES:
            raise ValueError(f"billing default_mode must be one of: {list(BILLING_MODES)}")


@dataclass(frozen=True)
class ClaudeConfig:
    projects_dir: Optional[str] = None
    billing: BillingConfig = field(default_factory=BillingConfig)


@dataclass(frozen=True)
class CodexConfig:
    home: Optional[str] = None


@dataclass(frozen=True)
class CursorDashboardConfig:
    """Cursor web dashboard access (session token is ``user_id::jwt``)."""
    session_token: Optional[str] = None
    team_id: Optional[int] = None
    lookback_days: int = 30
    cache_ttl_minutes: int = 15


@dataclass(frozen=True)
class CursorTeamConfig:
    """Cursor team/admin spend API."""
    api_key: Optional[str] = None
    spend_url: Optional[str] = None
    api_base: str = "https://api.cursor.com"
    spend_path: str = "/teams/spend"
    endpoint: Optional[str] = None
    method: str = "POST"
    lookback_days: Optional[int] = None
    body: Optional[str] = None
    email: Optional[str] = None
    token: Optional[str] = None
    basic_auth: Optional[str] = None
    etag_ttl_minutes: int = 15

    def __post_init__(self):
        if self.method not in HTTP_METHODS:
            raise ValueError(f"cursor.team.method must be one of: {list(HTTP_METHODS)}")


@dataclass(frozen=True)
class CursorLocalConfig:
    state_vscdb_path: Optional[str] = None
    workspace_storage_dir: Optional[str] = None
    estimate_transcripts: bool = True
    transcripts_dir: Optional[str] = None
    estimate_model: str = "cursor-local-estimate"


@dataclass(frozen=True)
class CursorConfig:
    dashboard: CursorDashboardConfig = field(default_factory=CursorDashboardConfig)
    team: Optional[CursorTeamConfig] = None
    local: CursorLocalConfig = field(default_factory=CursorLocalConfig)


@dataclass(frozen=True)
class OpenClawConfig:
    sessions_dir: Optional[str] = None
    billing: BillingConfig = field(default_factory=BillingConfig)


@dataclass(frozen=True)
class ApprenticeConfig:
    usage_dir: Optional[str] = None


@dataclass(frozen=True)
class GleanConfig:
    usage_dir: Optional[str] = None


@dataclass(frozen=True)
class ReviewCrewConfig:
    history_dir: Optional[str] = None


@dataclass(frozen=True)
class ProjectMatch:
    instance_id: Optional[str] = None
    path_prefix: Optional[str] = None


@dataclass(frozen=True)
class ProjectMapping:
    """Maps a session id or path prefix onto a named project."""
    id: Optional[str] = None
    name: Optional[str] = None
    root: Optional[str] = None
    match: ProjectMatch = field(default_factory=ProjectMatch)


@dataclass(frozen=True)
class ProjectsConfig:
    mappings: Tuple[ProjectMapping, ...] = ()


@dataclass(frozen=True)
class PricingFileConfig:
    file: Optional[str] = None


@dataclass(frozen=True)
class HttpConfig:
    timeout_seconds: float = 30.0

    def __post_init__(self):
        if self.timeout_seconds <= 0:
            raise ValueError("http.timeout_seconds must be > 0")


@dataclass(frozen=True)
class ThinktaxConfig:
    """Complete, validated configuration."""
    ui: UiConfig = field(default_factory=UiConfig)
    claude: ClaudeConfig = field(default_factory=ClaudeConfig)
    codex: CodexConfig = field(default_factory=CodexConfig)
    cursor: CursorConfig = field(default_factory=CursorConfig)
    openclaw: OpenClawConfig = field(default_factory=OpenClawConfig)
    apprentice: ApprenticeConfig = field(default_factory=ApprenticeConfig)
    glean: GleanConfig = field(default_factory=GleanConfig)
    review_crew: ReviewCrewConfig = field(default_factory=ReviewCrewConfig)
    projects: ProjectsConfig = field(default_factory=ProjectsConfig)
    pricing: PricingFileConfig = field(default_factory=PricingFileConfig)
    http: HttpConfig = field(default_factory=HttpConfig)


@dataclass(frozen=True)
class LoadedConfig:
    path: Path
    exists: bool
    config: ThinktaxConfig


def interpolate_env(text: str) -> str:
    """Replace ``${VAR}`` and ``$VAR`` with environment values.

    Unset variables are left untouched.
    """
    def _replace(match: "re.Match[str]") -> str:
        value = os.environ.get(match.group(1))
        return match.group(0) if value is None else value

    return _BARE_ENV.sub(_replace, _BRACED_ENV.sub(_replace, text))


def load_config(path: Optional[str] = None) -> LoadedConfig:
    """Load and validate the thinktax configuration file.

    A missing file at the default location yields the default
    configuration. A missing file given explicitly is an error.

    Args:
        path: Optional explicit path to a YAML configuration file

    Returns:
        LoadedConfig describing where the config came from

    Raises:
        FileNotFoundError: If an explicit config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path) if path else get_paths().config_file
    if not config_path.exists():
        if path:
            raise FileNotFoundError(f"Config file not found: {path}")
        return LoadedConfig(path=config_path, exists=False, config=ThinktaxConfig())

    with open(config_path, 'r', encoding='utf-8') as f:
        raw_text = interpolate_env(f.read())
    try:
        raw_config = yaml.safe_load(raw_text)
    except yaml.YAMLError as e:
        raise yaml.YAMLError(f"Invalid YAML in config file {config_path}: {e}")

    return LoadedConfig(path=config_path, exists=True, config=parse_config(raw_config or {}))


def parse_config(raw_config: Dict[str, Any]) -> ThinktaxConfig:
    """Validate a raw mapping into a ThinktaxConfig.

    Raises:
        ValueError: On unknown keys, wrong types or invalid values
    """
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration root must be a dictionary")

    parsers: Dict[str, Callable[[Any, str], Any]] = {
        "ui": lambda d, p: _parse_simple(UiConfig, d, p),
        "claude": lambda d, p: _parse_simple(ClaudeConfig, d, p, {"billing": _parse_billing}),
        "codex": lambda d, p: _parse_simple(CodexConfig, d, p),
        "cursor": _parse_cursor,
        "openclaw": lambda d, p: _parse_simple(OpenClawConfig, d, p, {"billing": _parse_billing}),
        "apprentice": lambda d, p: _parse_simple(ApprenticeConfig, d, p),
        "glean": lambda d, p: _parse_simple(GleanConfig, d, p),
        "review_crew": lambda d, p: _parse_simple(ReviewCrewConfig, d, p),
        "projects": _parse_projects,
        "pricing": lambda d, p: _parse_simple(PricingFileConfig, d, p),
        "http": lambda d, p: _parse_simple(HttpConfig, d, p),
    }

    unknown_keys = set(raw_config.keys()) - set(parsers)
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    sections = {
        name: parser(raw_config[name], name)
        for name, parser in parsers.items()
        if raw_config.get(name) is not None
    }
    return ThinktaxConfig(**sections)


_FIELD_TYPES: Dict[str, Tuple[type, ...]] = {
    "include_unknown": (bool,),
    "estimate_transcripts": (bool,),
    "team_id": (int,),
    "lookback_days": (int,),
    "cache_ttl_minutes": (int,),
    "etag_ttl_minutes": (int,),
    "timeout_seconds": (int, float),
}


def _parse_simple(cls, data: Any, path: str, nested: Optional[Dict[str, Callable]] = None):
    """Build a flat config dataclass, delegating nested sections.

    Args:
        cls: Target frozen dataclass
        data: Raw section mapping
        path: Dotted path for error messages
        nested: Parsers for fields that are themselves sections

    Returns:
        Instance of ``cls``
    """
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")
    nested = nested or {}

    allowed_keys = {f.name for f in fields(cls)}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    values = {}
    for key, value in data.items():
        if value is None:
            continue
        if key in nested:
            values[key] = nested[key](value, f"{path}.{key}")
            continue
        expected = _FIELD_TYPES.get(key, (str,))
        # bool is an int subclass; keep numeric fields strict
        if isinstance(value, bool) and bool not in expected:
            raise ValueError(f"'{key}' in {path} must be {expected[0].__name__}")
        if not isinstance(value, expected):
            raise ValueError(f"'{key}' in {path} must be {expected[0].__name__}")
        values[key] = value
    return cls(**values)


def _parse_billing(data: Any, path: str) -> BillingConfig:
    return _parse_simple(BillingConfig, data, path)


def _parse_cursor(data: Any, path: str) -> CursorConfig:
    return _parse_simple(CursorConfig, data, path, {
        "dashboard": lambda d, p: _parse_simple(CursorDashboardConfig, d, p),
        "team": lambda d, p: _parse_simple(CursorTeamConfig, d, p),
        "local": lambda d, p: _parse_simple(CursorLocalConfig, d, p),
    })


def _parse_projects(data: Any, path: str) -> ProjectsConfig:
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")
    unknown_keys = set(data.keys()) - {"mappings"}
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    raw_mappings = data.get("mappings") or []
    if not isinstance(raw_mappings, list):
        raise ValueError(f"'mappings' in {path} must be a list")

    mappings: List[ProjectMapping] = []
    for index, item in enumerate(raw_mappings):
        mappings.append(_parse_simple(
            ProjectMapping, item, f"{path}.mappings[{index}]",
            {"match": lambda d, p: _parse_simple(ProjectMatch, d, p)},
        ))
    return ProjectsConfig(mappings=tuple(mappings))


def resolve_timezone(config: ThinktaxConfig) -> str:
    """Reporting timezone: config, then ``TZ``, then the system zone."""
    if config.ui.timezone:
        return config.ui.timezone
    if os.environ.get("TZ"):
        return os.environ["TZ"]
    localtime = Path("/etc/localtime")
    if localtime.is_symlink():
        target = str(localtime.resolve())
        if "zoneinfo/" in target:
            return target.split("zoneinfo/", 1)[1]
    return "UTC"


def resolve_cursor_team_url(config: ThinktaxConfig) -> Optional[str]:
    team = config.cursor.team
    if team is None:
        return None
    if team.spend_url:
        return team.spend_url
    if team.endpoint:
        if team.endpoint.startswith("http"):
            return team.endpoint
        return urljoin(team.api_base, team.endpoint)
    return urljoin(team.api_base, team.spend_path)


def resolve_claude_projects_dir(config: ThinktaxConfig) -> Path:
    if config.claude.projects_dir:
        return Path(config.claude.projects_dir).expanduser()
    return Path.home() / ".claude" / "projects"


def resolve_codex_home(config: ThinktaxConfig) -> Path:
    if config.codex.home:
        return Path(config.codex.home).expanduser()
    if os.environ.get("CODEX_HOME"):
        return Path(os.environ["CODEX_HOME"])
    return Path.home() / ".codex"


def resolve_openclaw_sessions_dir(config: ThinktaxConfig) -> Path:
    if config.openclaw.sessions_dir:
        return Path(config.openclaw.sessions_dir).expanduser()
    return Path.home() / ".openclaw" / "agents" / "main" / "sessions"


def resolve_apprentice_usage_dir(config: ThinktaxConfig) -> Path:
    if config.apprentice.usage_dir:
        return Path(config.apprentice.usage_dir).expanduser()
    return Path.home() / ".apprentice" / "usage"


def resolve_glean_usage_dir(config: ThinktaxConfig) -> Path:
    if config.glean.usage_dir:
        return Path(config.glean.usage_dir).expanduser()
    return Path.home() / ".glean" / "usage"


def resolve_review_crew_history_dir(config: ThinktaxConfig) -> Path:
    if config.review_crew.history_dir:
        return Path(config.review_crew.history_dir).expanduser()
    return Path.home() / ".review-crew" / "history"


def _cursor_user_dir() -> Path:
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / "Cursor" / "User"
    return Path.home() / ".config" / "Cursor" / "User"


def resolve_cursor_state_db(config: ThinktaxConfig) -> Path:
    """Cursor's global ``state.vscdb`` (auth tokens and usage snapshots)."""
    if config.cursor.local.state_vscdb_path:
        return Path(config.cursor.local.state_vscdb_path).expanduser()
    return _cursor_user_dir() / "globalStorage" / "state.vscdb"


def resolve_cursor_workspace_storage(config: ThinktaxConfig) -> Path:
    if config.cursor.local.workspace_storage_dir:
        return Path(config.cursor.local.workspace_storage_dir).expanduser()
    return _cursor_user_dir() / "workspaceStorage"


def resolve_cursor_transcripts_dir(config: ThinktaxConfig) -> Path:
    if config.cursor.local.transcripts_dir:
        return Path(config.cursor.local.transcripts_dir).expanduser()
    return Path.home() / ".cursor" / "projects"
