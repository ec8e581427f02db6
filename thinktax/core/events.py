"""
Canonical usage event.

Every collector emits UsageEvent values; the cost engine and the event
store pass them along by value. Stage transforms build new events with
``dataclasses.replace`` instead of mutating the one they were given.
"""

import hashlib
import json
from dataclasses import asdict, dataclass, field, fields, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Type


class UsageSource(Enum):
    """Tool whose logs produced the event."""
    CLAUDE_CODE = "claude_code"
    CODEX_CLI = "codex_cli"
    CURSOR_IDE = "cursor_ide"
    OPENCLAW = "openclaw"
    APPRENTICE = "apprentice"
    GLEAN = "glean"
    REVIEW_CREW = "review_crew"


class UsageProvider(Enum):
    """Entity that bills for the model usage."""
    ANTHROPIC = "anthropic"
    OPENAI = "openai"
    CURSOR = "cursor"
    MOONSHOT = "moonshot"


class CostMode(Enum):
    """How ``final_usd`` was derived."""
    REPORTED = "reported"
    ESTIMATED = "estimated"
    MIXED = "mixed"
    UNKNOWN = "unknown"
    SUBSCRIPTION = "subscription"


@dataclass(frozen=True)
class UsageTokens:
    input: int = 0
    output: int = 0
    cache_write: int = 0
    cache_read: int = 0

    def __post_init__(self):
        for name in ("input", "output", "cache_write", "cache_read"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} tokens cannot be negative")

    def is_zero(self) -> bool:
        return not (self.input or self.output or self.cache_write or self.cache_read)

    def to_dict(self) -> Dict[str, int]:
        return {
            "in": self.input,
            "out": self.output,
            "cache_write": self.cache_write,
            "cache_read": self.cache_read,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UsageTokens":
        return cls(
            input=int(data.get("in") or 0),
            output=int(data.get("out") or 0),
            cache_write=int(data.get("cache_write") or 0),
            cache_read=int(data.get("cache_read") or 0),
        )


@dataclass(frozen=True)
class UsageCost:
    reported_usd: Optional[float] = None
    estimated_usd: Optional[float] = None
    final_usd: Optional[float] = None
    mode: CostMode = CostMode.UNKNOWN

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reported_usd": self.reported_usd,
            "estimated_usd": self.estimated_usd,
            "final_usd": self.final_usd,
            "mode": self.mode.value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UsageCost":
        return cls(
            reported_usd=_optional_float(data.get("reported_usd")),
            estimated_usd=_optional_float(data.get("estimated_usd")),
            final_usd=_optional_float(data.get("final_usd")),
            mode=CostMode(data.get("mode") or CostMode.UNKNOWN.value),
        )


@dataclass(frozen=True)
class UsageProject:
    id: Optional[str] = None
    name: Optional[str] = None
    root: Optional[str] = None

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {"id": self.id, "name": self.name, "root": self.root}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UsageProject":
        return cls(id=data.get("id"), name=data.get("name"), root=data.get("root"))


# Per-source provenance. Each source gets its own payload class; the
# event's ``source`` selects which one a stored ``meta`` mapping becomes.

@dataclass(frozen=True)
class EventMeta:
    file: Optional[str] = None
    billing: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EventMeta":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass(frozen=True)
class ClaudeMeta(EventMeta):
    session_id: Optional[str] = None
    entry_type: Optional[str] = None


@dataclass(frozen=True)
class CodexMeta(EventMeta):
    session: Optional[str] = None


@dataclass(frozen=True)
class CursorMeta(EventMeta):
    origin: Optional[str] = None
    kind: Optional[str] = None
    owning_user: Optional[str] = None
    key: Optional[str] = None
    messages: Optional[Dict[str, int]] = None
    chars: Optional[Dict[str, int]] = None
    record: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class OpenClawMeta(EventMeta):
    session_id: Optional[str] = None
    openclaw_provider: Optional[str] = None


@dataclass(frozen=True)
class ApprenticeMeta(EventMeta):
    role: Optional[str] = None
    latency_ms: Optional[int] = None


@dataclass(frozen=True)
class GleanMeta(EventMeta):
    reason: Optional[str] = None
    session_title: Optional[str] = None
    event_count: Optional[int] = None
    streams: Optional[Tuple[str, ...]] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GleanMeta":
        meta = super().from_dict(data)
        if meta.streams is not None:
            meta = replace(meta, streams=tuple(meta.streams))
        return meta


@dataclass(frozen=True)
class ReviewCrewMeta(EventMeta):
    repo: Optional[str] = None
    pr_number: Optional[int] = None
    pr_title: Optional[str] = None
    verdict: Optional[str] = None
    role: Optional[str] = None


META_TYPES: Dict[UsageSource, Type[EventMeta]] = {
    UsageSource.CLAUDE_CODE: ClaudeMeta,
    UsageSource.CODEX_CLI: CodexMeta,
    UsageSource.CURSOR_IDE: CursorMeta,
    UsageSource.OPENCLAW: OpenClawMeta,
    UsageSource.APPRENTICE: ApprenticeMeta,
    UsageSource.GLEAN: GleanMeta,
    UsageSource.REVIEW_CREW: ReviewCrewMeta,
}


@dataclass(frozen=True)
class UsageEvent:
    """One model invocation (or estimate of one), normalized across sources.

    ``id`` is a content hash of source-specific fields, so collecting the
    same log twice produces the same id.
    """
    id: str
    timestamp: datetime
    source: UsageSource
    provider: UsageProvider
    model: Optional[str]
    tokens: UsageTokens = field(default_factory=UsageTokens)
    cost: UsageCost = field(default_factory=UsageCost)
    project: UsageProject = field(default_factory=UsageProject)
    meta: EventMeta = field(default_factory=EventMeta)

    @property
    def billing(self) -> Optional[str]:
        return self.meta.billing

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "ts": self.timestamp.isoformat(),
            "source": self.source.value,
            "provider": self.provider.value,
            "model": self.model,
            "tokens": self.tokens.to_dict(),
            "cost": self.cost.to_dict(),
            "project": self.project.to_dict(),
            "meta": self.meta.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UsageEvent":
        """Rebuild an event from its stored form.

        Raises:
            KeyError, TypeError, ValueError: If the record is malformed,
                including nested sections that are not objects
        """
        source = UsageSource(data["source"])
        timestamp = parse_instant(data["ts"])
        if timestamp is None:
            raise ValueError(f"Invalid event timestamp: {data['ts']!r}")
        meta_cls = META_TYPES.get(source, EventMeta)
        return cls(
            id=str(data["id"]),
            timestamp=timestamp,
            source=source,
            provider=UsageProvider(data["provider"]),
            model=data.get("model"),
            tokens=UsageTokens.from_dict(_section(data, "tokens")),
            cost=UsageCost.from_dict(_section(data, "cost")),
            project=UsageProject.from_dict(_section(data, "project")),
            meta=meta_cls.from_dict(_section(data, "meta")),
        )


def create_event_id(parts: Dict[str, Any]) -> str:
    """Content hash identifying an event.

    Args:
        parts: Stable, source-specific subset of the event's fields

    Returns:
        40-character SHA-1 hex digest
    """
    payload = json.dumps(parts, sort_keys=True, separators=(",", ":"), default=_id_default)
    return hashlib.sha1(payload.encode("utf-8")).hexdigest()


def parse_instant(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string into an aware datetime.

    Naive values are interpreted in the local zone. Returns None when the
    value is not a parseable instant.
    """
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z") or text.endswith("z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.astimezone()
    return parsed


def from_epoch_millis(value: Any) -> Optional[datetime]:
    try:
        millis = float(value)
    except (TypeError, ValueError):
        return None
    try:
        return datetime.fromtimestamp(millis / 1000.0, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _section(data: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"Event field '{key}' must be an object, got {type(value).__name__}")
    return value


def _optional_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    return float(value)


def _id_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, UsageTokens):
        return value.to_dict()
    raise TypeError(f"Unsupported id part: {type(value).__name__}")
