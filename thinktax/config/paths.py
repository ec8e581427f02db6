"""
Filesystem locations for config, event data and state.
"""

import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

BUNDLED_PRICING_FILE = Path(__file__).resolve().parent.parent / "pricing" / "models.yaml"


@dataclass(frozen=True)
class ThinktaxPaths:
    """Resolved directories and files used by a run."""
    config_dir: Path
    config_file: Path
    data_dir: Path
    events_dir: Path
    state_dir: Path
    pricing_file: Path
    billing_sessions_file: Path


def get_paths(home: Optional[str] = None) -> ThinktaxPaths:
    """Resolve platform paths.

    ``THINKTAX_HOME`` (or the ``home`` argument) puts everything under one
    directory, which is what tests and sandboxed runs use.

    Args:
        home: Optional root directory overriding the platform defaults

    Returns:
        ThinktaxPaths for this process
    """
    override = home or os.environ.get("THINKTAX_HOME")
    if override:
        root = Path(override)
        config_dir = root / "config"
        data_dir = root / "data"
    elif sys.platform == "darwin":
        base = Path.home() / "Library" / "Application Support" / "thinktax"
        config_dir = base
        data_dir = base / "data"
    else:
        config_base = os.environ.get("XDG_CONFIG_HOME") or str(Path.home() / ".config")
        data_base = os.environ.get("XDG_DATA_HOME") or str(Path.home() / ".local" / "share")
        config_dir = Path(config_base) / "thinktax"
        data_dir = Path(data_base) / "thinktax"

    return ThinktaxPaths(
        config_dir=config_dir,
        config_file=config_dir / "config.yaml",
        data_dir=data_dir,
        events_dir=data_dir / "events",
        state_dir=data_dir / "state",
        pricing_file=BUNDLED_PRICING_FILE,
        billing_sessions_file=config_dir / "billing-sessions.jsonl",
    )


def ensure_paths(paths: ThinktaxPaths) -> None:
    for directory in (paths.config_dir, paths.data_dir, paths.events_dir, paths.state_dir):
        directory.mkdir(parents=True, exist_ok=True)
