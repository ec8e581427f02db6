"""
Small persisted state documents.

``etag.json`` holds one cache entry per network endpoint; ``sync.json``
records when each collector last ran and how many events it returned.
An absent or unreadable document is treated as empty state.
"""

import json
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Optional, Union

from thinktax.config.logger import get_logger
from thinktax.core.events import parse_instant, utc_now

from .jsonl import atomic_write_text

LOGGER = get_logger("thinktax.storage.state")

CACHE_FILE = "etag.json"
SYNC_FILE = "sync.json"

# Collectors run in threads and may update their own cache keys concurrently.
_STATE_LOCK = threading.Lock()


@dataclass(frozen=True)
class CacheEntry:
    """Last successful check of an endpoint plus its HTTP validator."""
    last_checked: Optional[datetime] = None
    etag: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if self.last_checked is not None:
            data["lastChecked"] = self.last_checked.isoformat()
        if self.etag is not None:
            data["etag"] = self.etag
        return data

    @classmethod
    def from_dict(cls, data: Any) -> "CacheEntry":
        if not isinstance(data, dict):
            return cls()
        etag = data.get("etag")
        return cls(
            last_checked=parse_instant(data.get("lastChecked")),
            etag=etag if isinstance(etag, str) else None,
        )


def _read_document(path: Path) -> Dict[str, Any]:
    if not path.is_file():
        return {}
    try:
        data = json.loads(path.read_text(encoding='utf-8'))
    except (OSError, ValueError):
        LOGGER.debug("Ignoring unreadable state file %s", path)
        return {}
    return data if isinstance(data, dict) else {}


def _write_document(path: Path, data: Dict[str, Any]) -> None:
    atomic_write_text(path, json.dumps(data, indent=2, sort_keys=True))


class CacheState:
    """Per-endpoint response cache records."""

    def __init__(self, state_dir: Union[str, Path]):
        self.path = Path(state_dir) / CACHE_FILE

    def get(self, key: str) -> CacheEntry:
        return CacheEntry.from_dict(_read_document(self.path).get(key))

    def update(self, key: str, entry: CacheEntry) -> None:
        """Persist one key, leaving every other collector's keys alone."""
        with _STATE_LOCK:
            document = _read_document(self.path)
            document[key] = entry.to_dict()
            _write_document(self.path, document)

    def is_fresh(self, key: str, ttl: timedelta, now: Optional[datetime] = None) -> bool:
        """True when the endpoint was checked less than ``ttl`` ago."""
        entry = self.get(key)
        if entry.last_checked is None:
            return False
        now = now or utc_now()
        return now - entry.last_checked < ttl


@dataclass
class SyncState:
    last_run: Dict[str, str] = field(default_factory=dict)
    counts: Dict[str, int] = field(default_factory=dict)

    def record(self, collector: str, count: int, when: Optional[datetime] = None) -> None:
        self.last_run[collector] = (when or utc_now()).isoformat()
        self.counts[collector] = count


def read_sync_state(state_dir: Union[str, Path]) -> SyncState:
    document = _read_document(Path(state_dir) / SYNC_FILE)
    last_run = document.get("lastRun")
    counts = document.get("counts")
    return SyncState(
        last_run={k: v for k, v in last_run.items() if isinstance(v, str)} if isinstance(last_run, dict) else {},
        counts={k: v for k, v in counts.items() if isinstance(v, int)} if isinstance(counts, dict) else {},
    )


def write_sync_state(state_dir: Union[str, Path], state: SyncState) -> None:
    with _STATE_LOCK:
        _write_document(Path(state_dir) / SYNC_FILE, {"lastRun": state.last_run, "counts": state.counts})
