"""
Shared normalization helpers for collectors.

Source logs are semi-structured and drift between versions, so each value
is read through an ordered list of accessors; the first one that yields a
value wins.
"""

from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from thinktax.core.events import UsageTokens, from_epoch_millis, parse_instant, utc_now

Accessor = Callable[[Any], Any]


def at(*path: str) -> Accessor:
    """Accessor reading a nested key path; missing steps yield None."""
    def _get(record: Any) -> Any:
        current = record
        for key in path:
            if not isinstance(current, dict):
                return None
            current = current.get(key)
        return current
    _get.__name__ = "at_" + "_".join(path)
    return _get


def first_of(record: Any, accessors: Sequence[Accessor]) -> Any:
    for accessor in accessors:
        value = accessor(record)
        if value is not None:
            return value
    return None


def to_count(value: Any) -> int:
    """Coerce a token count; anything non-numeric or negative is zero."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return max(int(value), 0)


def count_of(record: Any, accessors: Sequence[Accessor]) -> int:
    """First numeric value among ``accessors``, as a token count."""
    for accessor in accessors:
        value = accessor(record)
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return to_count(value)
    return 0


def to_instant(value: Any) -> Optional[datetime]:
    """ISO strings and epoch milliseconds to an aware datetime."""
    if isinstance(value, str):
        if value.strip().isdigit():
            return from_epoch_millis(value.strip())
        return parse_instant(value)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return from_epoch_millis(value)
    return None


def extract_timestamp(
    record: Any,
    accessors: Sequence[Accessor],
    now: Optional[datetime] = None
) -> datetime:
    """First candidate that parses as an instant, else ``now``.

    A record is never rejected for a bad timestamp.
    """
    for accessor in accessors:
        parsed = to_instant(accessor(record))
        if parsed is not None:
            return parsed
    return now or utc_now()


def extract_model(record: Any, accessors: Sequence[Accessor]) -> Optional[str]:
    for accessor in accessors:
        value = accessor(record)
        if isinstance(value, str) and value:
            return value
    return None


def find_files(directory: Path, pattern: str) -> List[Path]:
    """Recursive glob under ``directory``; a missing directory is empty."""
    if not directory.is_dir():
        return []
    return sorted(path for path in directory.glob(pattern) if path.is_file())


class CumulativeCounter:
    """Turns running token totals into per-turn deltas.

    Tracks the last total seen per session. A repeated total, or a delta
    with nothing in it, produces no event.
    """

    def __init__(self):
        self._last: Dict[str, UsageTokens] = {}

    def observe(
        self,
        session: str,
        total: UsageTokens,
        first_delta: Optional[UsageTokens] = None
    ) -> Optional[UsageTokens]:
        """Record a new running total.

        Args:
            session: Session discriminator
            total: Cumulative counts reported by the source
            first_delta: Per-turn counts to use when this is the first
                total seen for the session (defaults to the total itself)

        Returns:
            Delta since the previous total, or None when nothing changed
        """
        previous = self._last.get(session)
        self._last[session] = total
        if previous is None:
            delta = first_delta if first_delta is not None else total
        elif previous == total:
            return None
        else:
            delta = UsageTokens(
                input=max(total.input - previous.input, 0),
                output=max(total.output - previous.output, 0),
                cache_write=max(total.cache_write - previous.cache_write, 0),
                cache_read=max(total.cache_read - previous.cache_read, 0),
            )
        return None if delta.is_zero() else delta
