"""
Repository pattern for event persistence.

Events live in one JSONL file per calendar day (the day of the event's
own timestamp), named ``YYYY-MM-DD.jsonl``. The normal write path is an
idempotent append keyed by event id; the overwrite path exists only for
reprocessing stored history.
"""

import re
from collections import OrderedDict
from datetime import date, timedelta
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

from thinktax.config.logger import get_logger
from thinktax.core.events import UsageEvent

from .jsonl import atomic_write_text, dumps_line, iter_jsonl, write_jsonl

LOGGER = get_logger("thinktax.storage.repository")

_DAY_FILE = re.compile(r"^(\d{4}-\d{2}-\d{2})\.jsonl$")


class EventRepository:
    """Append-only, content-addressed event store.

    Re-writing an event whose id is already stored for that day is a
    no-op, so collectors can be re-run freely.
    """

    def __init__(self, events_dir: Union[str, Path]):
        """Initialize the repository.

        Args:
            events_dir: Directory holding the per-day files
        """
        self.events_dir = Path(events_dir)

    def day_file(self, day: date) -> Path:
        return self.events_dir / f"{day.isoformat()}.jsonl"

    def write_events(self, events: Iterable[UsageEvent]) -> int:
        """Append events whose ids are not yet stored.

        Each touched day file is rewritten atomically as its existing
        content followed by the new lines, so a failed write leaves the
        previous file intact and stored lines are never reordered.

        Args:
            events: Costed events, in arrival order

        Returns:
            Number of events actually written

        Raises:
            OSError: If a day file cannot be written
        """
        written = 0
        for day, day_events in _group_by_day(events).items():
            file_path = self.day_file(day)
            seen = {record.get("id") for record in iter_jsonl(file_path)}

            new_lines = []
            for event in day_events:
                if event.id in seen:
                    continue
                seen.add(event.id)
                new_lines.append(dumps_line(event.to_dict()))

            if not new_lines:
                continue

            existing = ""
            if file_path.exists():
                with open(file_path, 'r', encoding='utf-8', errors='replace') as f:
                    existing = f.read()
            if existing and not existing.endswith("\n"):
                # producer was cut off mid-line; keep the fragment on its own line
                existing += "\n"
            atomic_write_text(file_path, existing + "".join(new_lines))
            written += len(new_lines)
            LOGGER.debug("Appended %d events to %s", len(new_lines), file_path.name)

        return written

    def overwrite_events(self, events: Iterable[UsageEvent]) -> int:
        """Replace each touched day file with exactly the given events.

        Only for reprocessing a complete, corrected set of stored events;
        no collector may write while this runs.

        Args:
            events: Full replacement set for every day it touches

        Returns:
            Number of events written
        """
        written = 0
        for day, day_events in _group_by_day(events).items():
            unique: "OrderedDict[str, UsageEvent]" = OrderedDict()
            for event in day_events:
                unique.setdefault(event.id, event)
            write_jsonl(self.day_file(day), (event.to_dict() for event in unique.values()))
            written += len(unique)
            LOGGER.debug("Overwrote %s with %d events", self.day_file(day).name, len(unique))
        return written

    def load_day(self, day: date) -> List[UsageEvent]:
        """Load one day partition, skipping records that don't parse."""
        events = []
        for record in iter_jsonl(self.day_file(day)):
            try:
                events.append(UsageEvent.from_dict(record))
            except (KeyError, TypeError, ValueError):
                LOGGER.debug("Skipping malformed event in %s", day.isoformat())
        return events

    def load_range(self, start: date, end: date) -> List[UsageEvent]:
        """Load every partition from ``start`` to ``end`` inclusive."""
        events: List[UsageEvent] = []
        if not self.events_dir.is_dir():
            return events
        cursor = start
        while cursor <= end:
            events.extend(self.load_day(cursor))
            cursor += timedelta(days=1)
        return events

    def load_all(self) -> List[UsageEvent]:
        events: List[UsageEvent] = []
        for day in self.days():
            events.extend(self.load_day(day))
        return events

    def days(self) -> List[date]:
        """Partition days present on disk, oldest first.

        Derived from file names only; event contents are not read.
        """
        if not self.events_dir.is_dir():
            return []
        found = []
        for entry in self.events_dir.iterdir():
            match = _DAY_FILE.match(entry.name)
            if not match:
                continue
            try:
                found.append(date.fromisoformat(match.group(1)))
            except ValueError:
                continue
        return sorted(found)

    def earliest_day(self) -> Optional[date]:
        found = self.days()
        return found[0] if found else None


def _group_by_day(events: Iterable[UsageEvent]) -> "OrderedDict[date, List[UsageEvent]]":
    grouped: Dict[date, List[UsageEvent]] = OrderedDict()
    for event in events:
        grouped.setdefault(event.timestamp.date(), []).append(event)
    return grouped
