"""
Spend aggregation.

Folds stored events into totals and per-provider/source/model/project
breakdowns over a window, evaluated in the reporting timezone. Breakdowns
and totals come from the same pass, so they always sum to the same
figures.
"""

from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Dict, Iterable, List, Optional, Tuple
from zoneinfo import ZoneInfo

from thinktax.storage.repository import EventRepository

from .events import CostMode, UsageEvent, utc_now

UNKNOWN_MODEL = "unknown"
UNASSIGNED_PROJECT = "unassigned"

WINDOWS = ("today", "mtd", "ytd", "all")


@dataclass
class Totals:
    """Running sums for one bucket."""
    count: int = 0
    tokens_in: int = 0
    tokens_out: int = 0
    cache_write: int = 0
    cache_read: int = 0
    reported_usd: float = 0.0
    estimated_usd: float = 0.0
    final_usd: float = 0.0
    unknown_cost: int = 0

    def add(self, event: UsageEvent) -> None:
        self.count += 1
        self.tokens_in += event.tokens.input
        self.tokens_out += event.tokens.output
        self.cache_write += event.tokens.cache_write
        self.cache_read += event.tokens.cache_read
        self.reported_usd += event.cost.reported_usd or 0.0
        self.estimated_usd += event.cost.estimated_usd or 0.0
        self.final_usd += event.cost.final_usd or 0.0
        if event.cost.mode is CostMode.UNKNOWN:
            self.unknown_cost += 1

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)


@dataclass
class Summary:
    """Totals and breakdowns for the window ``[start, end]``."""
    timezone: str
    start: datetime
    end: datetime
    totals: Totals = field(default_factory=Totals)
    by_provider: Dict[str, Totals] = field(default_factory=dict)
    by_source: Dict[str, Totals] = field(default_factory=dict)
    by_model: Dict[str, Totals] = field(default_factory=dict)
    by_project: Dict[str, Totals] = field(default_factory=dict)

    def breakdowns(self) -> Dict[str, Dict[str, Totals]]:
        return {
            "provider": self.by_provider,
            "source": self.by_source,
            "model": self.by_model,
            "project": self.by_project,
        }

    def to_dict(self) -> Dict[str, object]:
        return {
            "timezone": self.timezone,
            "from": self.start.isoformat(),
            "to": self.end.isoformat(),
            "totals": self.totals.to_dict(),
            "breakdowns": {
                name: {key: totals.to_dict() for key, totals in buckets.items()}
                for name, buckets in self.breakdowns().items()
            },
        }


def _add_to_bucket(buckets: Dict[str, Totals], key: str, event: UsageEvent) -> None:
    totals = buckets.get(key)
    if totals is None:
        totals = buckets[key] = Totals()
    totals.add(event)


def model_bucket(event: UsageEvent) -> str:
    return event.model or UNKNOWN_MODEL


def project_bucket(event: UsageEvent) -> str:
    return event.project.name or event.project.id or UNASSIGNED_PROJECT


def aggregate_events(
    events: Iterable[UsageEvent],
    timezone: str,
    start: datetime,
    end: datetime
) -> Summary:
    """Fold events falling within ``[start, end]`` (inclusive) into a Summary.

    Args:
        events: Candidate events, in any order
        timezone: IANA zone name the window is expressed in
        start: Window start (aware)
        end: Window end (aware)

    Returns:
        Summary whose breakdowns each sum to its totals
    """
    zone = ZoneInfo(timezone)
    summary = Summary(timezone=timezone, start=start.astimezone(zone), end=end.astimezone(zone))

    for event in events:
        if not start <= event.timestamp <= end:
            continue
        summary.totals.add(event)
        _add_to_bucket(summary.by_provider, event.provider.value, event)
        _add_to_bucket(summary.by_source, event.source.value, event)
        _add_to_bucket(summary.by_model, model_bucket(event), event)
        _add_to_bucket(summary.by_project, project_bucket(event), event)

    return summary


def start_of_day(moment: datetime, timezone: str) -> datetime:
    zone = ZoneInfo(timezone)
    return datetime.combine(moment.astimezone(zone).date(), time(), tzinfo=zone)


def start_of_month(moment: datetime, timezone: str) -> datetime:
    local = moment.astimezone(ZoneInfo(timezone))
    return datetime.combine(local.date().replace(day=1), time(), tzinfo=local.tzinfo)


def start_of_year(moment: datetime, timezone: str) -> datetime:
    local = moment.astimezone(ZoneInfo(timezone))
    return datetime.combine(date(local.year, 1, 1), time(), tzinfo=local.tzinfo)


def load_events_for_range(
    repository: EventRepository,
    timezone: str,
    start: datetime,
    end: datetime
) -> List[UsageEvent]:
    """Read the partitions that can hold events in ``[start, end]``.

    Partitions follow each event's own UTC offset, so an event inside the
    window may sit in the file for the day before or after the window's
    local dates. One extra day is read on each side.
    """
    zone = ZoneInfo(timezone)
    first = start.astimezone(zone).date() - timedelta(days=1)
    last = end.astimezone(zone).date() + timedelta(days=1)
    return repository.load_range(first, last)


def load_all_events(
    repository: EventRepository,
    timezone: str,
    now: datetime
) -> Tuple[List[UsageEvent], datetime]:
    """Load every stored event plus the start of the all-time window.

    The window starts at local midnight of the earliest partition day, or
    of the earliest event if that falls earlier in the reporting zone.

    Returns:
        ``(events, start)``; with nothing stored, ``([], now)``
    """
    earliest_day = repository.earliest_day()
    if earliest_day is None:
        return [], now

    zone = ZoneInfo(timezone)
    events = repository.load_all()
    start = datetime.combine(earliest_day, time(), tzinfo=zone)
    if events:
        start = min(start, start_of_day(min(event.timestamp for event in events), timezone))
    return events, start


def load_summaries(
    repository: EventRepository,
    timezone: str,
    now: Optional[datetime] = None
) -> Dict[str, Summary]:
    """Summaries for today, month-to-date, year-to-date and all time.

    Args:
        repository: Event store to read from
        timezone: IANA zone the windows are computed in
        now: Window end; defaults to the current time

    Returns:
        Mapping of ``today``/``mtd``/``ytd``/``all`` to Summary
    """
    now = now or utc_now()
    events, earliest = load_all_events(repository, timezone, now)
    return {
        "today": aggregate_events(events, timezone, start_of_day(now, timezone), now),
        "mtd": aggregate_events(events, timezone, start_of_month(now, timezone), now),
        "ytd": aggregate_events(events, timezone, start_of_year(now, timezone), now),
        "all": aggregate_events(events, timezone, earliest, now),
    }


WINDOW_STARTS = {
    "today": start_of_day,
    "mtd": start_of_month,
    "ytd": start_of_year,
}


def load_window_summary(
    repository: EventRepository,
    timezone: str,
    window: str,
    now: Optional[datetime] = None
) -> Summary:
    """Summary for a single named window, reading only the partitions it needs.

    Raises:
        ValueError: If ``window`` is not one of ``WINDOWS``
    """
    if window not in WINDOWS:
        raise ValueError(f"Unknown window: {window}. Expected one of: {list(WINDOWS)}")
    now = now or utc_now()
    if window == "all":
        events, start = load_all_events(repository, timezone, now)
    else:
        start = WINDOW_STARTS[window](now, timezone)
        events = load_events_for_range(repository, timezone, start, now)
    return aggregate_events(events, timezone, start, now)
