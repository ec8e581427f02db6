"""
Refresh and reprocess pipelines.

A refresh runs every collector concurrently, costs what they return and
appends it to the event store. A reprocess re-derives billing tags, cost
and Cursor project attribution for everything already stored.
"""

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from thinktax.collectors import DEFAULT_COLLECTORS, Collector
from thinktax.collectors.cursor import build_workspace_activity, find_project_for_timestamp
from thinktax.config.loader import ThinktaxConfig, resolve_cursor_workspace_storage
from thinktax.config.logger import get_logger
from thinktax.config.paths import ThinktaxPaths
from thinktax.storage.repository import EventRepository
from thinktax.storage.state import read_sync_state, write_sync_state

from .billing import load_billing_registry
from .cost import apply_costing
from .events import UsageEvent, UsageSource, utc_now
from .pricing import PricingTable, load_pricing_table

LOGGER = get_logger("thinktax.core.refresh")


@dataclass
class RefreshResult:
    """Outcome of one refresh run."""
    counts: Dict[str, int] = field(default_factory=dict)
    failed: List[str] = field(default_factory=list)
    collected: int = 0
    written: int = 0


@dataclass
class ReprocessResult:
    total: int = 0
    billing_tagged: int = 0
    costing_updated: int = 0
    projects_attributed: int = 0
    written: int = 0
    dry_run: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.billing_tagged or self.costing_updated or self.projects_attributed)


def resolve_pricing_file(config: ThinktaxConfig, paths: ThinktaxPaths) -> Path:
    if config.pricing.file:
        return Path(config.pricing.file).expanduser()
    return paths.pricing_file


def load_pricing(config: ThinktaxConfig, paths: ThinktaxPaths) -> PricingTable:
    """Load the configured pricing table, or the bundled one.

    Raises:
        FileNotFoundError: If a configured pricing file doesn't exist
        ValueError: If the pricing file is invalid
    """
    return load_pricing_table(str(resolve_pricing_file(config, paths)))


def _run_collector(
    name: str,
    collector: Collector,
    config: ThinktaxConfig,
    paths: ThinktaxPaths
) -> Optional[List[UsageEvent]]:
    try:
        events = collector(config, paths)
    except Exception:
        LOGGER.warning("Collector %s failed", name, exc_info=True)
        return None
    LOGGER.debug("%s collector returned %d events", name, len(events))
    return events


def run_refresh(
    config: ThinktaxConfig,
    paths: ThinktaxPaths,
    pricing: PricingTable,
    collectors: Sequence[Tuple[str, Collector]] = DEFAULT_COLLECTORS
) -> RefreshResult:
    """Collect, cost and store new usage events.

    Collectors run in parallel threads and are joined before anything is
    written, so an interrupted run writes nothing. A collector that raises
    is logged and reported in ``failed``; the others still complete.

    Args:
        config: Loaded configuration
        paths: Resolved paths (must already exist)
        pricing: Pricing table used for estimates
        collectors: Ordered ``(name, collector)`` pairs

    Returns:
        RefreshResult with per-collector counts

    Raises:
        OSError: If the event store or sync state cannot be written
    """
    result = RefreshResult()
    if not collectors:
        return result

    with ThreadPoolExecutor(max_workers=len(collectors)) as executor:
        futures = [
            (name, executor.submit(_run_collector, name, collector, config, paths))
            for name, collector in collectors
        ]
        outcomes = [(name, future.result()) for name, future in futures]

    costed: List[UsageEvent] = []
    for name, events in outcomes:
        if events is None:
            result.failed.append(name)
            continue
        result.counts[name] = len(events)
        costed.extend(apply_costing(event, pricing, config.ui.include_unknown) for event in events)

    result.collected = len(costed)
    result.written = EventRepository(paths.events_dir).write_events(costed)
    LOGGER.debug("Wrote %d new of %d collected events", result.written, result.collected)

    sync = read_sync_state(paths.state_dir)
    now = utc_now()
    for name, count in result.counts.items():
        sync.record(name, count, now)
    write_sync_state(paths.state_dir, sync)

    return result


def reprocess(
    config: ThinktaxConfig,
    paths: ThinktaxPaths,
    pricing: PricingTable,
    dry_run: bool = False
) -> ReprocessResult:
    """Re-apply billing tags, costing and project attribution to stored events.

    Claude Code events take their billing tag from the billing-sessions
    registry (by the session file's stem), OpenClaw events from their
    configured default. Cursor events without a project are matched
    against workspace activity again. Day files are only rewritten when
    something changed and ``dry_run`` is off.

    Args:
        config: Loaded configuration
        paths: Resolved paths
        pricing: Pricing table used for estimates
        dry_run: Count changes without writing

    Returns:
        ReprocessResult with per-kind change counts
    """
    repository = EventRepository(paths.events_dir)
    events = repository.load_all()
    result = ReprocessResult(total=len(events), dry_run=dry_run)
    if not events:
        return result

    registry = load_billing_registry(paths.billing_sessions_file, config.claude.billing.default_mode)
    LOGGER.debug("Billing registry: %d tagged sessions, default %s", len(registry), registry.default_mode)
    activities = build_workspace_activity(resolve_cursor_workspace_storage(config))

    reprocessed: List[UsageEvent] = []
    for event in events:
        billing = None
        if event.source is UsageSource.CLAUDE_CODE:
            billing = registry.billing_for(Path(event.meta.file).stem if event.meta.file else None)
        elif event.source is UsageSource.OPENCLAW:
            billing = config.openclaw.billing.default_mode
        if billing is not None and event.meta.billing != billing:
            event = replace(event, meta=replace(event.meta, billing=billing))
            result.billing_tagged += 1

        recosted = apply_costing(event, pricing, config.ui.include_unknown)
        if recosted.cost.final_usd != event.cost.final_usd:
            result.costing_updated += 1

        if recosted.source is UsageSource.CURSOR_IDE and not recosted.project.id:
            project = find_project_for_timestamp(activities, recosted.timestamp)
            if project.id:
                recosted = replace(recosted, project=project)
                result.projects_attributed += 1

        reprocessed.append(recosted)

    if dry_run or not result.changed:
        return result

    result.written = repository.overwrite_events(reprocessed)
    return result
