"""
CLI interface for thinktax.

Provides command-line access to refresh, reporting, reprocessing and
diagnostics.
"""

import json
import sys
from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import typer
import yaml
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from thinktax.config.loader import (
    LoadedConfig,
    load_config,
    resolve_cursor_team_url,
    resolve_timezone,
)
from thinktax.config.logger import get_logger, setup_logging
from thinktax.config.paths import ThinktaxPaths, ensure_paths, get_paths
from thinktax.core.aggregate import WINDOWS, Summary, Totals, load_summaries, load_window_summary
from thinktax.core.billing import load_billing_registry
from thinktax.core.refresh import load_pricing, reprocess as run_reprocess, resolve_pricing_file, run_refresh
from thinktax.storage.repository import EventRepository
from thinktax.storage.state import read_sync_state

app = typer.Typer(help="Track what AI coding assistants cost you.")
console = Console()
LOGGER = get_logger("thinktax.cli")

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

WINDOW_TITLES = {
    "today": "Today",
    "mtd": "Month to Date",
    "ytd": "Year to Date",
    "all": "All Time",
}


class Breakdown(str, Enum):
    PROVIDER = "provider"
    PROJECT = "project"
    MODEL = "model"
    SOURCE = "source"


@dataclass
class CliOptions:
    config_path: Optional[str] = None
    timezone: Optional[str] = None


def _fail(message: str) -> None:
    console.print(f"[red]Error:[/] {escape(message)}")
    sys.exit(EXIT_CODE_FAIL)


def _load(ctx: typer.Context) -> LoadedConfig:
    options: CliOptions = ctx.obj or CliOptions()
    try:
        loaded = load_config(options.config_path)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        _fail(str(e))
    LOGGER.debug("Config loaded from %s (%s)", loaded.path, "found" if loaded.exists else "missing")
    return loaded


def _timezone(ctx: typer.Context, loaded: LoadedConfig) -> str:
    options: CliOptions = ctx.obj or CliOptions()
    timezone = options.timezone or resolve_timezone(loaded.config)
    try:
        ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError):
        _fail(f"Unknown timezone: {timezone}")
    return timezone


def _paths() -> ThinktaxPaths:
    paths = get_paths()
    ensure_paths(paths)
    return paths


def _format_currency(amount: float) -> str:
    """Format currency with proper symbols and formatting."""
    return f"${abs(amount):,.2f}"


def _format_tokens(count: int) -> str:
    if count >= 1_000_000:
        return f"{count / 1_000_000:.1f}M"
    if count >= 1_000:
        return f"{count / 1_000:.1f}k"
    return str(count)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(None, "--config", "-c", help="Path to config.yaml"),
    timezone: Optional[str] = typer.Option(None, "--timezone", "-z", help="IANA timezone for reporting windows"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """thinktax CLI."""
    setup_logging(verbose)
    ctx.obj = CliOptions(config_path=config, timezone=timezone)
    if ctx.invoked_subcommand is None:
        console.print("thinktax - Use --help to see available commands")


@app.command()
def refresh(ctx: typer.Context):
    """Collect latest usage and write normalized events."""
    loaded = _load(ctx)
    paths = _paths()
    try:
        pricing = load_pricing(loaded.config, paths)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        _fail(str(e))

    try:
        result = run_refresh(loaded.config, paths, pricing)
    except OSError as e:
        _fail(f"Failed to write events: {e}")

    per_source = ", ".join(f"{name} {count}" for name, count in result.counts.items())
    console.print(f"Collected {result.collected} events ({result.written} new). {per_source}")
    for name in result.failed:
        console.print(f"[yellow]Warning:[/] {name} collector failed (run with --verbose for details)")


def _totals_row(table: Table, label: str, totals: Totals) -> None:
    table.add_row(
        label,
        str(totals.count),
        _format_tokens(totals.tokens_in),
        _format_tokens(totals.tokens_out),
        _format_currency(totals.final_usd),
    )


def _display_summary(title: str, summary: Summary, breakdown: Breakdown) -> None:
    table = Table(title=f"{title} ({summary.timezone})")
    table.add_column(breakdown.value.capitalize())
    table.add_column("Events", justify="right")
    table.add_column("Tokens in", justify="right")
    table.add_column("Tokens out", justify="right")
    table.add_column("Cost", justify="right")

    buckets = summary.breakdowns()[breakdown.value]
    for key, totals in sorted(buckets.items(), key=lambda item: item[1].final_usd, reverse=True):
        _totals_row(table, escape(key), totals)
    _totals_row(table, "[bold]Total[/bold]", summary.totals)
    console.print(table)

    if summary.totals.unknown_cost:
        console.print(f"[dim]{summary.totals.unknown_cost} events have no pricing and are not costed[/]")


@app.command()
def status(
    ctx: typer.Context,
    as_json: bool = typer.Option(False, "--json", help="Output JSON"),
    breakdown: Breakdown = typer.Option(Breakdown.PROVIDER, "--breakdown", "-b", help="Breakdown dimension"),
    today: bool = typer.Option(False, "--today", help="Only show today"),
    mtd: bool = typer.Option(False, "--mtd", help="Only show month-to-date"),
    ytd: bool = typer.Option(False, "--ytd", help="Only show year-to-date"),
    all_time: bool = typer.Option(False, "--all", help="Only show all time"),
):
    """Show usage totals."""
    loaded = _load(ctx)
    timezone = _timezone(ctx, loaded)
    repository = EventRepository(get_paths().events_dir)

    selected = [name for name, flag in zip(WINDOWS, (today, mtd, ytd, all_time)) if flag]
    summaries: Dict[str, Summary]
    if len(selected) == 1:
        summaries = {selected[0]: load_window_summary(repository, timezone, selected[0])}
    else:
        every = load_summaries(repository, timezone)
        summaries = {name: every[name] for name in (selected or list(WINDOWS))}

    if as_json:
        typer.echo(json.dumps({name: summary.to_dict() for name, summary in summaries.items()}, indent=2))
        return

    for name, summary in summaries.items():
        _display_summary(WINDOW_TITLES[name], summary, breakdown)


@app.command()
def reprocess(
    ctx: typer.Context,
    dry_run: bool = typer.Option(False, "--dry-run", help="Show what would change without writing"),
):
    """Re-apply billing tags, costing and project attribution to stored events."""
    loaded = _load(ctx)
    paths = _paths()
    try:
        pricing = load_pricing(loaded.config, paths)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        _fail(str(e))

    try:
        result = run_reprocess(loaded.config, paths, pricing, dry_run=dry_run)
    except OSError as e:
        _fail(f"Failed to rewrite events: {e}")

    if result.total == 0:
        console.print("No events to reprocess.")
        return

    console.print(f"Found {result.total} events")
    console.print("\n[bold]Changes[/bold]")
    console.print(f"  Billing tagged: {result.billing_tagged} events")
    console.print(f"  Costing updated: {result.costing_updated} events")
    console.print(f"  Projects attributed: {result.projects_attributed} Cursor events")

    if dry_run:
        console.print("\n[dim](Dry run - no changes written)[/]")
    elif not result.changed:
        console.print("\nNo changes needed.")
    else:
        console.print(f"\n[green]✓[/] Wrote {result.written} events to storage")


@app.command()
def doctor(ctx: typer.Context):
    """Diagnostics for thinktax."""
    loaded = _load(ctx)
    timezone = _timezone(ctx, loaded)
    paths = get_paths()
    repository = EventRepository(paths.events_dir)

    lines: List[str] = [
        f"Config: {loaded.path} ({'found' if loaded.exists else 'missing'})",
        f"Data dir: {paths.data_dir}",
        f"Events dir: {paths.events_dir} ({len(repository.days())} day files)",
        f"State dir: {paths.state_dir}",
        f"Timezone: {timezone}",
    ]

    pricing_file = resolve_pricing_file(loaded.config, paths)
    try:
        pricing = load_pricing(loaded.config, paths)
        lines.append(f"Pricing: {pricing_file} ({len(pricing.models)} models, updated {pricing.updated})")
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        lines.append(f"[red]Pricing: {pricing_file} ({e})[/]")

    registry = load_billing_registry(paths.billing_sessions_file, loaded.config.claude.billing.default_mode)
    lines.append(f"Billing registry: {len(registry)} tagged sessions, default {registry.default_mode}")

    team_url = resolve_cursor_team_url(loaded.config)
    if team_url:
        lines.append(f"Cursor Team API: {team_url}")

    sync = read_sync_state(paths.state_dir)
    for name, when in sorted(sync.last_run.items()):
        lines.append(f"Last {name} refresh: {when} ({sync.counts.get(name, 0)} events)")

    for line in lines:
        console.print(line)


if __name__ == "__main__":
    app()
