"""
Cursor IDE collector.

Cursor has no per-request usage log on disk, so usage is gathered from an
ordered chain of sources, most authoritative first:

1. the web dashboard API (reported cost per request)
2. the team/admin spend API
3. usage snapshots in Cursor's local ``state.vscdb``
4. an estimate from local agent transcripts (characters / 4)

Each tier returns ROWS, CACHED or EMPTY. The chain stops at the first
tier that returns ROWS or CACHED; a still-valid cache entry means "nothing
new", not "try something else".
"""

import base64
import hashlib
import json
import math
import os
import sqlite3
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, List, Optional, Sequence, Tuple
from urllib.parse import quote, unquote

import httpx

from thinktax.config.loader import (
    CursorTeamConfig,
    ThinktaxConfig,
    resolve_cursor_state_db,
    resolve_cursor_team_url,
    resolve_cursor_transcripts_dir,
    resolve_cursor_workspace_storage,
)
from thinktax.config.logger import get_logger
from thinktax.config.paths import ThinktaxPaths
from thinktax.core.events import (
    CursorMeta,
    UsageCost,
    UsageEvent,
    UsageProject,
    UsageProvider,
    UsageSource,
    UsageTokens,
    create_event_id,
    from_epoch_millis,
    utc_now,
)
from thinktax.storage.db import find_items, get_item
from thinktax.storage.state import CacheEntry, CacheState

from .common import at, count_of, extract_model, extract_timestamp, find_files, first_of

LOGGER = get_logger("thinktax.collectors.cursor")

DASHBOARD_URL = "https://cursor.com/api/dashboard/get-filtered-usage-events"
PROFILE_URL = "https://api2.cursor.sh/auth/full_stripe_profile"
ACCESS_TOKEN_KEY = "cursorAuth/accessToken"
COMPOSER_DATA_KEY = "composer.composerData"

DASHBOARD_PAGE_SIZE = 500
DASHBOARD_MAX_PAGES = 100
CHARS_PER_TOKEN = 4
ATTRIBUTION_WINDOW = timedelta(minutes=30)

ROW_TIMESTAMP = (at("date"), at("day"), at("timestamp"), at("ts"), at("startTime"))
ROW_MODEL = (at("model"), at("modelName"))
ROW_INPUT = (at("inputTokens"), at("promptTokens"), at("input_tokens"), at("prompt_tokens"))
ROW_OUTPUT = (at("outputTokens"), at("completionTokens"), at("output_tokens"), at("completion_tokens"))
ROW_CACHE_WRITE = (at("cacheWriteTokens"), at("cache_write_tokens"), at("cacheWrite"))
ROW_CACHE_READ = (at("cacheReadTokens"), at("cache_read_tokens"), at("cacheRead"))
ROW_CENTS = (at("totalCents"), at("costCents"), at("amountCents"))
ROW_CONTAINERS = ("usage", "data", "items", "rows", "results")
ROW_NESTED = (at("byModel"), at("models"), at("breakdown"))


class TierOutcome(Enum):
    """Result of one fallback tier."""
    ROWS = "rows"
    CACHED = "cached"
    EMPTY = "empty"


@dataclass(frozen=True)
class CursorRow:
    """One usage record from any tier, before it becomes an event."""
    timestamp: datetime
    model: Optional[str]
    tokens: UsageTokens
    reported_usd: Optional[float] = None
    meta: CursorMeta = field(default_factory=CursorMeta)


@dataclass(frozen=True)
class TierResult:
    outcome: TierOutcome
    rows: Tuple[CursorRow, ...] = ()

    @classmethod
    def from_rows(cls, rows: Sequence[CursorRow]) -> "TierResult":
        if rows:
            return cls(TierOutcome.ROWS, tuple(rows))
        return cls(TierOutcome.EMPTY)


@dataclass(frozen=True)
class CursorContext:
    """Everything a tier may touch."""
    config: ThinktaxConfig
    cache: CacheState
    client: httpx.Client
    now: datetime


Tier = Callable[[CursorContext], TierResult]


@dataclass(frozen=True)
class CursorAuth:
    session_token: str
    team_id: Optional[int]


@dataclass(frozen=True)
class WorkspaceActivity:
    """A Cursor workspace folder and the times it was used."""
    folder: str
    timestamps: Tuple[datetime, ...]


def decode_jwt_subject(token: str) -> Optional[str]:
    """User id from a Cursor access token's ``sub`` claim."""
    parts = token.split(".")
    if len(parts) < 2:
        return None
    segment = parts[1] + "=" * (-len(parts[1]) % 4)
    try:
        payload = json.loads(base64.urlsafe_b64decode(segment))
    except ValueError:
        return None
    subject = payload.get("sub") if isinstance(payload, dict) else None
    if not isinstance(subject, str) or not subject:
        return None
    return subject.replace("auth0|", "")


def fetch_team_id(client: httpx.Client, access_token: str) -> Optional[int]:
    try:
        response = client.get(PROFILE_URL, headers={"Authorization": f"Bearer {access_token}"})
        response.raise_for_status()
        team_id = response.json().get("teamId")
    except (httpx.HTTPError, ValueError, AttributeError) as exc:
        LOGGER.debug("Cursor: could not fetch team id from profile: %s", exc)
        return None
    return team_id if isinstance(team_id, int) and not isinstance(team_id, bool) else None


def read_local_auth(db_path: Path, client: httpx.Client) -> Optional[CursorAuth]:
    """Build dashboard credentials from the IDE's own login.

    Args:
        db_path: Cursor's global state.vscdb
        client: HTTP client used to look up the team id

    Returns:
        CursorAuth, or None when no usable access token is stored
    """
    if not db_path.is_file():
        LOGGER.debug("Cursor: state.vscdb not found at %s", db_path)
        return None
    try:
        access_token = get_item(db_path, ACCESS_TOKEN_KEY)
    except sqlite3.Error as exc:
        LOGGER.debug("Cursor: failed to read state.vscdb: %s", exc)
        return None
    if not access_token:
        LOGGER.debug("Cursor: no access token in state.vscdb")
        return None

    user_id = decode_jwt_subject(access_token)
    if not user_id:
        LOGGER.debug("Cursor: could not extract user id from token")
        return None

    team_id = fetch_team_id(client, access_token)
    LOGGER.debug("Cursor: extracted auth from state.vscdb, team id %s", team_id)
    return CursorAuth(session_token=f"{user_id}::{access_token}", team_id=team_id)


def _dashboard_row(record: dict, now: datetime) -> CursorRow:
    usage = record.get("tokenUsage") if isinstance(record.get("tokenUsage"), dict) else {}
    cents = usage.get("totalCents")
    return CursorRow(
        timestamp=extract_timestamp(record, (at("timestamp"),), now),
        model=extract_model(record, (at("model"),)),
        tokens=UsageTokens(
            input=count_of(usage, (at("inputTokens"),)),
            output=count_of(usage, (at("outputTokens"),)),
            cache_write=count_of(usage, (at("cacheWriteTokens"),)),
            cache_read=count_of(usage, (at("cacheReadTokens"),)),
        ),
        reported_usd=cents / 100 if isinstance(cents, (int, float)) and cents else None,
        meta=CursorMeta(
            origin="dashboard_api",
            kind=record.get("kind"),
            owning_user=record.get("owningUser"),
        ),
    )


def fetch_dashboard(context: CursorContext) -> TierResult:
    """Tier 1: paginated usage events from the Cursor web dashboard."""
    dashboard = context.config.cursor.dashboard
    session_token = dashboard.session_token
    team_id = dashboard.team_id

    if not session_token or not team_id:
        auth = read_local_auth(resolve_cursor_state_db(context.config), context.client)
        if auth is not None:
            session_token = session_token or auth.session_token
            team_id = team_id or auth.team_id

    if not session_token or not team_id:
        LOGGER.debug("Cursor: no dashboard session token or team id")
        return TierResult(TierOutcome.EMPTY)

    cache_key = f"cursor_dashboard_{team_id}"
    if context.cache.is_fresh(cache_key, timedelta(minutes=dashboard.cache_ttl_minutes), context.now):
        LOGGER.debug("Cursor: dashboard cache still valid, skipping API call")
        return TierResult(TierOutcome.CACHED)

    end_ms = int(context.now.timestamp() * 1000)
    start_ms = end_ms - dashboard.lookback_days * 24 * 60 * 60 * 1000
    headers = {
        "Origin": "https://cursor.com",
        "Referer": "https://cursor.com/dashboard?tab=usage",
        "Cookie": f"WorkosCursorSessionToken={quote(session_token, safe='')}; team_id={team_id}",
    }

    rows: List[CursorRow] = []
    fetched = 0
    total = 0
    try:
        for page in range(1, DASHBOARD_MAX_PAGES + 1):
            response = context.client.post(DASHBOARD_URL, headers=headers, json={
                "teamId": team_id,
                "startDate": str(start_ms),
                "endDate": str(end_ms),
                "page": page,
                "pageSize": DASHBOARD_PAGE_SIZE,
            })
            response.raise_for_status()
            data = response.json()
            total = data.get("totalUsageEventsCount") or 0
            page_events = data.get("usageEventsDisplay") or []
            LOGGER.debug("Cursor: dashboard page %d returned %d events", page, len(page_events))

            fetched += len(page_events)
            for event in page_events:
                if not isinstance(event, dict):
                    continue
                row = _dashboard_row(event, context.now)
                if row.tokens.is_zero() and not row.reported_usd:
                    continue
                rows.append(row)
            if len(page_events) < DASHBOARD_PAGE_SIZE or fetched >= total:
                break
        else:
            LOGGER.warning("Cursor: hit pagination limit, stopping at %d events", fetched)
    except (httpx.HTTPError, ValueError, AttributeError) as exc:
        LOGGER.warning("Cursor: dashboard API request failed: %s", exc)
        return TierResult.from_rows(rows)

    context.cache.update(cache_key, CacheEntry(last_checked=context.now))
    LOGGER.debug("Cursor: dashboard returned %d of %d events", fetched, total)
    return TierResult.from_rows(rows)


def _flatten_payload(payload: Any) -> List[Any]:
    if payload is None:
        return []
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for key in ROW_CONTAINERS:
            if isinstance(payload.get(key), list):
                return payload[key]
    return [payload]


def parse_cursor_rows(payload: Any, now: datetime) -> List[CursorRow]:
    """Schema-tolerant parse of a spend payload.

    Accepts a bare list, a wrapper object holding the list, and records
    that break usage down further by model. Records with neither tokens
    nor a cost are dropped.
    """
    rows: List[CursorRow] = []
    for record in _flatten_payload(payload):
        if not isinstance(record, dict):
            continue
        nested = first_of(record, ROW_NESTED)
        if isinstance(nested, list):
            for item in nested:
                rows.extend(parse_cursor_rows(item, now))
            continue

        cents = first_of(record, ROW_CENTS)
        reported = cents / 100 if isinstance(cents, (int, float)) and not isinstance(cents, bool) else None
        tokens = UsageTokens(
            input=count_of(record, ROW_INPUT),
            output=count_of(record, ROW_OUTPUT),
            cache_write=count_of(record, ROW_CACHE_WRITE),
            cache_read=count_of(record, ROW_CACHE_READ),
        )
        if tokens.is_zero() and not reported:
            continue

        rows.append(CursorRow(
            timestamp=extract_timestamp(record, ROW_TIMESTAMP, now),
            model=extract_model(record, ROW_MODEL),
            tokens=tokens,
            reported_usd=reported,
            meta=CursorMeta(origin="team_api", record=record),
        ))
    return rows


def team_authorization(team: CursorTeamConfig) -> Optional[str]:
    """Basic auth header value, preferring an explicit credential string."""
    if team.basic_auth:
        return f"Basic {team.basic_auth}"
    if team.api_key:
        credentials = f"{team.api_key}:"
    elif team.email and team.token:
        credentials = f"{team.email}:{team.token}"
    else:
        return None
    return "Basic " + base64.b64encode(credentials.encode("utf-8")).decode("ascii")


def team_request_body(team: CursorTeamConfig, now: datetime) -> str:
    if team.body:
        return team.body
    if team.lookback_days:
        end_ms = int(now.timestamp() * 1000)
        start_ms = end_ms - team.lookback_days * 24 * 60 * 60 * 1000
        return json.dumps({"startDate": start_ms, "endDate": end_ms})
    return "{}"


def fetch_team_spend(context: CursorContext) -> TierResult:
    """Tier 2: team spend API, with conditional GET support."""
    team = context.config.cursor.team
    url = resolve_cursor_team_url(context.config)
    if team is None or not url:
        LOGGER.debug("Cursor: no team API configured")
        return TierResult(TierOutcome.EMPTY)

    if context.cache.is_fresh(url, timedelta(minutes=team.etag_ttl_minutes), context.now):
        LOGGER.debug("Cursor: team API cache still valid, skipping API call")
        return TierResult(TierOutcome.CACHED)

    entry = context.cache.get(url)
    headers = {}
    if team.method == "GET" and entry.etag:
        headers["If-None-Match"] = entry.etag
    authorization = team_authorization(team)
    if authorization:
        headers["Authorization"] = authorization
    else:
        LOGGER.debug("Cursor: no team API credentials configured")

    content = None
    if team.method == "POST":
        headers["Content-Type"] = "application/json"
        content = team_request_body(team, context.now)

    try:
        response = context.client.request(team.method, url, headers=headers, content=content)
    except httpx.HTTPError as exc:
        LOGGER.warning("Cursor: team API request failed: %s", exc)
        return TierResult(TierOutcome.EMPTY)

    if response.status_code == 304:
        context.cache.update(url, CacheEntry(last_checked=context.now, etag=response.headers.get("etag") or entry.etag))
        LOGGER.debug("Cursor: team API reports no changes")
        return TierResult(TierOutcome.CACHED)

    if not response.is_success:
        LOGGER.warning("Cursor: team API returned %d %s", response.status_code, response.reason_phrase)
        return TierResult(TierOutcome.EMPTY)

    try:
        payload = response.json()
    except ValueError as exc:
        LOGGER.warning("Cursor: team API returned invalid JSON: %s", exc)
        return TierResult(TierOutcome.EMPTY)

    context.cache.update(url, CacheEntry(last_checked=context.now, etag=response.headers.get("etag") or entry.etag))
    rows = parse_cursor_rows(payload, context.now)
    LOGGER.debug("Cursor: parsed %d rows from team API", len(rows))
    return TierResult.from_rows(rows)


def read_local_state(context: CursorContext) -> TierResult:
    """Tier 3: usage snapshots stored in the global state.vscdb."""
    db_path = resolve_cursor_state_db(context.config)
    if not db_path.is_file():
        return TierResult(TierOutcome.EMPTY)
    try:
        items = find_items(db_path, "cursor", "usage")
    except sqlite3.Error as exc:
        LOGGER.debug("Cursor: failed to query state.vscdb: %s", exc)
        return TierResult(TierOutcome.EMPTY)

    rows: List[CursorRow] = []
    for key, value in items:
        try:
            payload = json.loads(value)
        except ValueError:
            continue
        for row in parse_cursor_rows(payload, context.now):
            rows.append(replace(row, meta=CursorMeta(origin="state.vscdb", key=key)))
    return TierResult.from_rows(rows)


def estimate_tokens(chars: int) -> int:
    if chars <= 0:
        return 0
    return math.ceil(chars / CHARS_PER_TOKEN)


def estimate_transcript(file_path: Path, model: str) -> Optional[CursorRow]:
    """Approximate one agent transcript's usage from its character count.

    User text counts as input; assistant text and thinking count as
    output. The file's modification time stands in for the timestamp.
    """
    try:
        data = json.loads(file_path.read_text(encoding='utf-8'))
        mtime = file_path.stat().st_mtime
    except (OSError, ValueError):
        LOGGER.debug("Cursor: skipping unreadable transcript %s", file_path)
        return None
    if not isinstance(data, list):
        return None

    input_chars = output_chars = 0
    user_count = assistant_count = 0
    for item in data:
        if not isinstance(item, dict):
            continue
        if item.get("role") == "user":
            if isinstance(item.get("text"), str):
                input_chars += len(item["text"])
            user_count += 1
        elif item.get("role") == "assistant":
            for key in ("text", "thinking"):
                if isinstance(item.get(key), str):
                    output_chars += len(item[key])
            assistant_count += 1

    tokens = UsageTokens(input=estimate_tokens(input_chars), output=estimate_tokens(output_chars))
    if tokens.is_zero():
        return None

    return CursorRow(
        timestamp=datetime.fromtimestamp(mtime, tz=timezone.utc),
        model=model,
        tokens=tokens,
        meta=CursorMeta(
            file=str(file_path),
            origin="local_transcript_estimate",
            messages={"user": user_count, "assistant": assistant_count},
            chars={"input": input_chars, "output": output_chars},
        ),
    )


def estimate_from_transcripts(context: CursorContext) -> TierResult:
    """Tier 4: character-count estimate from agent transcripts."""
    local = context.config.cursor.local
    if not local.estimate_transcripts:
        return TierResult(TierOutcome.EMPTY)
    files = find_files(resolve_cursor_transcripts_dir(context.config), "**/agent-transcripts/*.json")
    rows = [row for row in (estimate_transcript(path, local.estimate_model) for path in files) if row]
    return TierResult.from_rows(rows)


CURSOR_TIERS: Tuple[Tuple[str, Tier], ...] = (
    ("dashboard", fetch_dashboard),
    ("team", fetch_team_spend),
    ("local", read_local_state),
    ("transcripts", estimate_from_transcripts),
)


def run_tiers(tiers: Sequence[Tuple[str, Tier]], context: CursorContext) -> TierResult:
    """Try each tier in order until one yields rows or a cache hit."""
    for name, tier in tiers:
        result = tier(context)
        LOGGER.debug("Cursor: %s tier -> %s (%d rows)", name, result.outcome.value, len(result.rows))
        if result.outcome is not TierOutcome.EMPTY:
            return result
    return TierResult(TierOutcome.EMPTY)


def _workspace_folder(workspace_dir: Path) -> Optional[str]:
    try:
        data = json.loads((workspace_dir / "workspace.json").read_text(encoding='utf-8'))
    except (OSError, ValueError):
        return None
    if not isinstance(data, dict):
        return None
    uri = data.get("folder") or first_of(data, (at("configuration", "folders"),))
    if isinstance(uri, list):
        uri = uri[0].get("uri") if uri and isinstance(uri[0], dict) else None
    if not isinstance(uri, str) or not uri:
        return None
    if uri.startswith("file://"):
        uri = uri[len("file://"):]
    return unquote(uri)


def _composer_timestamps(db_path: Path) -> List[datetime]:
    """Creation times of the workspace's composer sessions.

    Falls back to the database's modification time when it can't be read.
    """
    try:
        raw = get_item(db_path, COMPOSER_DATA_KEY)
        data = json.loads(raw) if raw else {}
    except (sqlite3.Error, ValueError):
        return [datetime.fromtimestamp(db_path.stat().st_mtime, tz=timezone.utc)]

    composers = data.get("allComposers") if isinstance(data, dict) else None
    found = []
    for composer in composers or []:
        created = composer.get("createdAt") if isinstance(composer, dict) else None
        if isinstance(created, (int, float)) and not isinstance(created, bool):
            instant = from_epoch_millis(created)
            if instant is not None:
                found.append(instant)
    return found


def build_workspace_activity(storage_dir: Path) -> List[WorkspaceActivity]:
    """Index Cursor workspaces by when they were active.

    Args:
        storage_dir: Cursor's ``workspaceStorage`` directory

    Returns:
        One entry per workspace with a resolvable folder
    """
    if not storage_dir.is_dir():
        LOGGER.debug("Cursor: workspace storage not found at %s", storage_dir)
        return []

    activities = []
    for workspace_dir in sorted(storage_dir.iterdir()):
        if not workspace_dir.is_dir():
            continue
        folder = _workspace_folder(workspace_dir)
        if not folder:
            continue

        db_path = workspace_dir / "state.vscdb"
        try:
            timestamps = _composer_timestamps(db_path) if db_path.is_file() else []
            if not timestamps:
                timestamps = [datetime.fromtimestamp(workspace_dir.stat().st_mtime, tz=timezone.utc)]
        except OSError:
            continue
        activities.append(WorkspaceActivity(folder=folder, timestamps=tuple(timestamps)))

    LOGGER.debug("Cursor: built activity map for %d workspaces", len(activities))
    return activities


def project_for_folder(folder: str) -> UsageProject:
    return UsageProject(
        id=hashlib.sha1(folder.encode("utf-8")).hexdigest()[:12],
        name=os.path.basename(folder.rstrip("/")) or folder,
        root=folder,
    )


def find_project_for_timestamp(
    activities: Sequence[WorkspaceActivity],
    timestamp: datetime,
    tolerance: timedelta = ATTRIBUTION_WINDOW
) -> UsageProject:
    """Workspace active closest to ``timestamp``, within ``tolerance``."""
    best_folder = None
    best_distance = None
    for activity in activities:
        for instant in activity.timestamps:
            distance = abs(timestamp - instant)
            if distance <= tolerance and (best_distance is None or distance < best_distance):
                best_folder = activity.folder
                best_distance = distance
    if best_folder is None:
        return UsageProject()
    return project_for_folder(best_folder)


def _to_event(row: CursorRow, activities: Sequence[WorkspaceActivity]) -> UsageEvent:
    return UsageEvent(
        id=create_event_id({
            "source": UsageSource.CURSOR_IDE.value,
            "ts": row.timestamp.isoformat(),
            "model": row.model,
            "tokens": row.tokens.to_dict(),
            "reportedUsd": row.reported_usd,
        }),
        timestamp=row.timestamp,
        source=UsageSource.CURSOR_IDE,
        provider=UsageProvider.CURSOR,
        model=row.model,
        tokens=row.tokens,
        cost=UsageCost(reported_usd=row.reported_usd),
        project=find_project_for_timestamp(activities, row.timestamp),
        meta=row.meta,
    )


def collect_cursor(
    config: ThinktaxConfig,
    paths: ThinktaxPaths,
    client: Optional[httpx.Client] = None,
    tiers: Sequence[Tuple[str, Tier]] = CURSOR_TIERS,
    now: Optional[datetime] = None
) -> List[UsageEvent]:
    """Collect Cursor usage through the fallback chain.

    Args:
        config: Loaded configuration
        paths: Resolved thinktax paths (cache state lives in ``state_dir``)
        client: HTTP client to use; one with the configured timeout is
            created and closed when omitted
        tiers: Ordered fallback tiers
        now: Reference time for cache freshness and lookback windows

    Returns:
        Events from the first tier that produced rows, attributed to
        workspaces where possible
    """
    LOGGER.debug("Cursor: starting collection")
    context_client = client or httpx.Client(timeout=config.http.timeout_seconds)
    try:
        context = CursorContext(
            config=config,
            cache=CacheState(paths.state_dir),
            client=context_client,
            now=now or utc_now(),
        )
        result = run_tiers(tiers, context)
    finally:
        if client is None:
            context_client.close()

    if not result.rows:
        return []

    activities = build_workspace_activity(resolve_cursor_workspace_storage(config))
    events = [_to_event(row, activities) for row in result.rows]
    attributed = sum(1 for event in events if event.project.id)
    LOGGER.debug("Cursor: attributed %d of %d events to projects", attributed, len(events))
    return events
