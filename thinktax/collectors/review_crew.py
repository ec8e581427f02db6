"""
Review crew collector.

Each review session leaves a ``metadata.json`` with per-role costs. Only
the summarizer call is recorded here; reviewer calls already show up in
the Claude Code and Cursor logs.
"""

import json
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

from thinktax.config.loader import ThinktaxConfig, resolve_review_crew_history_dir
from thinktax.config.logger import get_logger
from thinktax.config.paths import ThinktaxPaths
from thinktax.core.events import (
    CostMode,
    ReviewCrewMeta,
    UsageCost,
    UsageEvent,
    UsageProject,
    UsageProvider,
    UsageSource,
    UsageTokens,
    create_event_id,
)

from .common import at, count_of, find_files, to_instant

LOGGER = get_logger("thinktax.collectors.review_crew")

DEFAULT_MODEL = "claude-opus-4-6"
MODEL_ALIASES = {
    "opus": "claude-opus-4-6",
    "sonnet-4.5": "claude-sonnet-4-5-20250929",
}

_SESSION_DIR = re.compile(r"^(\d{4}-\d{2}-\d{2})_(\d{2})-(\d{2})-(\d{2})$")


def timestamp_from_session_dir(name: str) -> Optional[str]:
    """``2026-02-01_14-30-00`` -> ``2026-02-01T14:30:00`` (local time)."""
    match = _SESSION_DIR.match(name)
    if not match:
        return None
    day, hour, minute, second = match.groups()
    return f"{day}T{hour}:{minute}:{second}"


def resolve_model(model: Any) -> str:
    if not isinstance(model, str) or not model:
        return DEFAULT_MODEL
    return MODEL_ALIASES.get(model.lower(), model)


def _read_metadata(file_path: Path) -> Optional[Dict[str, Any]]:
    try:
        data = json.loads(file_path.read_text(encoding='utf-8'))
    except (OSError, ValueError):
        LOGGER.debug("ReviewCrew: skipping unreadable %s", file_path)
        return None
    return data if isinstance(data, dict) else None


def collect_review_crew(config: ThinktaxConfig, paths: ThinktaxPaths) -> List[UsageEvent]:
    """Collect summarizer costs from review crew session history.

    The summarizer reports its own cost, so events carry ``reported_usd``
    rather than relying on the pricing table.
    """
    history_dir = resolve_review_crew_history_dir(config)
    LOGGER.debug("ReviewCrew: scanning %s", history_dir)
    files = [path for path in find_files(history_dir, "**/metadata.json") if "pr-context" not in path.parts]

    events: List[UsageEvent] = []
    for file_path in files:
        metadata = _read_metadata(file_path)
        if metadata is None:
            continue

        session_dir = file_path.parent.name
        timestamp = to_instant(metadata.get("started_at") or timestamp_from_session_dir(session_dir))
        if timestamp is None:
            continue

        summarizer = at("costs", "summarizer")(metadata)
        if not isinstance(summarizer, dict):
            continue
        cost_usd = summarizer.get("cost_usd")
        if not isinstance(cost_usd, (int, float)) or cost_usd <= 0:
            continue

        repo = metadata.get("repo") if isinstance(metadata.get("repo"), str) else None
        project_id = metadata.get("session_id") or f"review-crew/{session_dir}"
        tokens = UsageTokens(
            input=count_of(summarizer, (at("input_tokens"),)),
            output=count_of(summarizer, (at("output_tokens"),)),
        )

        events.append(UsageEvent(
            id=create_event_id({
                "source": UsageSource.REVIEW_CREW.value,
                "ts": timestamp.isoformat(),
                "role": "summarizer",
                "session": project_id,
                "tokens": {"in": tokens.input, "out": tokens.output},
            }),
            timestamp=timestamp,
            source=UsageSource.REVIEW_CREW,
            provider=UsageProvider.ANTHROPIC,
            model=resolve_model(metadata.get("claude_model")),
            tokens=tokens,
            cost=UsageCost(
                reported_usd=float(cost_usd),
                final_usd=float(cost_usd),
                mode=CostMode.REPORTED,
            ),
            project=UsageProject(
                id=str(project_id),
                name=repo.rsplit("/", 1)[-1] if repo else "review-crew",
            ),
            meta=ReviewCrewMeta(
                file=str(file_path),
                billing="api",
                repo=repo,
                pr_number=metadata.get("pr_number"),
                pr_title=metadata.get("pr_title"),
                verdict=metadata.get("verdict"),
                role="summarizer",
            ),
        ))

    LOGGER.debug("ReviewCrew: %d events from %d sessions", len(events), len(files))
    return events
