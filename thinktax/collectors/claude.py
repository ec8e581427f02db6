"""
Claude Code collector.

Reads the per-project session transcripts Claude Code writes under
``~/.claude/projects/<instance>/<session>.jsonl``. Only assistant turns
that carry a usage block become events.
"""

from typing import Any, List, Optional

from thinktax.config.loader import ThinktaxConfig, resolve_claude_projects_dir
from thinktax.config.logger import get_logger
from thinktax.config.paths import ThinktaxPaths
from thinktax.core.billing import load_billing_registry
from thinktax.core.events import (
    ClaudeMeta,
    UsageEvent,
    UsageProvider,
    UsageSource,
    UsageTokens,
    create_event_id,
)
from thinktax.core.projects import resolve_project
from thinktax.storage.jsonl import iter_jsonl

from .common import at, count_of, extract_model, extract_timestamp, find_files, first_of

LOGGER = get_logger("thinktax.collectors.claude")

SKIP_TYPES = frozenset({"summary", "file-history-snapshot", "tool-result", "tool-use"})

USAGE = (at("message", "usage"), at("usage"), at("data", "usage"))
INPUT = (at("input_tokens"), at("inputTokens"), at("prompt_tokens"), at("promptTokens"), at("tokens", "in"))
OUTPUT = (at("output_tokens"), at("outputTokens"), at("completion_tokens"), at("completionTokens"), at("tokens", "out"))
CACHE_WRITE = (at("cache_creation_input_tokens"), at("cache_write"), at("cacheWriteTokens"))
CACHE_READ = (at("cache_read_input_tokens"), at("cache_read"), at("cacheReadTokens"))
TIMESTAMP = (at("timestamp"), at("created_at"), at("createdAt"), at("message", "created_at"), at("message", "timestamp"))
MODEL = (at("message", "model"), at("model"), at("message", "metadata", "model"), at("data", "model"))
ROLE = (at("message", "role"), at("role"))


def should_skip(entry: Any) -> bool:
    """True for summaries, tool records and any non-assistant turn."""
    if not isinstance(entry, dict):
        return True
    if entry.get("type") in SKIP_TYPES:
        return True
    role = first_of(entry, ROLE)
    return bool(role) and role != "assistant"


def extract_usage(entry: Any) -> Optional[UsageTokens]:
    usage = first_of(entry, USAGE)
    if not isinstance(usage, dict):
        return None
    tokens = UsageTokens(
        input=count_of(usage, INPUT),
        output=count_of(usage, OUTPUT),
        cache_write=count_of(usage, CACHE_WRITE),
        cache_read=count_of(usage, CACHE_READ),
    )
    return None if tokens.is_zero() else tokens


def collect_claude(config: ThinktaxConfig, paths: ThinktaxPaths) -> List[UsageEvent]:
    """Collect Claude Code usage events.

    Sessions are tagged with their billing mode from the billing-sessions
    registry, falling back to ``claude.billing.default_mode``.

    Args:
        config: Loaded configuration
        paths: Resolved thinktax paths (for the billing registry)

    Returns:
        Uncosted events; empty when the projects directory is missing
    """
    projects_dir = resolve_claude_projects_dir(config)
    LOGGER.debug("Claude: scanning %s", projects_dir)
    files = find_files(projects_dir, "**/*.jsonl")
    LOGGER.debug("Claude: found %d JSONL files", len(files))
    if not files:
        return []

    registry = load_billing_registry(paths.billing_sessions_file, config.claude.billing.default_mode)
    events: List[UsageEvent] = []

    for file_path in files:
        instance_id = file_path.parent.name
        session_id = file_path.stem
        project = resolve_project(config, instance_id, None)
        billing = registry.billing_for(session_id)
        file_events = 0

        for entry in iter_jsonl(file_path):
            if should_skip(entry):
                continue
            tokens = extract_usage(entry)
            if tokens is None:
                continue
            timestamp = extract_timestamp(entry, TIMESTAMP)
            model = extract_model(entry, MODEL)

            events.append(UsageEvent(
                id=create_event_id({
                    "source": UsageSource.CLAUDE_CODE.value,
                    "ts": timestamp.isoformat(),
                    "model": model,
                    "tokens": tokens.to_dict(),
                    "instanceId": instance_id,
                }),
                timestamp=timestamp,
                source=UsageSource.CLAUDE_CODE,
                provider=UsageProvider.ANTHROPIC,
                model=model,
                tokens=tokens,
                project=project,
                meta=ClaudeMeta(
                    file=str(file_path),
                    billing=billing,
                    session_id=session_id,
                    entry_type=entry.get("type"),
                ),
            ))
            file_events += 1

        if file_events:
            LOGGER.debug("Claude: %d events from %s", file_events, file_path.name)

    return events
