"""
Codex CLI collector.

Codex rollouts (``$CODEX_HOME/sessions/**/*.jsonl``) report
``token_count`` events carrying both the last turn's usage and the running
session total. Totals are diffed so a total that is re-emitted without new
usage never counts twice.
"""

from typing import Any, List, Optional, Tuple

from thinktax.config.loader import ThinktaxConfig, resolve_codex_home
from thinktax.config.logger import get_logger
from thinktax.config.paths import ThinktaxPaths
from thinktax.core.events import (
    CodexMeta,
    UsageEvent,
    UsageProvider,
    UsageSource,
    UsageTokens,
    create_event_id,
)
from thinktax.core.projects import find_git_root, resolve_project
from thinktax.storage.jsonl import iter_jsonl

from .common import (
    CumulativeCounter,
    at,
    count_of,
    extract_model,
    extract_timestamp,
    find_files,
    first_of,
)

LOGGER = get_logger("thinktax.collectors.codex")

SESSION_ID = (at("session_id"), at("payload", "id"), at("payload", "session_id"))
CWD = (at("cwd"), at("payload", "cwd"))
TIMESTAMP = (at("timestamp"), at("ts"), at("created_at"), at("createdAt"))
MODEL = (at("model"), at("response", "model"), at("data", "model"))

GENERIC_USAGE = (at("usage"), at("tokens"), at("data", "usage"))
GENERIC_INPUT = (at("input_tokens"), at("prompt_tokens"), at("input"), at("in"), at("inputTokens"))
GENERIC_OUTPUT = (at("output_tokens"), at("completion_tokens"), at("output"), at("out"), at("outputTokens"))
GENERIC_CACHE_WRITE = (at("cache_write"), at("cacheWrite"))
GENERIC_CACHE_READ = (at("cache_read"), at("cacheRead"))


def _token_count_snapshot(usage: Any) -> Optional[UsageTokens]:
    # reasoning tokens are billed as output
    if not isinstance(usage, dict):
        return None
    return UsageTokens(
        input=count_of(usage, (at("input_tokens"),)),
        output=count_of(usage, (at("output_tokens"),)) + count_of(usage, (at("reasoning_output_tokens"),)),
        cache_read=count_of(usage, (at("cached_input_tokens"),)),
    )


def normalize_usage(entry: Any) -> Optional[Tuple[UsageTokens, Optional[UsageTokens]]]:
    """Per-turn usage and running total carried by one rollout line.

    Returns:
        ``(delta, total)`` where total may be None, or None when the line
        has no usage at all
    """
    payload = entry.get("payload") if isinstance(entry, dict) else None
    if isinstance(payload, dict) and payload.get("type") == "token_count":
        info = payload.get("info")
        if not isinstance(info, dict):
            return None
        delta = _token_count_snapshot(info.get("last_token_usage")) or UsageTokens()
        total = _token_count_snapshot(info.get("total_token_usage"))
        if delta.is_zero() and total is None:
            return None
        return delta, total

    usage = first_of(entry, GENERIC_USAGE)
    if not isinstance(usage, dict):
        return None
    tokens = UsageTokens(
        input=count_of(usage, GENERIC_INPUT),
        output=count_of(usage, GENERIC_OUTPUT),
        cache_write=count_of(usage, GENERIC_CACHE_WRITE),
        cache_read=count_of(usage, GENERIC_CACHE_READ),
    )
    if tokens.is_zero():
        return None
    return tokens, tokens


def collect_codex(config: ThinktaxConfig, paths: ThinktaxPaths) -> List[UsageEvent]:
    """Collect Codex CLI usage events.

    The session id, working directory and model are sticky: each is
    taken from the most recent line that carried one.
    """
    sessions_dir = resolve_codex_home(config) / "sessions"
    LOGGER.debug("Codex: scanning %s", sessions_dir)
    files = find_files(sessions_dir, "**/*.jsonl")
    LOGGER.debug("Codex: found %d session files", len(files))

    events: List[UsageEvent] = []
    counter = CumulativeCounter()

    for file_path in files:
        session_key = str(file_path)
        instance_id: Optional[str] = None
        project_root: Optional[str] = None
        last_model: Optional[str] = None

        for entry in iter_jsonl(file_path):
            payload = entry.get("payload") if isinstance(entry.get("payload"), dict) else {}

            if instance_id is None:
                found = first_of(entry, SESSION_ID)
                if found:
                    instance_id = str(found)

            cwd = first_of(entry, CWD)
            if isinstance(cwd, str) and cwd:
                project_root = find_git_root(cwd) or cwd

            if entry.get("type") == "turn_context" and payload.get("model"):
                last_model = str(payload["model"])

            usage = normalize_usage(entry)
            if usage is None:
                continue
            delta, total = usage
            if total is not None:
                delta = counter.observe(session_key, total, first_delta=delta)
                if delta is None:
                    continue
            elif delta.is_zero():
                continue

            timestamp = extract_timestamp(entry, TIMESTAMP)
            model = extract_model(entry, MODEL) or last_model

            events.append(UsageEvent(
                id=create_event_id({
                    "source": UsageSource.CODEX_CLI.value,
                    "ts": timestamp.isoformat(),
                    "model": model,
                    "tokens": delta.to_dict(),
                    "session": instance_id,
                }),
                timestamp=timestamp,
                source=UsageSource.CODEX_CLI,
                provider=UsageProvider.OPENAI,
                model=model,
                tokens=delta,
                project=resolve_project(config, instance_id, project_root),
                meta=CodexMeta(file=str(file_path), session=instance_id),
            ))

    return events
