"""
OpenClaw collector.

Session logs live under ``~/.openclaw/agents/main/sessions``; each
assistant message carries its own usage block.
"""

from typing import Any, List, Optional

from thinktax.config.loader import ThinktaxConfig, resolve_openclaw_sessions_dir
from thinktax.config.logger import get_logger
from thinktax.config.paths import ThinktaxPaths
from thinktax.core.events import (
    OpenClawMeta,
    UsageEvent,
    UsageProject,
    UsageProvider,
    UsageSource,
    UsageTokens,
    create_event_id,
)
from thinktax.storage.jsonl import iter_jsonl

from .common import at, count_of, extract_model, extract_timestamp, find_files, first_of

LOGGER = get_logger("thinktax.collectors.openclaw")

PROVIDER_MAP = {
    "kimi-coding": UsageProvider.MOONSHOT,
}
DEFAULT_PROVIDER = UsageProvider.MOONSHOT

OPENCLAW_PROJECT = UsageProject(id="openclaw", name="OpenClaw")

TIMESTAMP = (at("timestamp"), at("message", "timestamp"))


def extract_usage(entry: Any) -> Optional[UsageTokens]:
    usage = first_of(entry, (at("message", "usage"),))
    if not isinstance(usage, dict):
        return None
    tokens = UsageTokens(
        input=count_of(usage, (at("input"),)),
        output=count_of(usage, (at("output"),)),
        cache_write=count_of(usage, (at("cacheWrite"),)),
        cache_read=count_of(usage, (at("cacheRead"),)),
    )
    return None if tokens.is_zero() else tokens


def collect_openclaw(config: ThinktaxConfig, paths: ThinktaxPaths) -> List[UsageEvent]:
    sessions_dir = resolve_openclaw_sessions_dir(config)
    billing = config.openclaw.billing.default_mode
    LOGGER.debug("OpenClaw: scanning %s (billing: %s)", sessions_dir, billing)
    files = find_files(sessions_dir, "**/*.jsonl")

    events: List[UsageEvent] = []
    for file_path in files:
        session_id = file_path.stem
        for entry in iter_jsonl(file_path):
            if entry.get("type") != "message":
                continue
            if first_of(entry, (at("message", "role"),)) != "assistant":
                continue
            tokens = extract_usage(entry)
            if tokens is None:
                continue

            timestamp = extract_timestamp(entry, TIMESTAMP)
            model = extract_model(entry, (at("message", "model"),))
            raw_provider = str(first_of(entry, (at("message", "provider"),)) or "unknown")

            events.append(UsageEvent(
                id=create_event_id({
                    "source": UsageSource.OPENCLAW.value,
                    "ts": timestamp.isoformat(),
                    "model": model,
                    "tokens": tokens.to_dict(),
                    "sessionId": session_id,
                }),
                timestamp=timestamp,
                source=UsageSource.OPENCLAW,
                provider=PROVIDER_MAP.get(raw_provider, DEFAULT_PROVIDER),
                model=model,
                tokens=tokens,
                project=OPENCLAW_PROJECT,
                meta=OpenClawMeta(
                    file=str(file_path),
                    billing=billing,
                    session_id=session_id,
                    openclaw_provider=raw_provider,
                ),
            ))

    LOGGER.debug("OpenClaw: %d events from %d files", len(events), len(files))
    return events
