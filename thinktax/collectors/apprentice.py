"""
Apprentice collector.

Apprentice writes one JSONL line per model call with its own token
counts and provider name; all of it is pay-per-use API traffic.
"""

from typing import List

from thinktax.config.loader import ThinktaxConfig, resolve_apprentice_usage_dir
from thinktax.config.logger import get_logger
from thinktax.config.paths import ThinktaxPaths
from thinktax.core.events import (
    ApprenticeMeta,
    UsageEvent,
    UsageProject,
    UsageProvider,
    UsageSource,
    UsageTokens,
    create_event_id,
)
from thinktax.storage.jsonl import iter_jsonl

from .common import at, count_of, extract_model, extract_timestamp, find_files

LOGGER = get_logger("thinktax.collectors.apprentice")

PROVIDER_MAP = {
    "anthropic": UsageProvider.ANTHROPIC,
    "openai-compat": UsageProvider.OPENAI,
}
DEFAULT_PROVIDER = UsageProvider.OPENAI

APPRENTICE_PROJECT = UsageProject(id="apprentice", name="Apprentice")


def collect_apprentice(config: ThinktaxConfig, paths: ThinktaxPaths) -> List[UsageEvent]:
    usage_dir = resolve_apprentice_usage_dir(config)
    LOGGER.debug("Apprentice: scanning %s", usage_dir)

    events: List[UsageEvent] = []
    for file_path in find_files(usage_dir, "**/*.jsonl"):
        file_events = 0
        for entry in iter_jsonl(file_path):
            counts = entry.get("tokens")
            if not entry.get("ts") or not isinstance(counts, dict):
                continue
            tokens = UsageTokens(
                input=count_of(counts, (at("in"),)),
                output=count_of(counts, (at("out"),)),
                cache_write=count_of(counts, (at("cache_write"),)),
                cache_read=count_of(counts, (at("cache_read"),)),
            )
            if tokens.is_zero():
                continue

            timestamp = extract_timestamp(entry, (at("ts"),))
            model = extract_model(entry, (at("model"),))
            role = entry.get("role")
            latency = entry.get("latencyMs")

            events.append(UsageEvent(
                id=create_event_id({
                    "source": UsageSource.APPRENTICE.value,
                    "ts": timestamp.isoformat(),
                    "model": model,
                    "tokens": tokens.to_dict(),
                    "role": role,
                }),
                timestamp=timestamp,
                source=UsageSource.APPRENTICE,
                provider=PROVIDER_MAP.get(str(entry.get("provider")), DEFAULT_PROVIDER),
                model=model,
                tokens=tokens,
                project=APPRENTICE_PROJECT,
                meta=ApprenticeMeta(
                    file=str(file_path),
                    billing="api",
                    role=role,
                    latency_ms=latency if isinstance(latency, int) else None,
                ),
            ))
            file_events += 1

        if file_events:
            LOGGER.debug("Apprentice: %d events from %s", file_events, file_path.name)

    return events
