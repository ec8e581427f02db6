"""
Glean collector.

Glean logs summarization calls with input/output token counts only, so
the provider is inferred from the model name.
"""

from typing import List, Optional

from thinktax.config.loader import ThinktaxConfig, resolve_glean_usage_dir
from thinktax.config.logger import get_logger
from thinktax.config.paths import ThinktaxPaths
from thinktax.core.events import (
    GleanMeta,
    UsageEvent,
    UsageProject,
    UsageProvider,
    UsageSource,
    UsageTokens,
    create_event_id,
)
from thinktax.storage.jsonl import iter_jsonl

from .common import at, count_of, extract_model, extract_timestamp, find_files

LOGGER = get_logger("thinktax.collectors.glean")

GLEAN_PROJECT = UsageProject(id="glean", name="Glean")


def infer_provider(model: Optional[str]) -> UsageProvider:
    name = (model or "").lower()
    if name.startswith("claude"):
        return UsageProvider.ANTHROPIC
    if name.startswith(("gpt", "o1", "o3")):
        return UsageProvider.OPENAI
    if name.startswith("moonshot"):
        return UsageProvider.MOONSHOT
    return UsageProvider.ANTHROPIC


def collect_glean(config: ThinktaxConfig, paths: ThinktaxPaths) -> List[UsageEvent]:
    usage_dir = resolve_glean_usage_dir(config)
    LOGGER.debug("Glean: scanning %s", usage_dir)

    events: List[UsageEvent] = []
    for file_path in find_files(usage_dir, "**/*.jsonl"):
        for entry in iter_jsonl(file_path):
            if not entry.get("timestamp"):
                continue
            tokens = UsageTokens(
                input=count_of(entry, (at("input_tokens"),)),
                output=count_of(entry, (at("output_tokens"),)),
            )
            if tokens.is_zero():
                continue

            timestamp = extract_timestamp(entry, (at("timestamp"),))
            model = extract_model(entry, (at("model"),))
            streams = entry.get("streams")
            event_count = entry.get("event_count")

            events.append(UsageEvent(
                id=create_event_id({
                    "source": UsageSource.GLEAN.value,
                    "ts": timestamp.isoformat(),
                    "model": model,
                    "tokens": {"in": tokens.input, "out": tokens.output},
                    "reason": entry.get("reason"),
                }),
                timestamp=timestamp,
                source=UsageSource.GLEAN,
                provider=infer_provider(model),
                model=model,
                tokens=tokens,
                project=GLEAN_PROJECT,
                meta=GleanMeta(
                    file=str(file_path),
                    billing="api",
                    reason=entry.get("reason"),
                    session_title=entry.get("session_title"),
                    event_count=event_count if isinstance(event_count, int) else None,
                    streams=tuple(str(s) for s in streams) if isinstance(streams, list) else (),
                ),
            ))

    LOGGER.debug("Glean: %d events", len(events))
    return events
