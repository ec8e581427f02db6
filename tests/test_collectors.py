"""
Unit tests for the file-based collectors.

Each collector is run against small fixture logs written to a temporary
directory.
"""

import json
import tempfile
from datetime import datetime, timezone
from pathlib import Path

from thinktax.collectors.apprentice import collect_apprentice
from thinktax.collectors.claude import collect_claude, should_skip
from thinktax.collectors.codex import collect_codex
from thinktax.collectors.common import (
    CumulativeCounter,
    at,
    count_of,
    extract_timestamp,
    first_of,
    to_instant,
)
from thinktax.collectors.glean import collect_glean, infer_provider
from thinktax.collectors.openclaw import collect_openclaw
from thinktax.collectors.review_crew import collect_review_crew, resolve_model, timestamp_from_session_dir
from thinktax.config.loader import parse_config
from thinktax.config.paths import get_paths
from thinktax.core.events import (
    ClaudeMeta,
    CostMode,
    UsageProvider,
    UsageSource,
    UsageTokens,
)


def _write_lines(path: Path, entries) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'w', encoding='utf-8') as f:
        for entry in entries:
            f.write((entry if isinstance(entry, str) else json.dumps(entry)) + "\n")


class CollectorTestCase:
    """Temporary home plus a config pointing every source into it."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.root = Path(self.temp_dir)
        self.paths = get_paths(str(self.root / "home"))

    def teardown_method(self):
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _config(self, **sections):
        return parse_config(sections)


class TestCommonHelpers:
    """Test accessor and coercion helpers."""

    def test_at_walks_nested_keys(self):
        record = {"message": {"usage": {"input_tokens": 3}}}
        assert at("message", "usage", "input_tokens")(record) == 3
        assert at("message", "missing", "x")(record) is None
        assert at("message", "usage", "input_tokens", "deeper")(record) is None

    def test_first_of_skips_missing(self):
        record = {"b": 0}
        assert first_of(record, (at("a"), at("b"))) == 0

    def test_count_of_ignores_non_numbers(self):
        assert count_of({"a": "12", "b": True, "c": 7}, (at("a"), at("b"), at("c"))) == 7
        assert count_of({"a": -5}, (at("a"),)) == 0
        assert count_of({}, (at("a"),)) == 0

    def test_to_instant_formats(self):
        expected = datetime(2026, 2, 2, 10, 0, tzinfo=timezone.utc)
        assert to_instant("2026-02-02T10:00:00Z") == expected
        assert to_instant(1770026400000) == expected
        assert to_instant("1770026400000") == expected
        assert to_instant(True) is None
        assert to_instant({"ts": 1}) is None

    def test_timestamp_falls_back_to_now(self):
        now = datetime(2026, 2, 2, tzinfo=timezone.utc)
        assert extract_timestamp({"timestamp": "garbage"}, (at("timestamp"),), now=now) == now

    def test_cumulative_counter(self):
        counter = CumulativeCounter()
        first = UsageTokens(input=100, output=10)

        assert counter.observe("s", first) == first
        assert counter.observe("s", first) is None
        assert counter.observe("s", UsageTokens(input=150, output=10)) == UsageTokens(input=50)
        # a different session keeps its own running total
        assert counter.observe("other", first, first_delta=UsageTokens(input=1)) == UsageTokens(input=1)


class TestClaudeCollector(CollectorTestCase):
    """Test Claude Code transcript parsing."""

    def _write_session(self, instance: str, session: str, entries) -> Path:
        path = self.root / "claude" / instance / f"{session}.jsonl"
        _write_lines(path, entries)
        return path

    def test_assistant_usage_becomes_event(self):
        self._write_session("-home-dev-thinktax", "sess-1", [
            {"type": "summary", "summary": "Refactor"},
            {"type": "user", "message": {"role": "user", "content": "hi"}},
            {
                "type": "assistant",
                "timestamp": "2026-02-02T10:00:00Z",
                "message": {
                    "role": "assistant",
                    "model": "claude-sonnet-4",
                    "usage": {
                        "input_tokens": 100,
                        "output_tokens": 50,
                        "cache_creation_input_tokens": 10,
                        "cache_read_input_tokens": 5,
                    },
                },
            },
            {"type": "assistant", "message": {"role": "assistant", "usage": {"input_tokens": 0}}},
            "{truncated",
        ])
        config = self._config(claude={"projects_dir": str(self.root / "claude")})

        events = collect_claude(config, self.paths)

        assert len(events) == 1
        event = events[0]
        assert event.source == UsageSource.CLAUDE_CODE
        assert event.provider == UsageProvider.ANTHROPIC
        assert event.model == "claude-sonnet-4"
        assert event.tokens == UsageTokens(input=100, output=50, cache_write=10, cache_read=5)
        assert event.timestamp == datetime(2026, 2, 2, 10, 0, tzinfo=timezone.utc)
        assert event.project.id == "-home-dev-thinktax"
        assert isinstance(event.meta, ClaudeMeta)
        assert event.meta.session_id == "sess-1"
        assert event.billing == "estimate"

    def test_billing_registry_tags_session(self):
        self._write_session("proj", "sess-sub", [
            {"timestamp": "2026-02-02T10:00:00Z", "message": {"role": "assistant", "usage": {"input_tokens": 1}}},
        ])
        _write_lines(self.paths.billing_sessions_file, [{"session_id": "sess-sub", "billing": "subscription"}])
        config = self._config(
            claude={"projects_dir": str(self.root / "claude"), "billing": {"default_mode": "api"}},
        )

        events = collect_claude(config, self.paths)

        assert events[0].billing == "subscription"

    def test_ids_are_stable_across_runs(self):
        self._write_session("proj", "sess", [
            {"timestamp": "2026-02-02T10:00:00Z", "message": {"role": "assistant", "usage": {"input_tokens": 1}}},
        ])
        config = self._config(claude={"projects_dir": str(self.root / "claude")})

        first = [e.id for e in collect_claude(config, self.paths)]
        second = [e.id for e in collect_claude(config, self.paths)]
        assert first == second

    def test_missing_directory(self):
        config = self._config(claude={"projects_dir": str(self.root / "nowhere")})
        assert collect_claude(config, self.paths) == []

    def test_skip_rules(self):
        assert should_skip({"type": "tool-result"})
        assert should_skip({"message": {"role": "user"}})
        assert not should_skip({"message": {"role": "assistant"}})
        assert not should_skip({"usage": {}})


class TestCodexCollector(CollectorTestCase):
    """Test Codex rollout parsing."""

    def _token_count(self, ts, last, total):
        return {
            "timestamp": ts,
            "type": "event_msg",
            "payload": {"type": "token_count", "info": {"last_token_usage": last, "total_token_usage": total}},
        }

    def test_running_totals_become_deltas(self):
        first = {"input_tokens": 100, "cached_input_tokens": 20, "output_tokens": 30, "reasoning_output_tokens": 5}
        second = {"input_tokens": 250, "cached_input_tokens": 20, "output_tokens": 60, "reasoning_output_tokens": 5}
        _write_lines(self.root / "codex" / "sessions" / "2026" / "02" / "02" / "rollout-1.jsonl", [
            {"type": "session_meta", "payload": {"id": "sess-1", "cwd": "/nonexistent/widget"}},
            {"type": "turn_context", "payload": {"model": "gpt-5-codex"}},
            self._token_count("2026-02-02T10:00:00Z", first, first),
            self._token_count("2026-02-02T10:00:05Z", first, first),
            self._token_count("2026-02-02T10:01:00Z", {"input_tokens": 150, "output_tokens": 30}, second),
        ])
        config = self._config(codex={"home": str(self.root / "codex")})

        events = collect_codex(config, self.paths)

        assert [e.tokens for e in events] == [
            UsageTokens(input=100, output=35, cache_read=20),
            UsageTokens(input=150, output=30),
        ]
        assert all(e.model == "gpt-5-codex" for e in events)
        assert all(e.provider == UsageProvider.OPENAI for e in events)
        assert events[0].project.name == "widget"
        assert events[0].meta.session == "sess-1"

    def test_generic_usage_lines(self):
        _write_lines(self.root / "codex" / "sessions" / "legacy.jsonl", [
            {"ts": "2026-02-02T10:00:00Z", "model": "gpt-4o", "usage": {"prompt_tokens": 10, "completion_tokens": 2}},
            {"ts": "2026-02-02T10:00:01Z", "model": "gpt-4o", "usage": {"prompt_tokens": 0}},
        ])
        config = self._config(codex={"home": str(self.root / "codex")})

        events = collect_codex(config, self.paths)

        assert len(events) == 1
        assert events[0].tokens == UsageTokens(input=10, output=2)
        assert events[0].model == "gpt-4o"

    def test_garbled_token_count_is_skipped(self):
        usage = {"input_tokens": 10, "output_tokens": 1}
        garbled = self._token_count("2026-02-02T10:00:05Z", usage, usage)
        garbled["payload"]["info"] = "garbled"
        listed = self._token_count("2026-02-02T10:00:06Z", usage, usage)
        listed["payload"]["info"] = [usage]
        _write_lines(self.root / "codex" / "sessions" / "rollout.jsonl", [
            self._token_count("2026-02-02T10:00:00Z", usage, usage),
            garbled,
            listed,
        ])
        config = self._config(codex={"home": str(self.root / "codex")})

        events = collect_codex(config, self.paths)

        assert [e.tokens for e in events] == [UsageTokens(input=10, output=1)]

    def test_each_file_keeps_its_own_total(self):
        usage = {"input_tokens": 10, "output_tokens": 1}
        for name in ("a.jsonl", "b.jsonl"):
            _write_lines(self.root / "codex" / "sessions" / name, [
                self._token_count("2026-02-02T10:00:00Z", usage, usage),
            ])
        config = self._config(codex={"home": str(self.root / "codex")})

        assert len(collect_codex(config, self.paths)) == 2


class TestOpenClawCollector(CollectorTestCase):
    """Test OpenClaw session parsing."""

    def test_assistant_messages(self):
        _write_lines(self.root / "openclaw" / "sess-9.jsonl", [
            {"type": "session", "id": "sess-9"},
            {"type": "message", "timestamp": "2026-02-02T10:00:00Z", "message": {"role": "user"}},
            {
                "type": "message",
                "timestamp": "2026-02-02T10:01:00Z",
                "message": {
                    "role": "assistant",
                    "provider": "kimi-coding",
                    "model": "k2p5",
                    "usage": {"input": 1000, "output": 200, "cacheRead": 300, "cacheWrite": 0},
                },
            },
        ])
        config = self._config(openclaw={
            "sessions_dir": str(self.root / "openclaw"),
            "billing": {"default_mode": "subscription"},
        })

        events = collect_openclaw(config, self.paths)

        assert len(events) == 1
        event = events[0]
        assert event.provider == UsageProvider.MOONSHOT
        assert event.tokens == UsageTokens(input=1000, output=200, cache_read=300)
        assert event.billing == "subscription"
        assert event.meta.openclaw_provider == "kimi-coding"
        assert event.meta.session_id == "sess-9"
        assert event.project.name == "OpenClaw"


class TestApprenticeCollector(CollectorTestCase):
    """Test Apprentice call log parsing."""

    def test_provider_mapping_and_filters(self):
        _write_lines(self.root / "apprentice" / "2026-02.jsonl", [
            {
                "ts": "2026-02-02T10:00:00Z",
                "provider": "anthropic",
                "model": "claude-sonnet-4",
                "role": "planner",
                "tokens": {"in": 10, "out": 5},
                "latencyMs": 1200,
            },
            {"ts": "2026-02-02T10:01:00Z", "provider": "openai-compat", "model": "gpt-4o", "tokens": {"in": 1}},
            {"provider": "anthropic", "tokens": {"in": 5}},
            {"ts": "2026-02-02T10:02:00Z", "tokens": {"in": 0, "out": 0}},
        ])
        config = self._config(apprentice={"usage_dir": str(self.root / "apprentice")})

        events = collect_apprentice(config, self.paths)

        assert [e.provider for e in events] == [UsageProvider.ANTHROPIC, UsageProvider.OPENAI]
        assert events[0].meta.role == "planner"
        assert events[0].meta.latency_ms == 1200
        assert events[0].billing == "api"
        assert events[0].project.id == "apprentice"


class TestGleanCollector(CollectorTestCase):
    """Test Glean summarization log parsing."""

    def test_summarization_calls(self):
        _write_lines(self.root / "glean" / "usage.jsonl", [
            {
                "timestamp": "2026-02-02T10:00:00Z",
                "model": "gpt-4o-mini",
                "input_tokens": 500,
                "output_tokens": 50,
                "reason": "idle",
                "session_title": "Standup",
                "event_count": 3,
                "streams": ["terminal", "editor"],
            },
            {"model": "gpt-4o-mini", "input_tokens": 1},
        ])
        config = self._config(glean={"usage_dir": str(self.root / "glean")})

        events = collect_glean(config, self.paths)

        assert len(events) == 1
        assert events[0].provider == UsageProvider.OPENAI
        assert events[0].meta.streams == ("terminal", "editor")
        assert events[0].meta.event_count == 3

    def test_infer_provider(self):
        assert infer_provider("claude-haiku-4") == UsageProvider.ANTHROPIC
        assert infer_provider("o3-mini") == UsageProvider.OPENAI
        assert infer_provider("moonshot-v1") == UsageProvider.MOONSHOT
        assert infer_provider(None) == UsageProvider.ANTHROPIC


class TestReviewCrewCollector(CollectorTestCase):
    """Test review session metadata parsing."""

    def _write_metadata(self, relative: str, data) -> None:
        path = self.root / "review" / relative / "metadata.json"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(data), encoding='utf-8')

    def test_summarizer_cost_is_reported(self):
        self._write_metadata("2026-02-01_14-30-00", {
            "repo": "org/widget",
            "pr_number": 42,
            "claude_model": "opus",
            "verdict": "approve",
            "costs": {"summarizer": {"cost_usd": 0.42, "input_tokens": 1000, "output_tokens": 200}},
        })
        self._write_metadata("2026-02-01_15-00-00", {"costs": {"summarizer": {"cost_usd": 0}}})
        self._write_metadata("pr-context/2026-02-01_16-00-00", {"costs": {"summarizer": {"cost_usd": 9.0}}})
        config = self._config(review_crew={"history_dir": str(self.root / "review")})

        events = collect_review_crew(config, self.paths)

        assert len(events) == 1
        event = events[0]
        assert event.cost.reported_usd == 0.42
        assert event.cost.final_usd == 0.42
        assert event.cost.mode == CostMode.REPORTED
        assert event.model == "claude-opus-4-6"
        assert event.project.id == "review-crew/2026-02-01_14-30-00"
        assert event.project.name == "widget"
        assert event.meta.pr_number == 42
        assert event.timestamp.hour == 14

    def test_started_at_overrides_directory_name(self):
        self._write_metadata("manual-run", {
            "session_id": "rc-1",
            "started_at": "2026-02-03T08:00:00Z",
            "costs": {"summarizer": {"cost_usd": 0.1}},
        })
        config = self._config(review_crew={"history_dir": str(self.root / "review")})

        events = collect_review_crew(config, self.paths)

        assert events[0].timestamp == datetime(2026, 2, 3, 8, 0, tzinfo=timezone.utc)
        assert events[0].project.id == "rc-1"
        assert events[0].project.name == "review-crew"

    def test_helpers(self):
        assert timestamp_from_session_dir("2026-02-01_14-30-00") == "2026-02-01T14:30:00"
        assert timestamp_from_session_dir("latest") is None
        assert resolve_model("Sonnet-4.5") == "claude-sonnet-4-5-20250929"
        assert resolve_model(None) == "claude-opus-4-6"
        assert resolve_model("claude-haiku-4") == "claude-haiku-4"
