"""
Unit tests for storage layer.

Tests day-partitioned event files, idempotent writes, tolerant reads and
the small state documents.
"""

import json
import os
import sqlite3
import tempfile
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import patch

import pytest

from thinktax.core.events import (
    UsageEvent,
    UsageProvider,
    UsageSource,
    UsageTokens,
)
from thinktax.storage.db import find_items, get_item
from thinktax.storage.jsonl import read_jsonl, write_jsonl
from thinktax.storage.repository import EventRepository
from thinktax.storage.state import (
    CacheEntry,
    CacheState,
    SyncState,
    read_sync_state,
    write_sync_state,
)


def _event(event_id: str, when: datetime, tokens_in: int = 100) -> UsageEvent:
    return UsageEvent(
        id=event_id,
        timestamp=when,
        source=UsageSource.CODEX_CLI,
        provider=UsageProvider.OPENAI,
        model="gpt-5",
        tokens=UsageTokens(input=tokens_in, output=10),
    )


DAY_ONE = datetime(2026, 2, 2, 10, 0, tzinfo=timezone.utc)
DAY_TWO = datetime(2026, 2, 3, 9, 30, tzinfo=timezone.utc)


class TestEventWrites:
    """Test appending events to day partitions."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.repository = EventRepository(Path(self.temp_dir) / "events")

    def teardown_method(self):
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_events_grouped_by_day(self):
        written = self.repository.write_events([_event("a", DAY_ONE), _event("b", DAY_TWO)])

        assert written == 2
        assert self.repository.day_file(date(2026, 2, 2)).exists()
        assert self.repository.day_file(date(2026, 2, 3)).exists()
        assert [e.id for e in self.repository.load_day(date(2026, 2, 2))] == ["a"]

    def test_partition_uses_event_offset(self):
        # 23:30 in Los Angeles is already the next day in UTC
        late = datetime(2026, 2, 2, 23, 30, tzinfo=timezone(timedelta(hours=-8)))
        self.repository.write_events([_event("late", late)])

        assert self.repository.days() == [date(2026, 2, 2)]

    def test_rewriting_same_events_is_noop(self):
        events = [_event("a", DAY_ONE), _event("b", DAY_ONE)]
        self.repository.write_events(events)
        before = self.repository.day_file(date(2026, 2, 2)).read_text(encoding='utf-8')

        assert self.repository.write_events(events) == 0
        after = self.repository.day_file(date(2026, 2, 2)).read_text(encoding='utf-8')
        assert before == after

    def test_duplicates_within_batch_written_once(self):
        assert self.repository.write_events([_event("a", DAY_ONE), _event("a", DAY_ONE)]) == 1
        assert len(self.repository.load_day(date(2026, 2, 2))) == 1

    def test_new_events_appended_after_existing(self):
        self.repository.write_events([_event("a", DAY_ONE)])
        self.repository.write_events([_event("b", DAY_ONE), _event("a", DAY_ONE)])

        assert [e.id for e in self.repository.load_day(date(2026, 2, 2))] == ["a", "b"]

    def test_unterminated_last_line_is_kept_separate(self):
        day_file = self.repository.day_file(date(2026, 2, 2))
        day_file.parent.mkdir(parents=True)
        day_file.write_text(json.dumps(_event("a", DAY_ONE).to_dict()), encoding='utf-8')

        self.repository.write_events([_event("b", DAY_ONE)])

        lines = day_file.read_text(encoding='utf-8').splitlines()
        assert len(lines) == 2
        assert [e.id for e in self.repository.load_day(date(2026, 2, 2))] == ["a", "b"]

    def test_undecodable_bytes_do_not_block_writes(self):
        day_file = self.repository.day_file(date(2026, 2, 2))
        day_file.parent.mkdir(parents=True)
        good = json.dumps(_event("a", DAY_ONE).to_dict()).encode('utf-8')
        day_file.write_bytes(good + b"\n" + b'{"id": "\xff\xfe"}\n')

        assert self.repository.write_events([_event("b", DAY_ONE)]) == 1
        assert [e.id for e in self.repository.load_day(date(2026, 2, 2))] == ["a", "b"]

    def test_failed_write_leaves_day_file_intact(self):
        self.repository.write_events([_event("a", DAY_ONE)])
        day_file = self.repository.day_file(date(2026, 2, 2))
        before = day_file.read_bytes()

        with patch('thinktax.storage.jsonl.os.replace', side_effect=OSError("disk full")):
            with pytest.raises(OSError, match="disk full"):
                self.repository.write_events([_event("b", DAY_ONE)])

        assert day_file.read_bytes() == before
        assert not [p.name for p in day_file.parent.iterdir() if p.name.endswith(".tmp")]
        assert [e.id for e in self.repository.load_day(date(2026, 2, 2))] == ["a"]


class TestEventReads:
    """Test tolerant loading of stored partitions."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.repository = EventRepository(Path(self.temp_dir) / "events")

    def teardown_method(self):
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_malformed_lines_are_skipped(self):
        day_file = self.repository.day_file(date(2026, 2, 2))
        day_file.parent.mkdir(parents=True)
        good = json.dumps(_event("a", DAY_ONE).to_dict())
        day_file.write_text(
            "\n".join([good, "{not json", "", "[1, 2]", '{"id": "missing-fields"}']) + "\n",
            encoding='utf-8',
        )

        assert [e.id for e in self.repository.load_day(date(2026, 2, 2))] == ["a"]

    def test_wrong_shaped_sections_are_skipped(self):
        day_file = self.repository.day_file(date(2026, 2, 2))
        day_file.parent.mkdir(parents=True)
        good = _event("a", DAY_ONE).to_dict()
        broken = []
        for key, value in (("meta", ["oops"]), ("tokens", "x"), ("cost", 5), ("project", [1])):
            record = dict(_event(f"bad-{key}", DAY_ONE).to_dict())
            record[key] = value
            broken.append(json.dumps(record))
        day_file.write_text("\n".join([json.dumps(good)] + broken) + "\n", encoding='utf-8')

        assert [e.id for e in self.repository.load_day(date(2026, 2, 2))] == ["a"]
        assert [e.id for e in self.repository.load_all()] == ["a"]

    def test_missing_directory_reads_empty(self):
        assert self.repository.days() == []
        assert self.repository.earliest_day() is None
        assert self.repository.load_all() == []
        assert self.repository.load_range(date(2026, 1, 1), date(2026, 12, 31)) == []

    def test_days_ignore_foreign_files(self):
        self.repository.write_events([_event("a", DAY_TWO), _event("b", DAY_ONE)])
        (self.repository.events_dir / "notes.txt").write_text("hi", encoding='utf-8')
        (self.repository.events_dir / "2026-99-99.jsonl").write_text("", encoding='utf-8')

        assert self.repository.days() == [date(2026, 2, 2), date(2026, 2, 3)]
        assert self.repository.earliest_day() == date(2026, 2, 2)

    def test_load_range_is_inclusive(self):
        self.repository.write_events([
            _event("a", DAY_ONE),
            _event("b", DAY_TWO),
            _event("c", DAY_TWO + timedelta(days=1)),
        ])

        loaded = self.repository.load_range(date(2026, 2, 2), date(2026, 2, 3))
        assert sorted(e.id for e in loaded) == ["a", "b"]


class TestOverwrite:
    """Test replacing day partitions during reprocessing."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.repository = EventRepository(Path(self.temp_dir) / "events")

    def teardown_method(self):
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_overwrite_replaces_touched_days_only(self):
        self.repository.write_events([_event("a", DAY_ONE, 1), _event("b", DAY_TWO)])

        written = self.repository.overwrite_events([_event("a", DAY_ONE, 500)])

        assert written == 1
        day_one = self.repository.load_day(date(2026, 2, 2))
        assert day_one[0].tokens.input == 500
        assert [e.id for e in self.repository.load_day(date(2026, 2, 3))] == ["b"]

    def test_overwrite_deduplicates_by_id(self):
        assert self.repository.overwrite_events([_event("a", DAY_ONE), _event("a", DAY_ONE)]) == 1


class TestJsonl:
    """Test the line-delimited helpers."""

    def test_write_then_read(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            path = os.path.join(temp_dir, "nested", "out.jsonl")
            write_jsonl(path, [{"a": 1}, {"b": "é"}])

            assert read_jsonl(path) == [{"a": 1}, {"b": "é"}]
            assert not [name for name in os.listdir(os.path.dirname(path)) if name.endswith(".tmp")]

    def test_missing_file_reads_empty(self):
        assert read_jsonl("/nonexistent/file.jsonl") == []


class TestCacheState:
    """Test per-endpoint cache records."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.cache = CacheState(self.temp_dir)

    def teardown_method(self):
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_missing_key_is_empty(self):
        assert self.cache.get("cursor:dashboard") == CacheEntry()
        assert not self.cache.is_fresh("cursor:dashboard", timedelta(minutes=10))

    def test_update_persists_entry(self):
        checked = datetime(2026, 2, 2, 10, 0, tzinfo=timezone.utc)
        self.cache.update("cursor:team", CacheEntry(last_checked=checked, etag='W/"abc"'))

        entry = CacheState(self.temp_dir).get("cursor:team")
        assert entry.last_checked == checked
        assert entry.etag == 'W/"abc"'

    def test_update_keeps_other_keys(self):
        checked = datetime(2026, 2, 2, 10, 0, tzinfo=timezone.utc)
        self.cache.update("one", CacheEntry(last_checked=checked))
        self.cache.update("two", CacheEntry(etag="x"))

        assert self.cache.get("one").last_checked == checked
        assert self.cache.get("two").etag == "x"

    def test_freshness_window(self):
        checked = datetime(2026, 2, 2, 10, 0, tzinfo=timezone.utc)
        self.cache.update("key", CacheEntry(last_checked=checked))

        ttl = timedelta(minutes=10)
        assert self.cache.is_fresh("key", ttl, now=checked + timedelta(minutes=5))
        assert not self.cache.is_fresh("key", ttl, now=checked + timedelta(minutes=10))

    def test_corrupt_document_reads_empty(self):
        Path(self.cache.path).write_text("{broken", encoding='utf-8')
        assert self.cache.get("key") == CacheEntry()


class TestSyncState:
    """Test the per-collector run log."""

    def test_round_trip(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            state = SyncState()
            state.record("codex", 12, when=DAY_ONE)
            write_sync_state(temp_dir, state)

            loaded = read_sync_state(temp_dir)
            assert loaded.last_run == {"codex": DAY_ONE.isoformat()}
            assert loaded.counts == {"codex": 12}

    def test_missing_or_invalid_state(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            assert read_sync_state(temp_dir) == SyncState()

            Path(temp_dir, "sync.json").write_text('{"lastRun": [], "counts": {"a": "x"}}', encoding='utf-8')
            assert read_sync_state(temp_dir) == SyncState()


class TestStateDatabase:
    """Test read-only key/value lookups."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "state.vscdb")
        conn = sqlite3.connect(self.db_path)
        try:
            conn.execute("CREATE TABLE ItemTable (key TEXT UNIQUE ON CONFLICT REPLACE, value BLOB)")
            conn.executemany("INSERT INTO ItemTable VALUES (?, ?)", [
                ("cursorAuth/accessToken", "token-123"),
                ("cursor.usage.snapshot", b'{"rows": []}'),
                ("workbench.panel", "{}"),
            ])
            conn.commit()
        finally:
            conn.close()

    def teardown_method(self):
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_get_item(self):
        assert get_item(self.db_path, "cursorAuth/accessToken") == "token-123"
        assert get_item(self.db_path, "missing") is None

    def test_find_items_decodes_blobs(self):
        items = dict(find_items(self.db_path, "usage"))
        assert items == {"cursor.usage.snapshot": '{"rows": []}'}

    def test_find_items_without_fragments(self):
        assert find_items(self.db_path) == []
