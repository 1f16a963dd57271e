"""Tests for the sync ledger (SyncStateStore).

Covers:
- Load/save round trip, atomic write, last_sync stamping
- Corrupt or malformed ledgers raising StateCorruption
- needs_push / needs_pull change detection
- Orphan detection
- Monotonic remote_version on record_push / record_pull
- Content fingerprint normalisation
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from confluence_docsync.errors import StateCorruption
from confluence_docsync.sync.state import STATE_FILENAME, SyncStateStore

fingerprint = SyncStateStore.content_fingerprint


def _store(tmp_path: Path) -> SyncStateStore:
    store = SyncStateStore(tmp_path / ".docsync")
    store.load()
    return store


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------


class TestPersistence:
    """Loading and saving the ledger."""

    def test_missing_file_is_empty_ledger(self, tmp_path):
        store = _store(tmp_path)
        assert store.records() == {}
        assert store.last_sync is None

    def test_round_trip(self, tmp_path):
        store = _store(tmp_path)
        store.record_push(
            "docs/a.md", "101", 3, "50", "guide", "abc", title="A", slug="a"
        )
        store.save()

        reloaded = _store(tmp_path)
        record = reloaded.get("docs/a.md")
        assert record is not None
        assert record.remote_page_id == "101"
        assert record.remote_version == 3
        assert record.remote_parent_id == "50"
        assert record.category == "guide"
        assert record.last_synced_fingerprint == "abc"
        assert record.title == "A"
        assert record.slug == "a"
        assert reloaded.last_sync is not None

    def test_save_creates_directory_and_layout(self, tmp_path):
        store = _store(tmp_path)
        store.record_push("docs/a.md", "1", 1, None, "", "f")
        store.save()

        path = tmp_path / ".docsync" / STATE_FILENAME
        data = json.loads(path.read_text(encoding="utf-8"))
        assert data["version"] == 1
        assert "last_sync" in data
        assert "docs/a.md" in data["pages"]
        # The key is the path; it is not repeated inside the entry.
        assert "path" not in data["pages"]["docs/a.md"]

    def test_save_leaves_no_temp_files(self, tmp_path):
        store = _store(tmp_path)
        store.record_push("docs/a.md", "1", 1, None, "", "f")
        store.save()
        leftovers = list((tmp_path / ".docsync").glob("*.tmp"))
        assert leftovers == []

    def test_invalid_json_raises(self, tmp_path):
        state_dir = tmp_path / ".docsync"
        state_dir.mkdir()
        (state_dir / STATE_FILENAME).write_text("{not json", encoding="utf-8")
        store = SyncStateStore(state_dir)
        with pytest.raises(StateCorruption):
            store.load()

    def test_wrong_layout_raises(self, tmp_path):
        state_dir = tmp_path / ".docsync"
        state_dir.mkdir()
        (state_dir / STATE_FILENAME).write_text(
            json.dumps({"pages": ["docs/a.md"]}), encoding="utf-8"
        )
        with pytest.raises(StateCorruption):
            SyncStateStore(state_dir).load()

    def test_invalid_entry_raises(self, tmp_path):
        state_dir = tmp_path / ".docsync"
        state_dir.mkdir()
        (state_dir / STATE_FILENAME).write_text(
            json.dumps({"pages": {"docs/a.md": {"title": "no id"}}}),
            encoding="utf-8",
        )
        with pytest.raises(StateCorruption):
            SyncStateStore(state_dir).load()

    def test_non_positive_version_rejected(self, tmp_path):
        state_dir = tmp_path / ".docsync"
        state_dir.mkdir()
        (state_dir / STATE_FILENAME).write_text(
            json.dumps(
                {
                    "pages": {
                        "docs/a.md": {
                            "remote_page_id": "1",
                            "remote_version": 0,
                        }
                    }
                }
            ),
            encoding="utf-8",
        )
        with pytest.raises(StateCorruption):
            SyncStateStore(state_dir).load()


# ---------------------------------------------------------------------------
# Change detection
# ---------------------------------------------------------------------------


class TestChangeDetection:
    """needs_push and needs_pull."""

    def test_needs_push_without_record(self, tmp_path):
        store = _store(tmp_path)
        assert store.needs_push("docs/a.md", "f1") is True

    def test_no_push_needed_after_record_push(self, tmp_path):
        store = _store(tmp_path)
        store.record_push("docs/a.md", "1", 1, None, "", "f1")
        assert store.needs_push("docs/a.md", "f1") is False

    def test_needs_push_when_fingerprint_changes(self, tmp_path):
        store = _store(tmp_path)
        store.record_push("docs/a.md", "1", 1, None, "", "f1")
        assert store.needs_push("docs/a.md", "f2") is True

    def test_needs_push_for_record_without_fingerprint(self, tmp_path):
        state_dir = tmp_path / ".docsync"
        state_dir.mkdir()
        (state_dir / STATE_FILENAME).write_text(
            json.dumps({"pages": {"docs/a.md": {"remote_page_id": "7"}}}),
            encoding="utf-8",
        )
        store = SyncStateStore(state_dir)
        store.load()
        assert store.needs_push("docs/a.md", "anything") is True

    def test_needs_pull_only_when_remote_moved(self, tmp_path):
        store = _store(tmp_path)
        store.record_push("docs/a.md", "1", 4, None, "", "f1")
        assert store.needs_pull("docs/a.md", 3) is False
        assert store.needs_pull("docs/a.md", 4) is False
        assert store.needs_pull("docs/a.md", 5) is True


# ---------------------------------------------------------------------------
# Orphans
# ---------------------------------------------------------------------------


class TestFindOrphans:
    """find_orphans returns ledger paths missing from the current scan."""

    @pytest.fixture
    def store(self, tmp_path):
        store = _store(tmp_path)
        for i, path in enumerate(["docs/a.md", "docs/b.md", "docs/c.md"]):
            store.record_push(path, str(i + 1), 1, None, "", "f")
        return store

    def test_no_orphans(self, store):
        current = {"docs/a.md", "docs/b.md", "docs/c.md"}
        assert store.find_orphans(current) == set()

    def test_one_orphan(self, store):
        assert store.find_orphans({"docs/a.md", "docs/b.md"}) == {"docs/c.md"}

    def test_many_orphans(self, store):
        assert store.find_orphans({"docs/new.md"}) == {
            "docs/a.md",
            "docs/b.md",
            "docs/c.md",
        }

    def test_empty_ledger(self, tmp_path):
        assert _store(tmp_path).find_orphans({"docs/a.md"}) == set()

    def test_remove(self, store):
        store.remove("docs/c.md")
        store.remove("docs/unknown.md")
        assert store.find_orphans({"docs/a.md", "docs/b.md"}) == set()


# ---------------------------------------------------------------------------
# Mutation
# ---------------------------------------------------------------------------


class TestMutation:
    """record_push / record_pull keep remote_version monotonic."""

    def test_record_push_never_lowers_version(self, tmp_path):
        store = _store(tmp_path)
        store.record_push("docs/a.md", "1", 5, None, "", "f1")
        record = store.record_push("docs/a.md", "1", 2, None, "", "f2")
        assert record.remote_version == 5
        assert record.last_synced_fingerprint == "f2"

    def test_record_push_keeps_previous_title_and_slug(self, tmp_path):
        store = _store(tmp_path)
        store.record_push(
            "docs/a.md", "1", 1, None, "", "f1", title="A", slug="intro"
        )
        record = store.record_push("docs/a.md", "1", 2, None, "", "f2")
        assert record.title == "A"
        assert record.slug == "intro"
        assert record.remote_version == 2

    def test_record_pull_updates_version_and_fingerprint(self, tmp_path):
        store = _store(tmp_path)
        store.record_push("docs/a.md", "1", 2, "9", "x", "f1", title="A")
        record = store.record_pull("docs/a.md", 4, "f-pulled")
        assert record.remote_version == 4
        assert record.last_synced_fingerprint == "f-pulled"
        assert record.remote_parent_id == "9"
        assert record.title == "A"

    def test_record_pull_never_lowers_version(self, tmp_path):
        store = _store(tmp_path)
        store.record_push("docs/a.md", "1", 6, None, "", "f1")
        assert store.record_pull("docs/a.md", 3, "f2").remote_version == 6

    def test_record_pull_requires_existing_record(self, tmp_path):
        store = _store(tmp_path)
        with pytest.raises(KeyError):
            store.record_pull("docs/missing.md", 2, "f")


# ---------------------------------------------------------------------------
# Fingerprints
# ---------------------------------------------------------------------------


class TestContentFingerprint:
    def test_is_sha256_hex(self):
        digest = fingerprint("hello")
        assert len(digest) == 64
        int(digest, 16)

    def test_line_endings_ignored(self):
        assert fingerprint("a\r\nb\r\n") == fingerprint("a\nb\n")

    def test_trailing_whitespace_ignored(self):
        assert fingerprint("a   \nb\t\n\n\n") == fingerprint("a\nb")

    def test_bom_ignored(self):
        assert fingerprint("\ufeff# Title") == fingerprint("# Title")

    def test_content_change_detected(self):
        assert fingerprint("a\nb") != fingerprint("a\nc")

    def test_leading_whitespace_significant(self):
        assert fingerprint("  a") != fingerprint("a")
