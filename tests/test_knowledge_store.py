"""
Tests for the Knowledge Store
=============================
"""

import json
from unittest.mock import patch

import pytest
from filelock import Timeout

from taskforge.engine.errors import KnowledgeStoreUnavailable
from taskforge.knowledge.store import (
    InMemoryKnowledgeStore,
    JsonlKnowledgeStore,
    KnowledgeEntry,
    select_entries,
)


def _entry(content, importance=5, tags=("error_pattern",), created_at="2026-01-01T00:00:00+00:00", **kw):
    return KnowledgeEntry(
        category=kw.pop("category", "execution_failure"),
        content=content,
        tags=list(tags),
        importance=importance,
        created_at=created_at,
        **kw,
    )


class TestSelection:

    @pytest.mark.unit
    def test_orders_by_importance_then_recency(self):
        entries = [
            _entry("old", importance=8, created_at="2026-01-01T00:00:00+00:00"),
            _entry("new", importance=8, created_at="2026-02-01T00:00:00+00:00"),
            _entry("minor", importance=4),
        ]
        assert [e.content for e in select_entries(entries, [], 10)] == ["new", "old", "minor"]

    @pytest.mark.unit
    def test_tag_overlap_is_case_insensitive(self):
        entries = [_entry("a", tags=["Planning"]), _entry("b", tags=["deploy"])]
        assert [e.content for e in select_entries(entries, ["planning"], 10)] == ["a"]

    @pytest.mark.unit
    def test_limit(self):
        entries = [_entry(str(i)) for i in range(5)]
        assert len(select_entries(entries, [], 2)) == 2
        assert select_entries(entries, [], -1) == []


class TestInMemoryStore:

    @pytest.mark.unit
    def test_append_and_query(self):
        store = InMemoryKnowledgeStore()
        store.append(_entry("retry with smaller batches", importance=6))
        store.append(_entry("pin the base image", importance=10, tags=["deploy"]))

        assert len(store) == 2
        assert [e.content for e in store.query(["deploy", "error_pattern"])] == [
            "pin the base image",
            "retry with smaller batches",
        ]

    @pytest.mark.unit
    def test_invalid_entry_rejected(self):
        store = InMemoryKnowledgeStore()
        with pytest.raises(ValueError):
            store.append(_entry("too loud", importance=11))
        assert len(store) == 0


class TestJsonlStore:

    @pytest.mark.unit
    def test_paths(self, temp_project_folder):
        store = JsonlKnowledgeStore(str(temp_project_folder))
        p = store.paths()
        assert p.store_dir == temp_project_folder.resolve() / ".taskforge"
        assert p.ledger_path.parent == p.store_dir
        assert str(p.lock_path).endswith(".lock")

    @pytest.mark.unit
    def test_append_persists_jsonl(self, temp_project_folder):
        store = JsonlKnowledgeStore(str(temp_project_folder))
        first = _entry("validate inputs", importance=4, source_task_id="T1")
        store.append(first)
        store.append(_entry("cache the client", importance=8))

        lines = store.paths().ledger_path.read_text(encoding="utf-8").splitlines()
        assert len(lines) == 2
        assert json.loads(lines[0])["id"] == first.id
        assert store.count() == 2
        assert [e.content for e in store.query([])] == ["cache the client", "validate inputs"]
        assert store.query([], limit=1)[0].importance == 8

    @pytest.mark.unit
    def test_reopen_reads_existing_ledger(self, temp_project_folder):
        JsonlKnowledgeStore(str(temp_project_folder)).append(_entry("lesson", context={"attempt": 2}))
        entries = list(JsonlKnowledgeStore(str(temp_project_folder)).iter_entries())
        assert entries[0].context == {"attempt": 2}

    @pytest.mark.unit
    def test_missing_ledger_is_empty(self, temp_project_folder):
        store = JsonlKnowledgeStore(str(temp_project_folder))
        assert store.count() == 0
        assert store.query(["error_pattern"]) == []

    @pytest.mark.unit
    def test_invalid_entry_not_written(self, temp_project_folder):
        store = JsonlKnowledgeStore(str(temp_project_folder))
        with pytest.raises(KnowledgeStoreUnavailable):
            store.append(_entry("bad", importance=0))
        assert not store.paths().ledger_path.exists()

    @pytest.mark.unit
    def test_corrupt_lines_are_skipped(self, temp_project_folder):
        store = JsonlKnowledgeStore(str(temp_project_folder))
        store.append(_entry("good"))
        with open(store.paths().ledger_path, "a", encoding="utf-8") as f:
            f.write("{not json\n")
            f.write(json.dumps({"id": "x"}) + "\n")
            f.write("\n")

        assert [e.content for e in store.iter_entries()] == ["good"]

    @pytest.mark.unit
    def test_lock_timeout_maps_to_unavailable(self, temp_project_folder):
        store = JsonlKnowledgeStore(str(temp_project_folder), lock_timeout_seconds=1)
        with patch("taskforge.knowledge.store.FileLock") as lock_cls:
            lock_cls.return_value.__enter__.side_effect = Timeout(str(store.paths().lock_path))
            with pytest.raises(KnowledgeStoreUnavailable) as exc:
                store.append(_entry("blocked"))
        assert "Timed out" in str(exc.value)

    @pytest.mark.unit
    def test_write_error_maps_to_unavailable(self, temp_project_folder):
        store = JsonlKnowledgeStore(str(temp_project_folder))
        with patch("builtins.open", side_effect=PermissionError("read-only")):
            with pytest.raises(KnowledgeStoreUnavailable):
                store.append(_entry("nope"))
