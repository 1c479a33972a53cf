import sqlite3

import pytest

from adaptive_scraper.errors import PersistenceError
from adaptive_scraper.learning_store import LearningStore
from adaptive_scraper.persistence import MemoryStore, SqliteStore


@pytest.fixture(params=["memory", "sqlite"])
def backend(request, tmp_path):
    if request.param == "memory":
        return MemoryStore()
    return SqliteStore(str(tmp_path / "learning.db"))


class TestKeyValueStore:
    def test_save_and_load(self, backend):
        backend.save("ctx:a", {"count": 1})

        assert backend.load("ctx:a") == {"count": 1}
        assert backend.load("ctx:missing") is None

    def test_update_merges_current_value(self, backend):
        backend.save("ctx:a", {"count": 1})

        result = backend.update("ctx:a", lambda current: {"count": current["count"] + 1})

        assert result == {"count": 2}
        assert backend.load("ctx:a") == {"count": 2}

    def test_update_returning_none_deletes(self, backend):
        backend.save("ctx:a", {"count": 1})

        backend.update("ctx:a", lambda current: None)

        assert backend.load("ctx:a") is None

    def test_failed_update_leaves_value_unchanged(self, backend):
        backend.save("ctx:a", {"count": 1})

        def broken(current):
            raise ValueError("boom")

        with pytest.raises(ValueError):
            backend.update("ctx:a", broken)
        assert backend.load("ctx:a") == {"count": 1}

    def test_keys_filter_by_prefix_case_sensitively(self, backend):
        for key in ["ctx:b", "ctx:a", "CTX:c", "meta:insights"]:
            backend.save(key, {})

        assert backend.keys("ctx:") == ["ctx:a", "ctx:b"]
        assert len(backend.keys()) == 4

    def test_delete(self, backend):
        backend.save("ctx:a", {})
        backend.delete("ctx:a")
        backend.delete("ctx:never")

        assert backend.keys() == []


def test_memory_store_hands_out_copies():
    backend = MemoryStore()
    backend.save("ctx:a", {"items": [1]})

    backend.load("ctx:a")["items"].append(2)

    assert backend.load("ctx:a") == {"items": [1]}


def test_learning_survives_a_new_store_instance(tmp_path, clock, name_context):
    db_path = str(tmp_path / "learning.db")
    LearningStore(SqliteStore(db_path), clock=clock).record_outcome(name_context, "selector:h1::text", True)

    reopened = LearningStore(SqliteStore(db_path), clock=clock)

    [candidate] = reopened.get_candidates(name_context)
    assert candidate.success_count == 1


class TestCorruptDocuments:
    @pytest.fixture
    def db_path(self, tmp_path):
        return str(tmp_path / "learning.db")

    @pytest.fixture
    def backend(self, db_path):
        backend = SqliteStore(db_path)
        conn = sqlite3.connect(db_path)
        conn.execute("INSERT INTO learning_data (key, value) VALUES (?, ?)", ("ctx:a", "{not json"))
        conn.execute("INSERT INTO learning_data (key, value) VALUES (?, ?)", ("ctx:b", "[1, 2]"))
        conn.commit()
        conn.close()
        return backend

    def test_load_raises_persistence_error(self, backend):
        with pytest.raises(PersistenceError, match="Corrupt document under ctx:a"):
            backend.load("ctx:a")
        with pytest.raises(PersistenceError, match="Corrupt document under ctx:b"):
            backend.load("ctx:b")

    def test_update_raises_and_keeps_the_row(self, backend):
        with pytest.raises(PersistenceError):
            backend.update("ctx:a", lambda current: {"count": 1})

        assert backend.keys() == ["ctx:a", "ctx:b"]

    def test_save_replaces_a_corrupt_row(self, backend):
        backend.save("ctx:a", {"count": 1})

        assert backend.load("ctx:a") == {"count": 1}

    def test_delete_removes_a_corrupt_row(self, backend):
        backend.delete("ctx:a")

        assert backend.keys() == ["ctx:b"]

    def test_unserializable_value_raises_persistence_error(self, backend):
        with pytest.raises(PersistenceError, match="Could not serialize ctx:c"):
            backend.save("ctx:c", {"value": object()})
        with pytest.raises(PersistenceError, match="Could not serialize ctx:c"):
            backend.update("ctx:c", lambda current: {"value": object()})

        assert "ctx:c" not in backend.keys()

    def test_learning_store_degrades_on_a_corrupt_document(self, backend, clock):
        store = LearningStore(backend, clock=clock)

        assert store.load_document("ctx:a") is None
        assert store.degraded is True
