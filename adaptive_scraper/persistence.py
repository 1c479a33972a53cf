"""
Key-value persistence behind the learning store.

Values are JSON-compatible dicts. ``update`` applies a function to the current
value inside one transaction, which is how counter merges stay atomic when
several sessions share a store.
"""

import copy
import json
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable

from core import settings

from .errors import PersistenceError

logger = logging.getLogger(__name__)

Updater = Callable[[dict[str, Any] | None], dict[str, Any] | None]


class KeyValueStore(ABC):
    """Persistence collaborator used by the learning store."""

    @abstractmethod
    def load(self: "KeyValueStore", key: str) -> dict[str, Any] | None:
        """Return the value stored under key, or None."""

    @abstractmethod
    def save(self: "KeyValueStore", key: str, value: dict[str, Any]) -> None:
        """Replace the value stored under key."""

    @abstractmethod
    def update(self: "KeyValueStore", key: str, fn: Updater) -> dict[str, Any] | None:
        """Atomically replace the value under key with ``fn(current)``.

        Returning None from ``fn`` deletes the key.

        Returns:
            The new value, or None when the key was deleted
        """

    @abstractmethod
    def delete(self: "KeyValueStore", key: str) -> None:
        """Remove key if present."""

    @abstractmethod
    def keys(self: "KeyValueStore", prefix: str = "") -> list[str]:
        """List stored keys starting with prefix, sorted."""


class MemoryStore(KeyValueStore):
    """In-process store. Values are deep-copied in and out."""

    def __init__(self: "MemoryStore") -> None:
        self._data: dict[str, dict[str, Any]] = {}
        self._lock = threading.RLock()

    def load(self: "MemoryStore", key: str) -> dict[str, Any] | None:
        with self._lock:
            value = self._data.get(key)
            return copy.deepcopy(value) if value is not None else None

    def save(self: "MemoryStore", key: str, value: dict[str, Any]) -> None:
        with self._lock:
            self._data[key] = copy.deepcopy(value)

    def update(self: "MemoryStore", key: str, fn: Updater) -> dict[str, Any] | None:
        with self._lock:
            current = self._data.get(key)
            new_value = fn(copy.deepcopy(current) if current is not None else None)
            if new_value is None:
                self._data.pop(key, None)
                return None
            self._data[key] = copy.deepcopy(new_value)
            return copy.deepcopy(new_value)

    def delete(self: "MemoryStore", key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def keys(self: "MemoryStore", prefix: str = "") -> list[str]:
        with self._lock:
            return sorted(k for k in self._data if k.startswith(prefix))


class SqliteStore(KeyValueStore):
    """File-backed store using one sqlite table of JSON documents.

    Every operation opens its own connection, so the store can be shared
    between threads. ``update`` runs under ``BEGIN IMMEDIATE`` so concurrent
    writers serialize on the database lock.
    """

    def __init__(
        self: "SqliteStore",
        db_path: str = settings.LEARNING_DB_PATH,
        timeout: float = settings.SQLITE_TIMEOUT,
    ) -> None:
        """Initialize the store and create its table.

        Args:
            db_path: Path to the sqlite database file
            timeout: Seconds to wait for the database lock
        """
        self.db_path = db_path
        self.timeout = timeout
        self._init_database()

    def _connect(self: "SqliteStore") -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=self.timeout, isolation_level=None)
        return conn

    def _init_database(self: "SqliteStore") -> None:
        try:
            conn = self._connect()
            try:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS learning_data (
                        key TEXT PRIMARY KEY,
                        value TEXT NOT NULL
                    )
                    """
                )
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise PersistenceError(f"Could not initialize {self.db_path}", {"error": str(e)}) from e
        logger.debug(f"Learning database ready at {self.db_path}")

    def _decode(self: "SqliteStore", key: str, raw: str) -> dict[str, Any]:
        try:
            value = json.loads(raw)
        except json.JSONDecodeError as e:
            raise PersistenceError(f"Corrupt document under {key}", {"error": str(e)}) from e
        if not isinstance(value, dict):
            raise PersistenceError(
                f"Corrupt document under {key}", {"error": f"expected object, got {type(value).__name__}"}
            )
        return value

    def _encode(self: "SqliteStore", key: str, value: dict[str, Any]) -> str:
        try:
            return json.dumps(value)
        except (TypeError, ValueError) as e:
            raise PersistenceError(f"Could not serialize {key}", {"error": str(e)}) from e

    def load(self: "SqliteStore", key: str) -> dict[str, Any] | None:
        try:
            conn = self._connect()
            try:
                row = conn.execute("SELECT value FROM learning_data WHERE key = ?", (key,)).fetchone()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise PersistenceError(f"Could not load {key}", {"error": str(e)}) from e
        return self._decode(key, row[0]) if row else None

    def save(self: "SqliteStore", key: str, value: dict[str, Any]) -> None:
        encoded = self._encode(key, value)
        self._execute(
            f"Could not save {key}", "INSERT OR REPLACE INTO learning_data (key, value) VALUES (?, ?)", (key, encoded)
        )

    def update(self: "SqliteStore", key: str, fn: Updater) -> dict[str, Any] | None:
        try:
            conn = self._connect()
            try:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    row = conn.execute("SELECT value FROM learning_data WHERE key = ?", (key,)).fetchone()
                    new_value = fn(self._decode(key, row[0]) if row else None)
                    if new_value is None:
                        conn.execute("DELETE FROM learning_data WHERE key = ?", (key,))
                    else:
                        conn.execute(
                            "INSERT OR REPLACE INTO learning_data (key, value) VALUES (?, ?)",
                            (key, self._encode(key, new_value)),
                        )
                except Exception:
                    conn.execute("ROLLBACK")
                    raise
                conn.execute("COMMIT")
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise PersistenceError(f"Could not update {key}", {"error": str(e)}) from e
        return new_value

    def delete(self: "SqliteStore", key: str) -> None:
        self._execute(f"Could not delete {key}", "DELETE FROM learning_data WHERE key = ?", (key,))

    def _execute(self: "SqliteStore", failure: str, statement: str, parameters: tuple[Any, ...]) -> None:
        try:
            conn = self._connect()
            try:
                conn.execute(statement, parameters)
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise PersistenceError(failure, {"error": str(e)}) from e

    def keys(self: "SqliteStore", prefix: str = "") -> list[str]:
        try:
            conn = self._connect()
            try:
                rows = conn.execute(
                    "SELECT key FROM learning_data WHERE substr(key, 1, ?) = ? ORDER BY key", (len(prefix), prefix)
                ).fetchall()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise PersistenceError(f"Could not list keys for {prefix!r}", {"error": str(e)}) from e
        return [row[0] for row in rows]
