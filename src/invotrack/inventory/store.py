from __future__ import annotations

import os
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional

from ..logging import get_logger
from ..paths import find_project_root, var_dir
from .errors import CapacityExceededError, StorageError


LOG = get_logger("inventory-store")

DEFAULT_DB_FOLDER = "invotrack"
DEFAULT_DB_FILENAME = "store.sqlite3"

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS kv_entries (
  key         TEXT PRIMARY KEY,
  value       TEXT NOT NULL,
  updated_at  TEXT DEFAULT (datetime('now'))
);
"""


def entry_size(key: str, value: str) -> int:
    return len(key.encode("utf-8")) + len(value.encode("utf-8"))


class KeyValueStore(ABC):
    """Durable string key/value storage with an optional byte quota.

    `quota_bytes` bounds the summed size of all keys and values; a write
    that would exceed it raises CapacityExceededError and leaves the store
    unchanged.
    """

    def __init__(self, quota_bytes: Optional[int] = None) -> None:
        self.quota_bytes = quota_bytes

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        ...

    @abstractmethod
    def delete(self, key: str) -> bool:
        ...

    @abstractmethod
    def keys(self, prefix: str = "") -> List[str]:
        ...

    @abstractmethod
    def usage_bytes(self, *, excluding: Optional[str] = None) -> int:
        ...

    def _check_quota(self, key: str, value: str) -> None:
        if self.quota_bytes is None:
            return
        needed = entry_size(key, value)
        used = self.usage_bytes(excluding=key)
        if used + needed > self.quota_bytes:
            raise CapacityExceededError(
                f"Storage quota exceeded writing '{key}': {used + needed} > {self.quota_bytes} bytes",
                key=key,
                needed_bytes=needed,
            )


class MemoryKeyValueStore(KeyValueStore):
    """In-process store; used in tests and for throwaway sessions."""

    def __init__(self, quota_bytes: Optional[int] = None) -> None:
        super().__init__(quota_bytes)
        self._data: Dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        with self._lock:
            self._check_quota(key, value)
            self._data[key] = value

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def keys(self, prefix: str = "") -> List[str]:
        return sorted(k for k in list(self._data) if k.startswith(prefix))

    def usage_bytes(self, *, excluding: Optional[str] = None) -> int:
        return sum(entry_size(k, v) for k, v in list(self._data.items()) if k != excluding)


class SqliteKeyValueStore(KeyValueStore):
    """SQLite-backed store.

    - Places the DB under `<repo-root>/var/invotrack/store.sqlite3` unless
      an explicit `db_path` is given.
    - Ensures schema on first use.
    - Provides a context-managed connection method.
    """

    def __init__(
        self,
        root_dir: Optional[str] = None,
        *,
        db_path: Optional[str] = None,
        quota_bytes: Optional[int] = None,
    ) -> None:
        super().__init__(quota_bytes)
        if db_path:
            self.db_path = os.path.abspath(db_path)
            os.makedirs(os.path.dirname(self.db_path) or ".", exist_ok=True)
        else:
            db_folder = os.path.join(var_dir(find_project_root(root_dir)), DEFAULT_DB_FOLDER)
            os.makedirs(db_folder, exist_ok=True)
            self.db_path = os.path.join(db_folder, DEFAULT_DB_FILENAME)
        LOG.info(f"Inventory store path: {self.db_path}")
        self._ensure_schema()

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(self.db_path)
        except sqlite3.Error as exc:
            raise StorageError(f"Cannot open inventory store at {self.db_path}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        except sqlite3.Error as exc:
            raise StorageError(f"Inventory store operation failed at {self.db_path}: {exc}") from exc
        finally:
            conn.close()

    def _ensure_schema(self) -> None:
        with self.connect() as conn:
            cur = conn.cursor()
            try:
                cur.execute("PRAGMA journal_mode=WAL;")
                cur.execute("PRAGMA synchronous=NORMAL;")
            except sqlite3.OperationalError:
                # Non-fatal; continue with schema creation
                pass
            cur.executescript(SCHEMA_SQL)
            conn.commit()
            LOG.debug("Inventory store schema ensured.")

    def get(self, key: str) -> Optional[str]:
        with self.connect() as conn:
            row = conn.execute("SELECT value FROM kv_entries WHERE key = ?;", (key,)).fetchone()
            return row["value"] if row else None

    def set(self, key: str, value: str) -> None:
        with self.connect() as conn:
            try:
                conn.execute("BEGIN IMMEDIATE;")
                if self.quota_bytes is not None:
                    used = self._usage(conn, excluding=key)
                    needed = entry_size(key, value)
                    if used + needed > self.quota_bytes:
                        raise CapacityExceededError(
                            f"Storage quota exceeded writing '{key}': {used + needed} > {self.quota_bytes} bytes",
                            key=key,
                            needed_bytes=needed,
                        )
                conn.execute(
                    """
                    INSERT INTO kv_entries (key, value, updated_at) VALUES (?, ?, datetime('now'))
                    ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at;
                    """,
                    (key, value),
                )
                conn.commit()
            except CapacityExceededError:
                conn.rollback()
                raise
            except sqlite3.OperationalError as exc:
                conn.rollback()
                if "full" in str(exc).lower():
                    raise CapacityExceededError(f"Database full writing '{key}': {exc}", key=key) from exc
                raise StorageError(f"Failed writing '{key}': {exc}") from exc

    def delete(self, key: str) -> bool:
        with self.connect() as conn:
            cur = conn.execute("DELETE FROM kv_entries WHERE key = ?;", (key,))
            conn.commit()
            return cur.rowcount > 0

    def keys(self, prefix: str = "") -> List[str]:
        # LIKE would treat "_" in prefixes as a wildcard
        with self.connect() as conn:
            rows = conn.execute(
                "SELECT key FROM kv_entries WHERE substr(key, 1, ?) = ? ORDER BY key;",
                (len(prefix), prefix),
            ).fetchall()
            return [r["key"] for r in rows]

    def usage_bytes(self, *, excluding: Optional[str] = None) -> int:
        with self.connect() as conn:
            return self._usage(conn, excluding=excluding)

    @staticmethod
    def _usage(conn: sqlite3.Connection, *, excluding: Optional[str]) -> int:
        row = conn.execute(
            """
            SELECT COALESCE(SUM(length(CAST(key AS BLOB)) + length(CAST(value AS BLOB))), 0) AS used
            FROM kv_entries WHERE key != ?;
            """,
            (excluding or "",),
        ).fetchone()
        return int(row["used"])
