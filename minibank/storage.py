"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing)
and SQLite (persistence). All monetary values stored as Decimal strings.

Every backend owns one re-entrant lock. ``atomic()`` holds it for the whole
block, so concurrent read-modify-write sequences on the same backend are
serialized, and either all writes made inside the block are committed or
none are. The SQLite backend additionally takes the database write lock
when the block begins, which serializes blocks across connections and
processes sharing one database file.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union
from decimal import Decimal
from datetime import datetime, timezone
from enum import Enum
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .errors import StoreUnavailable


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: Optional[str]
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        for key, value in result.items():
            if isinstance(value, datetime):
                result[key] = value.isoformat()
            elif isinstance(value, Decimal):
                result[key] = str(value)
            elif isinstance(value, Enum):
                result[key] = value.value
        return result


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    def __init__(self, lock_timeout: Optional[float] = 5.0):
        self.lock_timeout = lock_timeout
        self._lock = threading.RLock()
        self._depth = 0

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to storage"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        pass

    @abstractmethod
    def count(self, table: str) -> int:
        """Count records in table"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    def begin_transaction(self) -> None:
        """Start a database transaction (default no-op)"""
        pass

    def commit(self) -> None:
        """Commit current transaction (default no-op)"""
        pass

    def rollback(self) -> None:
        """Rollback current transaction (default no-op)"""
        pass

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    @contextmanager
    def _locked(self):
        """Hold the backend lock, giving up after ``lock_timeout`` seconds"""
        timeout = -1 if self.lock_timeout is None else self.lock_timeout
        if not self._lock.acquire(timeout=timeout):
            raise StoreUnavailable(
                f"Timed out after {self.lock_timeout}s waiting for storage lock"
            )
        try:
            yield
        finally:
            self._lock.release()

    @contextmanager
    def atomic(self):
        """
        Context manager for atomic operations.

        Nested blocks join the outermost one; only the outermost block
        commits or rolls back.
        """
        with self._locked():
            outermost = self._depth == 0
            self._depth += 1
            try:
                if outermost:
                    self.begin_transaction()
                try:
                    yield
                except BaseException:
                    if outermost:
                        self.rollback()
                    raise
                if outermost:
                    self.commit()
            finally:
                self._depth -= 1


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self, lock_timeout: Optional[float] = 5.0):
        super().__init__(lock_timeout)
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        # Per-table copies taken on first write inside a transaction;
        # None marks a table that did not exist yet
        self._snapshot: Optional[Dict[str, Optional[Dict[str, Dict[str, Any]]]]] = None

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}

    def _before_write(self, table: str) -> None:
        if self._snapshot is not None and table not in self._snapshot:
            existing = self._data.get(table)
            # Records are replaced on save, never mutated, so a shallow copy suffices
            self._snapshot[table] = dict(existing) if existing is not None else None

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        with self._locked():
            self._before_write(table)
            self._ensure_table(table)
            # Deep copy to prevent external mutation
            self._data[table][record_id] = json.loads(json.dumps(data, default=str))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._locked():
            record = self._data.get(table, {}).get(record_id)
            if record:
                return json.loads(json.dumps(record))
            return None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        with self._locked():
            results = []
            for record in self._data.get(table, {}).values():
                if all(key in record and record[key] == value for key, value in filters.items()):
                    results.append(json.loads(json.dumps(record)))
            return results

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._locked():
            return len(self._data.get(table, {}))

    def begin_transaction(self) -> None:
        self._snapshot = {}

    def commit(self) -> None:
        self._snapshot = None

    def rollback(self) -> None:
        if self._snapshot is None:
            return
        for table, saved in self._snapshot.items():
            if saved is None:
                self._data.pop(table, None)
            else:
                self._data[table] = saved
        self._snapshot = None

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(StorageInterface):
    """
    SQLite storage implementation for persistence

    The connection runs in autocommit mode; ``atomic()`` blocks issue
    ``BEGIN IMMEDIATE`` so that the reads inside a block already hold the
    database write lock.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:", lock_timeout: Optional[float] = 5.0):
        super().__init__(lock_timeout)
        self.db_path = str(db_path)
        self._tables = set()
        try:
            self._connection = sqlite3.connect(
                self.db_path,
                check_same_thread=False,
                isolation_level=None,
                timeout=lock_timeout if lock_timeout is not None else 5.0,
            )
            self._connection.row_factory = sqlite3.Row

            # Enable WAL mode for better concurrent access
            if self.db_path != ":memory:":
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
        except sqlite3.Error as e:
            raise StoreUnavailable(f"Cannot open SQLite database {self.db_path}: {e}", e) from e

    @contextmanager
    def _guard(self):
        """Hold the lock and surface sqlite failures as StoreUnavailable"""
        with self._locked():
            try:
                yield
            except sqlite3.Error as e:
                raise StoreUnavailable(f"SQLite operation failed: {e}", e) from e

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        # Read-only check first so that connections never need the write lock
        # just to look at an existing table
        cursor = self._connection.execute(
            "SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = ?", (table,)
        )
        if cursor.fetchone() is not None:
            self._tables.add(table)
            return
        self._connection.execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self._connection.execute(f"""
            CREATE INDEX IF NOT EXISTS idx_{table}_created_at
            ON {table}(created_at)
        """)
        self._tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite"""
        with self._guard():
            self._ensure_table(table)

            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)

            # Use INSERT OR REPLACE to handle updates
            self._connection.execute(f"""
                INSERT OR REPLACE INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?,
                    COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?),
                    ?)
            """, (record_id, data_json, record_id, now, now))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._guard():
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} WHERE id = ?
            """, (record_id,))
            row = cursor.fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using JSON path lookups"""
        with self._guard():
            self._ensure_table(table)
            conditions = []
            params: List[Any] = []
            for key, value in filters.items():
                conditions.append("json_extract(data, ?) = ?")
                params.extend([f"$.{key}", value])

            where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""
            cursor = self._connection.execute(f"""
                SELECT data FROM {table}
                {where_clause}
                ORDER BY created_at
            """, params)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._guard():
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    def begin_transaction(self) -> None:
        """Start a transaction holding the database write lock"""
        try:
            self._connection.execute("BEGIN IMMEDIATE")
        except sqlite3.OperationalError as e:
            # SQLITE_BUSY once the busy timeout has elapsed
            raise StoreUnavailable(f"SQLite database is busy: {e}", e) from e
        except sqlite3.Error as e:
            raise StoreUnavailable(f"SQLite BEGIN failed: {e}", e) from e

    def commit(self) -> None:
        """Commit current transaction"""
        try:
            self._connection.execute("COMMIT")
        except sqlite3.Error as e:
            self.rollback()
            raise StoreUnavailable(f"SQLite commit failed: {e}", e) from e

    def rollback(self) -> None:
        """Rollback current transaction"""
        # Tables created inside the rolled back transaction are gone too
        self._tables.clear()
        try:
            if self._connection.in_transaction:
                self._connection.execute("ROLLBACK")
        except sqlite3.Error as e:
            raise StoreUnavailable(f"SQLite rollback failed: {e}", e) from e

    def close(self) -> None:
        """Close SQLite connection"""
        with self._locked():
            self._connection.close()
