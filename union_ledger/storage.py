"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing)
and SQLite (persistence). All monetary values are stored as integer minor units.

Both backends support nested ``atomic()`` blocks: only the outermost block
commits, and an exception escaping any block rolls the whole unit back.
"""

from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional, Any, Union, Tuple
from decimal import Decimal
from datetime import datetime, date, timezone
from enum import Enum
import sqlite3
import json
import logging
import threading
from dataclasses import dataclass, fields
from pathlib import Path
from contextlib import contextmanager

from .currency import Money
from .exceptions import PersistenceFailure

logger = logging.getLogger("union_ledger.storage")


def _serialize_value(value: Any) -> Any:
    if isinstance(value, Money):
        return value.to_dict()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, dict):
        return {k: _serialize_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_serialize_value(v) for v in value]
    return value


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-safe dictionary for storage"""
        return {f.name: _serialize_value(getattr(self, f.name)) for f in fields(self)}


def _copy(data: Any) -> Any:
    # Deep copy through JSON to prevent external mutation
    return json.loads(json.dumps(data, default=str))


def _run_callbacks(callbacks: List[Callable[[], None]]) -> None:
    # Hooks run after the unit of work has committed; failures are logged.
    for callback in callbacks:
        try:
            callback()
        except Exception:
            logger.exception("after-commit hook failed")


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to storage"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        pass

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
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
    def begin_transaction(self) -> None:
        """Start (or nest into) a unit of work"""
        pass

    @abstractmethod
    def commit(self) -> None:
        """Commit the unit of work if this is the outermost level"""
        pass

    @abstractmethod
    def rollback(self) -> None:
        """Roll back the unit of work"""
        pass

    @abstractmethod
    def after_commit(self, callback: Callable[[], None]) -> None:
        """
        Run callback once the current unit of work commits, or right away
        when no unit of work is open. Discarded on rollback.
        """
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    @contextmanager
    def atomic(self):
        """Context manager for atomic operations"""
        self.begin_transaction()
        try:
            yield
        except BaseException:
            self.rollback()
            raise
        else:
            self.commit()


class _UnitOfWork(threading.local):
    """Per-thread transaction state for the in-memory backend"""

    def __init__(self):
        self.depth = 0
        self.undo: List[Tuple[str, str, Optional[Dict[str, Any]]]] = []
        self.callbacks: List[Callable[[], None]] = []
        self.rollback_only = False


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation for testing.

    Each thread keeps its own undo log while inside ``atomic()``; a rollback
    restores the previous value of every record that thread wrote. Callers
    serialize writers to the same records (per-account guards), so undo logs
    of different threads never overlap.
    """

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._uow = _UnitOfWork()

    def _ensure_table(self, table: str) -> Dict[str, Dict[str, Any]]:
        if table not in self._data:
            self._data[table] = {}
        return self._data[table]

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            rows = self._ensure_table(table)
            if self._uow.depth:
                self._uow.undo.append((table, record_id, rows.get(record_id)))
            rows[record_id] = _copy(data)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._ensure_table(table).get(record_id)
            return _copy(record) if record is not None else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [_copy(record) for record in self._ensure_table(table).values()]

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            return record_id in self._ensure_table(table)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._lock:
            results = []
            for record in self._ensure_table(table).values():
                if all(key in record and record[key] == value for key, value in filters.items()):
                    results.append(_copy(record))
            return results

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._ensure_table(table))

    def begin_transaction(self) -> None:
        if self._uow.depth == 0:
            self._uow.undo = []
            self._uow.callbacks = []
            self._uow.rollback_only = False
        self._uow.depth += 1

    def commit(self) -> None:
        if self._uow.depth == 0:
            return
        self._uow.depth -= 1
        if self._uow.depth == 0:
            if self._uow.rollback_only:
                self._undo()
                raise PersistenceFailure("Unit of work was marked rollback-only")
            callbacks, self._uow.callbacks = self._uow.callbacks, []
            self._uow.undo = []
            _run_callbacks(callbacks)

    def rollback(self) -> None:
        if self._uow.depth == 0:
            return
        self._uow.depth -= 1
        if self._uow.depth == 0:
            self._undo()
        else:
            self._uow.rollback_only = True

    def after_commit(self, callback: Callable[[], None]) -> None:
        if self._uow.depth:
            self._uow.callbacks.append(callback)
        else:
            _run_callbacks([callback])

    def _undo(self) -> None:
        with self._lock:
            for table, record_id, previous in reversed(self._uow.undo):
                rows = self._ensure_table(table)
                if previous is None:
                    rows.pop(record_id, None)
                else:
                    rows[record_id] = previous
        self._uow.undo = []
        self._uow.callbacks = []
        self._uow.rollback_only = False

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(StorageInterface):
    """
    SQLite storage implementation for persistence.

    One shared connection; a unit of work holds the connection lock from
    ``begin_transaction`` until the outermost commit or rollback, so units of
    work from different threads never interleave on the connection.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        try:
            self._connection = sqlite3.connect(
                self.db_path, check_same_thread=False, isolation_level='DEFERRED'
            )
        except sqlite3.Error as e:
            raise PersistenceFailure(f"Cannot open SQLite database {self.db_path}: {e}")
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._rollback_only = False
        self._callbacks: List[Callable[[], None]] = []
        self._tables = set()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._translate_errors():
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    @contextmanager
    def _translate_errors(self):
        try:
            yield
        except sqlite3.Error as e:
            raise PersistenceFailure(f"SQLite error: {e}") from e

    def _maybe_commit(self) -> None:
        if self._depth == 0:
            self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        self._connection.execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                seq INTEGER NOT NULL
            )
        """)
        self._connection.execute(f"""
            CREATE INDEX IF NOT EXISTS idx_{table}_seq ON {table}(seq)
        """)
        if self._depth == 0:
            self._connection.commit()
            self._tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite, keeping first-insert order stable"""
        with self._lock, self._translate_errors():
            self._ensure_table(table)
            data_json = json.dumps(data, default=str)
            now = datetime.now(timezone.utc).isoformat()
            self._connection.execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at, seq)
                VALUES (?, ?, ?, ?, (SELECT COALESCE(MAX(seq), 0) + 1 FROM {table}))
                ON CONFLICT(id) DO UPDATE SET
                    data = excluded.data,
                    updated_at = excluded.updated_at
            """, (record_id, data_json, now, now))
            self._maybe_commit()

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._lock, self._translate_errors():
            self._ensure_table(table)
            row = self._connection.execute(
                f"SELECT data FROM {table} WHERE id = ?", (record_id,)
            ).fetchone()
            return json.loads(row['data']) if row else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table in insertion order"""
        with self._lock, self._translate_errors():
            self._ensure_table(table)
            cursor = self._connection.execute(f"SELECT data FROM {table} ORDER BY seq")
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock, self._translate_errors():
            self._ensure_table(table)
            row = self._connection.execute(
                f"SELECT 1 FROM {table} WHERE id = ? LIMIT 1", (record_id,)
            ).fetchone()
            return row is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using the JSON1 extension"""
        with self._lock, self._translate_errors():
            self._ensure_table(table)
            conditions = []
            params: List[Any] = []
            for key, value in filters.items():
                conditions.append("json_extract(data, ?) = ?")
                params.extend([f"$.{key}", value])
            where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""
            cursor = self._connection.execute(
                f"SELECT data FROM {table} {where_clause} ORDER BY seq", params
            )
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock, self._translate_errors():
            self._ensure_table(table)
            row = self._connection.execute(f"SELECT COUNT(*) AS count FROM {table}").fetchone()
            return row['count']

    def begin_transaction(self) -> None:
        self._lock.acquire()
        if self._depth == 0:
            self._rollback_only = False
            self._callbacks = []
        self._depth += 1

    def commit(self) -> None:
        callbacks: List[Callable[[], None]] = []
        try:
            self._depth -= 1
            if self._depth == 0:
                if self._rollback_only:
                    self._connection.rollback()
                    self._callbacks = []
                    raise PersistenceFailure("Unit of work was marked rollback-only")
                try:
                    self._connection.commit()
                except sqlite3.Error as e:
                    self._connection.rollback()
                    self._callbacks = []
                    raise PersistenceFailure(f"SQLite commit failed: {e}") from e
                callbacks, self._callbacks = self._callbacks, []
        finally:
            self._lock.release()
        _run_callbacks(callbacks)

    def rollback(self) -> None:
        try:
            self._depth -= 1
            if self._depth == 0:
                self._callbacks = []
                with self._translate_errors():
                    self._connection.rollback()
            else:
                self._rollback_only = True
        finally:
            self._lock.release()

    def after_commit(self, callback: Callable[[], None]) -> None:
        # Taking the lock first means another thread's open unit of work
        # finishes before we decide whether to queue or run.
        with self._lock:
            if self._depth:
                self._callbacks.append(callback)
                return
        _run_callbacks([callback])

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Build a storage backend from a URL.

    ``memory://`` gives an InMemoryStorage; ``sqlite:///path/to.db`` (or
    ``sqlite://`` for an in-memory SQLite database) gives a SQLiteStorage.
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite:///"):] if database_url.startswith("sqlite:///") else ""
        return SQLiteStorage(path or ":memory:")
    raise ValueError(f"Unsupported database URL: {database_url}")
