"""
Storage Backend Module

Provides the abstract storage interface used by the loan repository, with an
in-memory implementation (testing, default) and a SQLite implementation
(persistence). Records are stored as JSON-serializable dictionaries.

Both backends serialize transactions: ``begin_transaction`` takes the backend
lock and holds it until ``commit`` or ``rollback``, so a transaction observes
a consistent view of every table for its whole duration.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union
from datetime import datetime
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager
from enum import Enum
import sqlite3
import json
import logging
import threading


logger = logging.getLogger("loan_repayments.storage")


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        result['created_at'] = self.created_at.isoformat()
        result['updated_at'] = self.updated_at.isoformat()
        for key, value in result.items():
            if isinstance(value, Enum):
                result[key] = value.value
        return result


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
    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from storage"""
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
    def close(self) -> None:
        """Close storage connection"""
        pass

    def begin_transaction(self) -> None:
        """Start a transaction (default no-op)"""
        pass

    def commit(self) -> None:
        """Commit current transaction (default no-op)"""
        pass

    def rollback(self) -> None:
        """Rollback current transaction (default no-op)"""
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


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if key not in record or record[key] != value:
            return False
    return True


def _copy(data: Any) -> Any:
    return json.loads(json.dumps(data, default=str))


_ABSENT = object()


class InMemoryStorage(StorageInterface):
    """
    In-memory storage implementation with undo-log rollback

    A transaction records the previous value of each record it writes, so
    beginning and committing cost nothing and rolling back touches only the
    records that changed.
    """

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._depth = 0
        self._undo: Dict[str, Dict[str, Any]] = {}
        self._created_tables: List[str] = []
        self._rollback_only = False

    def _ensure_table(self, table: str) -> None:
        if table not in self._data:
            self._data[table] = {}
            if self._depth:
                self._created_tables.append(table)

    def _remember(self, table: str, record_id: str) -> None:
        """Keep the first pre-transaction value of a record about to change"""
        if self._depth and table not in self._created_tables:
            undo = self._undo.setdefault(table, {})
            if record_id not in undo:
                undo[record_id] = self._data[table].get(record_id, _ABSENT)

    def _restore(self) -> None:
        for table, records in self._undo.items():
            for record_id, previous in records.items():
                if previous is _ABSENT:
                    self._data[table].pop(record_id, None)
                else:
                    self._data[table][record_id] = previous
        for table in self._created_tables:
            self._data.pop(table, None)
        self._reset_transaction()

    def _reset_transaction(self) -> None:
        self._undo = {}
        self._created_tables = []
        self._rollback_only = False

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        with self._lock:
            self._ensure_table(table)
            self._remember(table, record_id)
            # Deep copy to prevent external mutation
            self._data[table][record_id] = _copy(data)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record is not None:
                return _copy(record)
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table in insertion order"""
        with self._lock:
            self._ensure_table(table)
            return [_copy(record) for record in self._data[table].values()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from memory"""
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                self._remember(table, record_id)
                del self._data[table][record_id]
                return True
            return False

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            return record_id in self._data[table]

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        with self._lock:
            self._ensure_table(table)
            return [
                _copy(record) for record in self._data[table].values()
                if _matches(record, filters)
            ]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    def begin_transaction(self) -> None:
        """Take the storage lock; the outermost call starts a fresh undo log"""
        self._lock.acquire()
        if self._depth == 0:
            self._reset_transaction()
        self._depth += 1

    def commit(self) -> None:
        """Commit the current transaction level"""
        if self._depth == 0:
            return
        self._depth -= 1
        if self._depth == 0:
            # An inner level rolled back: the whole transaction is discarded
            if self._rollback_only:
                self._restore()
            else:
                self._reset_transaction()
        self._lock.release()

    def rollback(self) -> None:
        """Discard changes made since the outermost begin_transaction"""
        if self._depth == 0:
            return
        self._depth -= 1
        if self._depth == 0:
            self._restore()
            logger.debug("In-memory transaction rolled back")
        else:
            self._rollback_only = True
        self._lock.release()

    def get_all_data(self) -> Dict[str, Dict[str, Dict[str, Any]]]:
        """Get all data for debugging/inspection"""
        with self._lock:
            return _copy(self._data)


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        # isolation_level=None: transactions are opened explicitly with BEGIN
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._rollback_only = False
        self._tables = set()

        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        # seq keeps insertion order stable for records saved in the same instant
        self._connection.execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                data TEXT NOT NULL
            )
        """)
        self._tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to SQLite, keeping the original insertion position on update"""
        with self._lock:
            self._ensure_table(table)
            data_json = json.dumps(data, default=str)
            self._connection.execute(f"""
                INSERT INTO {table} (id, data) VALUES (?, ?)
                ON CONFLICT(id) DO UPDATE SET data = excluded.data
            """, (record_id, data_json))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            row = self._connection.execute(
                f"SELECT data FROM {table} WHERE id = ?", (record_id,)
            ).fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table in insertion order"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"SELECT data FROM {table} ORDER BY seq")
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(
                f"SELECT 1 FROM {table} WHERE id = ? LIMIT 1", (record_id,)
            )
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters (simple JSON key matching)"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"SELECT data FROM {table} ORDER BY seq")
            records = [json.loads(row['data']) for row in cursor.fetchall()]
            return [record for record in records if _matches(record, filters)]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"SELECT COUNT(*) AS count FROM {table}")
            return cursor.fetchone()['count']

    def begin_transaction(self) -> None:
        """Start a database transaction (nested calls join the outer one)"""
        self._lock.acquire()
        if self._depth == 0:
            self._connection.execute("BEGIN IMMEDIATE")
            self._rollback_only = False
        self._depth += 1

    def commit(self) -> None:
        """Commit current transaction"""
        if self._depth == 0:
            return
        self._depth -= 1
        if self._depth == 0:
            if self._rollback_only:
                self._connection.execute("ROLLBACK")
                self._tables.clear()
            else:
                self._connection.execute("COMMIT")
            self._rollback_only = False
        self._lock.release()

    def rollback(self) -> None:
        """Rollback current transaction"""
        if self._depth == 0:
            return
        self._depth -= 1
        if self._depth == 0:
            self._connection.execute("ROLLBACK")
            self._rollback_only = False
            # Tables created inside the rolled back transaction are gone
            self._tables.clear()
            logger.debug("SQLite transaction rolled back")
        else:
            self._rollback_only = True
        self._lock.release()

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None
