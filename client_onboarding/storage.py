"""
Storage Backend Module

Repository abstraction used by every onboarding engine. Each aggregate type
lives in its own table keyed by its generated id; records are stored as
JSON-safe dictionaries (enums by value, datetimes as ISO strings, Decimals as
strings) so that an in-memory map and a durable SQLite store are
interchangeable.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union, get_type_hints, get_origin, get_args
from decimal import Decimal
from datetime import datetime, timezone
from enum import Enum
import dataclasses
import re
import sqlite3
import json
import threading
from dataclasses import dataclass
from pathlib import Path
from contextlib import contextmanager


def to_storage_value(value: Any) -> Any:
    """Recursively convert a value into its JSON-safe storage form"""
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: to_storage_value(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, dict):
        return {k: to_storage_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_storage_value(v) for v in value]
    return value


def from_storage_value(value: Any, hint: Any) -> Any:
    """Rebuild a typed value from its storage form using a type hint"""
    if value is None:
        return None

    origin = get_origin(hint)
    if origin is Union:
        candidates = [arg for arg in get_args(hint) if arg is not type(None)]
        if len(candidates) == 1:
            return from_storage_value(value, candidates[0])
        return value
    if origin is list:
        args = get_args(hint)
        item_hint = args[0] if args else Any
        return [from_storage_value(item, item_hint) for item in value]
    if origin is dict:
        args = get_args(hint)
        value_hint = args[1] if len(args) == 2 else Any
        return {k: from_storage_value(v, value_hint) for k, v in value.items()}

    if isinstance(hint, type):
        if issubclass(hint, Enum):
            return hint(value)
        if hint is datetime:
            return datetime.fromisoformat(value) if isinstance(value, str) else value
        if hint is Decimal:
            return Decimal(str(value))
        if dataclasses.is_dataclass(hint):
            return value if isinstance(value, hint) else build_dataclass(hint, value)
    return value


def build_dataclass(cls, data: Dict[str, Any]):
    """Instantiate dataclass ``cls`` from a storage dictionary"""
    hints = get_type_hints(cls)
    kwargs = {}
    for f in dataclasses.fields(cls):
        if not f.init or f.name not in data:
            continue
        kwargs[f.name] = from_storage_value(data[f.name], hints.get(f.name, Any))
    return cls(**kwargs)


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage, nested records included"""
        return to_storage_value(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from dictionary"""
        return build_dataclass(cls, data)


class KeyedLocks:
    """
    Re-entrant lock per aggregate id.

    Engines wrap every read-modify-write of one aggregate in ``hold(id)`` so two
    callers working on the same workflow are serialized while different
    workflows proceed in parallel.
    """

    def __init__(self):
        self._locks: Dict[str, threading.RLock] = {}
        self._guard = threading.Lock()

    @contextmanager
    def hold(self, key: str):
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
        with lock:
            yield

    def discard(self, key: str) -> None:
        with self._guard:
            self._locks.pop(key, None)


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
        """Find records whose top-level fields equal every filter value"""
        pass

    @abstractmethod
    def count(self, table: str) -> int:
        """Count records in table"""
        pass

    @abstractmethod
    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    def begin_transaction(self) -> None:
        pass

    def commit(self) -> None:
        pass

    def rollback(self) -> None:
        pass

    @contextmanager
    def atomic(self):
        """Context manager for atomic operations"""
        self.begin_transaction()
        try:
            yield
            self.commit()
        except Exception:
            self.rollback()
            raise


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if key not in record or record[key] != value:
            return False
    return True


class InMemoryStorage(StorageInterface):
    """Process-lifetime storage; the default backend and the one tests use"""

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()

    def _table(self, table: str) -> Dict[str, Dict[str, Any]]:
        return self._data.setdefault(table, {})

    @staticmethod
    def _copy(data: Dict[str, Any]) -> Dict[str, Any]:
        # Round-trip through JSON so callers never share nested lists/dicts
        return json.loads(json.dumps(data, default=str))

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._table(table)[record_id] = self._copy(data)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._table(table).get(record_id)
            return self._copy(record) if record is not None else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [self._copy(record) for record in self._table(table).values()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            return self._table(table).pop(record_id, None) is not None

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            return record_id in self._table(table)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                self._copy(record)
                for record in self._table(table).values()
                if _matches(record, filters)
            ]

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._table(table))

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._data[table] = {}

    def close(self) -> None:
        pass


_TABLE_NAME = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class SQLiteStorage(StorageInterface):
    """
    SQLite storage: one row per entity id, the record body kept as JSON.

    Lookups by the ownership keys the engines query on (workflow, tenant,
    client) go through ``json_extract`` so ``find`` does not deserialize the
    whole table.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level='DEFERRED')
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._in_transaction = False
        self._known_tables = set()

        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        if table in self._known_tables:
            return
        if not _TABLE_NAME.match(table):
            raise ValueError(f"Invalid table name: {table}")
        with self._lock:
            self._connection.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    data TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            self._connection.commit()
            self._known_tables.add(table)

    def _maybe_commit(self) -> None:
        if not self._in_transaction:
            self._connection.commit()

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            self._connection.execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET data = excluded.data, updated_at = excluded.updated_at
            """, (record_id, json.dumps(data, default=str), now, now))
            self._maybe_commit()

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            row = self._connection.execute(
                f"SELECT data FROM {table} WHERE id = ?", (record_id,)
            ).fetchone()
            return json.loads(row['data']) if row else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"SELECT data FROM {table} ORDER BY created_at")
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
            self._maybe_commit()
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            row = self._connection.execute(
                f"SELECT 1 FROM {table} WHERE id = ? LIMIT 1", (record_id,)
            ).fetchone()
            return row is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            clauses = []
            params = []
            for key, value in filters.items():
                if isinstance(value, (str, int, float)) and not isinstance(value, bool) and _TABLE_NAME.match(key):
                    clauses.append(f"json_extract(data, '$.{key}') = ?")
                    params.append(value)
            sql = f"SELECT data FROM {table}"
            if clauses:
                sql += " WHERE " + " AND ".join(clauses)
            sql += " ORDER BY created_at"
            records = [json.loads(row['data']) for row in self._connection.execute(sql, params).fetchall()]
            # Filters that could not be pushed down are re-checked in Python
            return [record for record in records if _matches(record, filters)]

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            return self._connection.execute(f"SELECT COUNT(*) AS count FROM {table}").fetchone()['count']

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")
            self._maybe_commit()

    def begin_transaction(self) -> None:
        with self._lock:
            self._in_transaction = True

    def commit(self) -> None:
        with self._lock:
            if self._in_transaction:
                self._connection.commit()
                self._in_transaction = False

    def rollback(self) -> None:
        with self._lock:
            if self._in_transaction:
                self._connection.rollback()
                self._in_transaction = False

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None
