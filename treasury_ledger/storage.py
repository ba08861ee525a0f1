"""
Storage Backend Module

Provides the abstract document-store interface the ledger services write
through, plus in-memory (testing) and SQLite (persistence) implementations.
All monetary values are stored as Decimal strings and all dates as ISO strings.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union, get_type_hints
from decimal import Decimal
from datetime import datetime, date, timezone
from dataclasses import dataclass, fields, is_dataclass
from enum import Enum
from pathlib import Path
import sqlite3
import json
import threading
import typing
import uuid

from .currency import Currency


def new_id() -> str:
    """Generate a record id"""
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _serialize(value: Any) -> Any:
    """Convert a value to its JSON-storable form"""
    if isinstance(value, Currency):
        return value.code
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if is_dataclass(value) and not isinstance(value, type):
        return {f.name: _serialize(getattr(value, f.name)) for f in fields(value)}
    if isinstance(value, dict):
        return {k: _serialize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_serialize(v) for v in value]
    return value


def _unwrap_optional(tp: Any) -> Any:
    if typing.get_origin(tp) is Union:
        args = [a for a in typing.get_args(tp) if a is not type(None)]
        if len(args) == 1:
            return args[0]
    return tp


def _deserialize(tp: Any, value: Any) -> Any:
    """Inverse of _serialize, driven by the declared field type"""
    if value is None:
        return None
    tp = _unwrap_optional(tp)
    origin = typing.get_origin(tp)
    if origin in (list, List):
        (item_type,) = typing.get_args(tp) or (Any,)
        return [_deserialize(item_type, v) for v in value]
    if tp is Decimal:
        return Decimal(str(value))
    if tp is datetime:
        return datetime.fromisoformat(value) if isinstance(value, str) else value
    if tp is date:
        return date.fromisoformat(value) if isinstance(value, str) else value
    if tp is Currency:
        return Currency.from_code(value)
    if isinstance(tp, type) and issubclass(tp, Enum):
        return tp(value)
    if isinstance(tp, type) and is_dataclass(tp) and isinstance(value, dict):
        return from_plain_dict(tp, value)
    return value


def from_plain_dict(cls: type, data: Dict[str, Any]) -> Any:
    """Build a dataclass instance from a stored dictionary"""
    hints = get_type_hints(cls)
    kwargs = {}
    for f in fields(cls):
        if f.name in data:
            kwargs[f.name] = _deserialize(hints.get(f.name, Any), data[f.name])
    return cls(**kwargs)


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        return _serialize(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from dictionary"""
        return from_plain_dict(cls, data)


def _normalize_bound(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def _matches(
    record: Dict[str, Any],
    filters: Dict[str, Any],
    range_field: Optional[str],
    range_from: Any,
    range_to: Any
) -> bool:
    for key, value in filters.items():
        if record.get(key) != _serialize(value):
            return False
    if range_field:
        current = record.get(range_field)
        if current is None:
            return False
        if range_from is not None and current < _normalize_bound(range_from):
            return False
        if range_to is not None and current > _normalize_bound(range_to):
            return False
    return True


def _sorted(records: List[Dict[str, Any]], order_by: Optional[str], descending: bool) -> List[Dict[str, Any]]:
    if not order_by:
        return records
    ordered = sorted(records, key=lambda r: (r.get(order_by) is not None, r.get(order_by) or ''))
    # Ties keep insertion order ascending, so descending lists put the newest tie first
    return ordered[::-1] if descending else ordered


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert or replace a record"""

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record by id"""

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table in insertion order"""

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record; returns False if it did not exist"""

    @abstractmethod
    def update(self, table: str, record_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        """
        Partial field update of an existing record

        Raises:
            KeyError: If the record does not exist
        """

    @abstractmethod
    def adjust_decimal(self, table: str, record_id: str, field_name: str, delta: Decimal) -> Decimal:
        """
        Add delta to a Decimal-string field and return the new value.

        Implementations serialize concurrent adjustments of the same record.

        Raises:
            KeyError: If the record does not exist
        """

    @abstractmethod
    def count(self, table: str) -> int:
        """Count records in table"""

    @abstractmethod
    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""

    def exists(self, table: str, record_id: str) -> bool:
        return self.load(table, record_id) is not None

    def find(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        range_field: Optional[str] = None,
        range_from: Any = None,
        range_to: Any = None
    ) -> List[Dict[str, Any]]:
        """
        Find records by field equality, with an optional inclusive range on
        one field, sorted by a key.

        Args:
            table: Table to scan
            filters: Field -> value equality filters
            order_by: Field to sort by (insertion order if None)
            descending: Reverse sort order
            range_field: Field the range bounds apply to
            range_from: Inclusive lower bound
            range_to: Inclusive upper bound
        """
        results = [
            record for record in self.load_all(table)
            if _matches(record, filters or {}, range_field, range_from, range_to)
        ]
        return _sorted(results, order_by, descending)


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()

    def _table(self, table: str) -> Dict[str, Dict[str, Any]]:
        return self._data.setdefault(table, {})

    @staticmethod
    def _copy(record: Dict[str, Any]) -> Dict[str, Any]:
        # Deep copy to prevent external mutation
        return json.loads(json.dumps(record, default=str))

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

    def update(self, table: str, record_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            rows = self._table(table)
            if record_id not in rows:
                raise KeyError(f"{table}/{record_id} not found")
            rows[record_id].update(self._copy(_serialize(changes)))
            return self._copy(rows[record_id])

    def adjust_decimal(self, table: str, record_id: str, field_name: str, delta: Decimal) -> Decimal:
        with self._lock:
            rows = self._table(table)
            if record_id not in rows:
                raise KeyError(f"{table}/{record_id} not found")
            new_value = Decimal(str(rows[record_id].get(field_name) or '0')) + delta
            rows[record_id][field_name] = str(new_value)
            rows[record_id]['updated_at'] = utc_now().isoformat()
            return new_value

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            return record_id in self._table(table)

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._table(table))

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._data[table] = {}

    def close(self) -> None:
        pass


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence (one JSON document per row)"""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level='DEFERRED')
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._tables = set()

        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        if table in self._tables:
            return
        with self._lock:
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
            self._connection.commit()
            self._tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            now = utc_now().isoformat()
            self._connection.execute(f"""
                INSERT OR REPLACE INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?,
                    COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?),
                    ?)
            """, (record_id, json.dumps(data, default=str), record_id, now, now))
            self._connection.commit()

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
            cursor = self._connection.execute(f"SELECT data FROM {table} ORDER BY created_at, rowid")
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
            self._connection.commit()
            return cursor.rowcount > 0

    def update(self, table: str, record_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            record = self.load(table, record_id)
            if record is None:
                raise KeyError(f"{table}/{record_id} not found")
            record.update(_serialize(changes))
            self.save(table, record_id, record)
            return record

    def adjust_decimal(self, table: str, record_id: str, field_name: str, delta: Decimal) -> Decimal:
        with self._lock:
            record = self.load(table, record_id)
            if record is None:
                raise KeyError(f"{table}/{record_id} not found")
            new_value = Decimal(str(record.get(field_name) or '0')) + delta
            record[field_name] = str(new_value)
            record['updated_at'] = utc_now().isoformat()
            self.save(table, record_id, record)
            return new_value

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            return self._connection.execute(f"SELECT COUNT(*) AS count FROM {table}").fetchone()['count']

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")
            self._connection.commit()

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None
