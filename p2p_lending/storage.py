"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing,
demo) and SQLite (persistence). Each record is a JSON document; monetary values
are stored as Decimal strings and timestamps as ISO-8601 strings.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union
from datetime import datetime, timezone
import sqlite3
import json
import threading
from dataclasses import dataclass
from pathlib import Path
from contextlib import contextmanager


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime


class StorageInterface(ABC):
    """Abstract interface for storage backends"""
    
    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save (insert or replace) a record"""
        pass
    
    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass
    
    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table in insertion order"""
        pass
    
    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from storage"""
        pass
    
    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        pass
    
    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records whose top-level keys equal every filter value"""
        pass
    
    @abstractmethod
    def count(self, table: str) -> int:
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
    """Dict-backed storage for tests and the demo server. Records are copied on the way in and out."""
    
    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._depth = 0
        # Table contents before the first write of the open transaction
        self._undo: Dict[str, Dict[str, Dict[str, Any]]] = {}
    
    def _table(self, table: str) -> Dict[str, Dict[str, Any]]:
        return self._data.setdefault(table, {})
    
    def _writable(self, table: str) -> Dict[str, Dict[str, Any]]:
        records = self._table(table)
        if self._depth and table not in self._undo:
            self._undo[table] = dict(records)
        return records
    
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._writable(table)[record_id] = json.loads(json.dumps(data, default=str))
    
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._table(table).get(record_id)
            if record is not None:
                return json.loads(json.dumps(record))
            return None
    
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [json.loads(json.dumps(record)) for record in self._table(table).values()]
    
    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            return self._writable(table).pop(record_id, None) is not None
    
    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            return record_id in self._table(table)
    
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                json.loads(json.dumps(record))
                for record in self._table(table).values()
                if _matches(record, filters)
            ]
    
    def count(self, table: str) -> int:
        with self._lock:
            return len(self._table(table))
    
    def begin_transaction(self) -> None:
        self._lock.acquire()
        self._depth += 1
    
    def commit(self) -> None:
        self._depth -= 1
        if self._depth == 0:
            self._undo.clear()
        self._lock.release()
    
    def rollback(self) -> None:
        self._depth -= 1
        if self._depth == 0:
            self._data.update(self._undo)
            self._undo.clear()
        self._lock.release()
    
    def close(self) -> None:
        pass


class SQLiteStorage(StorageInterface):
    """
    SQLite storage: one table per record type, one JSON document per row.

    ``find`` filters on top-level document keys with ``json_extract`` so
    lookups such as "loans of this borrower" never load the whole table.
    Writes outside ``atomic()`` commit immediately; writes inside it commit
    when the outermost block exits.
    """
    
    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        # isolation_level=None: transactions are opened explicitly in begin_transaction
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._tables: set = set()
        
        if self.db_path != ":memory:":
            self._connection.execute("PRAGMA journal_mode = WAL")
            self._connection.execute("PRAGMA synchronous = NORMAL")
    
    @staticmethod
    def _check_name(name: str) -> str:
        if not name.replace('_', '').isalnum():
            raise ValueError(f"Invalid table or field name: {name}")
        return name
    
    def _ensure_table(self, table: str) -> None:
        if table in self._tables:
            return
        self._connection.execute(f"""
            CREATE TABLE IF NOT EXISTS {self._check_name(table)} (
                id TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self._tables.add(table)
    
    def _execute(self, table: str, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        with self._lock:
            self._ensure_table(table)
            return self._connection.execute(sql, params)
    
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        now = datetime.now(timezone.utc).isoformat()
        # created_at survives replacement so load_all keeps insertion order
        self._execute(table, f"""
            INSERT INTO {table} (id, data, created_at, updated_at) VALUES (?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET data = excluded.data, updated_at = excluded.updated_at
        """, (record_id, json.dumps(data, default=str), now, now))
    
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        row = self._execute(table, f"SELECT data FROM {table} WHERE id = ?", (record_id,)).fetchone()
        return json.loads(row['data']) if row else None
    
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        rows = self._execute(table, f"SELECT data FROM {table} ORDER BY created_at, rowid").fetchall()
        return [json.loads(row['data']) for row in rows]
    
    def delete(self, table: str, record_id: str) -> bool:
        return self._execute(table, f"DELETE FROM {table} WHERE id = ?", (record_id,)).rowcount > 0
    
    def exists(self, table: str, record_id: str) -> bool:
        row = self._execute(table, f"SELECT 1 FROM {table} WHERE id = ? LIMIT 1", (record_id,)).fetchone()
        return row is not None
    
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        clauses = []
        params = []
        for key, value in filters.items():
            path = f"json_extract(data, '$.{self._check_name(key)}')"
            if value is None:
                # Key must be present with a null value, as in the in-memory backend
                clauses.append(f"json_type(data, '$.{key}') = 'null'")
            else:
                clauses.append(f"{path} = ?")
                params.append(value)
        where = " AND ".join(clauses) or "1"
        rows = self._execute(table, f"""
            SELECT data FROM {table} WHERE {where} ORDER BY created_at, rowid
        """, tuple(params)).fetchall()
        return [json.loads(row['data']) for row in rows]
    
    def count(self, table: str) -> int:
        return self._execute(table, f"SELECT COUNT(*) AS count FROM {table}").fetchone()['count']
    
    def begin_transaction(self) -> None:
        self._lock.acquire()
        if self._depth == 0:
            self._connection.execute("BEGIN")
        self._depth += 1
    
    def commit(self) -> None:
        try:
            self._depth -= 1
            if self._depth == 0:
                self._connection.execute("COMMIT")
        finally:
            self._lock.release()
    
    def rollback(self) -> None:
        try:
            self._depth -= 1
            if self._depth == 0:
                self._connection.execute("ROLLBACK")
                # Tables created inside the transaction are gone too
                self._tables.clear()
        finally:
            self._lock.release()
    
    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Build a storage backend from a URL.
    
    Supported forms: ``memory://`` and ``sqlite:///path/to/file.db``
    (``sqlite://`` alone opens an in-memory SQLite database).
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite://"):]
        if path.startswith("/"):
            path = path[1:]
        return SQLiteStorage(path or ":memory:")
    raise ValueError(f"Unsupported database URL: {database_url}")
