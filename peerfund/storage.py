"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing),
SQLite (persistence) and PostgreSQL. Records are JSON documents; monetary
values are stored as Decimal strings or integer cents.

Transactions nest: the outermost ``atomic()`` block commits, inner blocks are
savepoints. Callbacks registered with ``on_commit`` run once the outermost
transaction commits and are discarded on rollback.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, Union
import dataclasses
from decimal import Decimal
from datetime import datetime, date, timezone
from enum import Enum
import sqlite3
import json
import logging
import threading
import typing
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager


logger = logging.getLogger("peerfund.storage")


def to_json_value(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: to_json_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_json_value(v) for v in value]
    return value


def _from_json_value(value: Any, hint: Any) -> Any:
    if value is None:
        return None
    origin = typing.get_origin(hint)
    if origin is Union:
        args = [a for a in typing.get_args(hint) if a is not type(None)]
        return _from_json_value(value, args[0]) if len(args) == 1 else value
    if hint is Decimal and not isinstance(value, Decimal):
        return Decimal(str(value))
    if hint is datetime and isinstance(value, str):
        return datetime.fromisoformat(value)
    if hint is date and isinstance(value, str):
        return date.fromisoformat(value)
    if isinstance(hint, type) and issubclass(hint, Enum) and not isinstance(value, hint):
        return hint(value)
    return value


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        return {key: to_json_value(value) for key, value in asdict(self).items()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StorageRecord':
        """Create instance from dictionary, restoring Decimal/datetime/Enum fields"""
        hints = typing.get_type_hints(cls)
        names = {f.name for f in dataclasses.fields(cls)}
        kwargs = {
            key: _from_json_value(value, hints.get(key))
            for key, value in data.items() if key in names
        }
        return cls(**kwargs)


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    def __init__(self):
        self._lock = threading.RLock()
        self._depth = 0
        # One pending callback list per open transaction level
        self._on_commit: List[List[Callable[[], None]]] = []

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to storage"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    def load_for_update(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record and lock it for the rest of the current transaction"""
        return self.load(table, record_id)

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
    def update_if(self, table: str, record_id: str, expected: Dict[str, Any],
                  data: Dict[str, Any]) -> bool:
        """
        Compare-and-swap: replace the record only if every key in ``expected``
        still holds the given value. Returns False when the record changed.
        """
        pass

    @abstractmethod
    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> bool:
        """Insert a record unless the id is taken; returns False if it already existed"""
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

    # Backend transaction hooks; depth is 1 for the outermost transaction
    def _begin(self, depth: int) -> None:
        pass

    def _commit(self, depth: int) -> None:
        pass

    def _rollback(self, depth: int) -> None:
        pass

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    def begin_transaction(self) -> None:
        """Start a transaction, or a savepoint when one is already open"""
        self._lock.acquire()
        self._depth += 1
        try:
            self._begin(self._depth)
        except Exception:
            self._depth -= 1
            self._lock.release()
            raise
        self._on_commit.append([])

    def commit(self) -> None:
        """Commit the innermost open transaction level"""
        if self._depth == 0:
            return
        callbacks: List[Callable[[], None]] = []
        try:
            self._commit(self._depth)
        finally:
            self._depth -= 1
            level = self._on_commit.pop()
            if self._depth == 0:
                callbacks = level
            else:
                self._on_commit[-1].extend(level)
            self._lock.release()
        for callback in callbacks:
            try:
                callback()
            except Exception as e:
                logger.error(f"After-commit callback {getattr(callback, '__name__', repr(callback))} failed: {e}")

    def rollback(self) -> None:
        """Roll back the innermost open transaction level"""
        if self._depth == 0:
            return
        try:
            self._rollback(self._depth)
        finally:
            self._depth -= 1
            self._on_commit.pop()
            self._lock.release()

    def on_commit(self, callback: Callable[[], None]) -> None:
        """Run callback after the outermost transaction commits (immediately if none is open)"""
        with self._lock:
            if self._depth > 0:
                self._on_commit[-1].append(callback)
                return
        callback()

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


def _copy(data: Dict[str, Any]) -> Dict[str, Any]:
    return json.loads(json.dumps(data, default=str))


def _json_where(filters: Dict[str, Any]):
    """
    SQLite WHERE clause narrowing rows on top-level JSON keys.

    Only scalar filters are pushed down; ``_matches`` remains the final
    check so the result is identical to the in-memory backend.
    """
    clauses = []
    params: List[Any] = []
    for key, value in filters.items():
        if not key.isidentifier():
            raise ValueError(f"Invalid filter key: {key!r}")
        path = f"json_extract(data, '$.{key}')"
        if value is None:
            clauses.append(f"{path} IS NULL")
        elif isinstance(value, (str, int, float)):
            clauses.append(f"{path} = ?")
            params.append(value)
    where = " WHERE " + " AND ".join(clauses) if clauses else ""
    return where, params


class InMemoryStorage(StorageInterface):
    """
    In-memory backend used by tests and ``memory://`` URLs.

    Records are kept as JSON-compatible copies, so callers never share
    state with the store. Each open transaction level holds a JSON snapshot
    of every table; rollback restores it.
    """

    def __init__(self):
        super().__init__()
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._snapshots: List[str] = []

    def _table(self, table: str) -> Dict[str, Dict[str, Any]]:
        return self._data.setdefault(table, {})

    def _begin(self, depth: int) -> None:
        self._snapshots.append(json.dumps(self._data, default=str))

    def _commit(self, depth: int) -> None:
        self._snapshots.pop()

    def _rollback(self, depth: int) -> None:
        self._data = json.loads(self._snapshots.pop())

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._table(table)[record_id] = _copy(data)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            record = self._table(table).get(record_id)
            return _copy(record) if record is not None else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [_copy(record) for record in self._table(table).values()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            return self._table(table).pop(record_id, None) is not None

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            return record_id in self._table(table)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._lock:
            return [_copy(record) for record in self._table(table).values() if _matches(record, filters)]

    def update_if(self, table: str, record_id: str, expected: Dict[str, Any],
                  data: Dict[str, Any]) -> bool:
        with self._lock:
            rows = self._table(table)
            current = rows.get(record_id)
            if current is None or not _matches(current, expected):
                return False
            rows[record_id] = _copy(data)
            return True

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> bool:
        with self._lock:
            rows = self._table(table)
            if record_id in rows:
                return False
            rows[record_id] = _copy(data)
            return True

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._table(table))

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._data[table] = {}

    def close(self) -> None:
        pass


class SQLiteStorage(StorageInterface):
    """
    SQLite backend: one table per record type holding the JSON document.

    The connection runs in autocommit mode; ``atomic()`` opens
    ``BEGIN IMMEDIATE`` at the outer level, so a writer holds the database
    lock for the whole unit, and savepoints for nested levels. Filters are
    evaluated with ``json_extract``.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        super().__init__()
        self.db_path = str(db_path)
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        self._connection.row_factory = sqlite3.Row
        self._tables: set = set()

        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA busy_timeout = 5000")

    def _ensure_table(self, table: str) -> None:
        if table in self._tables:
            return
        with self._lock:
            self._connection.execute(
                f"CREATE TABLE IF NOT EXISTS {table} ("
                "id TEXT PRIMARY KEY, data TEXT NOT NULL, "
                "created_at TEXT NOT NULL, updated_at TEXT NOT NULL)"
            )
            self._connection.execute(f"CREATE INDEX IF NOT EXISTS idx_{table}_created ON {table}(created_at)")
            self._tables.add(table)

    def _rows(self, table: str, where: str = "", params: Any = ()) -> List[Dict[str, Any]]:
        self._ensure_table(table)
        cursor = self._connection.execute(f"SELECT data FROM {table}{where} ORDER BY created_at, rowid", params)
        return [json.loads(row['data']) for row in cursor.fetchall()]

    def _write(self, table: str, sql: str, params: Any = ()) -> int:
        self._ensure_table(table)
        return self._connection.execute(sql, params).rowcount

    def _begin(self, depth: int) -> None:
        if depth == 1:
            self._connection.execute("BEGIN IMMEDIATE")
        else:
            self._connection.execute(f"SAVEPOINT sp_{depth}")

    def _commit(self, depth: int) -> None:
        if depth == 1:
            self._connection.execute("COMMIT")
        else:
            self._connection.execute(f"RELEASE SAVEPOINT sp_{depth}")

    def _rollback(self, depth: int) -> None:
        if depth == 1:
            self._connection.execute("ROLLBACK")
        else:
            self._connection.execute(f"ROLLBACK TO SAVEPOINT sp_{depth}")
            self._connection.execute(f"RELEASE SAVEPOINT sp_{depth}")
        # CREATE TABLE is transactional in SQLite
        self._tables.clear()

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        now = datetime.now(timezone.utc).isoformat()
        with self._lock:
            self._write(
                table,
                f"INSERT INTO {table} (id, data, created_at, updated_at) VALUES (?, ?, ?, ?) "
                "ON CONFLICT(id) DO UPDATE SET data = excluded.data, updated_at = excluded.updated_at",
                (record_id, json.dumps(data, default=str), now, now)
            )

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            rows = self._rows(table, " WHERE id = ?", (record_id,))
            return rows[0] if rows else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            return self._rows(table)

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            return self._write(table, f"DELETE FROM {table} WHERE id = ?", (record_id,)) > 0

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"SELECT 1 FROM {table} WHERE id = ? LIMIT 1", (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        where, params = _json_where(filters)
        with self._lock:
            return [record for record in self._rows(table, where, params) if _matches(record, filters)]

    def update_if(self, table: str, record_id: str, expected: Dict[str, Any],
                  data: Dict[str, Any]) -> bool:
        with self._lock:
            current = self.load(table, record_id)
            if current is None or not _matches(current, expected):
                return False
            return self._write(
                table, f"UPDATE {table} SET data = ?, updated_at = ? WHERE id = ?",
                (json.dumps(data, default=str), datetime.now(timezone.utc).isoformat(), record_id)
            ) > 0

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> bool:
        now = datetime.now(timezone.utc).isoformat()
        with self._lock:
            return self._write(
                table,
                f"INSERT INTO {table} (id, data, created_at, updated_at) VALUES (?, ?, ?, ?) "
                "ON CONFLICT(id) DO NOTHING",
                (record_id, json.dumps(data, default=str), now, now)
            ) > 0

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            return self._connection.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._write(table, f"DELETE FROM {table}")

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


class PostgreSQLStorage(StorageInterface):
    """PostgreSQL storage backend with row-level locking"""

    def __init__(self, connection_string: str):
        super().__init__()
        try:
            import psycopg2
            import psycopg2.extras
            self.psycopg2 = psycopg2
            self.extras = psycopg2.extras
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install peerfund[postgres]")

        self.connection_string = connection_string
        self._connection = None
        self._tables: set = set()
        self._connect()

    def _connect(self) -> None:
        """Establish database connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
            self._connection = self.psycopg2.connect(
                self.connection_string,
                cursor_factory=self.extras.RealDictCursor
            )
            self._connection.autocommit = False  # We handle transactions manually

    def _execute(self, sql: str, params: tuple = ()) -> Any:
        cursor = self._connection.cursor()
        cursor.execute(sql, params)
        return cursor

    def _maybe_commit(self) -> None:
        if not self.in_transaction:
            self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        with self._lock:
            cursor = self._execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    data JSONB NOT NULL,
                    created_at TIMESTAMP DEFAULT NOW(),
                    updated_at TIMESTAMP DEFAULT NOW()
                )
            """)
            cursor.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_data
                ON {table} USING gin(data)
            """)
            cursor.close()
            self._maybe_commit()
            self._tables.add(table)

    def _begin(self, depth: int) -> None:
        # psycopg2 opens the outer transaction implicitly
        if depth > 1:
            self._execute(f"SAVEPOINT sp_{depth}").close()

    def _commit(self, depth: int) -> None:
        if depth == 1:
            self._connection.commit()
        else:
            self._execute(f"RELEASE SAVEPOINT sp_{depth}").close()

    def _rollback(self, depth: int) -> None:
        if depth == 1:
            self._connection.rollback()
            self._tables.clear()
        else:
            self._execute(f"ROLLBACK TO SAVEPOINT sp_{depth}").close()

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to PostgreSQL using UPSERT"""
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc)
            self._execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE SET
                    data = EXCLUDED.data,
                    updated_at = EXCLUDED.updated_at
            """, (record_id, json.dumps(data, default=str), now, now)).close()
            self._maybe_commit()

    def _load(self, table: str, record_id: str, for_update: bool) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            lock_clause = " FOR UPDATE" if for_update and self.in_transaction else ""
            cursor = self._execute(f"""
                SELECT data FROM {table} WHERE id = %s{lock_clause}
            """, (record_id,))
            row = cursor.fetchone()
            cursor.close()
            return dict(row['data']) if row else None

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from PostgreSQL"""
        return self._load(table, record_id, for_update=False)

    def load_for_update(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """SELECT ... FOR UPDATE inside the current transaction"""
        return self._load(table, record_id, for_update=True)

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._execute(f"SELECT data FROM {table} ORDER BY created_at")
            rows = [dict(row['data']) for row in cursor.fetchall()]
            cursor.close()
            return rows

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from PostgreSQL"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._execute(f"DELETE FROM {table} WHERE id = %s", (record_id,))
            deleted = cursor.rowcount > 0
            cursor.close()
            self._maybe_commit()
            return deleted

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._execute(f"SELECT 1 FROM {table} WHERE id = %s LIMIT 1", (record_id,))
            found = cursor.fetchone() is not None
            cursor.close()
            return found

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using JSONB containment"""
        with self._lock:
            self._ensure_table(table)
            if filters:
                cursor = self._execute(f"""
                    SELECT data FROM {table} WHERE data @> %s::jsonb ORDER BY created_at
                """, (json.dumps(filters, default=str),))
            else:
                cursor = self._execute(f"SELECT data FROM {table} ORDER BY created_at")
            rows = [dict(row['data']) for row in cursor.fetchall()]
            cursor.close()
            return rows

    def update_if(self, table: str, record_id: str, expected: Dict[str, Any],
                  data: Dict[str, Any]) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._execute(f"""
                UPDATE {table} SET data = %s, updated_at = %s
                WHERE id = %s AND data @> %s::jsonb
            """, (json.dumps(data, default=str), datetime.now(timezone.utc), record_id,
                  json.dumps(expected, default=str)))
            updated = cursor.rowcount > 0
            cursor.close()
            self._maybe_commit()
            return updated

    def insert(self, table: str, record_id: str, data: Dict[str, Any]) -> bool:
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc)
            cursor = self._execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (id) DO NOTHING
            """, (record_id, json.dumps(data, default=str), now, now))
            inserted = cursor.rowcount > 0
            cursor.close()
            self._maybe_commit()
            return inserted

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._execute(f"SELECT COUNT(*) as count FROM {table}")
            total = cursor.fetchone()['count']
            cursor.close()
            return total

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._ensure_table(table)
            self._execute(f"DELETE FROM {table}").close()
            self._maybe_commit()

    def close(self) -> None:
        """Close PostgreSQL connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Build a storage backend from a URL.

    ``memory://`` gives InMemoryStorage, ``sqlite:///path`` SQLiteStorage and
    ``postgresql://...`` PostgreSQLStorage.
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite:///"):
        return SQLiteStorage(database_url[len("sqlite:///"):] or ":memory:")
    if database_url.startswith(("postgresql://", "postgres://")):
        return PostgreSQLStorage(database_url)
    raise ValueError(f"Unsupported database URL: {database_url}")
