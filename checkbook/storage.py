"""
Storage Backend Module

Provides the abstract storage port the ledger engine writes through, plus an
in-memory implementation (testing, no transactions) and a SQLite
implementation (persistence, real transactions). Records are plain dicts of
JSON-safe values; storage assigns integer ids on first write.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional, TypeVar, Union
from datetime import datetime, timezone
import sqlite3
import json
import re
import threading
from pathlib import Path
from contextlib import contextmanager

from .errors import StorageError


T = TypeVar("T")

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _check_identifier(name: str) -> str:
    """Reject table/column names that cannot be safely interpolated into SQL"""
    if not isinstance(name, str) or not _IDENTIFIER.match(name):
        raise StorageError(f"Invalid identifier: {name!r}")
    return name


def _parse_order(order_by: Optional[str]):
    """Split 'column' / '-column' into (column, descending)"""
    if not order_by:
        return None, False
    if order_by.startswith("-"):
        return _check_identifier(order_by[1:]), True
    return _check_identifier(order_by), False


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    # Backends that can commit or roll back a unit of work atomically set this
    supports_transactions = False

    @abstractmethod
    def create_table(self, table: str, columns: Dict[str, str]) -> None:
        """Create a table if it does not exist (idempotent)"""
        pass

    @abstractmethod
    def create_index(self, table: str, column: str) -> None:
        """Create an index on a column if it does not exist (idempotent)"""
        pass

    @abstractmethod
    def write(self, table: str, record: Dict[str, Any]) -> int:
        """
        Insert the record if it has no id, otherwise update the row with that id.

        Updates merge the given fields into the stored row, so a partial
        record such as {"id": 3, "balance": 100} only touches those fields.

        Returns:
            The row id
        """
        pass

    @abstractmethod
    def read(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """Fetch rows matching all filters, ordered by a column ('-col' for descending)"""
        pass

    @abstractmethod
    def erase(self, table: str, filters: Dict[str, Any]) -> int:
        """Delete rows matching filters; returns the number deleted (0 is not an error)"""
        pass

    @abstractmethod
    def count(self, table: str, filters: Optional[Dict[str, Any]] = None) -> int:
        """Count rows matching filters"""
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

    def transact(self, unit_of_work: Callable[[], T]) -> T:
        """
        Run a unit of work atomically and return its result.

        On backends without transaction support this only runs the unit of
        work; callers that need all-or-nothing behaviour there must arrange
        their own compensation.
        """
        with self.atomic():
            return unit_of_work()


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        self._data: Dict[str, Dict[int, Dict[str, Any]]] = {}
        self._columns: Dict[str, Dict[str, str]] = {}
        self._indexes: Dict[str, set] = {}
        self._next_id: Dict[str, int] = {}
        self._lock = threading.RLock()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}
            self._next_id[table] = 1

    @staticmethod
    def _copy(record: Dict[str, Any]) -> Dict[str, Any]:
        # Deep copy to prevent external mutation
        return json.loads(json.dumps(record, default=str))

    @staticmethod
    def _matches(record: Dict[str, Any], filters: Optional[Dict[str, Any]]) -> bool:
        if not filters:
            return True
        for key, value in filters.items():
            if record.get(key) != value:
                return False
        return True

    def create_table(self, table: str, columns: Dict[str, str]) -> None:
        with self._lock:
            self._ensure_table(_check_identifier(table))
            self._columns.setdefault(table, dict(columns))

    def create_index(self, table: str, column: str) -> None:
        with self._lock:
            self._ensure_table(_check_identifier(table))
            self._indexes.setdefault(table, set()).add(_check_identifier(column))

    def write(self, table: str, record: Dict[str, Any]) -> int:
        with self._lock:
            self._ensure_table(table)
            data = self._copy(record)
            record_id = data.get("id")
            rows = self._data[table]

            if record_id is None:
                record_id = self._next_id[table]
                data["id"] = record_id
                rows[record_id] = data
            elif record_id in rows:
                rows[record_id].update(data)
            else:
                rows[record_id] = data

            self._next_id[table] = max(self._next_id[table], record_id + 1)
            return record_id

    def read(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            results = [
                self._copy(record)
                for record in self._data[table].values()
                if self._matches(record, filters)
            ]
        column, descending = _parse_order(order_by)
        if column:
            # Missing values sort last; list.sort is stable so ties keep id order
            present = [r for r in results if r.get(column) is not None]
            missing = [r for r in results if r.get(column) is None]
            present.sort(key=lambda r: r[column], reverse=descending)
            results = present + missing
        return results

    def erase(self, table: str, filters: Dict[str, Any]) -> int:
        if not filters:
            raise StorageError(f"Refusing to erase from {table} without filters")
        with self._lock:
            self._ensure_table(table)
            doomed = [
                record_id for record_id, record in self._data[table].items()
                if self._matches(record, filters)
            ]
            for record_id in doomed:
                del self._data[table][record_id]
            return len(doomed)

    def count(self, table: str, filters: Optional[Dict[str, Any]] = None) -> int:
        with self._lock:
            self._ensure_table(table)
            return sum(
                1 for record in self._data[table].values()
                if self._matches(record, filters)
            )

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass

    def get_all_data(self) -> Dict[str, Dict[str, Dict[str, Any]]]:
        """Get all data for debugging/inspection"""
        with self._lock:
            return json.loads(json.dumps(self._data, default=str))


class SQLiteStorage(StorageInterface):
    """
    SQLite storage implementation for persistence

    Each logical table holds its records as JSON documents next to an
    autoincrement integer primary key. Filters and ordering go through
    json_extract; create_index builds matching expression indexes.
    """

    supports_transactions = True

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._lock = threading.RLock()
        self._depth = 0
        self._tables: Dict[str, Dict[str, str]] = {}
        try:
            # Set isolation_level to 'DEFERRED' to enable manual transaction control
            self._connection = sqlite3.connect(
                self.db_path, check_same_thread=False, isolation_level='DEFERRED'
            )
        except sqlite3.Error as e:
            raise StorageError(f"Cannot open SQLite database {self.db_path}: {e}") from e
        self._connection.row_factory = sqlite3.Row

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._execute("PRAGMA journal_mode = WAL")
                self._execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        if self._connection is None:
            raise StorageError("SQLite storage is closed")
        try:
            return self._connection.execute(sql, params)
        except sqlite3.Error as e:
            raise StorageError(f"SQLite error: {e}") from e

    def _autocommit(self) -> None:
        # Only commit if not in transaction
        if not self.in_transaction:
            try:
                self._connection.commit()
            except sqlite3.Error as e:
                raise StorageError(f"SQLite commit failed: {e}") from e

    @staticmethod
    def _path(column: str) -> str:
        return f"json_extract(data, '$.{_check_identifier(column)}')"

    def _where(self, filters: Optional[Dict[str, Any]]):
        """Build a WHERE clause; the id filter hits the primary key directly"""
        if not filters:
            return "", ()
        conditions = []
        params = []
        for key, value in filters.items():
            target = "id" if key == "id" else self._path(key)
            if value is None:
                conditions.append(f"{target} IS NULL")
            else:
                conditions.append(f"{target} = ?")
                params.append(value)
        return " WHERE " + " AND ".join(conditions), tuple(params)

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._tables:
            return
        _check_identifier(table)
        self._execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self._tables[table] = {}
        self._autocommit()

    def create_table(self, table: str, columns: Dict[str, str]) -> None:
        with self._lock:
            self._ensure_table(table)
            self._tables[table] = dict(columns)

    def create_index(self, table: str, column: str) -> None:
        with self._lock:
            self._ensure_table(table)
            self._execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_{_check_identifier(column)}
                ON {table}({self._path(column)})
            """)
            self._autocommit()

    def write(self, table: str, record: Dict[str, Any]) -> int:
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            data = dict(record)
            record_id = data.get("id")

            if record_id is None:
                data.pop("id", None)
                cursor = self._execute(f"""
                    INSERT INTO {table} (data, created_at, updated_at)
                    VALUES (?, ?, ?)
                """, (json.dumps(data, default=str), now, now))
                record_id = cursor.lastrowid
                # Mirror the assigned id inside the document so reads return it
                self._execute(f"""
                    UPDATE {table} SET data = json_set(data, '$.id', id) WHERE id = ?
                """, (record_id,))
            else:
                row = self._execute(
                    f"SELECT data FROM {table} WHERE id = ?", (record_id,)
                ).fetchone()
                merged = json.loads(row["data"]) if row else {}
                merged.update(data)
                self._execute(f"""
                    INSERT OR REPLACE INTO {table} (id, data, created_at, updated_at)
                    VALUES (?, ?,
                        COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?),
                        ?)
                """, (record_id, json.dumps(merged, default=str), record_id, now, now))

            self._autocommit()
            return record_id

    def read(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            where, params = self._where(filters)
            column, descending = _parse_order(order_by)
            if column:
                direction = "DESC" if descending else "ASC"
                order = f" ORDER BY {self._path(column)} IS NULL, {self._path(column)} {direction}, id"
            else:
                order = " ORDER BY id"
            cursor = self._execute(f"SELECT data FROM {table}{where}{order}", params)
            return [json.loads(row["data"]) for row in cursor.fetchall()]

    def erase(self, table: str, filters: Dict[str, Any]) -> int:
        if not filters:
            raise StorageError(f"Refusing to erase from {table} without filters")
        with self._lock:
            self._ensure_table(table)
            where, params = self._where(filters)
            cursor = self._execute(f"DELETE FROM {table}{where}", params)
            self._autocommit()
            return cursor.rowcount

    def count(self, table: str, filters: Optional[Dict[str, Any]] = None) -> int:
        with self._lock:
            self._ensure_table(table)
            where, params = self._where(filters)
            cursor = self._execute(f"SELECT COUNT(*) AS count FROM {table}{where}", params)
            return cursor.fetchone()["count"]

    def begin_transaction(self) -> None:
        """Start a database transaction (nested calls join the outer one)"""
        with self._lock:
            # SQLite with isolation_level='DEFERRED' automatically starts transactions
            # We just need to track the state
            self._depth += 1

    def commit(self) -> None:
        """Commit current transaction once the outermost unit of work finishes"""
        with self._lock:
            if self._depth == 0:
                return
            self._depth -= 1
            if self._depth == 0:
                try:
                    self._connection.commit()
                except sqlite3.Error as e:
                    raise StorageError(f"SQLite commit failed: {e}") from e

    def rollback(self) -> None:
        """Rollback current transaction, including any enclosing unit of work"""
        with self._lock:
            if self._depth == 0:
                return
            self._depth = 0
            try:
                self._connection.rollback()
            except sqlite3.Error as e:
                raise StorageError(f"SQLite rollback failed: {e}") from e

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Build a storage backend from a URL.

    Supported forms:
        memory://               InMemoryStorage
        sqlite://:memory:       SQLiteStorage in memory
        sqlite:///path/to.db    SQLiteStorage on disk
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite://"):]
        if path.startswith("/"):
            path = path[1:]
        return SQLiteStorage(path or ":memory:")
    raise StorageError(f"Unsupported database URL: {database_url}")
