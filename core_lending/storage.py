"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing),
SQLite (default persistence) and PostgreSQL. Records are JSON documents keyed by id.

Every backend implements conditional_update / conditional_delete as a single
atomic compare-and-set: the write happens only if all expected fields still hold.
This is what makes concurrent claims safe.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union
from decimal import Decimal
from datetime import datetime, timezone
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager


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
            if isinstance(value, Decimal):
                result[key] = str(value)
        return result


def resolve_field(record: Dict[str, Any], path: str) -> Any:
    """Resolve a dotted path such as "conditions.type"; missing keys resolve to None"""
    value: Any = record
    for part in path.split('.'):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def matches(record: Dict[str, Any], expected: Dict[str, Any]) -> bool:
    """Check that every expected field holds; None expects missing or null"""
    for key, value in expected.items():
        if resolve_field(record, key) != value:
            return False
    return True


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
        """Find records matching filters (dotted keys allowed)"""
        pass

    @abstractmethod
    def conditional_update(
        self,
        table: str,
        record_id: str,
        expected: Dict[str, Any],
        updates: Dict[str, Any]
    ) -> bool:
        """
        Atomically apply top-level `updates` iff every `expected` field holds.

        Returns:
            True if the record was updated, False on conflict or missing record
        """
        pass

    @abstractmethod
    def conditional_delete(self, table: str, record_id: str, expected: Dict[str, Any]) -> bool:
        """Atomically delete iff every `expected` field holds"""
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


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()

    def _ensure_table(self, table: str) -> None:
        if table not in self._data:
            self._data[table] = {}

    @staticmethod
    def _copy(data: Dict[str, Any]) -> Dict[str, Any]:
        # Deep copy to prevent external mutation
        return json.loads(json.dumps(data, default=str))

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            self._data[table][record_id] = self._copy(data)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record:
                return self._copy(record)
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            return [self._copy(record) for record in self._data[table].values()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                del self._data[table][record_id]
                return True
            return False

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            return record_id in self._data[table]

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            return [
                self._copy(record) for record in self._data[table].values()
                if matches(record, filters)
            ]

    def conditional_update(self, table: str, record_id: str,
                           expected: Dict[str, Any], updates: Dict[str, Any]) -> bool:
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record is None or not matches(record, expected):
                return False
            record.update(self._copy(updates))
            return True

    def conditional_delete(self, table: str, record_id: str, expected: Dict[str, Any]) -> bool:
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record is None or not matches(record, expected):
                return False
            del self._data[table][record_id]
            return True

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._data[table] = {}

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


def _json_path(key: str) -> str:
    return '$.' + key


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level='DEFERRED')
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._in_transaction = False
        self._tables = set()

        # WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        with self._lock:
            if table in self._tables:
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
            if not self._in_transaction:
                self._connection.commit()
            self._tables.add(table)

    def _maybe_commit(self) -> None:
        if not self._in_transaction:
            self._connection.commit()

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)

            self._connection.execute(f"""
                INSERT OR REPLACE INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?,
                    COALESCE((SELECT created_at FROM {table} WHERE id = ?), ?),
                    ?)
            """, (record_id, data_json, record_id, now, now))
            self._maybe_commit()

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} WHERE id = ?
            """, (record_id,))
            row = cursor.fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY created_at
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                DELETE FROM {table} WHERE id = ?
            """, (record_id,))
            self._maybe_commit()
            return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            where, params = self._where_clause(filters)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} WHERE 1 = 1 {where} ORDER BY created_at
            """, params)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    @staticmethod
    def _where_clause(expected: Dict[str, Any]):
        """Build "AND json_extract(...) = ?" conditions for expected fields"""
        conditions = []
        params: List[Any] = []
        for key, value in expected.items():
            if value is None:
                conditions.append("AND json_extract(data, ?) IS NULL")
                params.append(_json_path(key))
            else:
                if isinstance(value, bool):
                    value = int(value)  # json_extract yields 0/1 for booleans
                conditions.append("AND json_extract(data, ?) = ?")
                params.extend([_json_path(key), value])
        return " ".join(conditions), params

    def conditional_update(self, table: str, record_id: str,
                           expected: Dict[str, Any], updates: Dict[str, Any]) -> bool:
        with self._lock:
            self._ensure_table(table)
            where, where_params = self._where_clause(expected)

            # json_set(data, path, json(value), ...) keeps value types, including null
            set_args = []
            set_params: List[Any] = []
            for key, value in updates.items():
                set_args.append("?, json(?)")
                set_params.extend([_json_path(key), json.dumps(value, default=str)])

            now = datetime.now(timezone.utc).isoformat()
            cursor = self._connection.execute(f"""
                UPDATE {table}
                SET data = json_set(data, {', '.join(set_args)}), updated_at = ?
                WHERE id = ? {where}
            """, set_params + [now, record_id] + where_params)
            self._maybe_commit()
            return cursor.rowcount == 1

    def conditional_delete(self, table: str, record_id: str, expected: Dict[str, Any]) -> bool:
        with self._lock:
            self._ensure_table(table)
            where, params = self._where_clause(expected)
            cursor = self._connection.execute(f"""
                DELETE FROM {table} WHERE id = ? {where}
            """, [record_id] + params)
            self._maybe_commit()
            return cursor.rowcount == 1

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")
            self._maybe_commit()

    def begin_transaction(self) -> None:
        with self._lock:
            if not self._in_transaction:
                # isolation_level='DEFERRED' starts transactions implicitly
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


class PostgreSQLStorage(StorageInterface):
    """PostgreSQL storage backend on JSONB documents"""

    def __init__(self, connection_string: str):
        try:
            import psycopg2
            import psycopg2.extras
            self.psycopg2 = psycopg2
            self.extras = psycopg2.extras
        except ImportError:
            raise ImportError("psycopg2 is required for PostgreSQL storage. Install with: pip install 'core-lending[postgres]'")

        self.connection_string = connection_string
        self._lock = threading.RLock()
        self._in_transaction = False
        self._tables = set()
        self._connection = self.psycopg2.connect(
            self.connection_string,
            cursor_factory=self.extras.RealDictCursor
        )
        self._connection.autocommit = False  # We handle transactions manually

    @contextmanager
    def _cursor(self):
        cursor = self._connection.cursor()
        try:
            yield cursor
            if not self._in_transaction:
                self._connection.commit()
        except Exception:
            if not self._in_transaction:
                self._connection.rollback()
            raise
        finally:
            cursor.close()

    def _ensure_table(self, table: str) -> None:
        with self._lock:
            if table in self._tables:
                return
            with self._cursor() as cursor:
                cursor.execute(f"""
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
            self._tables.add(table)

    @staticmethod
    def _where_clause(expected: Dict[str, Any]):
        conditions = []
        params: List[Any] = []
        for key, value in expected.items():
            path = key.split('.')
            if value is None:
                conditions.append("AND (data #>> %s::text[]) IS NULL")
                params.append(path)
            else:
                if isinstance(value, bool):
                    value = json.dumps(value)  # #>> renders booleans as true/false
                conditions.append("AND (data #>> %s::text[]) = %s")
                params.extend([path, str(value)])
        return " ".join(conditions), params

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc)
            with self._cursor() as cursor:
                cursor.execute(f"""
                    INSERT INTO {table} (id, data, created_at, updated_at)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (id) DO UPDATE SET
                        data = EXCLUDED.data,
                        updated_at = EXCLUDED.updated_at
                """, (record_id, json.dumps(data, default=str), now, now))

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            with self._cursor() as cursor:
                cursor.execute(f"SELECT data FROM {table} WHERE id = %s", (record_id,))
                row = cursor.fetchone()
                return dict(row['data']) if row else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        return self.find(table, {})

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            with self._cursor() as cursor:
                cursor.execute(f"DELETE FROM {table} WHERE id = %s", (record_id,))
                return cursor.rowcount > 0

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            with self._cursor() as cursor:
                cursor.execute(f"SELECT 1 FROM {table} WHERE id = %s LIMIT 1", (record_id,))
                return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            where, params = self._where_clause(filters)
            with self._cursor() as cursor:
                cursor.execute(f"""
                    SELECT data FROM {table} WHERE TRUE {where} ORDER BY created_at
                """, params)
                return [dict(row['data']) for row in cursor.fetchall()]

    def conditional_update(self, table: str, record_id: str,
                           expected: Dict[str, Any], updates: Dict[str, Any]) -> bool:
        with self._lock:
            self._ensure_table(table)
            where, params = self._where_clause(expected)
            with self._cursor() as cursor:
                cursor.execute(f"""
                    UPDATE {table}
                    SET data = data || %s::jsonb, updated_at = %s
                    WHERE id = %s {where}
                """, [json.dumps(updates, default=str), datetime.now(timezone.utc), record_id] + params)
                return cursor.rowcount == 1

    def conditional_delete(self, table: str, record_id: str, expected: Dict[str, Any]) -> bool:
        with self._lock:
            self._ensure_table(table)
            where, params = self._where_clause(expected)
            with self._cursor() as cursor:
                cursor.execute(f"DELETE FROM {table} WHERE id = %s {where}", [record_id] + params)
                return cursor.rowcount == 1

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            with self._cursor() as cursor:
                cursor.execute(f"SELECT COUNT(*) as count FROM {table}")
                return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        with self._lock:
            self._ensure_table(table)
            with self._cursor() as cursor:
                cursor.execute(f"DELETE FROM {table}")

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


def create_storage(database_url: str) -> StorageInterface:
    """
    Pick a storage backend from a database URL.

    memory://                 -> InMemoryStorage
    sqlite:///path/to/file.db -> SQLiteStorage (sqlite:// alone is in-memory SQLite)
    postgresql://...          -> PostgreSQLStorage
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite://"):]
        if path.startswith("/"):
            path = path[1:]
        return SQLiteStorage(path or ":memory:")
    if database_url.startswith(("postgresql://", "postgres://")):
        return PostgreSQLStorage(database_url)
    raise ValueError(f"Unsupported database URL: {database_url}")
