"""
Database management and connection handling.
"""

import sqlite3
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from ..core.exceptions import PersistenceError, ConfigurationError


class Transaction:
    """Cursor wrapper handed out by :meth:`DatabaseManager.transaction`.

    Every statement issued through it commits or rolls back together.
    """

    def __init__(self, cursor: Any):
        self._cursor = cursor

    def query(self, query: str, params: Optional[tuple] = None) -> List[Dict[str, Any]]:
        """Run a SELECT inside the transaction."""
        self._cursor.execute(query, params or ())
        if self._cursor.description is None:
            return []
        columns = [description[0] for description in self._cursor.description]
        return [dict(zip(columns, row)) for row in self._cursor.fetchall()]

    def execute(self, query: str, params: Optional[tuple] = None) -> int:
        """Run a write statement inside the transaction; returns affected rows."""
        self._cursor.execute(query, params or ())
        return self._cursor.rowcount


class DatabaseManager(ABC):
    """Abstract base class for database management."""

    @abstractmethod
    def connect(self) -> Any:
        """Create a database connection."""
        pass

    @abstractmethod
    def execute_query(self, query: str, params: Optional[tuple] = None) -> List[Dict[str, Any]]:
        """Execute a query and return results."""
        pass

    @abstractmethod
    def execute_update(self, query: str, params: Optional[tuple] = None) -> int:
        """Execute an update query and return affected rows."""
        pass

    @abstractmethod
    def execute_transaction(self, queries: List[tuple]) -> bool:
        """Execute multiple queries in a transaction."""
        pass

    @abstractmethod
    def transaction(self):
        """Context manager yielding a :class:`Transaction` holding the write lock."""
        pass

    @abstractmethod
    def read_transaction(self):
        """Context manager yielding a :class:`Transaction` over one read snapshot."""
        pass

    @abstractmethod
    def create_tables(self, schema: Dict[str, str]) -> None:
        """Create database tables from schema."""
        pass

    @abstractmethod
    def table_exists(self, table_name: str) -> bool:
        """Check if a table exists."""
        pass

    @abstractmethod
    def get_table_schema(self, table_name: str) -> List[Dict[str, Any]]:
        """Get table schema information."""
        pass


class SQLiteDatabase(DatabaseManager):
    """SQLite database implementation.

    A fresh connection is opened per operation. Write transactions start
    with ``BEGIN IMMEDIATE`` so concurrent writers queue on SQLite's lock
    instead of failing on a read-to-write upgrade, and the journal runs in
    WAL mode so readers are never blocked by a writer.
    """

    def __init__(self, database_path: str = "scholaris.db", timeout: float = 30.0):
        if database_path == ":memory:":
            raise ConfigurationError("SQLite database must be file backed; each operation opens its own connection")
        self._database_path = database_path
        self._timeout = timeout
        self._initialize_database()

    @property
    def database_path(self) -> str:
        return self._database_path

    def _initialize_database(self) -> None:
        """Initialize the database with the bookkeeping schema."""
        with self._get_connection() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS migrations (
                    id TEXT PRIMARY KEY,
                    name TEXT UNIQUE NOT NULL,
                    version INTEGER NOT NULL,
                    applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    description TEXT
                )
            """)

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Get database connection with proper cleanup."""
        conn = None
        try:
            conn = self.connect()
            yield conn
        except sqlite3.Error as e:
            if conn is not None and conn.in_transaction:
                conn.rollback()
            raise PersistenceError(f"Database error: {str(e)}")
        finally:
            if conn is not None:
                conn.close()

    def connect(self) -> sqlite3.Connection:
        """Create a database connection in autocommit mode."""
        conn = sqlite3.connect(
            self._database_path,
            timeout=self._timeout,
            check_same_thread=False,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def execute_query(self, query: str, params: Optional[tuple] = None) -> List[Dict[str, Any]]:
        """Execute a query and return results."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(query, params or ())

            columns = [description[0] for description in cursor.description]
            results = []
            for row in cursor.fetchall():
                results.append(dict(zip(columns, row)))
            return results

    def execute_update(self, query: str, params: Optional[tuple] = None) -> int:
        """Execute an update query and return affected rows."""
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(query, params or ())
            return cursor.rowcount

    def execute_transaction(self, queries: List[tuple]) -> bool:
        """Execute multiple queries in a transaction."""
        with self.transaction() as tx:
            for query, params in queries:
                tx.execute(query, params)
        return True

    @contextmanager
    def transaction(self) -> Iterator[Transaction]:
        """Open a write transaction.

        sqlite errors surface as :class:`PersistenceError`; any other
        exception raised by the caller rolls back and propagates unchanged.
        """
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield Transaction(conn.cursor())
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    @contextmanager
    def read_transaction(self) -> Iterator[Transaction]:
        """Open a deferred transaction for multi-statement reads.

        Under WAL the snapshot is taken by the first SELECT, so later
        statements see the same committed state even if a writer commits
        in between.
        """
        with self._get_connection() as conn:
            conn.execute("BEGIN")
            try:
                yield Transaction(conn.cursor())
            finally:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")

    def create_tables(self, schema: Dict[str, str]) -> None:
        """Create database tables from schema."""
        with self.transaction() as tx:
            for table_name, table_schema in schema.items():
                tx.execute(table_schema)

    def table_exists(self, table_name: str) -> bool:
        """Check if a table exists."""
        query = "SELECT name FROM sqlite_master WHERE type='table' AND name=?"
        results = self.execute_query(query, (table_name,))
        return len(results) > 0

    def get_table_schema(self, table_name: str) -> List[Dict[str, Any]]:
        """Get table schema information."""
        query = "SELECT name, type, \"notnull\", dflt_value, pk FROM pragma_table_info(?)"
        return self.execute_query(query, (table_name,))


class DatabaseFactory:
    """Factory for creating database instances."""

    @staticmethod
    def create_database(database_type: str, **kwargs) -> DatabaseManager:
        """Create a database instance based on type."""
        if database_type.lower() == "sqlite":
            return SQLiteDatabase(**kwargs)
        else:
            raise ConfigurationError(f"Unsupported database type: {database_type}")
