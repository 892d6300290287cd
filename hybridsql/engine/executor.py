# HybridSQL - SQL Executor
# ========================
"""
SQL Executor
============
Executes validated SQL queries against DuckDB.

Query errors (syntax, unknown table or column, timeout) are returned in
ExecutionResult.error_message. Failure to reach the database at all
raises ExecutionServiceUnavailable.
"""

import os
import time
import logging
import threading
from typing import Any, Dict, List, Optional, Tuple
from dataclasses import dataclass

import duckdb

from .errors import ExecutionServiceUnavailable
from .models import ExecutionResult

logger = logging.getLogger(__name__)


@dataclass
class ExecutorConfig:
    """Configuration for SQL executor."""
    db_path: str = ":memory:"

    # Timeout in seconds (0 = no timeout)
    timeout_seconds: int = 30

    # Maximum rows to return
    max_rows: int = 10000

    # Read-only mode (should always be True for safety)
    read_only: bool = True

    # Memory limit for DuckDB (in bytes, 0 = unlimited)
    memory_limit: int = 0

    @classmethod
    def from_env(cls) -> "ExecutorConfig":
        """Create config from environment variables."""
        return cls(
            db_path=os.getenv("DUCKDB_PATH", ":memory:"),
            timeout_seconds=int(os.getenv("SQL_TIMEOUT_SECONDS", "30")),
            max_rows=int(os.getenv("SQL_MAX_ROWS", "10000")),
            read_only=os.getenv("DUCKDB_READ_ONLY", "true").lower() == "true",
            memory_limit=int(os.getenv("DUCKDB_MEMORY_LIMIT", "0")),
        )


class SQLExecutor:
    """
    Executes SQL queries against DuckDB.

    Features:
    - Timeout enforcement (query interrupted)
    - Read-only mode
    - Result size limits
    - EXPLAIN dry runs

    Example:
        executor = SQLExecutor(ExecutorConfig(db_path="warehouse.duckdb"))
        result = executor.execute(validated_sql, max_rows=100)
        if result.success:
            print(result.data)
        else:
            print(result.error_message)
    """

    def __init__(self,
                 config: Optional[ExecutorConfig] = None,
                 connection=None):
        """
        Initialize executor.

        Args:
            config: Executor configuration
            connection: Optional shared DuckDB connection; each call uses its own cursor

        An in-memory database is opened once and kept for the life of the
        executor, so tables created through it stay visible to later calls.
        File databases are opened per call.
        """
        self.config = config or ExecutorConfig()
        self.db_path = self.config.db_path
        self._shared_connection = connection
        self._owns_connection = False
        self._connection_lock = threading.Lock()

    def _connect(self):
        """Open a cursor. Returns (cursor, close_fn)."""
        try:
            if self._shared_connection is None and self.db_path == ":memory:":
                with self._connection_lock:
                    if self._shared_connection is None:
                        # In-memory databases cannot be opened read-only
                        self._shared_connection = self._open(read_only=False)
                        self._owns_connection = True

            if self._shared_connection is not None:
                cursor = self._shared_connection.cursor()
                return cursor, cursor.close

            conn = self._open(read_only=self.config.read_only)
            return conn, conn.close
        except (duckdb.IOException, duckdb.ConnectionException) as e:
            logger.error(f"Database unavailable ({self.db_path}): {e}")
            raise ExecutionServiceUnavailable(str(e)) from e

    def _open(self, read_only: bool):
        conn = duckdb.connect(self.db_path, read_only=read_only)
        if self.config.memory_limit > 0:
            safe_limit = int(self.config.memory_limit)
            conn.execute(f"SET memory_limit='{safe_limit}'")
        return conn

    def close(self):
        """Close the in-memory database opened by this executor."""
        with self._connection_lock:
            if self._owns_connection and self._shared_connection is not None:
                self._shared_connection.close()
                self._shared_connection = None
                self._owns_connection = False

    def execute(self, sql: str, max_rows: Optional[int] = None) -> ExecutionResult:
        """
        Execute SQL query.

        Args:
            sql: Validated SQL query
            max_rows: Row cap for this call (config.max_rows otherwise)

        Returns:
            ExecutionResult with data or error

        Raises:
            ExecutionServiceUnavailable: If the database cannot be opened
        """
        start_time = time.time()
        limit = max_rows or self.config.max_rows

        if not sql or not sql.strip():
            return ExecutionResult(
                success=False,
                error_message="Empty SQL query"
            )

        conn, close = self._connect()
        timer = None
        try:
            if self.config.timeout_seconds > 0:
                timer = threading.Timer(self.config.timeout_seconds, conn.interrupt)
                timer.daemon = True
                timer.start()

            result = conn.execute(sql)
            columns = [desc[0] for desc in result.description] if result.description else []
            rows = result.fetchmany(limit + 1)

            truncated = len(rows) > limit
            data = [dict(zip(columns, row)) for row in rows[:limit]]

            return ExecutionResult(
                success=True,
                data=data,
                columns=columns,
                row_count=len(data),
                execution_time_ms=(time.time() - start_time) * 1000,
                truncated=truncated,
                sql_executed=sql
            )

        except duckdb.InterruptException:
            error_msg = f"Query timed out after {self.config.timeout_seconds}s"
            logger.error(error_msg)
            return self._failure(sql, error_msg, start_time)

        except duckdb.CatalogException as e:
            error_msg = str(e)
            if "Table" in error_msg and "does not exist" in error_msg:
                error_msg = f"Table not found: {error_msg}"
            elif "Column" in error_msg and "does not exist" in error_msg:
                error_msg = f"Column not found: {error_msg}"
            logger.error(f"SQL catalog error: {error_msg}")
            return self._failure(sql, error_msg, start_time)

        except duckdb.ParserException as e:
            logger.error(f"SQL parser error: {e}")
            return self._failure(sql, f"SQL syntax error: {e}", start_time)

        except duckdb.BinderException as e:
            logger.error(f"SQL binder error: {e}")
            return self._failure(sql, f"Column reference error: {e}", start_time)

        except (duckdb.IOException, duckdb.ConnectionException) as e:
            logger.error(f"Database unavailable during execution: {e}")
            raise ExecutionServiceUnavailable(str(e)) from e

        except duckdb.Error as e:
            logger.error(f"SQL execution error: {e}")
            return self._failure(sql, str(e), start_time)

        finally:
            if timer is not None:
                timer.cancel()
            close()

    @staticmethod
    def _failure(sql: str, error_msg: str, start_time: float) -> ExecutionResult:
        return ExecutionResult(
            success=False,
            data=None,
            row_count=0,
            execution_time_ms=(time.time() - start_time) * 1000,
            error_message=error_msg,
            sql_executed=sql
        )

    def explain(self, sql: str) -> Tuple[bool, Optional[str]]:
        """
        Dry-run a statement with EXPLAIN.

        Returns:
            (True, None) if the statement plans, else (False, error message)
        """
        conn, close = self._connect()
        try:
            conn.execute(f"EXPLAIN {sql}")
            return True, None
        except duckdb.Error as e:
            return False, str(e)
        finally:
            close()

    def get_tables(self) -> List[str]:
        """Get list of available tables."""
        conn, close = self._connect()
        try:
            result = conn.execute("""
                SELECT table_name
                FROM information_schema.tables
                WHERE table_schema = 'main'
                ORDER BY table_name
            """)
            return [row[0] for row in result.fetchall()]
        finally:
            close()

    def get_columns(self, table_name: str) -> List[Dict[str, str]]:
        """Get columns for a table."""
        conn, close = self._connect()
        try:
            result = conn.execute("""
                SELECT column_name, data_type
                FROM information_schema.columns
                WHERE table_name = ?
                ORDER BY ordinal_position
            """, [table_name])
            return [{'name': row[0], 'type': row[1]} for row in result.fetchall()]
        finally:
            close()

    def validate_connection(self) -> bool:
        """Validate database connection."""
        try:
            conn, close = self._connect()
            close()
            return True
        except ExecutionServiceUnavailable:
            return False


class MockExecutor(SQLExecutor):
    """
    Mock executor for testing without a real database.

    Returns predefined results based on query patterns.
    """

    def __init__(self):
        self.config = ExecutorConfig()
        self.db_path = ":memory:"
        self._mock_data: Dict[str, List[Dict[str, Any]]] = {}
        self._mock_errors: Dict[str, str] = {}
        self._lock = threading.Lock()
        self.unavailable = False
        self.executed: List[str] = []

    def set_mock_data(self, query_pattern: str, data: List[Dict[str, Any]]):
        """Set mock data for SQL containing query_pattern."""
        self._mock_data[query_pattern.lower()] = data

    def set_mock_error(self, query_pattern: str, error_message: str):
        """Fail SQL containing query_pattern with error_message."""
        self._mock_errors[query_pattern.lower()] = error_message

    def execute(self, sql: str, max_rows: Optional[int] = None) -> ExecutionResult:
        if self.unavailable:
            raise ExecutionServiceUnavailable("mock database offline")

        with self._lock:
            self.executed.append(sql)

        sql_lower = sql.lower()
        for pattern, message in self._mock_errors.items():
            if pattern in sql_lower:
                return self._failure(sql, message, time.time())

        data: List[Dict[str, Any]] = []
        for pattern, rows in self._mock_data.items():
            if pattern in sql_lower:
                data = rows
                break

        limit = max_rows or self.config.max_rows
        return ExecutionResult(
            success=True,
            data=list(data[:limit]),
            columns=list(data[0].keys()) if data else [],
            row_count=min(len(data), limit),
            truncated=len(data) > limit,
            sql_executed=sql
        )

    def explain(self, sql: str) -> Tuple[bool, Optional[str]]:
        if self.unavailable:
            raise ExecutionServiceUnavailable("mock database offline")
        return True, None

    def get_tables(self) -> List[str]:
        return []

    def validate_connection(self) -> bool:
        return not self.unavailable
