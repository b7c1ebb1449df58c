"""
Embedded Database Manager for the Transportation Invoicing Engine.

This module wraps the single-writer SQLite file that backs the mileage cache:
- One connection per database file, opened and closed by its owner
- Retry logic with exponential backoff for transient "database is locked" errors
- Health checks and connection metrics
- Proper error handling and logging

Usage:
    >>> from backend.core.database import EmbeddedDatabase
    >>> database = EmbeddedDatabase("data/mileage_cache.db")
    >>> database.connect()
    >>> database.execute_query("SELECT 1 AS ok", fetch="one")
    {'ok': 1}
"""

import random
import sqlite3
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Generator, List, Optional, Tuple, Union

import structlog


logger = structlog.get_logger(__name__)


@dataclass
class ConnectionMetrics:
    """Connection metrics for monitoring"""
    total_connections: int = 0
    failed_connections: int = 0
    total_queries: int = 0
    failed_queries: int = 0
    avg_query_time: float = 0.0
    last_health_check: Optional[datetime] = None
    health_check_passed: bool = False


@dataclass
class RetryConfig:
    """Retry configuration for database and sync operations"""
    max_attempts: int = 3
    base_delay: float = 0.1
    max_delay: float = 5.0
    exponential_base: float = 2.0
    jitter: bool = True

    def delay_for(self, attempt: int) -> float:
        """Backoff delay before the retry following a failed ``attempt`` (0-based)"""
        delay = min(
            self.base_delay * (self.exponential_base ** attempt),
            self.max_delay
        )
        if self.jitter:
            delay *= (0.5 + random.random() * 0.5)
        return delay


class DatabaseConnectionError(Exception):
    """Raised when database connection fails"""
    pass


class DatabaseQueryError(Exception):
    """Raised when database query fails"""
    pass


def _dict_row_factory(cursor: sqlite3.Cursor, row: Tuple) -> Dict[str, Any]:
    return {column[0]: row[index] for index, column in enumerate(cursor.description)}


class EmbeddedDatabase:
    """Single SQLite connection with monitoring and retry logic"""

    def __init__(
        self,
        db_path: Union[str, Path],
        retry_config: Optional[RetryConfig] = None
    ):
        self.db_path = Path(db_path)
        self.retry_config = retry_config or RetryConfig()

        self._connection: Optional[sqlite3.Connection] = None
        self._metrics = ConnectionMetrics()
        self._logger = logger.bind(database=str(self.db_path))

    @property
    def is_connected(self) -> bool:
        return self._connection is not None

    def connect(self) -> None:
        """Open the database file, creating its directory when needed"""
        if self._connection is not None:
            return

        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._connection = sqlite3.connect(str(self.db_path))
            self._connection.row_factory = _dict_row_factory
            self._metrics.total_connections += 1
            self._logger.info("database_connected")
        except (sqlite3.Error, OSError) as e:
            self._metrics.failed_connections += 1
            self._logger.error("database_connection_failed", error=str(e))
            raise DatabaseConnectionError(f"Failed to open database {self.db_path}: {e}")

    @contextmanager
    def get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Yield the open connection, committing on success and rolling back on error"""
        if self._connection is None:
            raise DatabaseConnectionError(f"Database not connected: {self.db_path}")

        try:
            yield self._connection
            self._connection.commit()
        except sqlite3.Error:
            self._connection.rollback()
            raise

    def execute_query(
        self,
        query: str,
        params: Optional[Tuple] = None,
        fetch: str = "none"
    ) -> Optional[Union[List[Dict[str, Any]], Dict[str, Any], int]]:
        """
        Execute a query with retry logic and metrics tracking.

        Args:
            query: SQL statement with ``?`` placeholders
            params: Positional parameters
            fetch: "none", "one", "all", or "lastrowid"

        Returns:
            Rows as dicts, a single dict, the inserted row id, or None
        """
        start_time = time.time()

        for attempt in range(self.retry_config.max_attempts):
            try:
                with self.get_connection() as conn:
                    cursor = conn.execute(query, params or ())

                    result = None
                    if fetch == "all":
                        result = cursor.fetchall()
                    elif fetch == "one":
                        result = cursor.fetchone()
                    elif fetch == "lastrowid":
                        result = cursor.lastrowid

                query_time = time.time() - start_time
                self._metrics.total_queries += 1
                self._metrics.avg_query_time = (
                    (self._metrics.avg_query_time * (self._metrics.total_queries - 1) + query_time)
                    / self._metrics.total_queries
                )
                return result

            except sqlite3.OperationalError as e:
                self._metrics.failed_queries += 1
                self._logger.warning(
                    "query_execution_failed",
                    attempt=attempt + 1,
                    error=str(e),
                    query=query[:100] + "..." if len(query) > 100 else query
                )

                if attempt == self.retry_config.max_attempts - 1:
                    raise DatabaseQueryError(
                        f"Query failed after {self.retry_config.max_attempts} attempts: {e}"
                    )
                time.sleep(self.retry_config.delay_for(attempt))

            except sqlite3.Error as e:
                self._metrics.failed_queries += 1
                self._logger.error("query_execution_error", error=str(e))
                raise DatabaseQueryError(f"Query failed: {e}")

    def execute_script(self, script: str) -> None:
        """Run a multi-statement DDL script"""
        try:
            with self.get_connection() as conn:
                conn.executescript(script)
        except sqlite3.Error as e:
            self._logger.error("script_execution_failed", error=str(e))
            raise DatabaseQueryError(f"Script execution failed: {e}")

    def health_check(self) -> bool:
        """Perform health check on the connection"""
        try:
            result = self.execute_query("SELECT 1 AS health_check", fetch="one")
            success = result is not None and result.get("health_check") == 1

            self._metrics.last_health_check = datetime.now()
            self._metrics.health_check_passed = success

            if not success:
                self._logger.warning("health_check_unexpected_result")
            return success

        except (DatabaseConnectionError, DatabaseQueryError) as e:
            self._metrics.last_health_check = datetime.now()
            self._metrics.health_check_passed = False
            self._logger.error("health_check_failed", error=str(e))
            return False

    def get_metrics(self) -> ConnectionMetrics:
        """Get current connection metrics"""
        return self._metrics

    def close(self) -> None:
        """Close the connection"""
        if self._connection is not None:
            self._connection.close()
            self._connection = None
            self._logger.info("database_connection_closed")
