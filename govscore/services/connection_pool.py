"""
Database connection pooling for the governance store.

Connections are reused across store calls. After repeated failures the pool
backs off for a fixed period instead of hammering the database with
authentication attempts.
"""

import threading
import time
from contextlib import contextmanager
from typing import Optional, Dict, Any

import psycopg2
from psycopg2 import pool

from govscore.config.database_config import get_database_config
from govscore.exceptions import StorageError
from govscore.utils.logger import logger


class DatabaseConnectionPool:
    """Thread-safe database connection pool with failure handling."""

    def __init__(self, min_connections: int = 1, max_connections: int = 8):
        self._pool: Optional[psycopg2.pool.ThreadedConnectionPool] = None
        self._lock = threading.Lock()
        self._min_connections = min_connections
        self._max_connections = max_connections
        self._last_failure_time = 0.0
        self._failure_count = 0
        self._max_failure_count = 3
        self._backoff_seconds = 30

    def _create_pool(self) -> psycopg2.pool.ThreadedConnectionPool:
        config = get_database_config()
        logger.info("DatabaseConnectionPool: Creating connection pool (min=%d, max=%d)",
                    self._min_connections, self._max_connections)
        return psycopg2.pool.ThreadedConnectionPool(
            self._min_connections,
            self._max_connections,
            options=f"-c statement_timeout={config.get_statement_timeout_ms()}",
            **config.get_connection_params()
        )

    def _should_retry(self) -> bool:
        if self._failure_count < self._max_failure_count:
            return True
        return time.time() - self._last_failure_time > self._backoff_seconds

    def _record_failure(self) -> None:
        self._failure_count += 1
        self._last_failure_time = time.time()

    def get_connection(self):
        """
        Get a connection from the pool.

        Raises:
            StorageError: when the pool is backing off or no connection can be made
        """
        with self._lock:
            if not self._should_retry():
                raise StorageError(
                    f"Database connection pool in backoff mode after {self._failure_count} failures; "
                    f"retry in {self._backoff_seconds} seconds."
                )

            if self._pool is None:
                try:
                    self._pool = self._create_pool()
                    self._failure_count = 0
                except Exception as e:
                    self._record_failure()
                    logger.error("DatabaseConnectionPool: Failed to create pool: %s", e)
                    raise StorageError(f"Failed to create database connection pool: {e}") from e

            try:
                conn = self._pool.getconn()
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
                return conn
            except Exception as e:
                self._record_failure()
                logger.error("DatabaseConnectionPool: Failed to get connection: %s", e)
                if self._failure_count >= 2:
                    logger.warning("DatabaseConnectionPool: Recreating pool due to persistent failures")
                    self._close_pool()
                raise StorageError(f"Failed to get database connection: {e}") from e

    def return_connection(self, conn, close_connection: bool = False):
        if self._pool is None:
            return
        try:
            self._pool.putconn(conn, close=close_connection)
        except Exception as e:
            logger.error("DatabaseConnectionPool: Error returning connection: %s", e)

    @contextmanager
    def connection(self):
        """
        Borrow a connection for one unit of work.

        Commits on success, rolls back and re-raises on error, and always
        returns the connection to the pool.
        """
        conn = self.get_connection()
        broken = False
        try:
            yield conn
            conn.commit()
        except Exception:
            try:
                conn.rollback()
            except psycopg2.Error:
                broken = True
            raise
        finally:
            self.return_connection(conn, close_connection=broken)

    def _close_pool(self):
        if self._pool is not None:
            try:
                self._pool.closeall()
                logger.info("DatabaseConnectionPool: Closed connection pool")
            except Exception as e:
                logger.error("DatabaseConnectionPool: Error closing pool: %s", e)
            finally:
                self._pool = None

    def close(self):
        with self._lock:
            self._close_pool()

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            stats = {
                "pool_exists": self._pool is not None,
                "failure_count": self._failure_count,
                "last_failure_time": self._last_failure_time,
                "in_backoff": not self._should_retry(),
            }
            if self._pool is not None:
                stats.update(min_connections=self._min_connections, max_connections=self._max_connections)
            return stats


# Global connection pool instance
_connection_pool: Optional[DatabaseConnectionPool] = None
_pool_lock = threading.Lock()


def get_connection_pool() -> DatabaseConnectionPool:
    global _connection_pool

    with _pool_lock:
        if _connection_pool is None:
            _connection_pool = DatabaseConnectionPool()
        return _connection_pool


def close_connection_pool():
    global _connection_pool

    with _pool_lock:
        if _connection_pool is not None:
            _connection_pool.close()
            _connection_pool = None
