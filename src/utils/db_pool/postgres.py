"""PostgreSQL connection pool (psycopg2)."""

from typing import Any

import psycopg2
import psycopg2.extensions
from opentelemetry import trace

from utils.tracing import trace_operation

from .base import BaseConnectionPool


class PostgresConnectionPool(BaseConnectionPool):
    """Connection pool for PostgreSQL sources."""

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        connect_timeout: int = 10,
        **kwargs: Any,
    ):
        """
        Initialize PostgreSQL connection pool.

        Args:
            host: PostgreSQL host
            port: PostgreSQL port
            database: Database name
            user: Username
            password: Password
            connect_timeout: Seconds to wait for a connection
            **kwargs: Additional arguments for BaseConnectionPool
        """
        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.password = password
        self.connect_timeout = connect_timeout

        kwargs.setdefault("pool_name", f"postgresql:{database}")
        super().__init__(**kwargs)

    def _create_connection(self) -> psycopg2.extensions.connection:
        """
        Create a new PostgreSQL connection in autocommit mode.

        Returns:
            Open psycopg2 connection

        Raises:
            psycopg2.OperationalError: If the server cannot be reached
        """
        with trace_operation(
            "postgres.connect",
            kind=trace.SpanKind.CLIENT,
            db_host=self.host,
            db_name=self.database,
        ):
            conn = psycopg2.connect(
                host=self.host,
                port=self.port,
                dbname=self.database,
                user=self.user,
                password=self.password,
                connect_timeout=self.connect_timeout,
                application_name="table-mirror",
            )
            conn.autocommit = True
            return conn

    def _is_connection_healthy(self, conn: psycopg2.extensions.connection) -> bool:
        """Check if PostgreSQL connection is healthy."""
        if conn is None or conn.closed:
            return False
        try:
            with conn.cursor() as cursor:
                cursor.execute("SELECT 1")
                cursor.fetchone()
            return True
        except (psycopg2.Error, psycopg2.Warning):
            return False

    def _reset_connection(self, conn: psycopg2.extensions.connection) -> None:
        """Roll back an open transaction and restore autocommit."""
        if conn.closed:
            raise psycopg2.InterfaceError("connection already closed")
        if not conn.autocommit:
            conn.rollback()
            conn.autocommit = True

    def _close_connection(self, conn: psycopg2.extensions.connection) -> None:
        """Close PostgreSQL connection."""
        if conn is not None and not conn.closed:
            conn.close()

    def _get_db_type(self) -> str:
        """Get database type for metrics."""
        return "postgresql"
