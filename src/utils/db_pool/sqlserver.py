"""SQL Server connection pool (pyodbc)."""

from typing import Any

import pyodbc
from opentelemetry import trace

from utils.tracing import trace_operation

from .base import BaseConnectionPool

DEFAULT_DRIVER = "ODBC Driver 18 for SQL Server"


def build_connection_string(
    host: str,
    port: int | None,
    database: str,
    user: str,
    password: str,
    driver: str = DEFAULT_DRIVER,
    trust_server_certificate: bool = True,
) -> str:
    """
    Build an ODBC connection string for SQL Server.

    Args:
        host: Server host
        port: Server port, or None for the driver default
        database: Database name
        user: Username
        password: Password
        driver: ODBC driver name
        trust_server_certificate: Accept a self-signed server certificate

    Returns:
        Connection string for ``pyodbc.connect``
    """
    server = f"{host},{port}" if port else host
    return (
        f"DRIVER={{{driver}}};"
        f"SERVER={server};"
        f"DATABASE={database};"
        f"UID={user};"
        f"PWD={password};"
        f"TrustServerCertificate={'yes' if trust_server_certificate else 'no'};"
        "Encrypt=yes;"
    )


def connection_string_value(conn_str: str, key: str) -> str | None:
    """Value of ``key`` in an ODBC connection string, or None."""
    for part in conn_str.split(";"):
        name, sep, value = part.partition("=")
        if sep and name.strip().upper() == key.upper():
            return value.strip()
    return None


class SQLServerConnectionPool(BaseConnectionPool):
    """
    Connection pool for SQL Server.

    Either ``connection_string`` or all of host/database/user/password must be
    given. Connections are handed out in autocommit mode; the merge writer
    switches autocommit off for its own chunk transactions and the pool
    restores it on release.
    """

    def __init__(
        self,
        host: str | None = None,
        port: int | None = 1433,
        database: str | None = None,
        user: str | None = None,
        password: str | None = None,
        driver: str = DEFAULT_DRIVER,
        connection_string: str | None = None,
        login_timeout: int = 10,
        **kwargs: Any,
    ):
        """
        Initialize SQL Server connection pool.

        Args:
            host: SQL Server host (required if connection_string not provided)
            port: SQL Server port
            database: Database name (required if connection_string not provided)
            user: Username (required if connection_string not provided)
            password: Password (required if connection_string not provided)
            driver: ODBC driver name
            connection_string: Full ODBC connection string, used as given
            login_timeout: Seconds to wait for a connection
            **kwargs: Additional arguments for BaseConnectionPool

        Raises:
            ValueError: If neither a connection string nor full credentials are given
        """
        if connection_string:
            self.connection_string = connection_string
            self.host = connection_string_value(connection_string, "SERVER") or "unknown"
            self.database = connection_string_value(connection_string, "DATABASE") or "unknown"
        else:
            if not all([host, database, user, password]):
                raise ValueError(
                    "Either connection_string or all of (host, database, user, password) "
                    "must be provided"
                )
            self.host = host
            self.database = database
            self.connection_string = build_connection_string(
                host, port, database, user, password, driver
            )
        self.login_timeout = login_timeout

        kwargs.setdefault("pool_name", f"sqlserver:{self.database}")
        super().__init__(**kwargs)

    def _create_connection(self) -> pyodbc.Connection:
        """
        Create a new SQL Server connection in autocommit mode.

        Returns:
            Open pyodbc connection

        Raises:
            pyodbc.Error: If the server cannot be reached or rejects the login
        """
        with trace_operation(
            "sqlserver.connect",
            kind=trace.SpanKind.CLIENT,
            db_host=self.host,
            db_name=self.database,
        ):
            conn = pyodbc.connect(self.connection_string, timeout=self.login_timeout)
            conn.autocommit = True
            return conn

    def _is_connection_healthy(self, conn: pyodbc.Connection) -> bool:
        """Check if SQL Server connection is healthy."""
        if conn is None:
            return False
        try:
            cursor = conn.cursor()
            try:
                cursor.execute("SELECT 1")
                cursor.fetchone()
            finally:
                cursor.close()
            return True
        except pyodbc.Error:
            return False

    def _reset_connection(self, conn: pyodbc.Connection) -> None:
        """Roll back an open transaction and restore autocommit."""
        if not conn.autocommit:
            conn.rollback()
            conn.autocommit = True

    def _close_connection(self, conn: pyodbc.Connection) -> None:
        """Close SQL Server connection."""
        if conn is not None:
            conn.close()

    def _get_db_type(self) -> str:
        """Get database type for metrics."""
        return "sqlserver"
