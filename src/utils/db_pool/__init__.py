"""
Database connection pooling for the source and target endpoints.

A mapping descriptor may name its own source/target database, so pools are
kept per ``(role, database)``: the first run against a database opens its
pool and later runs borrow from it.

Usage:
    initialize_pools(source_config={...}, target_config={...})
    with get_pool("target", "Sales").acquire() as conn:
        ...
    close_pools()
"""

import logging
import threading
from typing import Any

from utils.database_types import DatabaseType

from .base import (
    BaseConnectionPool,
    ConnectionPoolError,
    PoolClosedError,
    PooledConnection,
    PoolExhaustedError,
)
from .postgres import PostgresConnectionPool
from .sqlserver import SQLServerConnectionPool

logger = logging.getLogger(__name__)

POOL_SETTINGS = (
    "min_size",
    "max_size",
    "max_idle_time",
    "max_lifetime",
    "health_check_interval",
    "acquire_timeout",
)

_configs: dict[str, dict[str, Any]] = {}
_pool_kwargs: dict[str, Any] = {}
_pools: dict[tuple[str, str | None], BaseConnectionPool] = {}
_lock = threading.Lock()


def create_pool(config: dict[str, Any], **pool_kwargs: Any) -> BaseConnectionPool:
    """
    Create a pool from a connection config.

    ``config["db_type"]`` selects the driver (default sqlserver); the remaining
    keys are passed to the pool class.
    """
    params = dict(config)
    db_type = DatabaseType.parse(params.pop("db_type", DatabaseType.SQLSERVER))
    if db_type == DatabaseType.POSTGRESQL:
        params.pop("driver", None)
        params.pop("connection_string", None)
        return PostgresConnectionPool(**params, **pool_kwargs)
    return SQLServerConnectionPool(**params, **pool_kwargs)


def initialize_pools(
    source_config: dict[str, Any] | None = None,
    target_config: dict[str, Any] | None = None,
    **pool_kwargs: Any,
) -> None:
    """
    Register connection configs for the ``source`` and ``target`` roles.

    Pools are opened lazily by ``get_pool``.

    Args:
        source_config: Source connection config (db_type, host, port, database, user, password)
        target_config: Target connection config
        **pool_kwargs: Pool settings (min_size, max_size, acquire_timeout, ...)
    """
    unknown = set(pool_kwargs) - set(POOL_SETTINGS)
    if unknown:
        raise ValueError(f"Unknown pool settings: {', '.join(sorted(unknown))}")

    with _lock:
        if source_config:
            _configs["source"] = dict(source_config)
        if target_config:
            _configs["target"] = dict(target_config)
        _pool_kwargs.update(pool_kwargs)

    logger.info(f"Connection pools configured for roles: {', '.join(sorted(_configs))}")


def get_pool(role: str, database: str | None = None) -> BaseConnectionPool:
    """
    Pool for ``role`` ("source" or "target"), switched to ``database`` if given.

    Raises:
        RuntimeError: If the role was not configured by ``initialize_pools``
    """
    with _lock:
        if role not in _configs:
            raise RuntimeError(f"{role} pool not initialized. Call initialize_pools() first.")

        key = (role, database)
        pool = _pools.get(key)
        if pool is None:
            config = dict(_configs[role])
            if database:
                config["database"] = database
                config.pop("connection_string", None)
            logger.info(f"Opening {role} pool for database {config.get('database')}")
            pool = create_pool(config, **_pool_kwargs)
            _pools[key] = pool
        return pool


def close_pools() -> None:
    """Close every open pool and forget the configs."""
    with _lock:
        for pool in _pools.values():
            pool.close()
        _pools.clear()
        _configs.clear()
        _pool_kwargs.clear()

    logger.info("All connection pools closed")


__all__ = [
    "BaseConnectionPool",
    "PostgresConnectionPool",
    "SQLServerConnectionPool",
    "PooledConnection",
    "ConnectionPoolError",
    "PoolExhaustedError",
    "PoolClosedError",
    "create_pool",
    "initialize_pools",
    "get_pool",
    "close_pools",
]
