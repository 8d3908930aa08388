"""
Connection settings for the CLI.

Credentials come from Vault (``--use-vault``) or, per field, from the
command line, then ``SOURCE_DB_*`` / ``TARGET_DB_*`` environment variables,
then the per-driver ``SQLSERVER_*`` / ``POSTGRES_*`` variables.
"""

import argparse
import logging
import os
from typing import Any

from utils.database_types import DatabaseType
from utils.vault_client import VaultClient

from ..errors import ConfigurationError

logger = logging.getLogger(__name__)

# Driver-level fallbacks: (host, port, database, user, password)
DRIVER_ENV = {
    DatabaseType.SQLSERVER: (
        "SQLSERVER_HOST", "SQLSERVER_PORT", "SQLSERVER_DATABASE",
        "SQLSERVER_USER", "SQLSERVER_PASSWORD",
    ),
    DatabaseType.POSTGRESQL: (
        "POSTGRES_HOST", "POSTGRES_PORT", "POSTGRES_DB",
        "POSTGRES_USER", "POSTGRES_PASSWORD",
    ),
}
DEFAULT_PORTS = {DatabaseType.SQLSERVER: 1433, DatabaseType.POSTGRESQL: 5432}
FIELDS = ("host", "port", "database", "user", "password")


def _env_config(
    args: argparse.Namespace, role: str, db_type: DatabaseType
) -> dict[str, Any]:
    prefix = f"{role.upper()}_DB_"
    role_env = {
        "host": f"{prefix}HOST",
        "port": f"{prefix}PORT",
        "database": f"{prefix}NAME",
        "user": f"{prefix}USER",
        "password": f"{prefix}PASSWORD",
    }

    config: dict[str, Any] = {"db_type": db_type.value}
    for field, driver_env in zip(FIELDS, DRIVER_ENV[db_type]):
        value = getattr(args, f"{role}_{field}", None)
        if value is None:
            value = os.getenv(role_env[field]) or os.getenv(driver_env)
        config[field] = value

    driver = os.getenv(f"{prefix}DRIVER")
    if driver and db_type == DatabaseType.SQLSERVER:
        config["driver"] = driver

    try:
        config["port"] = int(config["port"] or DEFAULT_PORTS[db_type])
    except ValueError as e:
        raise ConfigurationError(f"Invalid {role} port: {config['port']!r}") from e

    missing = [field for field in ("host", "database", "user", "password") if not config[field]]
    if missing:
        raise ConfigurationError(
            f"Missing {role} connection settings: {', '.join(missing)} "
            f"(set --{role}-<field> or {prefix}* environment variables)"
        )
    return config


def source_db_type(args: argparse.Namespace) -> DatabaseType:
    value = getattr(args, "source_db_type", None) or os.getenv("SOURCE_DB_TYPE") or "sqlserver"
    try:
        return DatabaseType.parse(value)
    except ValueError as e:
        raise ConfigurationError(str(e)) from e


def get_connection_configs(args: argparse.Namespace) -> tuple[dict[str, Any], dict[str, Any]]:
    """
    Get source and target connection configs from Vault or environment/args.

    Args:
        args: Parsed command-line arguments

    Returns:
        Tuple of (source_config, target_config), each accepted by
        ``utils.db_pool.initialize_pools``

    Raises:
        ConfigurationError: If settings are missing or Vault cannot be read
    """
    if args.use_vault:
        try:
            vault_client = VaultClient()
            source_config = vault_client.get_connection_config("source")
            target_config = vault_client.get_connection_config("target")
        except Exception as e:
            raise ConfigurationError(f"Failed to fetch credentials from Vault: {e}") from e
        logger.info("Successfully fetched credentials from Vault")
    else:
        source_config = _env_config(args, "source", source_db_type(args))
        target_config = _env_config(args, "target", DatabaseType.SQLSERVER)

    if DatabaseType.parse(target_config.get("db_type", "sqlserver")) != DatabaseType.SQLSERVER:
        raise ConfigurationError("The target database must be SQL Server")

    logger.info(
        f"Source: {source_config['db_type']}://{source_config['host']}/{source_config['database']}, "
        f"target: {target_config['host']}/{target_config['database']}"
    )
    return source_config, target_config
