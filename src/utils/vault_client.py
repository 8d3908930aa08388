"""
HashiCorp Vault client for database credentials (KV v2 over HTTP).

Secrets live under ``<mount>/<prefix>/<role>`` (default
``secret/table-mirror/source`` and ``secret/table-mirror/target``) and hold
``db_type``, ``host``, ``port``, ``database``, ``username``, ``password``.
"""

import logging
import os
import re
from typing import Any

import requests

logger = logging.getLogger(__name__)

SAFE_PATH = re.compile(r"^[a-zA-Z0-9/_-]+$")
ROLES = ("source", "target")
REQUIRED_FIELDS = ("host", "database", "username", "password")
DEFAULT_PORTS = {"sqlserver": 1433, "postgresql": 5432}


class VaultClient:
    """
    Minimal Vault KV v2 reader.

    Args:
        vault_addr: Server address (default: ``VAULT_ADDR``)
        vault_token: Token (default: ``VAULT_TOKEN``)
        namespace: Vault Enterprise namespace
        timeout: Per-request timeout in seconds

    Raises:
        ValueError: If the address or token is missing
    """

    def __init__(
        self,
        vault_addr: str | None = None,
        vault_token: str | None = None,
        namespace: str | None = None,
        timeout: float = 10.0,
    ):
        vault_addr = vault_addr or os.getenv("VAULT_ADDR")
        vault_token = vault_token or os.getenv("VAULT_TOKEN")

        if not vault_addr:
            raise ValueError(
                "Vault address not provided. Set VAULT_ADDR or pass vault_addr."
            )
        if not vault_token:
            raise ValueError(
                "Vault token not provided. Set VAULT_TOKEN or pass vault_token."
            )

        self.vault_addr = vault_addr.rstrip("/")
        self.timeout = timeout
        self.session = requests.Session()
        self.session.headers.update({"X-Vault-Token": vault_token})
        if namespace:
            self.session.headers["X-Vault-Namespace"] = namespace

        logger.info(f"Initialized Vault client for {self.vault_addr}")

    @staticmethod
    def _kv2_path(secret_path: str) -> str:
        """
        Map a secret path onto the KV v2 data endpoint.

        Args:
            secret_path: Path like ``secret/table-mirror/sqlserver``

        Returns:
            Path with ``data/`` inserted after the mount

        Raises:
            ValueError: If the path is empty or unsafe
        """
        if not secret_path or not isinstance(secret_path, str):
            raise ValueError("secret_path must be a non-empty string")
        if ".." in secret_path or secret_path.startswith("/") or not SAFE_PATH.match(secret_path):
            raise ValueError(
                f"Invalid secret_path: {secret_path!r}. Only letters, digits, "
                "'/', '_' and '-' are allowed, without traversal."
            )
        if "/data/" in secret_path:
            return secret_path
        mount, _, rest = secret_path.partition("/")
        return f"{mount}/data/{rest}" if rest else f"{mount}/data"

    def get_secret(self, secret_path: str) -> dict[str, Any]:
        """
        Read the latest version of a KV v2 secret.

        Raises:
            ValueError: If the path is invalid, the secret is missing or empty
            requests.RequestException: If Vault cannot be reached or errors
        """
        path = self._kv2_path(secret_path)
        response = self.session.get(f"{self.vault_addr}/v1/{path}", timeout=self.timeout)

        if response.status_code == 404:
            raise ValueError(f"Secret not found at path: {path}")
        response.raise_for_status()

        secret_data = response.json().get("data", {}).get("data", {})
        if not secret_data:
            raise ValueError(f"No data found in secret at path: {path}")
        return secret_data

    def get_connection_config(
        self, role: str, prefix: str = "secret/table-mirror"
    ) -> dict[str, Any]:
        """
        Connection config for ``role`` ("source" or "target").

        Returns:
            Dict accepted by ``utils.db_pool.create_pool``

        Raises:
            ValueError: If the role is unknown or required fields are missing
        """
        if role not in ROLES:
            raise ValueError(f"Unsupported role: {role!r}. Must be one of {ROLES}.")

        secret = self.get_secret(f"{prefix}/{role}")

        missing = [name for name in REQUIRED_FIELDS if name not in secret]
        if missing:
            raise ValueError(f"Missing required fields in {role} secret: {', '.join(missing)}")

        db_type = secret.get("db_type", "sqlserver")
        config = {
            "db_type": db_type,
            "host": secret["host"],
            "port": int(secret.get("port", DEFAULT_PORTS.get(db_type, 1433))),
            "database": secret["database"],
            "user": secret["username"],
            "password": secret["password"],
        }
        if "driver" in secret:
            config["driver"] = secret["driver"]

        logger.info(f"Fetched {role} credentials from Vault")
        return config

    def health_check(self) -> bool:
        """True when Vault is initialized and unsealed (active or standby)."""
        try:
            response = self.session.get(
                f"{self.vault_addr}/v1/sys/health", timeout=self.timeout
            )
        except requests.RequestException as e:
            logger.error(f"Vault health check failed: {e}")
            return False
        return response.status_code in (200, 429, 472, 473)
