"""
Pytest configuration and fixtures for table-mirror tests.
Provides in-memory endpoints, mappings and isolated metric registries.
"""

import pytest
from prometheus_client import CollectorRegistry

from fakes import MemoryTable
from table_mirror.mapping import MirrorSettings, TableMapping

CONNECTION_ENV = [
    f"{prefix}_{field}"
    for prefix in ("SOURCE_DB", "TARGET_DB")
    for field in ("TYPE", "HOST", "PORT", "NAME", "USER", "PASSWORD", "DRIVER")
] + [
    "SQLSERVER_HOST", "SQLSERVER_PORT", "SQLSERVER_DATABASE", "SQLSERVER_USER", "SQLSERVER_PASSWORD",
    "POSTGRES_HOST", "POSTGRES_PORT", "POSTGRES_DB", "POSTGRES_USER", "POSTGRES_PASSWORD",
    "MIRROR_CHUNK_SIZE", "MIRROR_PAGE_SIZE", "MIRROR_DELETE_BATCH_SIZE", "MIRROR_CLEANUP",
    "VAULT_ADDR", "VAULT_TOKEN", "OTLP_ENDPOINT",
]


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "slow: mark test as slow running")


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Tests never see connection or tuning settings from the outer environment."""
    for name in CONNECTION_ENV:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def registry() -> CollectorRegistry:
    """A fresh Prometheus registry per test."""
    return CollectorRegistry()


@pytest.fixture
def mapping() -> TableMapping:
    return TableMapping(
        source_schema="dbo",
        source_table="Customer",
        target_schema="bronze",
        target_table="Customer",
        primary_key=("id",),
    )


@pytest.fixture
def settings() -> MirrorSettings:
    """Small pages and chunks so multi-page paths run on a handful of rows."""
    return MirrorSettings(chunk_size=2, page_size=3, delete_batch_size=2)


@pytest.fixture
def source() -> MemoryTable:
    return MemoryTable(
        ["id", "name", "balance"],
        [
            {"id": 1, "name": "Ada", "balance": 10.0},
            {"id": 2, "name": "Grace", "balance": 20.0},
            {"id": 3, "name": "Linus", "balance": 30.0},
            {"id": 5, "name": "Guido", "balance": 50.0},
        ],
        table="Customer",
    )


@pytest.fixture
def target() -> MemoryTable:
    return MemoryTable(
        ["id", "name", "balance", "created_at", "updated_at"],
        [
            {"id": 1, "name": "Ada", "balance": 10.0},
            {"id": 2, "name": "Grace H.", "balance": 20.0},
            {"id": 4, "name": "Dennis", "balance": 40.0},
        ],
        schema="bronze",
        table="Customer",
    )
