"""
Pytest configuration and shared fixtures for pgmirror tests.
"""

from contextlib import asynccontextmanager
from typing import Any, Dict, List
from unittest.mock import AsyncMock, MagicMock

import pytest
import yaml

from pgmirror.database.connection import ConnectionConfig
from pgmirror.database.introspection import ColumnDescriptor, TableSchema
from tests.fakes import CLIENT_COLUMNS, QUOTE_COLUMNS, FakeStore


# ============================================================================
# Store fixtures
# ============================================================================

@pytest.fixture
def source_store() -> FakeStore:
    return FakeStore("source")


@pytest.fixture
def target_store() -> FakeStore:
    return FakeStore("target")


@pytest.fixture
def client_columns() -> List[tuple]:
    return list(CLIENT_COLUMNS)


@pytest.fixture
def quote_columns() -> List[tuple]:
    return list(QUOTE_COLUMNS)


# ============================================================================
# Schema fixtures
# ============================================================================

@pytest.fixture
def clients_schema() -> TableSchema:
    """Source-side clients table."""
    return TableSchema(
        table_name="clients",
        columns=[
            ColumnDescriptor(
                name="id",
                sql_type="integer",
                nullable=False,
                default_expr="nextval('clients_id_seq'::regclass)",
                ordinal_position=1,
            ),
            ColumnDescriptor(
                name="name", sql_type="character varying", nullable=False,
                max_length=255, ordinal_position=2,
            ),
            ColumnDescriptor(
                name="email", sql_type="character varying", max_length=255, ordinal_position=3,
            ),
        ],
        primary_key_columns=("id",),
    )


# ============================================================================
# Mock pool fixtures
# ============================================================================

@pytest.fixture
def mock_connection():
    """Mock asyncpg connection with a working transaction() context manager."""
    conn = AsyncMock()
    conn.execute = AsyncMock(return_value="OK")
    conn.fetch = AsyncMock(return_value=[])
    conn.fetchrow = AsyncMock(return_value=None)
    conn.fetchval = AsyncMock(return_value=None)

    transaction = MagicMock()
    transaction.__aenter__ = AsyncMock(return_value=None)
    transaction.__aexit__ = AsyncMock(return_value=False)
    conn.transaction = MagicMock(return_value=transaction)
    return conn


@pytest.fixture
def mock_pool(mock_connection):
    """Mock ConnectionPool whose acquire() yields mock_connection."""
    pool = MagicMock()
    pool.name = "mock"

    @asynccontextmanager
    async def acquire():
        yield mock_connection

    pool.acquire = acquire
    pool.fetch = AsyncMock(return_value=[])
    pool.fetchrow = AsyncMock(return_value=None)
    pool.fetchval = AsyncMock(return_value=0)
    pool.execute = AsyncMock(return_value="OK")
    pool.initialize = AsyncMock()
    return pool


# ============================================================================
# Configuration fixtures
# ============================================================================

@pytest.fixture
def connection_config() -> ConnectionConfig:
    return ConnectionConfig(
        host="localhost",
        port=5432,
        database="app_dev",
        user="app",
        password="secret",
    )


@pytest.fixture
def sample_config_data() -> Dict[str, Any]:
    return {
        "source": {
            "host": "localhost",
            "database": "app_dev",
            "user": "app",
            "password": "${PGMIRROR_TEST_SOURCE_PASSWORD}",
            "ssl_mode": "disable",
        },
        "target": {
            "host": "db.example.com",
            "database": "app",
            "user": "app",
            "password": "${PGMIRROR_TEST_TARGET_PASSWORD}",
            "ssl_mode": "require",
            "connect_retries": 3,
        },
        "tables": ["clients", {"name": "quotes", "mode": "source_to_target"}],
        "sync": {"schema": "public", "batch_size": 25, "statement_timeout": 2.5},
        "logging": {"level": "DEBUG"},
    }


@pytest.fixture
def temp_config_file(tmp_path, sample_config_data, monkeypatch) -> str:
    """Write sample_config_data to a YAML file with its env vars set."""
    monkeypatch.setenv("PGMIRROR_TEST_SOURCE_PASSWORD", "local-secret")
    monkeypatch.setenv("PGMIRROR_TEST_TARGET_PASSWORD", "remote-secret")
    path = tmp_path / "pgmirror.yaml"
    path.write_text(yaml.dump(sample_config_data), encoding="utf-8")
    return str(path)
