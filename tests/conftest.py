"""Pytest configuration and fixtures."""

import pytest
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock

from db import DatabaseManager


@pytest.fixture
def mock_connection():
    """Create a mock asyncpg connection."""
    conn = AsyncMock()
    return conn


@pytest.fixture
def db_manager(mock_connection):
    """DatabaseManager whose pool hands out mock_connection."""
    db = DatabaseManager(
        host="localhost",
        port=5432,
        database="testdb",
        user="testuser",
        password="testpass",
    )

    @asynccontextmanager
    async def mock_acquire():
        yield mock_connection

    db.pool = MagicMock()
    db.pool.acquire = mock_acquire
    return db


@pytest.fixture
def mock_db():
    """Mock store with a resolvable default provider config."""
    db = AsyncMock()
    db.get_provider_config.return_value = {
        "name": "default",
        "endpoint": "https://api.upbound.io",
        "credentials_source": "None",
        "credentials_ref": None,
    }
    db.get_finalizers.return_value = []
    db.hard_delete_resource.return_value = True
    return db


@pytest.fixture
def sample_resource():
    """Sample repository permission row, as returned by the store."""
    return {
        "id": 1,
        "name": "team-a-read",
        "kind": "RepositoryPermission",
        "spec": {
            "organizationName": "acme",
            "repository": "configs",
            "teamId": "team-a",
            "permission": "read",
        },
        "provider_config_name": "default",
        "deletion_policy": "Delete",
        "external_name": None,
        "conditions": [],
        "status": "pending",
        "status_message": None,
        "generation": 1,
        "observed_generation": 0,
        "retry_count": 0,
        "finalizers": ["finalizer.managedresource"],
        "deleted_at": None,
        "last_reconcile_time": None,
        "next_reconcile_time": None,
    }
