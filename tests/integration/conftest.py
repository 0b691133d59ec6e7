# Copyright (c) 2026 TempoOS Contributors. All Rights Reserved.

"""
Integration test fixtures: real PostgreSQL.

These tests require a running PostgreSQL reachable at
EHR_TEST_DATABASE_URL (falls back to DATABASE_URL). They are skipped
when the database cannot be reached. Every tenant a test provisions
gets a random id and is dropped afterwards.
"""

import asyncio
import os
import uuid

import pytest
from sqlalchemy.exc import SQLAlchemyError

from ehr_data.core.config import settings
from ehr_data.storage.database import init_db
from ehr_data.tenancy.provisioning import deprovision_tenant, provision_tenant
from ehr_data.tenancy.scope import TenantPool

TEST_DATABASE_URL = os.environ.get("EHR_TEST_DATABASE_URL", settings.DATABASE_URL)


def _test_settings():
    return settings.model_copy(update={"DATABASE_URL": TEST_DATABASE_URL})


async def _open_pool(**engine_overrides) -> TenantPool:
    pool = TenantPool.from_settings(_test_settings(), **engine_overrides)
    try:
        await init_db(pool.engine)
    except (OSError, SQLAlchemyError, asyncio.TimeoutError) as exc:
        await pool.close()
        pytest.skip(f"PostgreSQL not reachable at {TEST_DATABASE_URL}: {exc}")
    return pool


@pytest.fixture
async def pg_pool():
    """TenantPool over the real database."""
    pool = await _open_pool(pool_size=4, max_overflow=0)
    yield pool
    await pool.close()


@pytest.fixture
async def pool_factory():
    """Open extra pools with custom sizing; all closed after the test."""
    pools = []

    async def _open(**engine_overrides) -> TenantPool:
        pool = await _open_pool(**engine_overrides)
        pools.append(pool)
        return pool

    yield _open
    for pool in pools:
        await pool.close()


@pytest.fixture
async def make_tenant(pg_pool):
    """Provision a fresh tenant per call; deprovision all of them afterwards."""
    created = []

    async def _make(prefix: str = "it") -> str:
        tenant_id = f"{prefix}_{uuid.uuid4().hex[:10]}"
        await provision_tenant(pg_pool, tenant_id)
        created.append(tenant_id)
        return tenant_id

    yield _make
    for tenant_id in created:
        await deprovision_tenant(pg_pool, tenant_id)
