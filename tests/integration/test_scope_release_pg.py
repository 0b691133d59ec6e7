# Copyright (c) 2026 TempoOS Contributors. All Rights Reserved.
"""Integration tests for connection state after a tenant scope ends (real PostgreSQL)."""

import asyncio

import pytest
from sqlalchemy import text

from ehr_data.storage.repositories import PatientRepository
from ehr_data.tenancy.errors import TenantNotProvisionedError
from ehr_data.tenancy.provisioning import tenant_exists
from ehr_data.tenancy.scope import with_tenant

pytestmark = pytest.mark.integration


async def _pooled_state(pool):
    """search_path and tenant setting of the (only) pooled connection."""
    async with pool.engine.connect() as conn:
        result = await conn.execute(text(
            "SELECT current_setting('search_path'), current_setting('app.current_tenant_id', true)"
        ))
        return tuple(result.one())


class TestReleaseState:
    @pytest.fixture
    async def single(self, pool_factory):
        return await pool_factory(pool_size=1, max_overflow=0)

    @pytest.mark.asyncio
    async def test_neutral_after_success(self, single, make_tenant):
        tenant_id = await make_tenant()

        async def work(db):
            return await db.scalar(text("SELECT current_setting('search_path')"))

        bound_path = await with_tenant(single, tenant_id, work)
        assert f"tenant_{tenant_id}" in bound_path

        search_path, tenant_setting = await _pooled_state(single)
        assert search_path == single.neutral_search_path
        assert not tenant_setting

        async with single.engine.connect() as conn:
            resolved = await conn.scalar(text("SELECT to_regclass('patient')"))
        assert resolved is None

    @pytest.mark.asyncio
    async def test_neutral_after_failure(self, single, make_tenant):
        tenant_id = await make_tenant()

        async def work(db):
            await PatientRepository(db).create(mrn="MRN-1", first_name="A", last_name="B")
            raise ValueError("abort")

        with pytest.raises(ValueError):
            await with_tenant(single, tenant_id, work)

        search_path, tenant_setting = await _pooled_state(single)
        assert search_path == single.neutral_search_path
        assert not tenant_setting

    @pytest.mark.asyncio
    async def test_failure_rolls_back(self, single, make_tenant):
        tenant_id = await make_tenant()

        async def work(db):
            await PatientRepository(db).create(mrn="MRN-1", first_name="A", last_name="B")
            raise ValueError("abort")

        with pytest.raises(ValueError):
            await with_tenant(single, tenant_id, work)

        async def count(db):
            return await PatientRepository(db).count()

        assert await with_tenant(single, tenant_id, count) == 0

    @pytest.mark.asyncio
    async def test_no_binding_after_timeout(self, single, make_tenant):
        tenant_id = await make_tenant()

        async def slow(db):
            await db.execute(text("SELECT pg_sleep(5)"))

        with pytest.raises(asyncio.TimeoutError):
            await with_tenant(single, tenant_id, slow, timeout=0.2)

        search_path, tenant_setting = await _pooled_state(single)
        assert f"tenant_{tenant_id}" not in search_path
        assert not tenant_setting

    @pytest.mark.asyncio
    async def test_binding_survives_inner_commit(self, single, make_tenant):
        tenant_id = await make_tenant()

        async def work(db):
            await PatientRepository(db).create(mrn="MRN-1", first_name="A", last_name="B")
            await db.commit()
            return await db.scalar(text("SELECT current_setting('search_path')"))

        assert f"tenant_{tenant_id}" in await with_tenant(single, tenant_id, work)


class TestUnprovisionedTenant:
    @pytest.mark.asyncio
    async def test_not_provisioned(self, pg_pool):
        ran = []

        async def work(db):
            ran.append(True)

        with pytest.raises(TenantNotProvisionedError) as exc_info:
            await with_tenant(pg_pool, "never_provisioned_xyz", work)
        assert exc_info.value.schema == "tenant_never_provisioned_xyz"
        assert ran == []
        assert await tenant_exists(pg_pool, "never_provisioned_xyz") is False
