# Copyright (c) 2026 TempoOS Contributors. All Rights Reserved.
"""Integration tests for many concurrent tenant scopes over a small pool (real PostgreSQL)."""

import asyncio

import pytest
from sqlalchemy import text

from ehr_data.storage.repositories import PatientRepository
from ehr_data.tenancy.errors import TenantUnavailableError
from ehr_data.tenancy.scope import with_tenant

pytestmark = pytest.mark.integration


class TestConcurrentScopes:
    @pytest.mark.asyncio
    async def test_scopes_never_see_each_other(self, pool_factory, make_tenant):
        pool = await pool_factory(pool_size=3, max_overflow=0)
        tenants = [await make_tenant(f"conc{i}") for i in range(5)]

        async def work_for(index):
            tenant_id = tenants[index % len(tenants)]

            async def work(db):
                await PatientRepository(db).create(mrn=f"MRN-{index}", first_name="P", last_name=str(index))
                await asyncio.sleep(0.01)
                seen = await db.scalar(text("SELECT current_setting('app.current_tenant_id')"))
                return tenant_id, seen

            return await with_tenant(pool, tenant_id, work)

        results = await asyncio.gather(*(work_for(i) for i in range(30)))
        assert all(expected == seen for expected, seen in results)

        async def count(db):
            return await PatientRepository(db).count()

        for tenant_id in tenants:
            assert await with_tenant(pool, tenant_id, count) == 6

    @pytest.mark.asyncio
    async def test_exhausted_pool_is_unavailable(self, pool_factory, make_tenant):
        pool = await pool_factory(pool_size=1, max_overflow=0, pool_timeout=0.2)
        tenant_id = await make_tenant()
        holding = asyncio.Event()
        release = asyncio.Event()

        async def hold(db):
            holding.set()
            await release.wait()

        async def quick(db):
            return 1

        holder = asyncio.create_task(with_tenant(pool, tenant_id, hold))
        await holding.wait()
        try:
            with pytest.raises(TenantUnavailableError) as exc_info:
                await with_tenant(pool, tenant_id, quick)
            assert exc_info.value.phase == "acquiring"
        finally:
            release.set()
            await holder

        assert await with_tenant(pool, tenant_id, quick) == 1
