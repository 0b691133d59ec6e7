# Copyright (c) 2026 TempoOS Contributors. All Rights Reserved.

"""
Observability API — Health checks and scope metrics.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy import text

from ehr_data.api.deps import get_tenant_pool, tenant_session
from ehr_data.core.metrics import platform_metrics
from ehr_data.tenancy.scope import TenantPool, TenantSession

router = APIRouter(tags=["observability"])


@router.get("/health")
async def health_check(pool: TenantPool = Depends(get_tenant_pool)):
    """Process health; does not touch the database."""
    return {
        "status": "ok",
        "version": "0.1.0",
        "pool": "closed" if pool.closed else "open",
        "metrics": platform_metrics.snapshot(),
    }


@router.get("/api/metrics")
async def get_metrics():
    """Return current scope metrics."""
    return platform_metrics.snapshot()


@router.get("/api/tenant/health")
async def tenant_health(db: TenantSession = Depends(tenant_session)):
    """Confirm the requesting tenant is provisioned and reachable."""
    search_path = await db.scalar(text("SELECT current_setting('search_path')"))
    return {
        "status": "ok",
        "tenant_id": db.tenant_id,
        "schema": db.schema,
        "search_path": search_path,
    }
