# Copyright (c) 2026 TempoOS Contributors. All Rights Reserved.

"""
API Dependencies — FastAPI dependency injection.
"""

from __future__ import annotations

from typing import AsyncIterator, Optional

from fastapi import Depends, Header, HTTPException, Request

from ehr_data.core.tenant import TenantContext
from ehr_data.tenancy.errors import InvalidTenantIdError
from ehr_data.tenancy.scope import TenantPool, TenantSession


async def get_current_tenant(
    authorization: Optional[str] = Header(None, alias="Authorization"),
    x_tenant_id: Optional[str] = Header(None, alias="X-Tenant-Id"),
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
) -> TenantContext:
    """
    Extract tenant and user context from request headers.

    Headers:
      - X-Tenant-Id: tenant isolation key (required)
      - X-User-Id:   acting user, recorded on the connection as app.current_user_id
      - Authorization: fallback tenant identification

    The identifier is validated here, before any connection is touched.
    """
    tenant_id = x_tenant_id
    if not tenant_id and authorization:
        parts = authorization.split(" ")
        if len(parts) == 2:
            tenant_id = parts[1]

    if not tenant_id:
        raise HTTPException(status_code=401, detail="Missing tenant identification")

    try:
        return TenantContext(tenant_id=tenant_id, user_id=x_user_id)
    except InvalidTenantIdError as exc:
        raise HTTPException(status_code=400, detail=exc.message)


def get_tenant_pool(request: Request) -> TenantPool:
    pool = getattr(request.app.state, "tenant_pool", None)
    if pool is None:
        raise RuntimeError("TenantPool not initialized. Start the app through its lifespan.")
    return pool


async def tenant_session(
    tenant: TenantContext = Depends(get_current_tenant),
    pool: TenantPool = Depends(get_tenant_pool),
) -> AsyncIterator[TenantSession]:
    """Yield a TenantSession bound to the request's tenant for the request's duration."""
    async with pool.scope(tenant.tenant_id, user_id=tenant.user_id) as db:
        yield db
