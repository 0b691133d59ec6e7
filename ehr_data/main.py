# Copyright (c) 2026 TempoOS Contributors. All Rights Reserved.

"""
EHR Data Service Entry Point.

FastAPI app whose lifespan owns the TenantPool: opened at startup,
closed at shutdown, reachable by handlers through app.state.

Entry point: uvicorn ehr_data.main:app --host 0.0.0.0 --port 8200
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from ehr_data.api.errors import tenancy_error_handler
from ehr_data.api.middleware import TraceMiddleware
from ehr_data.api.observability import router as observability_router
from ehr_data.core.config import settings
from ehr_data.core.logging import setup_logging
from ehr_data.storage.database import init_db
from ehr_data.tenancy.errors import TenancyError
from ehr_data.tenancy.scope import TenantPool

logger = logging.getLogger("ehr.main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage startup/shutdown of the tenant pool."""
    setup_logging(settings.LOG_LEVEL)
    pool = getattr(app.state, "tenant_pool", None)
    owned = pool is None
    if owned:
        pool = TenantPool.from_settings(settings)
        await init_db(pool.engine)
        app.state.tenant_pool = pool
    logger.info("[ehr] Tenant pool ready (shared schema %s)", pool.shared_schema)
    yield
    if owned:
        await pool.close()
        app.state.tenant_pool = None
    logger.info("[ehr] Shutdown complete")


app = FastAPI(
    title="EHR Data",
    description="Multi-tenant EHR data-access service",
    version="0.1.0",
    lifespan=lifespan,
)

# ── Middleware ───────────────────────────────────────────────
app.add_middleware(TraceMiddleware)

# ── Error Handlers ──────────────────────────────────────────
app.add_exception_handler(TenancyError, tenancy_error_handler)

# ── Routes ──────────────────────────────────────────────────
app.include_router(observability_router)
