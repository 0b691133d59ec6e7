# Copyright (c) 2026 TempoOS Contributors. All Rights Reserved.

"""
API Error Handling — Tenancy error kinds to HTTP responses.
"""

from __future__ import annotations

import uuid

from fastapi import Request
from fastapi.responses import JSONResponse

from ehr_data.tenancy.errors import (
    ConstraintViolationError,
    InvalidTenantIdError,
    RecordNotFoundError,
    ScopeClosedError,
    TenancyError,
    TenantNotProvisionedError,
    TenantUnavailableError,
)

STATUS_BY_ERROR = (
    (InvalidTenantIdError, 400),
    (TenantNotProvisionedError, 404),
    (RecordNotFoundError, 404),
    (ConstraintViolationError, 409),
    (TenantUnavailableError, 503),
    (ScopeClosedError, 500),
)


def status_for(exc: TenancyError) -> int:
    for error_cls, status in STATUS_BY_ERROR:
        if isinstance(exc, error_cls):
            return status
    return 500


async def tenancy_error_handler(request: Request, exc: TenancyError) -> JSONResponse:
    """Global exception handler for TenancyError."""
    trace_id = getattr(request.state, "trace_id", None) or str(uuid.uuid4())
    details = {"tenant_id": exc.tenant_id, "phase": exc.phase}
    if isinstance(exc, ConstraintViolationError):
        details["constraint"] = exc.constraint
    headers = {"Retry-After": "1"} if isinstance(exc, TenantUnavailableError) else None
    return JSONResponse(
        status_code=status_for(exc),
        content={
            "code": exc.kind.upper(),
            "message": exc.message,
            "trace_id": trace_id,
            "details": details,
        },
        headers=headers,
    )
