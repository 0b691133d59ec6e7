# Copyright (c) 2026 TempoOS Contributors. All Rights Reserved.

"""
Tenancy Errors — Typed failure kinds of the tenant isolation core.

Every error raised by the core carries a stable ``kind`` plus the tenant
and scope phase it happened in, so callers can branch on the kind
without parsing messages:

  invalid_tenant          bad identifier, rejected before any I/O
  unavailable             pool exhausted / closed / connection failure
  not_provisioned         tenant schema does not exist
  constraint_violation    engine integrity rule rejected a write
    foreign_key_violation, unique_violation,
    not_null_violation, check_violation
  not_found               repository lookup found no row
  scope_closed            bound handle used after its scope released
"""

from __future__ import annotations

import asyncio
from typing import Optional

from sqlalchemy.exc import DBAPIError, IntegrityError


class TenancyError(Exception):
    """Base class for all tenant-isolation errors."""

    kind = "tenancy_error"

    def __init__(
        self,
        message: str,
        tenant_id: Optional[str] = None,
        phase: Optional[str] = None,
    ):
        self.message = message
        self.tenant_id = tenant_id
        self.phase = phase
        super().__init__(message)

    def __str__(self) -> str:
        context = []
        if self.tenant_id:
            context.append(f"tenant={self.tenant_id}")
        if self.phase:
            context.append(f"phase={self.phase}")
        if not context:
            return self.message
        return f"{self.message} ({', '.join(context)})"


class InvalidTenantIdError(TenancyError, ValueError):
    kind = "invalid_tenant"

    def __init__(self, raw: object, reason: str):
        self.raw = raw
        self.reason = reason
        super().__init__(f"Invalid tenant identifier {raw!r}: {reason}", phase="validate")


class TenantUnavailableError(TenancyError):
    """The pool could not provide a usable connection. Safe to retry."""

    kind = "unavailable"


class TenantNotProvisionedError(TenancyError):
    kind = "not_provisioned"

    def __init__(self, tenant_id: str, schema: str, phase: str = "bind"):
        self.schema = schema
        super().__init__(
            f"Tenant schema '{schema}' does not exist",
            tenant_id=tenant_id,
            phase=phase,
        )


class ScopeClosedError(TenancyError):
    kind = "scope_closed"


class RecordNotFoundError(TenancyError):
    kind = "not_found"

    def __init__(self, resource: str, key: object, tenant_id: Optional[str] = None):
        self.resource = resource
        self.key = key
        super().__init__(f"{resource} '{key}' not found", tenant_id=tenant_id)


# ── Constraint violations ───────────────────────────────────

class ConstraintViolationError(TenancyError):
    """The engine rejected a write because of an integrity rule."""

    kind = "constraint_violation"

    def __init__(
        self,
        message: str,
        tenant_id: Optional[str] = None,
        phase: Optional[str] = None,
        sqlstate: Optional[str] = None,
        constraint: Optional[str] = None,
    ):
        self.sqlstate = sqlstate
        self.constraint = constraint
        super().__init__(message, tenant_id=tenant_id, phase=phase)


class ForeignKeyViolationError(ConstraintViolationError):
    kind = "foreign_key_violation"


class UniqueViolationError(ConstraintViolationError):
    kind = "unique_violation"


class NotNullViolationError(ConstraintViolationError):
    kind = "not_null_violation"


class CheckViolationError(ConstraintViolationError):
    kind = "check_violation"


SQLSTATE_ERRORS = {
    "23503": ForeignKeyViolationError,
    "23505": UniqueViolationError,
    "23502": NotNullViolationError,
    "23514": CheckViolationError,
}


def sqlstate_of(exc: BaseException) -> Optional[str]:
    """Extract the SQLSTATE from a SQLAlchemy-wrapped driver error."""
    orig = getattr(exc, "orig", None)
    for source in (orig, getattr(orig, "__cause__", None)):
        if source is None:
            continue
        code = getattr(source, "sqlstate", None) or getattr(source, "pgcode", None)
        if code:
            return str(code)
    return None


def constraint_name_of(exc: BaseException) -> Optional[str]:
    orig = getattr(exc, "orig", None)
    for source in (orig, getattr(orig, "__cause__", None)):
        name = getattr(source, "constraint_name", None)
        if name:
            return name
        diag = getattr(source, "diag", None)
        if diag is not None and getattr(diag, "constraint_name", None):
            return diag.constraint_name
    return None


def translate_integrity_error(
    exc: IntegrityError,
    tenant_id: Optional[str] = None,
    phase: Optional[str] = None,
) -> ConstraintViolationError:
    """
    Map an IntegrityError to its typed constraint kind.

    The caller raises the result ``from exc`` so the driver error stays
    reachable through ``__cause__``.
    """
    code = sqlstate_of(exc)
    error_cls = SQLSTATE_ERRORS.get(code, ConstraintViolationError)
    orig = getattr(exc, "orig", None)
    message = str(orig) if orig is not None else str(exc)
    return error_cls(
        message.strip().splitlines()[0] if message.strip() else error_cls.kind,
        tenant_id=tenant_id,
        phase=phase,
        sqlstate=code,
        constraint=constraint_name_of(exc),
    )


def is_disconnect(exc: BaseException) -> bool:
    """True when the connection that raised ``exc`` must not be reused."""
    if isinstance(exc, (asyncio.CancelledError, asyncio.TimeoutError, OSError)):
        return True
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    return False
