# Copyright (c) 2026 TempoOS Contributors. All Rights Reserved.

"""
Tenant Context — Tenant identity carried through the call chain.

Tenant identifiers are case-insensitive tokens of lowercase letters,
digits and underscores. They are validated and canonicalized here,
before any connection is touched, because the schema name derived from
them ends up in administrative statements.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

from ehr_data.tenancy.errors import InvalidTenantIdError

# PostgreSQL identifiers are at most 63 bytes; "tenant_" takes 7.
MAX_TENANT_ID_LENGTH = 56

_TENANT_ID_RE = re.compile(r"[A-Za-z][A-Za-z0-9_]*")


def validate_tenant_id(raw: object) -> str:
    """
    Validate a caller-supplied tenant identifier and return its canonical form.

    Examples:
        validate_tenant_id("TenantA_01") -> "tenanta_01"
        validate_tenant_id("acme-health") -> InvalidTenantIdError
    """
    if not isinstance(raw, str):
        raise InvalidTenantIdError(raw, "must be a string")
    if not raw:
        raise InvalidTenantIdError(raw, "must not be empty")
    if len(raw) > MAX_TENANT_ID_LENGTH:
        raise InvalidTenantIdError(raw, f"longer than {MAX_TENANT_ID_LENGTH} characters")
    # Checked before lowercasing: some non-ASCII letters lowercase to ASCII.
    if not raw.isascii() or not _TENANT_ID_RE.fullmatch(raw):
        raise InvalidTenantIdError(
            raw, "must start with a letter and contain only letters, digits and '_'"
        )
    return raw.lower()


@dataclass
class TenantContext:
    """Validated tenant identity for request-scoped operations."""

    tenant_id: str
    user_id: Optional[str] = None
    roles: list[str] = None

    def __post_init__(self):
        self.tenant_id = validate_tenant_id(self.tenant_id)
        if self.roles is None:
            self.roles = []

    def __repr__(self) -> str:
        return f"TenantContext(tenant={self.tenant_id!r}, user={self.user_id!r})"
