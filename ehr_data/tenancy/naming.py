# Copyright (c) 2026 TempoOS Contributors. All Rights Reserved.

"""
Tenant Schema Naming — Addressing scheme for schema-per-tenant isolation.

Every tenant lives in its own PostgreSQL schema: {prefix}{tenant_id}.
The prefix is part of the persisted layout and must not change without
migrating all existing schemas.
"""

from __future__ import annotations

from typing import Optional

from ehr_data.core.config import settings


def schema_for(tenant_id: str, prefix: Optional[str] = None) -> str:
    """
    Derive the schema name of an already-validated tenant identifier.

    Examples:
        schema_for("acme") -> "tenant_acme"
        schema_for("TenantA_01") -> "tenant_tenanta_01"
    """
    if prefix is None:
        prefix = settings.TENANT_SCHEMA_PREFIX
    return f"{prefix}{tenant_id.lower()}"


def tenant_for(schema: str, prefix: Optional[str] = None) -> Optional[str]:
    """Inverse of schema_for; None when ``schema`` is not a tenant schema."""
    if prefix is None:
        prefix = settings.TENANT_SCHEMA_PREFIX
    if not schema.startswith(prefix) or len(schema) == len(prefix):
        return None
    return schema[len(prefix):]


def quote_ident(name: str) -> str:
    """Quote a PostgreSQL identifier."""
    return '"' + name.replace('"', '""') + '"'


def search_path_for(schema: str, shared_schema: Optional[str] = None) -> str:
    """
    Build the search_path value for a tenant scope: tenant schema first,
    then the shared reference schema.

    Examples:
        search_path_for("tenant_acme", "public") -> '"tenant_acme", "public"'
    """
    parts = [quote_ident(schema)]
    if shared_schema and shared_schema != schema:
        parts.append(quote_ident(shared_schema))
    return ", ".join(parts)
