# Copyright (c) 2026 TempoOS Contributors. All Rights Reserved.

"""
Schema Lifecycle — Tenant onboarding / offboarding.

provision_tenant creates the tenant schema and the full table set in one
transaction, so a failure leaves no partial schema behind. Re-running it
only creates what is missing and never touches existing rows.
deprovision_tenant drops the schema irreversibly.

These run outside the request path and never go through a TenantScope:
they address schemas explicitly via schema_translate_map.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import MetaData, delete, inspect, select, text
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import InterfaceError, OperationalError, TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncConnection

from ehr_data.core.metrics import platform_metrics
from ehr_data.core.tenant import validate_tenant_id
from ehr_data.storage.database import Base, SharedBase
from ehr_data.storage.models import CodeSystemConcept, TenantRegistryEntry
from ehr_data.tenancy.errors import TenantUnavailableError
from ehr_data.tenancy.naming import quote_ident, schema_for, tenant_for
from ehr_data.tenancy.scope import TenantPool

logger = logging.getLogger("ehr.provisioning")

_CONNECTIVITY_ERRORS = (OperationalError, InterfaceError, PoolTimeoutError, OSError)


@dataclass
class ProvisionResult:
    tenant_id: str
    schema: str
    created: bool
    tables_created: List[str] = field(default_factory=list)


@dataclass
class TenantRecord:
    tenant_id: str
    schema: str
    created_at: Optional[datetime] = None


# ── Helpers ─────────────────────────────────────────────────

def _create_missing_tables(sync_conn, metadata: MetaData, schema: str) -> List[str]:
    """Create tables of ``metadata`` missing from ``schema``; return their names."""
    existing = set(inspect(sync_conn).get_table_names(schema=schema))
    missing = [t.name for t in metadata.sorted_tables if t.name not in existing]
    metadata.create_all(sync_conn, checkfirst=True)
    return missing


async def _lock_schema(conn: AsyncConnection, schema: str) -> None:
    # Serializes concurrent provision/deprovision of the same tenant.
    await conn.execute(text("SELECT pg_advisory_xact_lock(hashtext(:schema))"), {"schema": schema})


async def _registry_exists(conn: AsyncConnection, shared_schema: str) -> bool:
    result = await conn.execute(
        text("SELECT to_regclass(:name) IS NOT NULL"),
        {"name": f"{quote_ident(shared_schema)}.{TenantRegistryEntry.__tablename__}"},
    )
    return bool(result.scalar())


async def _create_shared(conn: AsyncConnection, shared_schema: str) -> List[str]:
    await conn.execute(text(f"CREATE SCHEMA IF NOT EXISTS {quote_ident(shared_schema)}"))
    await conn.execution_options(schema_translate_map={None: shared_schema})
    return await conn.run_sync(_create_missing_tables, SharedBase.metadata, shared_schema)


def _unavailable(exc: BaseException, tenant_id: Optional[str], phase: str) -> TenantUnavailableError:
    return TenantUnavailableError(f"Database unavailable: {exc}", tenant_id=tenant_id, phase=phase)


# ── Lifecycle ───────────────────────────────────────────────

async def ensure_shared_schema(pool: TenantPool) -> List[str]:
    """Create the shared schema and its reference tables. Idempotent."""
    try:
        async with pool.engine.begin() as conn:
            await _lock_schema(conn, pool.shared_schema)
            created = await _create_shared(conn, pool.shared_schema)
    except _CONNECTIVITY_ERRORS as exc:
        raise _unavailable(exc, None, "provision") from exc
    if created:
        logger.info("Shared schema %s: created %s", pool.shared_schema, ", ".join(created))
    return created


async def provision_tenant(pool: TenantPool, tenant_id: str) -> ProvisionResult:
    """
    Create ``tenant_id``'s schema and every tenant table. Idempotent.

    Runs in one transaction: on failure nothing is left behind.
    """
    tenant_id = validate_tenant_id(tenant_id)
    schema = schema_for(tenant_id, pool.schema_prefix)
    extra = {"tenant_id": tenant_id, "schema": schema, "phase": "provision"}

    try:
        async with pool.engine.begin() as conn:
            await _lock_schema(conn, schema)
            existed = await pool.binder.schema_exists(conn, schema)
            # Lock order is always tenant schema, then shared schema.
            await _lock_schema(conn, pool.shared_schema)
            await _create_shared(conn, pool.shared_schema)

            await conn.execute(text(f"CREATE SCHEMA IF NOT EXISTS {quote_ident(schema)}"))
            await conn.execution_options(schema_translate_map={None: schema})
            tables = await conn.run_sync(_create_missing_tables, Base.metadata, schema)

            await conn.execution_options(schema_translate_map={None: pool.shared_schema})
            await conn.execute(
                pg_insert(TenantRegistryEntry)
                .values(tenant_id=tenant_id, schema_name=schema)
                .on_conflict_do_nothing(index_elements=["tenant_id"])
            )
    except _CONNECTIVITY_ERRORS as exc:
        raise _unavailable(exc, tenant_id, "provision") from exc

    if not existed:
        platform_metrics.inc("tenants_provisioned")
        logger.info("Provisioned tenant schema %s", schema, extra=extra)
    elif tables:
        logger.info("Completed tenant schema %s: %s", schema, ", ".join(tables), extra=extra)
    else:
        logger.debug("Tenant schema %s already provisioned", schema, extra=extra)

    return ProvisionResult(tenant_id=tenant_id, schema=schema, created=not existed, tables_created=tables)


async def deprovision_tenant(pool: TenantPool, tenant_id: str) -> bool:
    """
    Drop ``tenant_id``'s schema and all its data. Irreversible.

    Returns True if the schema existed.
    """
    tenant_id = validate_tenant_id(tenant_id)
    schema = schema_for(tenant_id, pool.schema_prefix)

    try:
        async with pool.engine.begin() as conn:
            await _lock_schema(conn, schema)
            existed = await pool.binder.schema_exists(conn, schema)
            await conn.execute(text(f"DROP SCHEMA IF EXISTS {quote_ident(schema)} CASCADE"))
            if await _registry_exists(conn, pool.shared_schema):
                await conn.execution_options(schema_translate_map={None: pool.shared_schema})
                await conn.execute(
                    delete(TenantRegistryEntry).where(TenantRegistryEntry.tenant_id == tenant_id)
                )
    except _CONNECTIVITY_ERRORS as exc:
        raise _unavailable(exc, tenant_id, "deprovision") from exc

    if existed:
        platform_metrics.inc("tenants_deprovisioned")
        logger.warning(
            "Dropped tenant schema %s", schema,
            extra={"tenant_id": tenant_id, "schema": schema, "phase": "deprovision"},
        )
    return existed


# ── Queries ─────────────────────────────────────────────────

async def tenant_exists(pool: TenantPool, tenant_id: str) -> bool:
    schema = pool.schema_for(tenant_id)
    async with pool.engine.connect() as conn:
        return await pool.binder.schema_exists(conn, schema)


async def list_tenants(pool: TenantPool) -> List[TenantRecord]:
    """Tenants recorded in the shared registry, ordered by id."""
    async with pool.engine.connect() as conn:
        if not await _registry_exists(conn, pool.shared_schema):
            return []
        await conn.execution_options(schema_translate_map={None: pool.shared_schema})
        result = await conn.execute(
            select(TenantRegistryEntry.__table__).order_by(TenantRegistryEntry.__table__.c.tenant_id)
        )
        return [
            TenantRecord(tenant_id=row.tenant_id, schema=row.schema_name, created_at=row.created_at)
            for row in result
        ]


async def list_tenant_schemas(pool: TenantPool) -> List[str]:
    """Schemas in the database that follow the tenant naming convention."""
    async with pool.engine.connect() as conn:
        result = await conn.execute(text("SELECT nspname FROM pg_catalog.pg_namespace ORDER BY nspname"))
        return [name for (name,) in result if tenant_for(name, pool.schema_prefix)]


async def load_reference_concepts(pool: TenantPool, concepts: Iterable[dict]) -> int:
    """
    Upsert code-system concepts into the shared schema.

    Each concept is a dict with ``system``, ``code`` and ``display``.
    Returns the number of concepts written.
    """
    rows = [
        {"system": c["system"], "code": c["code"], "display": c["display"], "active": c.get("active", True)}
        for c in concepts
    ]
    if not rows:
        return 0
    stmt = pg_insert(CodeSystemConcept).values(rows)
    stmt = stmt.on_conflict_do_update(
        constraint="uq_code_system_concept",
        set_={"display": stmt.excluded.display, "active": stmt.excluded.active},
    )
    try:
        async with pool.engine.begin() as conn:
            await _create_shared(conn, pool.shared_schema)
            await conn.execution_options(schema_translate_map={None: pool.shared_schema})
            await conn.execute(stmt)
    except _CONNECTIVITY_ERRORS as exc:
        raise _unavailable(exc, None, "provision") from exc
    logger.info("Loaded %d reference concepts into %s", len(rows), pool.shared_schema)
    return len(rows)
