# Copyright (c) 2026 TempoOS Contributors. All Rights Reserved.

"""
Tenant Scope — Binds one pooled connection to one tenant schema for the
duration of one unit of work.

State machine:

    IDLE → ACQUIRING → BOUND → EXECUTING → RELEASING_SUCCESS ─┐
                                         → RELEASING_FAILURE ─┴→ IDLE

  ACQUIRING  borrow a connection from the pool (TenantUnavailableError)
  BOUND      schema must exist (TenantNotProvisionedError), then
             search_path + app.current_tenant_id / app.current_user_id
             are set on the connection and committed
  EXECUTING  the unit of work runs against a TenantSession
  RELEASING  always runs: binding reset to the neutral search path before
             the connection goes back to the pool, or the connection is
             invalidated when its state can no longer be trusted

TenantPool is the unbound handle and exposes no query methods; the only
way to reach tenant tables is through the TenantSession a scope yields.
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

from sqlalchemy import event, text
from sqlalchemy.exc import (
    DBAPIError,
    DisconnectionError,
    IntegrityError,
    InterfaceError,
    OperationalError,
    TimeoutError as PoolTimeoutError,
)
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, AsyncSession

from ehr_data.core.config import EHRSettings, settings as default_settings
from ehr_data.core.metrics import platform_metrics
from ehr_data.core.tenant import validate_tenant_id
from ehr_data.storage.database import create_engine
from ehr_data.tenancy.errors import (
    ScopeClosedError,
    TenantNotProvisionedError,
    TenantUnavailableError,
    is_disconnect,
    translate_integrity_error,
)
from ehr_data.tenancy.naming import schema_for, search_path_for

logger = logging.getLogger("ehr.scope")

T = TypeVar("T")

# Marker kept in the pooled connection's info while a tenant binding is live.
BINDING_INFO_KEY = "ehr_tenant_schema"

# Isolation levels accepted by the PostgreSQL dialects.
ISOLATION_LEVELS = frozenset(
    {"SERIALIZABLE", "REPEATABLE READ", "READ COMMITTED", "READ UNCOMMITTED", "AUTOCOMMIT"}
)


class ScopeState(str, Enum):
    IDLE = "idle"
    ACQUIRING = "acquiring"
    BOUND = "bound"
    EXECUTING = "executing"
    RELEASING_SUCCESS = "releasing_success"
    RELEASING_FAILURE = "releasing_failure"


def _is_connectivity_error(exc: BaseException) -> bool:
    if isinstance(exc, asyncio.TimeoutError):
        return False
    if isinstance(exc, (OperationalError, InterfaceError, PoolTimeoutError, OSError)):
        return True
    return isinstance(exc, DBAPIError) and exc.connection_invalidated


# ── Search path binder ──────────────────────────────────────

class PostgresSearchPathBinder:
    """Issues the schema-binding statements on a PostgreSQL connection."""

    async def schema_exists(self, conn: AsyncConnection, schema: str) -> bool:
        result = await conn.execute(
            text("SELECT EXISTS(SELECT 1 FROM pg_catalog.pg_namespace WHERE nspname = :schema)"),
            {"schema": schema},
        )
        return bool(result.scalar())

    async def bind(
        self,
        conn: AsyncConnection,
        search_path: str,
        tenant_id: str,
        user_id: Optional[str],
    ) -> None:
        # Session-level (is_local = false): the binding must survive the
        # commits issued by the unit of work.
        await conn.execute(
            text(
                "SELECT set_config('search_path', :search_path, false),"
                " set_config('app.current_tenant_id', :tenant_id, false),"
                " set_config('app.current_user_id', :user_id, false)"
            ),
            {"search_path": search_path, "tenant_id": tenant_id, "user_id": user_id or ""},
        )

    async def reset(self, conn: AsyncConnection, neutral_search_path: str) -> None:
        await conn.execute(
            text(
                "SELECT set_config('search_path', :search_path, false),"
                " set_config('app.current_tenant_id', '', false),"
                " set_config('app.current_user_id', '', false)"
            ),
            {"search_path": neutral_search_path},
        )


def _refuse_bound_connection(dbapi_connection, connection_record, connection_proxy):
    schema = connection_record.info.pop(BINDING_INFO_KEY, None)
    if schema is not None:
        platform_metrics.inc("connection_discarded")
        logger.error(
            "Pooled connection still bound to %s, discarding",
            schema, extra={"schema": schema, "phase": ScopeState.ACQUIRING.value},
        )
        raise DisconnectionError(f"connection still bound to tenant schema {schema}")


def install_tenant_guard(engine: AsyncEngine) -> None:
    """
    Refuse pooled connections that still carry a tenant binding.

    A connection returned to the pool without going through the release
    path (e.g. garbage collected mid-scope) keeps its search_path. The
    pool discards it on the next checkout instead of handing it to an
    unrelated request.
    """
    target = engine.sync_engine
    if not event.contains(target, "checkout", _refuse_bound_connection):
        event.listen(target, "checkout", _refuse_bound_connection)


# ── Bound handle ────────────────────────────────────────────

class TenantSession:
    """
    Tenant-bound execution handle passed to a unit of work.

    Wraps the AsyncSession of one scope. Repositories take this handle;
    it refuses every call once its scope has been released.
    """

    def __init__(self, scope: "TenantScope", session: AsyncSession):
        self._scope = scope
        self._session = session
        self._closed = False

    @property
    def tenant_id(self) -> str:
        return self._scope.tenant_id

    @property
    def schema(self) -> str:
        return self._scope.schema

    @property
    def user_id(self) -> Optional[str]:
        return self._scope.user_id

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def session(self) -> AsyncSession:
        self._check_open()
        return self._session

    def _check_open(self) -> None:
        if self._closed:
            raise ScopeClosedError(
                "Tenant session used after its scope was released",
                tenant_id=self.tenant_id,
                phase=ScopeState.IDLE.value,
            )

    def _close(self) -> None:
        self._closed = True

    async def execute(self, statement, params=None, **kwargs):
        self._check_open()
        return await self._session.execute(statement, params, **kwargs)

    async def scalar(self, statement, params=None, **kwargs):
        self._check_open()
        return await self._session.scalar(statement, params, **kwargs)

    async def scalars(self, statement, params=None, **kwargs):
        self._check_open()
        return await self._session.scalars(statement, params, **kwargs)

    async def get(self, entity, ident):
        self._check_open()
        return await self._session.get(entity, ident)

    def add(self, instance) -> None:
        self._check_open()
        self._session.add(instance)

    def add_all(self, instances) -> None:
        self._check_open()
        self._session.add_all(instances)

    async def delete(self, instance) -> None:
        self._check_open()
        await self._session.delete(instance)

    async def flush(self) -> None:
        self._check_open()
        await self._session.flush()

    async def refresh(self, instance) -> None:
        self._check_open()
        await self._session.refresh(instance)

    async def commit(self) -> None:
        self._check_open()
        await self._session.commit()

    async def rollback(self) -> None:
        self._check_open()
        await self._session.rollback()

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"TenantSession(tenant={self.tenant_id!r}, schema={self.schema!r}, {state})"


# ── Scope ───────────────────────────────────────────────────

class TenantScope:
    """
    Single-use async context manager for one tenant unit of work.

    Usage:
        async with pool.scope("acme") as db:
            await PatientRepository(db).create(...)
    """

    def __init__(
        self,
        pool: "TenantPool",
        tenant_id: str,
        user_id: Optional[str] = None,
        transactional: bool = True,
        isolation_level: Optional[str] = None,
    ):
        self.pool = pool
        self.tenant_id = validate_tenant_id(tenant_id)
        self.user_id = user_id
        self.transactional = transactional
        if isolation_level is not None and isolation_level.upper() not in ISOLATION_LEVELS:
            raise ValueError(
                f"Invalid isolation_level {isolation_level!r}; expected one of {sorted(ISOLATION_LEVELS)}"
            )
        self.isolation_level = isolation_level.upper() if isolation_level else None
        self.schema = schema_for(self.tenant_id, pool.schema_prefix)
        self.search_path = search_path_for(self.schema, pool.shared_schema)
        self.state = ScopeState.IDLE
        self.history: list[ScopeState] = [ScopeState.IDLE]
        self._conn: Optional[AsyncConnection] = None
        self._session: Optional[AsyncSession] = None
        self._handle: Optional[TenantSession] = None
        self._started = 0.0

    def _extra(self) -> dict:
        return {"tenant_id": self.tenant_id, "schema": self.schema, "phase": self.state.value}

    def _transition(self, state: ScopeState) -> None:
        self.state = state
        self.history.append(state)
        logger.debug("Tenant scope → %s", state.value, extra=self._extra())

    def _record_failure(self, exc: BaseException) -> None:
        kind = getattr(exc, "kind", type(exc).__name__)
        platform_metrics.inc(f"scope_failed:{kind}")

    # ── Enter ───────────────────────────────────────────────

    async def __aenter__(self) -> TenantSession:
        if len(self.history) > 1:
            raise RuntimeError("TenantScope is single-use")
        self._started = time.perf_counter()
        platform_metrics.inc("scope_opened")

        self._transition(ScopeState.ACQUIRING)
        platform_metrics.add_gauge("scopes_active", 1)
        try:
            await self._acquire()
            await self._bind()
        except BaseException:
            platform_metrics.add_gauge("scopes_active", -1)
            raise

        self._transition(ScopeState.EXECUTING)
        self._session = self.pool.make_session(self._conn)
        self._handle = TenantSession(self, self._session)
        return self._handle

    async def _acquire(self) -> None:
        if self.pool.closed:
            self._transition(ScopeState.IDLE)
            error = TenantUnavailableError(
                "Tenant pool is closed", tenant_id=self.tenant_id, phase=ScopeState.ACQUIRING.value,
            )
            self._record_failure(error)
            raise error

        start = time.perf_counter()
        try:
            self._conn = await self.pool.engine.connect()
        except BaseException as exc:
            self._transition(ScopeState.IDLE)
            self._record_failure(exc)
            if _is_connectivity_error(exc):
                logger.warning("Connection acquire failed: %s", exc, extra=self._extra())
                raise TenantUnavailableError(
                    f"Could not acquire a database connection: {exc}",
                    tenant_id=self.tenant_id,
                    phase=ScopeState.ACQUIRING.value,
                ) from exc
            raise
        platform_metrics.observe("acquire_latency_ms", (time.perf_counter() - start) * 1000)

    async def _bind(self) -> None:
        binder = self.pool.binder
        conn = self._conn
        try:
            provisioned = await binder.schema_exists(conn, self.schema)
            if provisioned:
                await binder.bind(conn, self.search_path, self.tenant_id, self.user_id)
                conn.info[BINDING_INFO_KEY] = self.schema
                await conn.commit()
                if self.isolation_level:
                    await conn.execution_options(isolation_level=self.isolation_level)
        except BaseException as exc:
            # Binding state unknown: never hand this connection out again.
            await self._discard()
            self._transition(ScopeState.IDLE)
            self._record_failure(exc)
            if _is_connectivity_error(exc):
                logger.warning("Tenant binding failed: %s", exc, extra=self._extra())
                raise TenantUnavailableError(
                    f"Could not bind connection to tenant schema: {exc}",
                    tenant_id=self.tenant_id,
                    phase=ScopeState.BOUND.value,
                ) from exc
            raise

        if not provisioned:
            await self._return_unbound()
            self._transition(ScopeState.IDLE)
            error = TenantNotProvisionedError(self.tenant_id, self.schema, phase=ScopeState.BOUND.value)
            self._record_failure(error)
            logger.warning("Tenant not provisioned", extra=self._extra())
            raise error

        self._transition(ScopeState.BOUND)

    # ── Exit ────────────────────────────────────────────────

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        error = exc
        if error is None and self.transactional:
            try:
                await self._session.commit()
            except BaseException as commit_error:
                error = commit_error

        if error is None:
            self._transition(ScopeState.RELEASING_SUCCESS)
        else:
            self._transition(ScopeState.RELEASING_FAILURE)

        try:
            await self._release(discard=error is not None and is_disconnect(error))
        finally:
            platform_metrics.add_gauge("scopes_active", -1)
        self._transition(ScopeState.IDLE)

        elapsed = (time.perf_counter() - self._started) * 1000
        platform_metrics.observe("scope_latency_ms", elapsed)

        if error is None:
            platform_metrics.inc("scope_completed")
            return False

        if isinstance(error, IntegrityError):
            translated = translate_integrity_error(
                error, tenant_id=self.tenant_id, phase=ScopeState.EXECUTING.value,
            )
            self._record_failure(translated)
            raise translated from error

        self._record_failure(error)
        if error is not exc:
            raise error
        # Unit-of-work errors propagate unchanged.
        return False

    async def _release(self, discard: bool) -> None:
        conn = self._conn
        pending: Optional[BaseException] = None
        if self._handle is not None:
            self._handle._close()
        try:
            if self._session is not None:
                await self._session.close()
            if not discard and not conn.invalidated:
                await conn.rollback()
                await self.pool.binder.reset(conn, self.pool.neutral_search_path)
                await conn.commit()
                conn.info.pop(BINDING_INFO_KEY, None)
        except BaseException as exc:
            logger.warning("Tenant binding reset failed, discarding connection: %s", exc, extra=self._extra())
            discard = True
            if isinstance(exc, asyncio.CancelledError):
                pending = exc

        if discard:
            await self._discard()
        else:
            await conn.close()

        if pending is not None:
            raise pending

    async def _return_unbound(self) -> None:
        conn = self._conn
        try:
            await conn.rollback()
            await conn.close()
        except BaseException:
            await self._discard()
            raise

    async def _discard(self) -> None:
        conn = self._conn
        if conn is None:
            return
        platform_metrics.inc("connection_discarded")
        # Errors here are logged; the caller sees the error that caused the discard.
        if not conn.invalidated:
            info = conn.info
            schema = info.pop(BINDING_INFO_KEY, None)
            try:
                await conn.invalidate()
            except Exception as exc:
                if schema is not None:
                    # Leave the marker so the checkout guard refuses this connection.
                    info[BINDING_INFO_KEY] = schema
                logger.error("Connection invalidate failed: %s", exc, extra=self._extra())
        try:
            await conn.close()
        except Exception as exc:
            logger.error("Connection close after discard failed: %s", exc, extra=self._extra())

    def __repr__(self) -> str:
        return f"TenantScope(tenant={self.tenant_id!r}, state={self.state.value})"


# ── Pool ────────────────────────────────────────────────────

class TenantPool:
    """
    Explicitly owned connection pool for tenant-scoped work.

    Created once at process start, closed at shutdown, and passed by
    reference to every scope call.
    """

    def __init__(
        self,
        engine: AsyncEngine,
        shared_schema: Optional[str] = None,
        neutral_search_path: Optional[str] = None,
        schema_prefix: Optional[str] = None,
        default_timeout: Optional[float] = None,
        binder: Optional[PostgresSearchPathBinder] = None,
        session_factory: Optional[Callable[[AsyncConnection], AsyncSession]] = None,
        guard: bool = True,
    ):
        self.engine = engine
        self.shared_schema = shared_schema or default_settings.SHARED_SCHEMA
        self.neutral_search_path = neutral_search_path or default_settings.NEUTRAL_SEARCH_PATH
        self.schema_prefix = schema_prefix or default_settings.TENANT_SCHEMA_PREFIX
        self.default_timeout = default_timeout
        self.binder = binder or PostgresSearchPathBinder()
        self._session_factory = session_factory
        self._closed = False
        if guard:
            install_tenant_guard(engine)

    @classmethod
    def from_settings(cls, settings: Optional[EHRSettings] = None, **engine_overrides) -> "TenantPool":
        settings = settings or default_settings
        return cls(
            create_engine(settings, **engine_overrides),
            shared_schema=settings.SHARED_SCHEMA,
            neutral_search_path=settings.NEUTRAL_SEARCH_PATH,
            schema_prefix=settings.TENANT_SCHEMA_PREFIX,
            default_timeout=settings.SCOPE_TIMEOUT,
        )

    @property
    def closed(self) -> bool:
        return self._closed

    def make_session(self, conn: AsyncConnection) -> AsyncSession:
        if self._session_factory is not None:
            return self._session_factory(conn)
        return AsyncSession(bind=conn, expire_on_commit=False, autoflush=False)

    def schema_for(self, tenant_id: str) -> str:
        return schema_for(validate_tenant_id(tenant_id), self.schema_prefix)

    def scope(
        self,
        tenant_id: str,
        user_id: Optional[str] = None,
        transactional: bool = True,
        isolation_level: Optional[str] = None,
    ) -> TenantScope:
        return TenantScope(
            self,
            tenant_id,
            user_id=user_id,
            transactional=transactional,
            isolation_level=isolation_level,
        )

    async def run(
        self,
        tenant_id: str,
        work: Callable[[TenantSession], Awaitable[T]],
        **kwargs: Any,
    ) -> T:
        return await with_tenant(self, tenant_id, work, **kwargs)

    async def close(self) -> None:
        """Dispose the engine; later scopes fail with TenantUnavailableError."""
        if self._closed:
            return
        self._closed = True
        await self.engine.dispose()
        logger.info("Tenant pool closed")


# ── Entry point ─────────────────────────────────────────────

async def with_tenant(
    pool: TenantPool,
    tenant_id: str,
    work: Callable[[TenantSession], Awaitable[T]],
    user_id: Optional[str] = None,
    timeout: Optional[float] = None,
    transactional: bool = True,
    isolation_level: Optional[str] = None,
) -> T:
    """
    Run ``work`` against ``tenant_id``'s schema and return its result.

    The identifier is validated before the pool is touched. With a
    timeout (or the pool's default), the whole scope runs under a
    deadline; on expiry the connection is released before
    asyncio.TimeoutError propagates.
    """
    tenant_id = validate_tenant_id(tenant_id)

    async def _run() -> T:
        async with pool.scope(
            tenant_id,
            user_id=user_id,
            transactional=transactional,
            isolation_level=isolation_level,
        ) as db:
            return await work(db)

    if timeout is None:
        timeout = pool.default_timeout
    if timeout is None:
        return await _run()
    return await asyncio.wait_for(_run(), timeout)
