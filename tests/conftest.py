# Copyright (c) 2026 TempoOS Contributors. All Rights Reserved.

"""
Shared test fixtures for all EHR data tests.

Unit tests run the tenant scope against in-memory stand-ins for the
engine, the pooled connections and the search-path binder. The fakes
track what a real PostgreSQL connection would carry (search_path and
the app.current_* settings) so tests can assert on the state a
connection has when it goes back to the pool.
"""

import asyncio

import pytest

from ehr_data.core.metrics import platform_metrics
from ehr_data.tenancy.scope import TenantPool

NEUTRAL = "public"


class FakeConnection:
    """Pooled connection stand-in with session-level tenant settings."""

    def __init__(self, engine: "FakeEngine", number: int):
        self.engine = engine
        self.number = number
        self.info = {}
        self.invalidated = False
        self.closed = True
        self.search_path = NEUTRAL
        self.tenant_setting = ""
        self.user_setting = ""
        self.commits = 0
        self.rollbacks = 0
        self.options = []
        self.invalidate_error = None

    async def commit(self):
        self.commits += 1

    async def rollback(self):
        self.rollbacks += 1

    async def execution_options(self, **opts):
        self.options.append(opts)
        return self

    async def invalidate(self):
        if self.invalidate_error is not None:
            raise self.invalidate_error
        self.invalidated = True

    async def close(self):
        if self.closed:
            return
        self.closed = True
        self.engine._checkin(self)

    def __repr__(self):
        return f"FakeConnection(#{self.number}, search_path={self.search_path!r})"


class FakeEngine:
    """Bounded pool: connect() waits for a free slot, like QueuePool."""

    def __init__(self, size: int = 5):
        self.size = size
        self._slots = asyncio.Semaphore(size)
        self._idle = []
        self.created = []
        self.checkins = []
        self.connect_error = None
        self.connect_calls = 0
        self.disposed = False
        self.in_use = 0
        self.max_in_use = 0

    async def connect(self):
        self.connect_calls += 1
        if self.connect_error is not None:
            raise self.connect_error
        await self._slots.acquire()
        if self._idle:
            conn = self._idle.pop()
        else:
            conn = FakeConnection(self, len(self.created) + 1)
            self.created.append(conn)
        conn.closed = False
        self.in_use += 1
        self.max_in_use = max(self.max_in_use, self.in_use)
        return conn

    def _checkin(self, conn: FakeConnection):
        self.in_use -= 1
        self.checkins.append(
            {
                "conn": conn,
                "search_path": conn.search_path,
                "tenant": conn.tenant_setting,
                "invalidated": conn.invalidated,
            }
        )
        if not conn.invalidated:
            self._idle.append(conn)
        self._slots.release()

    @property
    def last_checkin(self):
        return self.checkins[-1]

    async def dispose(self):
        self.disposed = True


class FakeBinder:
    """Search-path binder over FakeConnection; ``fail_on`` injects errors."""

    def __init__(self, schemas=()):
        self.schemas = set(schemas)
        self.fail_on = {}
        self.bind_calls = []
        self.reset_calls = 0

    def _maybe_fail(self, step: str):
        exc = self.fail_on.get(step)
        if exc is not None:
            raise exc

    async def schema_exists(self, conn, schema):
        self._maybe_fail("schema_exists")
        return schema in self.schemas

    async def bind(self, conn, search_path, tenant_id, user_id):
        self._maybe_fail("bind")
        conn.search_path = search_path
        conn.tenant_setting = tenant_id
        conn.user_setting = user_id or ""
        self.bind_calls.append((search_path, tenant_id, user_id))

    async def reset(self, conn, neutral_search_path):
        self.reset_calls += 1
        self._maybe_fail("reset")
        conn.search_path = neutral_search_path
        conn.tenant_setting = ""
        conn.user_setting = ""


class FakeSession:
    """AsyncSession stand-in bound to one FakeConnection."""

    def __init__(self, conn: FakeConnection):
        self.conn = conn
        self.commit_error = None
        self.committed = False
        self.rolled_back = False
        self.closed = False
        self.added = []

    async def commit(self):
        if self.commit_error is not None:
            raise self.commit_error
        self.committed = True

    async def rollback(self):
        self.rolled_back = True

    async def close(self):
        self.closed = True

    async def flush(self):
        pass

    def add(self, instance):
        self.added.append(instance)

    async def scalar(self, statement, params=None, **kwargs):
        # Every scalar query answers with the connection's search_path.
        return self.conn.search_path


@pytest.fixture(autouse=True)
def reset_metrics():
    """Start every test from empty counters."""
    platform_metrics.reset()
    yield
    platform_metrics.reset()


@pytest.fixture
def fake_engine() -> FakeEngine:
    return FakeEngine(size=5)


@pytest.fixture
def fake_binder() -> FakeBinder:
    return FakeBinder({"tenant_acme", "tenant_globex", "tenant_initech"})


@pytest.fixture
def tenant_pool(fake_engine, fake_binder) -> TenantPool:
    """TenantPool over the fakes; acme, globex and initech are provisioned."""
    return TenantPool(
        fake_engine,
        shared_schema="public",
        neutral_search_path=NEUTRAL,
        schema_prefix="tenant_",
        binder=fake_binder,
        session_factory=FakeSession,
        guard=False,
    )


@pytest.fixture
def make_pool(fake_binder):
    """Factory for pools over a fresh FakeEngine of a given size."""

    def _make(size: int = 5, **kwargs) -> TenantPool:
        return TenantPool(
            FakeEngine(size=size),
            shared_schema="public",
            neutral_search_path=NEUTRAL,
            schema_prefix="tenant_",
            binder=fake_binder,
            session_factory=FakeSession,
            guard=False,
            **kwargs,
        )

    return _make
