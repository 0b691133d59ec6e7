# Copyright (c) 2026 TempoOS Contributors. All Rights Reserved.

"""
Database Connection Management — Async PostgreSQL via SQLAlchemy 2.0.

Two declarative bases:
  - Base        → tables duplicated into every tenant schema
  - SharedBase  → reference tables in the shared schema (code systems,
                  tenant registry), readable from every tenant scope

The engine is created explicitly and handed to a TenantPool; there is
no module-level engine.
"""

from __future__ import annotations

from typing import Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from ehr_data.core.config import EHRSettings, settings as default_settings


class Base(DeclarativeBase):
    """Declarative base for tables that live in each tenant schema."""
    pass


class SharedBase(DeclarativeBase):
    """Declarative base for cross-tenant reference tables."""
    pass


# ── Engine ──────────────────────────────────────────────────

def create_engine(settings: Optional[EHRSettings] = None, **overrides) -> AsyncEngine:
    """Create the async engine whose pool backs every tenant scope."""
    settings = settings or default_settings
    options = dict(
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=settings.DB_POOL_TIMEOUT,
        pool_pre_ping=settings.DB_POOL_PRE_PING,
        echo=settings.DB_ECHO,
    )
    options.update(overrides)
    return create_async_engine(settings.DATABASE_URL, **options)


# ── Lifecycle ───────────────────────────────────────────────

async def init_db(engine: AsyncEngine) -> None:
    """Verify database connection on startup."""
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))


async def close_db(engine: AsyncEngine) -> None:
    """Dispose engine on shutdown."""
    await engine.dispose()
