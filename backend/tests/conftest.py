"""
Shared pytest fixtures for the audit trail tests.

Provides:
  - async SQLite database file per test (isolated, shareable across sessions)
  - a recorder bound to a private tenant-lock registry
  - actors for two tenants
"""
from __future__ import annotations

from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine

import agrotrace.db.models  # noqa: F401
from agrotrace.config.settings import Settings
from agrotrace.db.base import Base
from agrotrace.db.session import build_session_factory
from agrotrace.services.audit.intents import Actor
from agrotrace.services.audit.recorder import AuditRecorder, TenantLockRegistry


# ─── Settings override ────────────────────────────────────────────────────────

TEST_SETTINGS = Settings(
    database_url="sqlite+aiosqlite:///:memory:",
    environment="testing",
    run_migrations_on_startup=False,
    log_json=False,
    audit_dispatch_max_attempts=3,
    audit_dispatch_retry_base_seconds=0.0,
)


@pytest.fixture
def settings() -> Settings:
    return TEST_SETTINGS


# ─── Database ─────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture(scope="function")
async def db_engine(tmp_path):
    """A file-backed SQLite engine per test, so concurrent sessions share data."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'audit.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return build_session_factory(db_engine)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


# ─── Recorder & actors ────────────────────────────────────────────────────────

@pytest.fixture
def chain_locks() -> TenantLockRegistry:
    """Private lock registry per test."""
    return TenantLockRegistry()


@pytest.fixture
def recorder(db_session, chain_locks) -> AuditRecorder:
    return AuditRecorder(db_session, locks=chain_locks)


@pytest.fixture
def user_t1() -> Actor:
    return Actor(
        actor_id=7,
        email="ana.gomez@frutas-t1.co",
        tenant_id=1,
        tenant_name="Frutas del Valle S.A.S",
        name="Ana Gomez",
        source_ip="10.0.0.7",
        user_agent="pytest",
    )


@pytest.fixture
def user_t2() -> Actor:
    return Actor(
        actor_id=21,
        email="luis.rios@exporta-t2.co",
        tenant_id=2,
        tenant_name="Exporta Andina Ltda",
        name="Luis Rios",
    )
