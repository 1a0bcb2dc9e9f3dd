"""
AgroTrace audit trail runtime.

Lifecycle:
  start → configure logging, apply migrations, open the engine pool,
          start the post-commit dispatcher
  stop  → drain the dispatcher, dispose the engine pool
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from types import TracebackType

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from agrotrace.config.logging_config import configure_logging
from agrotrace.config.settings import Settings, get_settings
from agrotrace.db.migrate import run_migrations
from agrotrace.db.session import build_session_factory, create_engine, session_scope
from agrotrace.services.audit.dispatcher import AuditDispatcher
from agrotrace.services.audit.queries import AuditQueryService
from agrotrace.services.audit.recorder import AuditRecorder, TenantLockRegistry

_log = structlog.get_logger(__name__)


class AuditTrail:
    """
    Owns the engine, session factory, tenant locks and dispatcher.

    Usage:
        async with AuditTrail() as trail:
            async with trail.session() as db:
                await trail.recorder(db).record_create(...)
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()
        self._locks = TenantLockRegistry()
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None
        self._dispatcher: AuditDispatcher | None = None

    @property
    def started(self) -> bool:
        return self._engine is not None

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            raise RuntimeError("AuditTrail.start() has not been called")
        return self._session_factory

    @property
    def dispatcher(self) -> AuditDispatcher:
        if self._dispatcher is None:
            raise RuntimeError("AuditTrail.start() has not been called")
        return self._dispatcher

    async def start(self) -> None:
        if self.started:
            return
        settings = self.settings
        configure_logging(
            log_level=settings.log_level.value,
            json_logs=settings.log_json,
            log_file=settings.log_file,
        )
        _log.info(
            "agrotrace_starting",
            version=settings.app_version,
            environment=settings.environment.value,
        )

        if settings.run_migrations_on_startup:
            run_migrations(settings.database_url)

        self._engine = create_engine(settings)
        self._session_factory = build_session_factory(self._engine)
        self._dispatcher = AuditDispatcher(
            self._session_factory, locks=self._locks, settings=settings
        )
        await self._dispatcher.start()
        _log.info("agrotrace_ready")

    async def stop(self) -> None:
        if self._dispatcher is not None:
            await self._dispatcher.stop(drain=True)
            self._dispatcher = None
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
        self._session_factory = None
        _log.info("agrotrace_shutdown")

    async def __aenter__(self) -> AuditTrail:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.stop()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with session_scope(self.session_factory) as db:
            yield db

    def recorder(self, db: AsyncSession, *, autocommit: bool = True) -> AuditRecorder:
        return AuditRecorder(db, locks=self._locks, autocommit=autocommit)

    def queries(self, db: AsyncSession) -> AuditQueryService:
        return AuditQueryService(db, self.settings)
