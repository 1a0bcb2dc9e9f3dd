"""
Chain ledger: the append-only, tenant-scoped store of audit events.

Only ``append`` writes; every other method is a read scoped to one
tenant. Chain order is ``created_at`` then ``id`` (insertion order).
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import structlog
from sqlalchemy import Select, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from agrotrace.core.errors import PersistenceError, ValidationError
from agrotrace.db.models.audit import AuditEvent, Severity
from agrotrace.schemas.audit import AuditQuery
from agrotrace.db.base import as_utc
from agrotrace.services.audit.classifier import normalize_tag

_log = structlog.get_logger(__name__)

_NEWEST_FIRST = (AuditEvent.created_at.desc(), AuditEvent.id.desc())
_OLDEST_FIRST = (AuditEvent.created_at.asc(), AuditEvent.id.asc())


class ChainLedger:
    """
    Async SQLAlchemy access to the ``audit_events`` table.

    Usage:
        ledger = ChainLedger(db)
        chain = await ledger.list_chain(tenant_id)
    """

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    @property
    def session(self) -> AsyncSession:
        return self._db

    # ── Write ─────────────────────────────────────────────────────────── #

    async def append(self, event: AuditEvent) -> AuditEvent:
        """Stage ``event`` and flush it so its id is assigned."""
        self._db.add(event)
        try:
            await self._db.flush()
        except SQLAlchemyError as exc:
            _log.error(
                "audit_append_failed",
                tenant_id=event.tenant_id,
                entity_type=event.entity_type,
                entity_id=event.entity_id,
                error=str(exc),
            )
            raise PersistenceError("append") from exc
        return event

    # ── Reads ─────────────────────────────────────────────────────────── #

    async def list_by_tenant(self, tenant_id: str) -> list[AuditEvent]:
        """All events of the tenant, newest first."""
        return await self._all(
            select(AuditEvent)
            .where(AuditEvent.tenant_id == str(tenant_id))
            .order_by(*_NEWEST_FIRST),
            "list_by_tenant",
        )

    async def list_by_entity(
        self, tenant_id: str, entity_type: str, entity_id: str | int
    ) -> list[AuditEvent]:
        """Events referencing one entity of the tenant, newest first."""
        return await self._all(
            select(AuditEvent)
            .where(
                AuditEvent.tenant_id == str(tenant_id),
                AuditEvent.entity_type == normalize_tag(entity_type),
                AuditEvent.entity_id == str(entity_id),
            )
            .order_by(*_NEWEST_FIRST),
            "list_by_entity",
        )

    async def list_by_entity_code(self, tenant_id: str, entity_code: str) -> list[AuditEvent]:
        return await self._all(
            select(AuditEvent)
            .where(
                AuditEvent.tenant_id == str(tenant_id),
                AuditEvent.entity_code == entity_code,
            )
            .order_by(*_NEWEST_FIRST),
            "list_by_entity_code",
        )

    async def list_chain(self, tenant_id: str) -> list[AuditEvent]:
        """Chained events of the tenant in chain order (oldest first)."""
        return await self._all(
            select(AuditEvent)
            .where(
                AuditEvent.tenant_id == str(tenant_id),
                AuditEvent.in_chain.is_(True),
            )
            .order_by(*_OLDEST_FIRST),
            "list_chain",
        )

    async def latest_chain_event(
        self, tenant_id: str, *, for_update: bool = False
    ) -> AuditEvent | None:
        """
        The tenant's chain tail, or None before the first chained event.

        ``for_update`` adds ``FOR UPDATE`` on backends that support row
        locks; SQLite ignores it.
        """
        query = (
            select(AuditEvent)
            .where(
                AuditEvent.tenant_id == str(tenant_id),
                AuditEvent.in_chain.is_(True),
            )
            .order_by(*_NEWEST_FIRST)
            .limit(1)
        )
        if for_update:
            query = query.with_for_update()
        try:
            result = await self._db.execute(query)
        except SQLAlchemyError as exc:
            raise PersistenceError("latest_chain_event") from exc
        return result.scalars().first()

    async def recent_critical(self, tenant_id: str, limit: int = 20) -> list[AuditEvent]:
        if limit < 1:
            raise ValidationError("limit must be positive", {"limit": limit})
        return await self._all(
            select(AuditEvent)
            .where(
                AuditEvent.tenant_id == str(tenant_id),
                AuditEvent.severity == Severity.CRITICAL.value,
            )
            .order_by(*_NEWEST_FIRST)
            .limit(limit),
            "recent_critical",
        )

    async def count_by_entity_type(self, tenant_id: str, entity_type: str) -> int:
        try:
            result = await self._db.execute(
                select(func.count())
                .select_from(AuditEvent)
                .where(
                    AuditEvent.tenant_id == str(tenant_id),
                    AuditEvent.entity_type == normalize_tag(entity_type),
                )
            )
        except SQLAlchemyError as exc:
            raise PersistenceError("count_by_entity_type") from exc
        return result.scalar_one()

    async def search(
        self,
        tenant_id: str,
        filters: AuditQuery | None = None,
        *,
        offset: int = 0,
        limit: int = 50,
    ) -> tuple[list[AuditEvent], int]:
        """Filtered, paginated events of the tenant, newest first, with total count."""
        if offset < 0 or limit < 1:
            raise ValidationError(
                "offset must be >= 0 and limit >= 1", {"offset": offset, "limit": limit}
            )
        query = self._filtered(tenant_id, filters or AuditQuery())
        try:
            count = await self._db.execute(select(func.count()).select_from(query.subquery()))
            total = count.scalar_one()
        except SQLAlchemyError as exc:
            raise PersistenceError("search") from exc
        events = await self._all(
            query.order_by(*_NEWEST_FIRST).offset(offset).limit(limit),
            "search",
        )
        return events, total

    # ── Internals ─────────────────────────────────────────────────────── #

    @staticmethod
    def _filtered(tenant_id: str, filters: AuditQuery) -> Select[Any]:
        query = select(AuditEvent).where(AuditEvent.tenant_id == str(tenant_id))
        entity_type = filters.entity_type
        if entity_type is not None:
            entity_type = normalize_tag(entity_type)
        equality = (
            (AuditEvent.actor_id, filters.actor_id),
            (AuditEvent.entity_type, entity_type),
            (AuditEvent.entity_id, filters.entity_id),
            (AuditEvent.entity_code, filters.entity_code),
            (AuditEvent.operation_type, filters.operation_type),
            (AuditEvent.module, filters.module),
            (AuditEvent.severity, filters.severity),
        )
        for column, value in equality:
            if value is not None:
                query = query.where(column == str(value))
        if filters.in_chain is not None:
            query = query.where(AuditEvent.in_chain.is_(filters.in_chain))
        if filters.created_from is not None:
            query = query.where(AuditEvent.created_at >= as_utc(filters.created_from))
        if filters.created_to is not None:
            query = query.where(AuditEvent.created_at <= as_utc(filters.created_to))
        return query

    async def _all(self, query: Select[Any], operation: str) -> list[AuditEvent]:
        try:
            result = await self._db.execute(query)
        except SQLAlchemyError as exc:
            _log.error("audit_read_failed", operation=operation, error=str(exc))
            raise PersistenceError(operation) from exc
        events: Sequence[AuditEvent] = result.scalars().all()
        return list(events)
