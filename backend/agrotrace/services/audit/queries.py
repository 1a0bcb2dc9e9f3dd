"""Read surface for reporting and inspection layers."""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncSession

from agrotrace.config.settings import Settings, get_settings
from agrotrace.core.errors import ValidationError
from agrotrace.db.base import as_utc
from agrotrace.db.models.audit import AuditEvent
from agrotrace.schemas.audit import (
    AuditEventOut,
    AuditListResponse,
    AuditQuery,
    ChainVerificationResult,
)
from agrotrace.services.audit.ledger import ChainLedger
from agrotrace.services.audit.verifier import ChainVerifier, event_integrity


def to_out(event: AuditEvent) -> AuditEventOut:
    """Flatten an event, adding the single-event integrity check for chained ones."""
    out = AuditEventOut.model_validate(event)
    return out.model_copy(
        update={
            "integrity_verified": event_integrity(event),
            "created_at": as_utc(event.created_at),
        }
    )


class AuditQueryService:
    """
    Tenant-scoped queries returning flat, serializable records.

    Usage:
        queries = AuditQueryService(db)
        page = await queries.search(tenant_id, AuditQuery(module="LOGISTICS"))
    """

    def __init__(self, db: AsyncSession, settings: Settings | None = None) -> None:
        self._ledger = ChainLedger(db)
        self._verifier = ChainVerifier(self._ledger)
        self._settings = settings or get_settings()

    async def list_by_tenant(self, tenant_id: str) -> list[AuditEventOut]:
        return [to_out(e) for e in await self._ledger.list_by_tenant(tenant_id)]

    async def list_by_entity(
        self, tenant_id: str, entity_type: str, entity_id: str | int
    ) -> list[AuditEventOut]:
        events = await self._ledger.list_by_entity(tenant_id, entity_type, entity_id)
        return [to_out(e) for e in events]

    async def list_chain(self, tenant_id: str) -> list[AuditEventOut]:
        return [to_out(e) for e in await self._ledger.list_chain(tenant_id)]

    async def recent_critical(self, tenant_id: str, limit: int | None = None) -> list[AuditEventOut]:
        events = await self._ledger.recent_critical(
            tenant_id, limit or self._settings.audit_recent_critical_limit
        )
        return [to_out(e) for e in events]

    async def verify_chain(self, tenant_id: str) -> bool:
        return await self._verifier.verify_chain(tenant_id)

    async def inspect_chain(self, tenant_id: str) -> ChainVerificationResult:
        return await self._verifier.inspect_chain(tenant_id)

    async def search(
        self,
        tenant_id: str,
        filters: AuditQuery | None = None,
        *,
        page: int = 1,
        page_size: int = 50,
    ) -> AuditListResponse:
        """Return one page of filtered events, newest first."""
        if page < 1 or not 1 <= page_size <= self._settings.audit_max_page_size:
            raise ValidationError(
                f"page must be >= 1 and page_size between 1 and {self._settings.audit_max_page_size}",
                {"page": page, "page_size": page_size},
            )
        events, total = await self._ledger.search(
            tenant_id,
            filters,
            offset=(page - 1) * page_size,
            limit=page_size,
        )
        return AuditListResponse(
            items=[to_out(e) for e in events],
            total=total,
            page=page,
            page_size=page_size,
        )
