"""
Audit event recorder.

Builds an immutable audit event for each create / update / delete /
critical-close intent, classifies it, hashes it and appends it through
the chain ledger.

Critical closes are chain-eligible: the recorder reads the tenant's chain
tail, links the new event to it and writes it while holding that tenant's
lock, so two concurrent closes of one tenant can never both link to the
same predecessor. Other events take no lock.
"""

from __future__ import annotations

import asyncio
import time
from weakref import WeakKeyDictionary

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from agrotrace.core.errors import MissingActorError, PersistenceError
from agrotrace.core.metrics import audit_events_recorded_total, audit_recording_duration_seconds
from agrotrace.db.base import as_utc, utcnow_seconds
from agrotrace.db.models.audit import GENESIS_HASH, AuditEvent, EntityType, OperationType
from agrotrace.services.audit.canonical import hash_event
from agrotrace.services.audit.classifier import (
    classify_module,
    is_chain_eligible,
    normalize_tag,
    resolve_severity,
)
from agrotrace.services.audit.intents import Actor, AuditIntent, ShipmentClosure
from agrotrace.services.audit.ledger import ChainLedger

_log = structlog.get_logger(__name__)


class TenantLockRegistry:
    """
    One asyncio lock per tenant and event loop, created on first use.

    An ``asyncio.Lock`` belongs to the loop that first waits on it, so locks
    are kept per running loop; a registry shared across loops (one
    ``asyncio.run`` after another) never hands out a lock of a dead loop.
    Serialisation therefore holds within one loop; across processes the
    ``(tenant_id, previous_hash)`` constraint rejects forks.
    """

    def __init__(self) -> None:
        self._locks: WeakKeyDictionary[asyncio.AbstractEventLoop, dict[str, asyncio.Lock]] = (
            WeakKeyDictionary()
        )

    def lock_for(self, tenant_id: str) -> asyncio.Lock:
        locks = self._locks.setdefault(asyncio.get_running_loop(), {})
        lock = locks.get(tenant_id)
        if lock is None:
            lock = locks[tenant_id] = asyncio.Lock()
        return lock


_CHAIN_LOCKS = TenantLockRegistry()


class AuditRecorder:
    """
    Service for writing immutable audit events.

    Usage:
        recorder = AuditRecorder(db)
        await recorder.record_create(
            "FARM", farm.id, farm.code, "Farm created", actor
        )

    With ``autocommit`` (the default) every event is committed as soon as
    it is written; chained events are committed before the tenant lock is
    released so the next writer sees the new tail. Pass
    ``autocommit=False`` to fold recording into the caller's transaction.
    """

    def __init__(
        self,
        db: AsyncSession,
        *,
        ledger: ChainLedger | None = None,
        locks: TenantLockRegistry | None = None,
        autocommit: bool = True,
    ) -> None:
        self._db = db
        self._ledger = ledger or ChainLedger(db)
        self._locks = locks or _CHAIN_LOCKS
        self._autocommit = autocommit

    # ── Public intents ────────────────────────────────────────────────── #

    async def record_create(
        self,
        entity_type: str,
        entity_id: str | int,
        entity_code: str | None,
        description: str,
        actor: Actor | None,
    ) -> AuditEvent:
        return await self._record(
            OperationType.CREATE, entity_type, entity_id, entity_code, description, actor
        )

    async def record_update(
        self,
        entity_type: str,
        entity_id: str | int,
        entity_code: str | None,
        description: str,
        prior_state: str | None,
        new_state: str | None,
        actor: Actor | None,
        changed_fields: str | None = None,
    ) -> AuditEvent:
        return await self._record(
            OperationType.UPDATE,
            entity_type,
            entity_id,
            entity_code,
            description,
            actor,
            prior_state=prior_state,
            new_state=new_state,
            changed_fields=changed_fields,
        )

    async def record_delete(
        self,
        entity_type: str,
        entity_id: str | int,
        entity_code: str | None,
        description: str,
        actor: Actor | None,
    ) -> AuditEvent:
        return await self._record(
            OperationType.DELETE, entity_type, entity_id, entity_code, description, actor
        )

    async def record_critical_close(
        self,
        entity_type: str,
        entity_id: str | int,
        entity_code: str | None,
        description: str,
        new_state_summary: str | None,
        actor: Actor | None,
    ) -> AuditEvent:
        """Record a close and link it into the tenant's hash chain."""
        return await self._record(
            OperationType.CLOSE,
            entity_type,
            entity_id,
            entity_code,
            description,
            actor,
            new_state=new_state_summary,
        )

    async def record_shipment_close(
        self, shipment: ShipmentClosure, actor: Actor | None
    ) -> AuditEvent:
        return await self.record_critical_close(
            EntityType.SHIPMENT,
            shipment.shipment_id,
            shipment.shipment_code,
            shipment.description(),
            shipment.state_summary(),
            actor,
        )

    async def record(self, intent: AuditIntent) -> AuditEvent:
        """Record a queued intent, whatever its operation."""
        return await self._record(
            intent.operation,
            intent.entity_type,
            intent.entity_id,
            intent.entity_code,
            intent.description,
            intent.actor,
            prior_state=intent.prior_state,
            new_state=intent.new_state,
            changed_fields=intent.changed_fields,
        )

    # ── Internals ─────────────────────────────────────────────────────── #

    async def _record(
        self,
        operation: OperationType | str,
        entity_type: str,
        entity_id: str | int,
        entity_code: str | None,
        description: str,
        actor: Actor | None,
        *,
        prior_state: str | None = None,
        new_state: str | None = None,
        changed_fields: str | None = None,
    ) -> AuditEvent:
        operation_tag = normalize_tag(operation)
        entity_tag = normalize_tag(entity_type)

        if actor is None or not actor.is_resolvable:
            _log.warning(
                "audit_actor_missing",
                operation=operation_tag,
                entity_type=entity_tag,
                entity_id=str(entity_id),
            )
            raise MissingActorError()

        chained = is_chain_eligible(operation_tag)
        event = AuditEvent(
            actor_id=str(actor.actor_id),
            actor_email=actor.email or "",
            actor_name=actor.name,
            tenant_id=str(actor.tenant_id),
            tenant_name=actor.tenant_name,
            source_ip=actor.source_ip,
            user_agent=actor.user_agent,
            entity_type=entity_tag,
            entity_id=str(entity_id),
            entity_code=entity_code or "",
            operation_type=operation_tag,
            description=description or "",
            prior_state=prior_state,
            new_state=new_state,
            changed_fields=changed_fields,
            module=classify_module(entity_tag).value,
            severity=resolve_severity(operation_tag).value,
            in_chain=chained,
        )

        start = time.perf_counter()
        if chained:
            async with self._locks.lock_for(event.tenant_id):
                await self._append_chained(event)
        else:
            event.created_at = utcnow_seconds()
            await self._seal_and_append(event)
        audit_recording_duration_seconds.labels(chained=str(chained).lower()).observe(
            time.perf_counter() - start
        )
        audit_events_recorded_total.labels(operation=operation_tag, module=event.module).inc()

        _log.info(
            "audit_event_recorded",
            event_id=event.id,
            tenant_id=event.tenant_id,
            operation=operation_tag,
            entity_type=entity_tag,
            entity_id=event.entity_id,
            severity=event.severity,
            in_chain=chained,
            event_hash=event.event_hash,
        )
        return event

    async def _append_chained(self, event: AuditEvent) -> None:
        """Link ``event`` to the tenant's tail; caller holds the tenant lock."""
        tail = await self._ledger.latest_chain_event(event.tenant_id, for_update=True)
        created_at = utcnow_seconds()
        if tail is None:
            event.previous_hash = GENESIS_HASH
        else:
            event.previous_hash = tail.event_hash
            # Chain order is created_at order; never step behind the tail
            created_at = max(created_at, as_utc(tail.created_at))
        event.created_at = created_at
        await self._seal_and_append(event)

    async def _seal_and_append(self, event: AuditEvent) -> None:
        event.event_hash = hash_event(event)
        try:
            await self._ledger.append(event)
            if self._autocommit:
                try:
                    await self._db.commit()
                except SQLAlchemyError as exc:
                    raise PersistenceError("commit") from exc
        except PersistenceError:
            if self._autocommit:
                await self._db.rollback()
            raise
