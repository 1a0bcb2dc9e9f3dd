"""
Post-commit audit dispatch.

Business services hand a recording intent to the dispatcher together with
the session of their own transaction. The intent is queued only once that
transaction commits (and forgotten if it rolls back); a background worker
then records it in a fresh session.

Delivery is at-least-once. A store failure is retried with exponential
back-off; an intent that still cannot be recorded, or that carries no
resolvable actor, is logged and dropped. Nothing raised here ever reaches
the business transaction, and a duplicate audit row is acceptable.
"""

from __future__ import annotations

import asyncio
import contextlib

import structlog
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import Session, SessionTransaction

from agrotrace.config.settings import Settings, get_settings
from agrotrace.core.errors import HashComputationError, MissingActorError, PersistenceError
from agrotrace.core.metrics import audit_dispatch_dropped_total
from agrotrace.db.models.audit import AuditEvent
from agrotrace.services.audit.intents import AuditIntent
from agrotrace.services.audit.recorder import AuditRecorder, TenantLockRegistry

_log = structlog.get_logger(__name__)

_PENDING_KEY = "agrotrace.pending_audit_intents"
_HOOKED_KEY = "agrotrace.audit_hooks_installed"


class AuditDispatcher:
    """
    Queue + worker that records audit intents after their transaction commits.

    Usage:
        dispatcher = AuditDispatcher(session_factory)
        await dispatcher.start()
        ...
        dispatcher.submit_after_commit(db, AuditIntent(...))
        await db.commit()          # intent is queued here
        ...
        await dispatcher.stop()
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        locks: TenantLockRegistry | None = None,
        settings: Settings | None = None,
    ) -> None:
        cfg = settings or get_settings()
        self._session_factory = session_factory
        self._locks = locks
        self._max_attempts = cfg.audit_dispatch_max_attempts
        self._retry_base = cfg.audit_dispatch_retry_base_seconds
        self._queue: asyncio.Queue[AuditIntent] = asyncio.Queue(
            maxsize=cfg.audit_dispatch_queue_size
        )
        self._worker: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    # ── Lifecycle ─────────────────────────────────────────────────────── #

    async def start(self) -> None:
        if self.running:
            return
        self._worker = asyncio.create_task(self._run(), name="audit-dispatcher")
        _log.info("audit_dispatcher_started", max_attempts=self._max_attempts)

    async def stop(self, *, drain: bool = True) -> None:
        """Stop the worker, first waiting for queued intents when ``drain``."""
        if drain and self.running:
            await self._queue.join()
        if self._worker is not None:
            self._worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._worker
            self._worker = None
        _log.info("audit_dispatcher_stopped", undelivered=self.pending)

    async def join(self) -> None:
        """Wait until every queued intent has been processed."""
        await self._queue.join()

    # ── Hand-off ──────────────────────────────────────────────────────── #

    def submit(self, intent: AuditIntent) -> bool:
        """Queue ``intent`` for delivery; False if it had to be dropped."""
        try:
            self._queue.put_nowait(intent)
        except asyncio.QueueFull:
            audit_dispatch_dropped_total.labels(reason="queue_full").inc()
            _log.warning(
                "audit_intent_dropped",
                reason="queue_full",
                operation=str(intent.operation),
                entity_type=intent.entity_type,
                entity_id=str(intent.entity_id),
            )
            return False
        return True

    def submit_after_commit(self, db: AsyncSession, intent: AuditIntent) -> None:
        """
        Queue ``intent`` once ``db`` commits its current transaction.

        Rolling back the outermost transaction discards every intent still
        waiting on that session; a SAVEPOINT rollback keeps them.
        """
        sync_session = db.sync_session
        sync_session.info.setdefault(_PENDING_KEY, []).append(intent)
        if not sync_session.info.get(_HOOKED_KEY):
            event.listen(sync_session, "after_commit", self._on_commit)
            event.listen(sync_session, "after_soft_rollback", self._on_rollback)
            sync_session.info[_HOOKED_KEY] = True

    def _on_commit(self, session: Session) -> None:
        for intent in session.info.pop(_PENDING_KEY, []):
            self.submit(intent)

    def _on_rollback(self, session: Session, previous_transaction: SessionTransaction) -> None:
        # A SAVEPOINT rollback leaves the outer transaction, and its intents, alive
        if previous_transaction.nested or previous_transaction.parent is not None:
            return
        discarded = session.info.pop(_PENDING_KEY, [])
        if discarded:
            _log.debug("audit_intents_discarded", count=len(discarded))

    # ── Delivery ──────────────────────────────────────────────────────── #

    async def deliver(self, intent: AuditIntent) -> AuditEvent | None:
        """Record ``intent`` in its own session; never raises on failure."""
        log = _log.bind(
            operation=str(intent.operation),
            entity_type=intent.entity_type,
            entity_id=str(intent.entity_id),
        )
        for attempt in range(1, self._max_attempts + 1):
            async with self._session_factory() as session:
                recorder = AuditRecorder(session, locks=self._locks)
                try:
                    return await recorder.record(intent)
                except MissingActorError:
                    audit_dispatch_dropped_total.labels(reason="missing_actor").inc()
                    log.warning("audit_intent_dropped", reason="missing_actor")
                    return None
                except HashComputationError as exc:
                    audit_dispatch_dropped_total.labels(reason="hash").inc()
                    log.error("audit_intent_dropped", reason="hash", error=exc.message)
                    return None
                except PersistenceError as exc:
                    log.warning(
                        "audit_delivery_failed",
                        attempt=attempt,
                        max_attempts=self._max_attempts,
                        error=str(exc.__cause__ or exc),
                    )
            if attempt < self._max_attempts:
                # Exponential back-off: base, 2*base, 4*base...
                await asyncio.sleep(self._retry_base * 2 ** (attempt - 1))

        audit_dispatch_dropped_total.labels(reason="persistence").inc()
        log.error("audit_intent_dropped", reason="persistence", attempts=self._max_attempts)
        return None

    async def _run(self) -> None:
        while True:
            intent = await self._queue.get()
            try:
                await self.deliver(intent)
            except Exception:
                # Keep the worker alive; the triggering transaction already committed
                audit_dispatch_dropped_total.labels(reason="unexpected").inc()
                _log.exception("audit_intent_dropped", reason="unexpected")
            finally:
                self._queue.task_done()
