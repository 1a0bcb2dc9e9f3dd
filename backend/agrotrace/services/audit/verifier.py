"""
Chain integrity verification.

Walks a tenant's chained events in chain order and recomputes every hash
and link. A broken chain is reported as a result, never raised; the
verifier only reads.
"""

from __future__ import annotations

import structlog

from agrotrace.core.metrics import audit_chain_verifications_total
from agrotrace.db.models.audit import GENESIS_HASH, AuditEvent
from agrotrace.schemas.audit import ChainVerificationResult
from agrotrace.services.audit.canonical import hash_event
from agrotrace.services.audit.ledger import ChainLedger

_log = structlog.get_logger(__name__)

GENESIS_MISMATCH = "genesis_mismatch"
HASH_MISMATCH = "hash_mismatch"
LINK_MISMATCH = "link_mismatch"


def event_integrity(event: AuditEvent) -> bool | None:
    """
    Recompute one chained event's hash and compare it with the stored one.

    Returns None for events outside the chain.
    """
    if not event.in_chain:
        return None
    return hash_event(event) == event.event_hash


def _first_break(chain: list[AuditEvent]) -> tuple[AuditEvent, str] | None:
    for index, event in enumerate(chain):
        if index == 0 and event.previous_hash != GENESIS_HASH:
            return event, GENESIS_MISMATCH
        if hash_event(event) != event.event_hash:
            return event, HASH_MISMATCH
        if index > 0 and event.previous_hash != chain[index - 1].event_hash:
            return event, LINK_MISMATCH
    return None


class ChainVerifier:
    """
    Read-only integrity checks over a tenant's hash chain.

    Usage:
        verifier = ChainVerifier(ChainLedger(db))
        ok = await verifier.verify_chain(tenant_id)
    """

    def __init__(self, ledger: ChainLedger) -> None:
        self._ledger = ledger

    async def verify_chain(self, tenant_id: str) -> bool:
        """True if every chained event of the tenant hashes and links correctly."""
        result = await self.inspect_chain(tenant_id)
        return result.is_valid

    async def inspect_chain(self, tenant_id: str) -> ChainVerificationResult:
        chain = await self._ledger.list_chain(tenant_id)
        broken = _first_break(chain)

        if broken is None:
            audit_chain_verifications_total.labels(outcome="valid").inc()
            return ChainVerificationResult(
                tenant_id=str(tenant_id),
                is_valid=True,
                total_events=len(chain),
                message="Chain is intact.",
            )

        event, reason = broken
        audit_chain_verifications_total.labels(outcome="broken").inc()
        _log.error(
            "audit_chain_broken",
            tenant_id=str(tenant_id),
            event_id=event.id,
            reason=reason,
            stored_hash=event.event_hash,
            previous_hash=event.previous_hash,
        )
        return ChainVerificationResult(
            tenant_id=str(tenant_id),
            is_valid=False,
            total_events=len(chain),
            first_broken_at=event.id,
            reason=reason,
            message=f"Chain broken at event {event.id} ({reason}).",
        )
