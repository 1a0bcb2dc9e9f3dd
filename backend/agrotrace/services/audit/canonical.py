"""
Canonical encoding and hashing of audit events.

All hash computation for audit events goes through this module, both when
an event is recorded and when a chain is verified, so the two can never
drift apart.

Hash policy
-----------
  input  = previous_hash | actor_id | entity_id | entity_type
           | operation_type | description | tenant_id | created_at
  digest = SHA-256(input.encode("utf-8")).hexdigest()

``previous_hash`` is ``"0"`` when absent. ``created_at`` is rendered in
UTC as ``YYYY-MM-DDTHH:MM:SS``; naive datetimes (SQLite hands them back
that way) are taken to already be UTC.
"""

from __future__ import annotations

import hashlib
from datetime import datetime

from agrotrace.core.errors import HashComputationError
from agrotrace.db.base import as_utc
from agrotrace.db.models.audit import GENESIS_HASH, AuditEvent

HASH_ALGORITHM = "sha256"
SEPARATOR = "|"
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S"


def format_timestamp(value: datetime) -> str:
    """Render a timestamp the way it enters the hash: UTC, second precision."""
    return as_utc(value).strftime(TIMESTAMP_FORMAT)


def canonical_string(
    previous_hash: str | None,
    actor_id: str,
    entity_id: str,
    entity_type: str,
    operation_type: str,
    description: str,
    tenant_id: str,
    created_at: datetime,
) -> str:
    """Join the hashed fields in their fixed order."""
    return SEPARATOR.join(
        (
            previous_hash or GENESIS_HASH,
            str(actor_id),
            str(entity_id),
            str(entity_type),
            str(operation_type),
            description,
            str(tenant_id),
            format_timestamp(created_at),
        )
    )


def digest(payload: str) -> str:
    """SHA-256 of ``payload`` as 64 lowercase hex characters."""
    try:
        data = payload.encode("utf-8")
    except UnicodeEncodeError as exc:
        raise HashComputationError(f"Audit payload is not encodable as UTF-8: {exc}") from exc
    try:
        hasher = hashlib.new(HASH_ALGORITHM)
    except ValueError as exc:
        raise HashComputationError(f"Hash algorithm {HASH_ALGORITHM} is unavailable") from exc
    hasher.update(data)
    return hasher.hexdigest()


def compute_hash(
    previous_hash: str | None,
    actor_id: str,
    entity_id: str,
    entity_type: str,
    operation_type: str,
    description: str,
    tenant_id: str,
    created_at: datetime,
) -> str:
    return digest(
        canonical_string(
            previous_hash,
            actor_id,
            entity_id,
            entity_type,
            operation_type,
            description,
            tenant_id,
            created_at,
        )
    )


def hash_event(event: AuditEvent) -> str:
    """Recompute the hash of ``event`` from its own stored fields."""
    return compute_hash(
        previous_hash=event.previous_hash,
        actor_id=event.actor_id,
        entity_id=event.entity_id,
        entity_type=event.entity_type,
        operation_type=event.operation_type,
        description=event.description,
        tenant_id=event.tenant_id,
        created_at=event.created_at,
    )
