"""
Immutable audit event model.

Every significant state change of a tenant is stored as one row. Critical
operations are additionally linked into a per-tenant hash chain: each
chained event records the SHA-256 hash of the tenant's previous chained
event, or the sentinel ``"0"`` for the first one. Non-chained events keep
``previous_hash`` NULL.

Rows are append-only. The ORM refuses to flush an UPDATE or DELETE of an
existing event; see ``_reject_update`` / ``_reject_delete`` below.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum

from sqlalchemy import (
    Boolean,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.orm import Mapped, mapped_column

from agrotrace.core.errors import ImmutableRecordError
from agrotrace.db.base import Base

GENESIS_HASH = "0"


class OperationType(StrEnum):
    """Kinds of state change an audit event can describe."""

    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    CLOSE = "CLOSE"
    APPROVE = "APPROVE"
    REJECT = "REJECT"
    ASSIGN = "ASSIGN"


class Severity(StrEnum):
    INFO = "INFO"
    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


class Module(StrEnum):
    """Logical subsystem an entity type belongs to."""

    PRODUCTION = "PRODUCTION"
    PACKAGING = "PACKAGING"
    LOGISTICS = "LOGISTICS"
    SYSTEM = "SYSTEM"


class EntityType(StrEnum):
    """Entity-type tags emitted by the traceability services."""

    FARM = "FARM"
    LOT = "LOT"
    HARVEST = "HARVEST"
    ACTIVITY = "ACTIVITY"
    CERTIFICATION = "CERTIFICATION"
    RECEPTION = "RECEPTION"
    CLASSIFICATION = "CLASSIFICATION"
    LABEL = "LABEL"
    PALLET = "PALLET"
    QUALITY_CONTROL = "QUALITY_CONTROL"
    SHIPMENT = "SHIPMENT"
    LOGISTICS_EVENT = "LOGISTICS_EVENT"
    DOCUMENT = "DOCUMENT"
    USER = "USER"


class AuditEvent(Base):
    """Single immutable audit event."""

    __tablename__ = "audit_events"
    __table_args__ = (
        # Two chained events of one tenant may never point at the same
        # predecessor. NULLs (non-chained rows) never collide.
        UniqueConstraint("tenant_id", "previous_hash", name="uq_audit_events_chain_link"),
        Index("ix_audit_events_tenant_chain", "tenant_id", "in_chain", "created_at"),
        Index("ix_audit_events_entity", "entity_type", "entity_id"),
        Index("ix_audit_events_tenant_id", "tenant_id"),
        Index("ix_audit_events_actor_id", "actor_id"),
        Index("ix_audit_events_created_at", "created_at"),
    )

    # Autoincrement id doubles as insertion order for created_at ties
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # ── Who ────────────────────────────────────────────────────────────── #
    actor_id: Mapped[str] = mapped_column(String(36), nullable=False)
    actor_email: Mapped[str] = mapped_column(String(255), nullable=False)
    actor_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    tenant_id: Mapped[str] = mapped_column(String(36), nullable=False)
    tenant_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    source_ip: Mapped[str | None] = mapped_column(String(50), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # ── What ───────────────────────────────────────────────────────────── #
    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_code: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    operation_type: Mapped[str] = mapped_column(String(20), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    prior_state: Mapped[str | None] = mapped_column(Text, nullable=True)
    new_state: Mapped[str | None] = mapped_column(Text, nullable=True)
    changed_fields: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # ── Classification ─────────────────────────────────────────────────── #
    module: Mapped[str] = mapped_column(String(30), nullable=False)
    severity: Mapped[str] = mapped_column(String(10), nullable=False)

    # ── Chain ──────────────────────────────────────────────────────────── #
    in_chain: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    event_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    previous_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)

    # Assigned by the recorder before hashing; the store never generates it
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    @property
    def is_critical(self) -> bool:
        return self.severity == Severity.CRITICAL

    def __repr__(self) -> str:
        return (
            f"<AuditEvent {self.id} {self.operation_type} "
            f"{self.entity_type}:{self.entity_id} tenant={self.tenant_id}>"
        )


@event.listens_for(AuditEvent, "before_update")
def _reject_update(mapper, connection, target: AuditEvent) -> None:  # type: ignore[no-untyped-def]
    raise ImmutableRecordError(target.id, "update")


@event.listens_for(AuditEvent, "before_delete")
def _reject_delete(mapper, connection, target: AuditEvent) -> None:  # type: ignore[no-untyped-def]
    raise ImmutableRecordError(target.id, "delete")
