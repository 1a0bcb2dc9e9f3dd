"""Database model registry. Import all models here so Alembic can discover them."""

from agrotrace.db.models.audit import (
    GENESIS_HASH,
    AuditEvent,
    EntityType,
    Module,
    OperationType,
    Severity,
)

__all__ = [
    "GENESIS_HASH",
    "AuditEvent",
    "EntityType",
    "Module",
    "OperationType",
    "Severity",
]
