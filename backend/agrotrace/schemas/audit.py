"""Audit event schemas."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field, model_validator

from agrotrace.db.base import as_utc
from agrotrace.db.models.audit import Module, OperationType, Severity


class AuditEventOut(BaseModel):
    id: int
    actor_id: str
    actor_email: str
    actor_name: str | None
    tenant_id: str
    tenant_name: str | None
    source_ip: str | None
    user_agent: str | None
    entity_type: str
    entity_id: str
    entity_code: str
    operation_type: str
    description: str
    prior_state: str | None
    new_state: str | None
    changed_fields: str | None
    module: str
    severity: str
    is_critical: bool
    in_chain: bool
    event_hash: str
    previous_hash: str | None
    integrity_verified: bool | None = Field(
        default=None,
        description="Single-event hash recomputation; only set for chained events",
    )
    created_at: datetime

    model_config = {"from_attributes": True}


class AuditListResponse(BaseModel):
    items: list[AuditEventOut]
    total: int
    page: int
    page_size: int


class ChainVerificationResult(BaseModel):
    tenant_id: str
    is_valid: bool
    total_events: int
    first_broken_at: int | None = Field(
        default=None, description="ID of the first event where the chain breaks"
    )
    reason: str | None = Field(
        default=None,
        description="genesis_mismatch | hash_mismatch | link_mismatch",
    )
    message: str


class AuditQuery(BaseModel):
    """Optional filters for tenant-scoped audit searches."""

    actor_id: str | None = None
    entity_type: str | None = None
    entity_id: str | None = None
    entity_code: str | None = None
    operation_type: OperationType | None = None
    module: Module | None = None
    severity: Severity | None = None
    in_chain: bool | None = None
    created_from: datetime | None = None
    created_to: datetime | None = None

    @model_validator(mode="after")
    def window_is_ordered(self) -> AuditQuery:
        if (
            self.created_from is not None
            and self.created_to is not None
            and as_utc(self.created_from) > as_utc(self.created_to)
        ):
            raise ValueError("created_from must not be later than created_to")
        return self
