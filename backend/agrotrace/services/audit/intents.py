"""Value objects handed to the recorder by collaborator services."""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from agrotrace.db.models.audit import OperationType


@dataclass(frozen=True)
class Actor:
    """The authenticated user behind an operation, with their tenant."""

    actor_id: str | int | None
    email: str | None
    tenant_id: str | int | None
    tenant_name: str | None = None
    name: str | None = None
    source_ip: str | None = None
    user_agent: str | None = None

    @property
    def is_resolvable(self) -> bool:
        return _present(self.actor_id) and _present(self.tenant_id)


def _present(value: str | int | None) -> bool:
    return value is not None and str(value).strip() != ""


@dataclass(frozen=True)
class ShipmentClosure:
    """Summary of a shipment at the moment it was closed."""

    shipment_id: str | int
    shipment_code: str
    pallet_count: int
    net_weight_kg: Decimal | float
    closure_hash: str | None
    closed_at: datetime
    status: str = "CLOSED"

    def description(self) -> str:
        return (
            f"Shipment {self.shipment_code} closed with {self.pallet_count} pallets, "
            f"total net weight: {float(self.net_weight_kg):.2f} kg"
        )

    def state_summary(self) -> str:
        return json.dumps(
            {
                "closed_at": self.closed_at.isoformat(),
                "closure_hash": self.closure_hash,
                "status": self.status,
            },
            sort_keys=True,
            separators=(",", ":"),
        )


@dataclass(frozen=True)
class AuditIntent:
    """A recording request that can be queued and delivered later."""

    operation: OperationType
    entity_type: str
    entity_id: str | int
    entity_code: str | None
    description: str
    actor: Actor | None
    prior_state: str | None = None
    new_state: str | None = None
    changed_fields: str | None = None
