"""
Deterministic classification of audit events.

Entity-type tags map to a subsystem through an exact-match table; unknown
tags fall back to ``SYSTEM``. Classification is informational and never
changes how an event is recorded.
"""

from __future__ import annotations

import re

from agrotrace.db.models.audit import EntityType, Module, OperationType, Severity

_MODULE_BY_ENTITY_TYPE: dict[str, Module] = {
    EntityType.FARM: Module.PRODUCTION,
    EntityType.LOT: Module.PRODUCTION,
    EntityType.HARVEST: Module.PRODUCTION,
    EntityType.ACTIVITY: Module.PRODUCTION,
    EntityType.RECEPTION: Module.PACKAGING,
    EntityType.CLASSIFICATION: Module.PACKAGING,
    EntityType.LABEL: Module.PACKAGING,
    EntityType.PALLET: Module.PACKAGING,
    EntityType.QUALITY_CONTROL: Module.PACKAGING,
    EntityType.SHIPMENT: Module.LOGISTICS,
    EntityType.LOGISTICS_EVENT: Module.LOGISTICS,
    EntityType.DOCUMENT: Module.LOGISTICS,
}

_SEVERITY_BY_OPERATION: dict[str, Severity] = {
    OperationType.CREATE: Severity.INFO,
    OperationType.UPDATE: Severity.INFO,
    OperationType.DELETE: Severity.WARNING,
    OperationType.CLOSE: Severity.CRITICAL,
}

CHAIN_ELIGIBLE_OPERATIONS: frozenset[str] = frozenset({OperationType.CLOSE})

# Model class names used by the traceability services whose tag is not
# simply the upper snake-case form of the name.
_ENTITY_TYPE_BY_CLASS: dict[str, EntityType] = {
    "AgronomicActivity": EntityType.ACTIVITY,
    "PlantReception": EntityType.RECEPTION,
    "ExportDocument": EntityType.DOCUMENT,
    "DocumentExport": EntityType.DOCUMENT,
}

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


def normalize_tag(tag: str) -> str:
    return tag.strip().upper()


def classify_module(entity_type: str) -> Module:
    """Return the subsystem an entity-type tag belongs to."""
    return _MODULE_BY_ENTITY_TYPE.get(normalize_tag(entity_type), Module.SYSTEM)


def resolve_severity(operation_type: str) -> Severity:
    """Severity for an operation; operations without a rule are INFO."""
    return _SEVERITY_BY_OPERATION.get(normalize_tag(operation_type), Severity.INFO)


def is_chain_eligible(operation_type: str) -> bool:
    return normalize_tag(operation_type) in CHAIN_ELIGIBLE_OPERATIONS


def entity_type_for_class(class_name: str) -> str:
    """
    Map a collaborator's model class name to its entity-type tag.

    ``QualityControl`` -> ``QUALITY_CONTROL``; names listed in the
    override table win over the mechanical conversion.
    """
    override = _ENTITY_TYPE_BY_CLASS.get(class_name)
    if override is not None:
        return override.value
    return _CAMEL_BOUNDARY.sub("_", class_name).upper()
