"""Unit tests for agrotrace.services.audit.recorder."""
import json
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import func, select

from agrotrace.core.errors import (
    ErrorCode,
    ImmutableRecordError,
    MissingActorError,
    PersistenceError,
)
from agrotrace.db.base import as_utc
from agrotrace.db.models.audit import GENESIS_HASH, AuditEvent, OperationType
from agrotrace.services.audit.canonical import compute_hash
from agrotrace.services.audit.intents import Actor, AuditIntent, ShipmentClosure
from agrotrace.services.audit.ledger import ChainLedger
from agrotrace.services.audit.recorder import AuditRecorder


pytestmark = pytest.mark.asyncio


async def _count(db_session) -> int:
    result = await db_session.execute(select(func.count()).select_from(AuditEvent))
    return result.scalar_one()


def _closure(code: str = "ENV-2026-001") -> ShipmentClosure:
    return ShipmentClosure(
        shipment_id=42,
        shipment_code=code,
        pallet_count=20,
        net_weight_kg=Decimal("18250.5"),
        closure_hash="c" * 64,
        closed_at=datetime(2026, 3, 1, 12, 0, tzinfo=UTC),
    )


# ─── Non-chained events ───────────────────────────────────────────────────────

async def test_create_is_info_production_and_unchained(recorder, user_t1):
    event = await recorder.record_create("FARM", 10, "F-001", "Farm created", user_t1)

    assert event.id is not None
    assert event.operation_type == "CREATE"
    assert event.severity == "INFO"
    assert event.module == "PRODUCTION"
    assert event.in_chain is False
    assert event.previous_hash is None
    assert len(event.event_hash) == 64


async def test_create_copies_actor_and_tenant(recorder, user_t1):
    event = await recorder.record_create("LOT", 3, "L-3", "Lot created", user_t1)

    assert event.actor_id == "7"
    assert event.actor_email == "ana.gomez@frutas-t1.co"
    assert event.actor_name == "Ana Gomez"
    assert event.tenant_id == "1"
    assert event.tenant_name == "Frutas del Valle S.A.S"
    assert event.source_ip == "10.0.0.7"
    assert event.user_agent == "pytest"
    assert event.entity_id == "3"


async def test_update_stores_prior_and_new_state(recorder, user_t1):
    event = await recorder.record_update(
        "PALLET",
        5,
        "P-5",
        "Pallet weight corrected",
        '{"net_kg": 900}',
        '{"net_kg": 912}',
        user_t1,
        changed_fields="net_kg",
    )

    assert event.operation_type == "UPDATE"
    assert event.module == "PACKAGING"
    assert event.prior_state == '{"net_kg": 900}'
    assert event.new_state == '{"net_kg": 912}'
    assert event.changed_fields == "net_kg"
    assert event.in_chain is False


@pytest.mark.parametrize("entity_type", ["FARM", "SHIPMENT", "USER"])
async def test_delete_is_always_warning(recorder, user_t1, entity_type):
    event = await recorder.record_delete(entity_type, 1, "X-1", "Removed", user_t1)
    assert event.severity == "WARNING"
    assert event.in_chain is False


async def test_unknown_entity_type_goes_to_system_module(recorder, user_t1):
    event = await recorder.record_create("user", 99, "", "User invited", user_t1)
    assert event.entity_type == "USER"
    assert event.module == "SYSTEM"


async def test_missing_code_and_description_become_empty(recorder, user_t1):
    event = await recorder.record_create("FARM", 1, None, None, user_t1)
    assert event.entity_code == ""
    assert event.description == ""


async def test_created_at_has_second_precision(recorder, user_t1):
    event = await recorder.record_create("FARM", 1, "F-1", "Farm created", user_t1)
    assert event.created_at.microsecond == 0
    assert as_utc(event.created_at) <= datetime.now(UTC)


async def test_stored_hash_is_reproducible_from_fields(recorder, user_t1):
    event = await recorder.record_create("FARM", 10, "F-010", "farm created", user_t1)

    assert event.event_hash == compute_hash(
        previous_hash=None,
        actor_id="7",
        entity_id="10",
        entity_type="FARM",
        operation_type="CREATE",
        description="farm created",
        tenant_id="1",
        created_at=event.created_at,
    )


# ─── Chained events ───────────────────────────────────────────────────────────

async def test_first_close_links_to_genesis(recorder, user_t1):
    event = await recorder.record_critical_close(
        "SHIPMENT", 42, "ENV-1", "Shipment closed", '{"status":"CLOSED"}', user_t1
    )

    assert event.in_chain is True
    assert event.severity == "CRITICAL"
    assert event.module == "LOGISTICS"
    assert event.previous_hash == GENESIS_HASH
    assert event.new_state == '{"status":"CLOSED"}'


async def test_second_close_links_to_first(recorder, user_t1):
    first = await recorder.record_critical_close("SHIPMENT", 1, "ENV-1", "closed", None, user_t1)
    second = await recorder.record_critical_close("SHIPMENT", 2, "ENV-2", "closed", None, user_t1)

    assert second.previous_hash == first.event_hash
    assert as_utc(second.created_at) >= as_utc(first.created_at)


async def test_non_chained_events_do_not_move_the_tail(recorder, user_t1):
    first = await recorder.record_critical_close("SHIPMENT", 1, "ENV-1", "closed", None, user_t1)
    await recorder.record_create("PALLET", 9, "P-9", "Pallet created", user_t1)
    await recorder.record_delete("LABEL", 4, "E-4", "Label voided", user_t1)
    second = await recorder.record_critical_close("SHIPMENT", 2, "ENV-2", "closed", None, user_t1)

    assert second.previous_hash == first.event_hash


async def test_chains_are_per_tenant(recorder, user_t1, user_t2):
    await recorder.record_critical_close("SHIPMENT", 1, "ENV-1", "closed", None, user_t1)
    other = await recorder.record_critical_close("SHIPMENT", 1, "ENV-1", "closed", None, user_t2)
    assert other.previous_hash == GENESIS_HASH


async def test_close_never_steps_behind_the_tail(db_session, chain_locks, user_t1):
    ledger = ChainLedger(db_session)
    recorder = AuditRecorder(db_session, ledger=ledger, locks=chain_locks)
    first = await recorder.record_critical_close("SHIPMENT", 1, "ENV-1", "closed", None, user_t1)

    future_tail = AuditEvent(
        **{
            column: getattr(first, column)
            for column in ("actor_id", "actor_email", "tenant_id", "entity_type",
                           "entity_code", "operation_type", "description", "module",
                           "severity", "in_chain", "event_hash")
        }
    )
    future_tail.entity_id = "2"
    future_tail.previous_hash = "f" * 64
    future_tail.created_at = as_utc(first.created_at) + timedelta(hours=1)
    ledger.latest_chain_event = AsyncMock(return_value=future_tail)

    second = await recorder.record_critical_close("SHIPMENT", 3, "ENV-3", "closed", None, user_t1)
    assert as_utc(second.created_at) == future_tail.created_at
    assert second.previous_hash == first.event_hash


async def test_record_shipment_close(recorder, user_t1):
    event = await recorder.record_shipment_close(_closure(), user_t1)

    assert event.entity_type == "SHIPMENT"
    assert event.entity_id == "42"
    assert event.entity_code == "ENV-2026-001"
    assert event.description == (
        "Shipment ENV-2026-001 closed with 20 pallets, total net weight: 18250.50 kg"
    )
    assert json.loads(event.new_state) == {
        "closed_at": "2026-03-01T12:00:00+00:00",
        "closure_hash": "c" * 64,
        "status": "CLOSED",
    }
    assert event.in_chain is True


async def test_record_intent_dispatches_on_operation(recorder, user_t1):
    intent = AuditIntent(
        operation=OperationType.CLOSE,
        entity_type="lot",
        entity_id=8,
        entity_code="L-8",
        description="Lot closed",
        actor=user_t1,
    )
    event = await recorder.record(intent)
    assert event.entity_type == "LOT"
    assert event.in_chain is True
    assert event.previous_hash == GENESIS_HASH


# ─── Failures ─────────────────────────────────────────────────────────────────

@pytest.mark.parametrize(
    "actor",
    [
        None,
        Actor(actor_id=None, email="x@y.co", tenant_id=1),
        Actor(actor_id=7, email="x@y.co", tenant_id=None),
        Actor(actor_id="  ", email="x@y.co", tenant_id=1),
    ],
)
async def test_unresolvable_actor_is_rejected_without_writing(recorder, db_session, actor):
    with pytest.raises(MissingActorError) as exc_info:
        await recorder.record_create("FARM", 1, "F-1", "Farm created", actor)

    assert exc_info.value.code == ErrorCode.AUDIT_MISSING_ACTOR
    assert await _count(db_session) == 0


async def test_missing_actor_on_close_does_not_touch_chain(recorder, db_session):
    with pytest.raises(MissingActorError):
        await recorder.record_critical_close("SHIPMENT", 1, "ENV-1", "closed", None, None)
    assert await _count(db_session) == 0


async def test_store_failure_surfaces_as_persistence_error(db_session, chain_locks, user_t1):
    ledger = ChainLedger(db_session)
    ledger.append = AsyncMock(side_effect=PersistenceError("append"))
    recorder = AuditRecorder(db_session, ledger=ledger, locks=chain_locks)

    with pytest.raises(PersistenceError) as exc_info:
        await recorder.record_critical_close("SHIPMENT", 1, "ENV-1", "closed", None, user_t1)

    assert exc_info.value.code == ErrorCode.AUDIT_PERSISTENCE_FAILED
    assert exc_info.value.detail == {"operation": "append"}
    assert await _count(db_session) == 0


async def test_failed_close_leaves_tail_for_next_writer(db_session, chain_locks, user_t1):
    recorder = AuditRecorder(db_session, locks=chain_locks)
    first = await recorder.record_critical_close("SHIPMENT", 1, "ENV-1", "closed", None, user_t1)
    first_hash = first.event_hash

    failing = ChainLedger(db_session)
    failing.append = AsyncMock(side_effect=PersistenceError("append"))
    with pytest.raises(PersistenceError):
        await AuditRecorder(db_session, ledger=failing, locks=chain_locks).record_critical_close(
            "SHIPMENT", 2, "ENV-2", "closed", None, user_t1
        )

    second = await recorder.record_critical_close("SHIPMENT", 3, "ENV-3", "closed", None, user_t1)
    assert second.previous_hash == first_hash


# ─── Immutability ─────────────────────────────────────────────────────────────

async def test_orm_update_is_refused(recorder, db_session, user_t1):
    event = await recorder.record_create("FARM", 1, "F-1", "Farm created", user_t1)
    event.description = "rewritten"

    with pytest.raises(ImmutableRecordError) as exc_info:
        await db_session.flush()

    assert exc_info.value.code == ErrorCode.AUDIT_IMMUTABLE_RECORD
    await db_session.rollback()


async def test_orm_delete_is_refused(recorder, db_session, user_t1):
    event = await recorder.record_create("FARM", 1, "F-1", "Farm created", user_t1)
    await db_session.delete(event)

    with pytest.raises(ImmutableRecordError):
        await db_session.flush()
    await db_session.rollback()
