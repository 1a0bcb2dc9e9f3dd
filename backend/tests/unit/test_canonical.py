"""Unit tests for agrotrace.services.audit.canonical."""
from datetime import UTC, datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from agrotrace.core.errors import HashComputationError
from agrotrace.db.models.audit import AuditEvent
from agrotrace.services.audit.canonical import (
    canonical_string,
    compute_hash,
    digest,
    format_timestamp,
    hash_event,
)

FIXED_AT = datetime(2026, 3, 1, 12, 30, 45, tzinfo=UTC)


def _farm_fields(**overrides):
    fields = {
        "previous_hash": None,
        "actor_id": "7",
        "entity_id": "10",
        "entity_type": "FARM",
        "operation_type": "CREATE",
        "description": "farm created",
        "tenant_id": "1",
        "created_at": FIXED_AT,
    }
    fields.update(overrides)
    return fields


# ─── Encoding ─────────────────────────────────────────────────────────────────

def test_canonical_string_field_order_and_separator():
    assert (
        canonical_string(**_farm_fields())
        == "0|7|10|FARM|CREATE|farm created|1|2026-03-01T12:30:45"
    )


def test_missing_previous_hash_encodes_as_sentinel():
    assert canonical_string(**_farm_fields(previous_hash="")).startswith("0|")
    assert canonical_string(**_farm_fields(previous_hash="ab" * 32)).startswith("ab" * 32 + "|")


def test_timestamp_drops_sub_second_precision():
    assert format_timestamp(FIXED_AT.replace(microsecond=999_999)) == "2026-03-01T12:30:45"


def test_naive_timestamp_is_taken_as_utc():
    assert format_timestamp(FIXED_AT.replace(tzinfo=None)) == format_timestamp(FIXED_AT)


def test_aware_timestamp_is_converted_to_utc():
    bogota = timezone(timedelta(hours=-5))
    local = datetime(2026, 3, 1, 7, 30, 45, tzinfo=bogota)
    assert format_timestamp(local) == "2026-03-01T12:30:45"


# ─── Hashing ──────────────────────────────────────────────────────────────────

def test_known_digest():
    assert compute_hash(**_farm_fields()) == (
        "d77c9f9279f8589c2946a16cdec947e5193097874f638742bcfcd81fd8d4ed41"
    )


def test_digest_hashes_utf8_bytes():
    payload = "abc|u-1|ENV-9|SHIPMENT|CLOSE|Cierre de envío|t-1|2025-12-31T23:59:59"
    assert digest(payload) == (
        "4fc5c7c976397c6f6f2017f92e5439bbc2df1f66f5e9bef18ddba04006e6b3bd"
    )


def test_digest_is_lowercase_hex_of_length_64():
    value = compute_hash(**_farm_fields())
    assert len(value) == 64
    assert value == value.lower()
    int(value, 16)


def test_hash_is_deterministic():
    assert compute_hash(**_farm_fields()) == compute_hash(**_farm_fields())


@pytest.mark.parametrize(
    "field, value",
    [
        ("previous_hash", "f" * 64),
        ("actor_id", "8"),
        ("entity_id", "11"),
        ("entity_type", "LOT"),
        ("operation_type", "UPDATE"),
        ("description", "farm renamed"),
        ("tenant_id", "2"),
        ("created_at", FIXED_AT + timedelta(seconds=1)),
    ],
)
def test_every_hashed_field_changes_the_digest(field, value):
    assert compute_hash(**_farm_fields(**{field: value})) != compute_hash(**_farm_fields())


def test_hash_event_uses_stored_fields():
    event = AuditEvent(
        actor_id="7",
        entity_id="10",
        entity_type="FARM",
        operation_type="CREATE",
        description="farm created",
        tenant_id="1",
        previous_hash=None,
        created_at=FIXED_AT.replace(tzinfo=None),
    )
    assert hash_event(event) == compute_hash(**_farm_fields())


def test_unencodable_payload_raises_hash_error():
    with pytest.raises(HashComputationError):
        digest("lone surrogate \udc80")


def test_missing_algorithm_raises_hash_error():
    with patch(
        "agrotrace.services.audit.canonical.hashlib.new",
        side_effect=ValueError("unsupported hash type"),
    ):
        with pytest.raises(HashComputationError):
            digest("payload")
