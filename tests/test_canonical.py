from __future__ import annotations

from datetime import datetime, timezone

import pytest

from skillgate.trust.canonical import CanonicalError, canonical_json, canonical_payload, sha256_hex


def test_canonical_json_stable_key_order():
    obj_a = {"b": 2, "a": 1, "nested": {"y": 2, "x": 1}}
    obj_b = {"nested": {"x": 1, "y": 2}, "a": 1, "b": 2}

    assert canonical_json(obj_a) == canonical_json(obj_b)
    assert sha256_hex(obj_a) == sha256_hex(obj_b)


def test_canonical_json_rejects_float():
    with pytest.raises(CanonicalError):
        canonical_json({"amount": 1.23})


def test_canonical_datetime_becomes_epoch_ms():
    aware = datetime(2026, 1, 1, 8, 0, tzinfo=timezone.utc)
    naive = datetime(2026, 1, 1, 8, 0)

    assert canonical_json({"timestamp": aware}) == b'{"timestamp":1767254400000}'
    assert canonical_json({"timestamp": naive}) == canonical_json({"timestamp": aware})


def test_canonical_json_names_the_offending_field():
    with pytest.raises(CanonicalError, match="profile.skills"):
        canonical_json({"profile": {"skills": {1, 2}}})


def test_canonical_payload_covers_only_listed_present_fields():
    data = {"instance_id": "abc", "timestamp": 1700000000000, "signature": "sig", "extra": "x", "nickname": None}

    payload = canonical_payload(("instance_id", "timestamp", "nickname"), data)

    assert payload == b'{"instance_id":"abc","timestamp":1700000000000}'


def test_canonical_payload_treats_missing_and_null_alike():
    fields = ("instance_id", "timestamp", "description")
    with_null = canonical_payload(fields, {"instance_id": "a", "timestamp": 1, "description": None})
    without = canonical_payload(fields, {"instance_id": "a", "timestamp": 1})
    assert with_null == without
