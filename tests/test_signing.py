from __future__ import annotations

import base64
import hashlib

import pytest

from skillgate.core.errors import AuthenticationFailed, RequestValidationFailed
from skillgate.trust.signing import (
    HEARTBEAT_FIELDS,
    PEERS_FIELDS,
    generate_key,
    instance_id_from_public_key,
    sign_fields,
    verify_fields,
)
from skillgate.trust.verifier import SignatureVerifier, coerce_timestamp

NOW = 1_760_000_000_000


def _clock():
    return NOW


def test_sign_and_verify_ok():
    key = generate_key()
    body = {"instance_id": key.instance_id, "timestamp": NOW}
    sig = sign_fields(HEARTBEAT_FIELDS, body, key)

    assert verify_fields(HEARTBEAT_FIELDS, body, sig, key.public_key_b64)


def test_sign_verify_fail_when_payload_tampered():
    key = generate_key()
    body = {"instance_id": key.instance_id, "timestamp": NOW}
    sig = sign_fields(HEARTBEAT_FIELDS, body, key)

    assert not verify_fields(HEARTBEAT_FIELDS, {**body, "timestamp": NOW + 1}, sig, key.public_key_b64)
    assert not verify_fields(HEARTBEAT_FIELDS, body, sig, generate_key().public_key_b64)


@pytest.mark.parametrize("index", [0, 31, 63])
def test_flipping_any_signature_byte_fails_verification(index):
    key = generate_key()
    body = {"instance_id": key.instance_id, "timestamp": NOW}
    raw = bytearray(base64.b64decode(sign_fields(HEARTBEAT_FIELDS, body, key)))
    raw[index] ^= 0x01
    flipped = base64.b64encode(bytes(raw)).decode("ascii")

    assert not verify_fields(HEARTBEAT_FIELDS, body, flipped, key.public_key_b64)


def test_verify_rejects_garbage_signature_and_float_fields():
    key = generate_key()
    body = {"instance_id": key.instance_id, "timestamp": NOW}

    assert not verify_fields(HEARTBEAT_FIELDS, body, "not base64!!", key.public_key_b64)
    assert not verify_fields(HEARTBEAT_FIELDS, {**body, "timestamp": 1.5}, "AAAA", key.public_key_b64)


def test_instance_id_is_sha256_of_raw_public_key():
    key = generate_key()
    raw = base64.b64decode(key.public_key_b64)

    assert len(raw) == 32
    assert key.instance_id == hashlib.sha256(raw).hexdigest()
    assert instance_id_from_public_key(key.public_key_b64) == key.instance_id


def test_instance_id_rejects_wrong_length_key():
    with pytest.raises(ValueError):
        instance_id_from_public_key(base64.b64encode(b"short").decode("ascii"))


@pytest.mark.parametrize("offset_seconds", [-299, 299, 300, -300])
def test_timestamp_within_window_is_accepted(offset_seconds):
    verifier = SignatureVerifier(max_skew_seconds=300, clock=_clock)
    assert verifier.check_timestamp(NOW + offset_seconds * 1000) == NOW + offset_seconds * 1000


@pytest.mark.parametrize("offset_seconds", [-301, 301])
def test_timestamp_outside_window_is_rejected_naming_the_field(offset_seconds):
    verifier = SignatureVerifier(max_skew_seconds=300, clock=_clock)
    with pytest.raises(RequestValidationFailed) as excinfo:
        verifier.check_timestamp(NOW + offset_seconds * 1000)
    assert excinfo.value.field == "timestamp"
    assert excinfo.value.status_code == 400


def test_coerce_timestamp_accepts_query_string_form():
    assert coerce_timestamp(str(NOW)) == NOW
    for bad in (True, "12ab", None, 1.5):
        with pytest.raises(RequestValidationFailed):
            coerce_timestamp(bad)


def test_verify_checks_required_fields_before_timestamp():
    verifier = SignatureVerifier(clock=_clock)
    data = {"instance_id": "abc", "timestamp": 0, "signature": "x"}

    with pytest.raises(RequestValidationFailed) as excinfo:
        verifier.verify(data, required=("instance_id", "public_key"), fields=PEERS_FIELDS, public_key=None)
    assert excinfo.value.field == "public_key"


def test_verify_checks_timestamp_before_signature():
    key = generate_key()
    verifier = SignatureVerifier(clock=_clock)
    data = {"instance_id": key.instance_id, "public_key": key.public_key_b64, "timestamp": NOW - 600_000, "signature": "bogus"}

    with pytest.raises(RequestValidationFailed):
        verifier.verify(data, required=("instance_id", "public_key"), fields=PEERS_FIELDS, public_key=key.public_key_b64)


def test_verify_rejects_key_that_differs_from_stored_key():
    key = generate_key()
    verifier = SignatureVerifier(clock=_clock)
    data = {"instance_id": key.instance_id, "public_key": key.public_key_b64, "timestamp": NOW}
    data["signature"] = sign_fields(PEERS_FIELDS, data, key)

    verified = verifier.verify(
        dict(data), required=("instance_id", "public_key"), fields=PEERS_FIELDS, public_key=key.public_key_b64
    )
    assert verified["timestamp"] == NOW

    with pytest.raises(AuthenticationFailed):
        verifier.verify(
            dict(data),
            required=("instance_id", "public_key"),
            fields=PEERS_FIELDS,
            public_key=key.public_key_b64,
            stored_public_key=generate_key().public_key_b64,
        )
