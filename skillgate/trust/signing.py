from __future__ import annotations

import base64
import binascii
import hashlib
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

from nacl.exceptions import BadSignatureError
from nacl.signing import SigningKey, VerifyKey

from skillgate.trust.canonical import CanonicalError, canonical_payload

REGISTER_FIELDS = (
    "public_key",
    "timestamp",
    "nickname",
    "description",
    "repo_url",
    "avatar_color",
    "avatar_icon",
    "avatar_border",
    "featured_skills",
    "skills_writeup",
    "app_version",
    "local_ports",
    "lan_hostname",
)
HEARTBEAT_FIELDS = ("instance_id", "timestamp")
PEERS_FIELDS = ("instance_id", "public_key", "timestamp")
PROFILE_FIELDS = (
    "instance_id",
    "public_key",
    "timestamp",
    "nickname",
    "description",
    "avatar_color",
    "avatar_icon",
    "avatar_border",
    "featured_skills",
    "skills_writeup",
)
FORUM_POST_FIELDS = ("instance_id", "timestamp", "channel_id", "title", "body")


@dataclass(frozen=True)
class KeyMaterial:
    signing_key: SigningKey

    @property
    def verify_key(self) -> VerifyKey:
        return self.signing_key.verify_key

    @property
    def public_key_b64(self) -> str:
        return base64.b64encode(bytes(self.verify_key)).decode("ascii")

    @property
    def instance_id(self) -> str:
        return instance_id_from_public_key(self.public_key_b64)

    @property
    def seed(self) -> bytes:
        return bytes(self.signing_key)


def generate_key() -> KeyMaterial:
    return KeyMaterial(signing_key=SigningKey.generate())


def key_from_seed(seed: bytes) -> KeyMaterial:
    if len(seed) != 32:
        raise ValueError("Ed25519 seed must be exactly 32 bytes")
    return KeyMaterial(signing_key=SigningKey(seed))


def decode_public_key(public_key_b64: str) -> bytes:
    try:
        raw = base64.b64decode(public_key_b64, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("public key is not valid base64") from exc
    if len(raw) != 32:
        raise ValueError("Ed25519 public key must be exactly 32 bytes")
    return raw


def instance_id_from_public_key(public_key_b64: str) -> str:
    return hashlib.sha256(decode_public_key(public_key_b64)).hexdigest()


def sign_fields(fields: Iterable[str], data: Mapping[str, Any], key: KeyMaterial) -> str:
    payload = canonical_payload(fields, data)
    signature = key.signing_key.sign(payload).signature
    return base64.b64encode(signature).decode("ascii")


def verify_bytes(payload: bytes, signature_b64: str, public_key_b64: str) -> bool:
    try:
        signature = base64.b64decode(signature_b64, validate=True)
        verify_key = VerifyKey(decode_public_key(public_key_b64))
        verify_key.verify(payload, signature)
        return True
    except (BadSignatureError, binascii.Error, ValueError):
        return False


def verify_fields(fields: Iterable[str], data: Mapping[str, Any], signature_b64: str, public_key_b64: str) -> bool:
    try:
        payload = canonical_payload(fields, data)
    except CanonicalError:
        return False
    return verify_bytes(payload, signature_b64, public_key_b64)
