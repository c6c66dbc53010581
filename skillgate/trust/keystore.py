from __future__ import annotations

import base64
import json
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

import nacl.pwhash
import nacl.secret
import nacl.utils
from nacl.exceptions import CryptoError

from skillgate.trust.signing import KeyMaterial, generate_key, instance_id_from_public_key, key_from_seed

_KDF_PROFILES = {
    "moderate": (nacl.pwhash.argon2id.OPSLIMIT_MODERATE, nacl.pwhash.argon2id.MEMLIMIT_MODERATE),
    "interactive": (nacl.pwhash.argon2id.OPSLIMIT_INTERACTIVE, nacl.pwhash.argon2id.MEMLIMIT_INTERACTIVE),
    "min": (nacl.pwhash.argon2id.OPSLIMIT_MIN, nacl.pwhash.argon2id.MEMLIMIT_MIN),
}


class KeystoreError(ValueError):
    pass


@dataclass(frozen=True)
class StoredIdentity:
    """On-disk identity record. Only the public half is ever stored in clear."""

    public_key: str
    instance_id: str
    encrypted: str
    salt: str
    kdf: str
    created_at: str

    def to_dict(self) -> dict[str, str]:
        return {
            "public_key": self.public_key,
            "instance_id": self.instance_id,
            "encrypted": self.encrypted,
            "salt": self.salt,
            "kdf": self.kdf,
            "created_at": self.created_at,
        }


def _derive_key(passphrase: str, salt: bytes, kdf: str) -> bytes:
    try:
        opslimit, memlimit = _KDF_PROFILES[kdf]
    except KeyError as exc:
        raise KeystoreError(f"unknown kdf profile: {kdf}") from exc
    return nacl.pwhash.argon2id.kdf(
        nacl.secret.SecretBox.KEY_SIZE,
        passphrase.encode("utf-8"),
        salt,
        opslimit=opslimit,
        memlimit=memlimit,
    )


def seal_key(key: KeyMaterial, passphrase: str, kdf: str = "moderate") -> StoredIdentity:
    if not passphrase:
        raise KeystoreError("passphrase must not be empty")
    salt = nacl.utils.random(nacl.pwhash.argon2id.SALTBYTES)
    box = nacl.secret.SecretBox(_derive_key(passphrase, salt, kdf))
    encrypted = box.encrypt(key.seed)
    return StoredIdentity(
        public_key=key.public_key_b64,
        instance_id=key.instance_id,
        encrypted=base64.b64encode(bytes(encrypted)).decode("ascii"),
        salt=base64.b64encode(salt).decode("ascii"),
        kdf=kdf,
        created_at=datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
    )


def open_key(stored: StoredIdentity, passphrase: str) -> KeyMaterial:
    box = nacl.secret.SecretBox(_derive_key(passphrase, base64.b64decode(stored.salt), stored.kdf))
    try:
        seed = box.decrypt(base64.b64decode(stored.encrypted))
    except CryptoError as exc:
        raise KeystoreError("wrong passphrase or corrupted key file") from exc
    key = key_from_seed(seed)
    if key.public_key_b64 != stored.public_key:
        raise KeystoreError("decrypted key does not match stored public key")
    return key


def load_identity(path: Path) -> StoredIdentity | None:
    if not path.exists():
        return None
    raw = json.loads(path.read_text(encoding="utf-8"))
    try:
        stored = StoredIdentity(**{name: raw[name] for name in StoredIdentity.__dataclass_fields__})
    except KeyError as exc:
        raise KeystoreError(f"key file missing field: {exc.args[0]}") from exc
    if instance_id_from_public_key(stored.public_key) != stored.instance_id:
        raise KeystoreError("key file instance id does not match its public key")
    return stored


def save_identity(path: Path, stored: StoredIdentity) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(stored.to_dict(), indent=2), encoding="utf-8")
    os.chmod(tmp, 0o600)
    tmp.replace(path)


def create_identity(path: Path, passphrase: str, kdf: str = "moderate", overwrite: bool = False) -> StoredIdentity:
    if path.exists() and not overwrite:
        raise KeystoreError(f"identity already exists at {path}")
    stored = seal_key(generate_key(), passphrase, kdf)
    save_identity(path, stored)
    return stored
