"""Deterministic bytes for signed request payloads.

Client and hub must agree byte-for-byte on what was signed, so the encoding
is fixed: sorted keys, no whitespace, ASCII only. Floats are refused because
their text form is not stable across runtimes; timestamps travel as integer
milliseconds.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from hashlib import sha256
from typing import Any, Iterable, Mapping


class CanonicalError(ValueError):
    pass


def epoch_ms(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp() * 1000)


def _normalize(value: Any, path: str) -> Any:
    if isinstance(value, Mapping):
        return {str(key): _normalize(item, f"{path}.{key}") for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize(item, f"{path}[{index}]") for index, item in enumerate(value)]
    if isinstance(value, datetime):
        return epoch_ms(value)
    if isinstance(value, float):
        raise CanonicalError(f"{path or 'value'}: floats cannot be signed")
    if value is None or isinstance(value, (str, int, bool)):
        return value
    raise CanonicalError(f"{path or 'value'}: cannot sign {type(value).__name__}")


def canonical_json(value: Any) -> bytes:
    return json.dumps(_normalize(value, ""), sort_keys=True, separators=(",", ":"), ensure_ascii=True).encode("ascii")


def canonical_payload(fields: Iterable[str], data: Mapping[str, Any]) -> bytes:
    """Serialize only the enumerated fields of ``data`` that are present.

    Absent and ``None`` fields are omitted so an optional field left out by the
    sender and one sent as null sign identically.
    """
    return canonical_json({name: data[name] for name in fields if data.get(name) is not None})


def sha256_hex(value: Any) -> str:
    return sha256(canonical_json(value)).hexdigest()
