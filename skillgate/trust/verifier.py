from __future__ import annotations

import logging
from typing import Any, Callable, Iterable, Mapping

from skillgate.core.errors import AuthenticationFailed, RequestValidationFailed
from skillgate.persistence.utils import now_ms
from skillgate.trust.signing import verify_fields

logger = logging.getLogger(__name__)


def coerce_timestamp(value: Any) -> int:
    """Accept integer milliseconds, including the string form used in query params."""
    if isinstance(value, bool):
        raise RequestValidationFailed("timestamp must be integer milliseconds", field="timestamp")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    raise RequestValidationFailed("timestamp must be integer milliseconds", field="timestamp")


class SignatureVerifier:
    """Checks inbound signed requests in a fixed order.

    required fields (400) -> timestamp freshness (400) -> signature (401)
    -> stored key match (401). The first failing check aborts the request.
    """

    def __init__(self, max_skew_seconds: int = 300, clock: Callable[[], int] = now_ms):
        self.max_skew_ms = max_skew_seconds * 1000
        self._clock = clock

    def require(self, data: Mapping[str, Any], names: Iterable[str]) -> None:
        for name in names:
            value = data.get(name)
            if value is None or value == "":
                raise RequestValidationFailed(f"missing required field: {name}", field=name)

    def check_timestamp(self, value: Any) -> int:
        timestamp = coerce_timestamp(value)
        skew = abs(self._clock() - timestamp)
        if skew > self.max_skew_ms:
            logger.info("rejected signed request: timestamp skew %sms", skew)
            raise RequestValidationFailed(
                "timestamp outside the allowed window",
                field="timestamp",
                max_skew_seconds=self.max_skew_ms // 1000,
            )
        return timestamp

    def check_signature(
        self,
        fields: Iterable[str],
        data: Mapping[str, Any],
        signature: str,
        public_key: str,
    ) -> None:
        if not verify_fields(fields, data, signature, public_key):
            logger.info("rejected signed request: signature mismatch")
            raise AuthenticationFailed("invalid signature")

    def check_stored_key(self, claimed: str | None, stored: str) -> None:
        if claimed is not None and claimed != stored:
            logger.info("rejected signed request: public key differs from registered key")
            raise AuthenticationFailed("public key does not match the registered instance")

    def verify(
        self,
        data: dict[str, Any],
        *,
        required: Iterable[str],
        fields: Iterable[str],
        public_key: str,
        stored_public_key: str | None = None,
    ) -> dict[str, Any]:
        self.require(data, list(required) + ["timestamp", "signature"])
        data["timestamp"] = self.check_timestamp(data["timestamp"])
        self.check_signature(fields, data, data["signature"], public_key)
        if stored_public_key is not None:
            self.check_stored_key(public_key, stored_public_key)
        return data
