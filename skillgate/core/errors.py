from __future__ import annotations

from typing import Any


class SkillgateError(Exception):
    """Base error carrying the HTTP status and category it maps to."""

    status_code: int = 500
    category: str = "internal"

    def __init__(self, detail: str, **extra: Any):
        super().__init__(detail)
        self.detail = detail
        self.extra = extra

    def to_response(self) -> dict[str, Any]:
        body: dict[str, Any] = {"detail": self.detail, "error": self.category}
        body.update(self.extra)
        return body


class RequestValidationFailed(SkillgateError):
    status_code = 400
    category = "validation"

    def __init__(self, detail: str, field: str | None = None, **extra: Any):
        if field is not None:
            extra["field"] = field
        super().__init__(detail, **extra)
        self.field = field


class AuthenticationFailed(SkillgateError):
    status_code = 401
    category = "authentication"


class NotFoundError(SkillgateError):
    status_code = 404
    category = "not_found"


class RateLimited(SkillgateError):
    status_code = 429
    category = "rate_limited"

    def __init__(self, detail: str, reset_at: int, **extra: Any):
        super().__init__(detail, reset_at=reset_at, **extra)
        self.reset_at = reset_at


class ExecutionFailed(SkillgateError):
    status_code = 502
    category = "execution"


class SigningLockedError(SkillgateError):
    status_code = 423
    category = "signing_locked"


class ConflictError(SkillgateError):
    status_code = 409
    category = "conflict"
