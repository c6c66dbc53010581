from __future__ import annotations

from typing import Literal

from sqlalchemy.orm import Session

from skillgate.core.errors import RequestValidationFailed
from skillgate.persistence.app_settings import get_app_setting, set_app_setting

AutoPostPolicy = Literal["off", "safe", "normal", "all"]
AUTO_POST_POLICIES: tuple[str, ...] = ("off", "safe", "normal", "all")

# Which classifier verdicts each policy publishes without review.
ALLOWED_RISK_LEVELS: dict[str, frozenset[str]] = {
    "off": frozenset(),
    "safe": frozenset({"safe"}),
    "normal": frozenset({"safe", "moderate"}),
    "all": frozenset({"safe", "moderate", "risky"}),
}


def policy_key(surface: str) -> str:
    return f"auto_post_policy:{surface}"


def get_auto_post_policy(session: Session, surface: str, default: str = "safe") -> str:
    value = get_app_setting(session, policy_key(surface))
    if value in AUTO_POST_POLICIES:
        return value
    return default if default in AUTO_POST_POLICIES else "off"


def set_auto_post_policy(session: Session, surface: str, policy: str) -> None:
    if policy not in AUTO_POST_POLICIES:
        raise RequestValidationFailed(
            f"policy must be one of {', '.join(AUTO_POST_POLICIES)}", field="policy"
        )
    set_app_setting(session, policy_key(surface), policy)
