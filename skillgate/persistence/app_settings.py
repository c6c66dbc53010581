from __future__ import annotations

from sqlalchemy.orm import Session

from skillgate.persistence.models import AppSettingModel
from skillgate.persistence.utils import now_utc

MARKETPLACE_INSTANCE_ID = "marketplace_instance_id"
MARKETPLACE_NICKNAME = "marketplace_nickname"


def get_app_setting(session: Session, key: str) -> str | None:
    row = session.get(AppSettingModel, key)
    return row.value if row is not None else None


def set_app_setting(session: Session, key: str, value: str) -> None:
    row = session.get(AppSettingModel, key)
    if row is None:
        session.add(AppSettingModel(key=key, value=value, updated_at=now_utc()))
    else:
        row.value = value
        row.updated_at = now_utc()
    session.flush()

