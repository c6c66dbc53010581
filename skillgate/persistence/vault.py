from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from skillgate.persistence.models import VaultEntryModel
from skillgate.persistence.utils import now_utc


def get_vault_secret(session: Session, service: str) -> str | None:
    row = session.get(VaultEntryModel, service)
    if row is None or not row.key_value:
        return None
    return row.key_value


def put_vault_secret(session: Session, service: str, key_value: str, name: str = "") -> None:
    row = session.get(VaultEntryModel, service)
    if row is None:
        session.add(VaultEntryModel(service=service, name=name or service, key_value=key_value, updated_at=now_utc()))
    else:
        row.key_value = key_value
        row.updated_at = now_utc()
    session.flush()


def list_vault_services(session: Session) -> list[str]:
    return list(session.execute(select(VaultEntryModel.service).order_by(VaultEntryModel.service)).scalars())
