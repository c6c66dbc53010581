from __future__ import annotations

import hashlib
import uuid
from datetime import timedelta
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from skillgate.persistence.models import ForumPostModel, InstanceModel
from skillgate.persistence.utils import iso_z, now_utc

PEER_LIMIT = 20

_PROFILE_COLUMNS = (
    "nickname",
    "description",
    "avatar_color",
    "avatar_icon",
    "avatar_border",
    "featured_skills",
    "skills_writeup",
)


def hash_client_address(address: str, salt: str) -> str:
    return hashlib.sha256(f"{salt}:{address}".encode("utf-8")).hexdigest()


def instance_to_dict(row: InstanceModel) -> dict[str, Any]:
    return {
        "id": row.id,
        "public_key": row.public_key,
        "nickname": row.nickname,
        "description": row.description,
        "repo_url": row.repo_url,
        "avatar_color": row.avatar_color,
        "avatar_icon": row.avatar_icon,
        "avatar_border": row.avatar_border,
        "featured_skills": list(row.featured_skills or []),
        "skills_writeup": row.skills_writeup,
        "app_version": row.app_version,
        "online": row.online,
        "last_heartbeat": iso_z(row.last_heartbeat),
        "registered_at": iso_z(row.registered_at),
        "updated_at": iso_z(row.updated_at),
    }


def peer_to_dict(row: InstanceModel) -> dict[str, Any]:
    return {
        "id": row.id,
        "nickname": row.nickname,
        "online": row.online,
        "last_heartbeat": iso_z(row.last_heartbeat),
        "featured_skills": list(row.featured_skills or []),
        "local_ports": row.local_ports,
        "lan_hostname": row.lan_hostname,
    }


def get_instance(session: Session, instance_id: str) -> InstanceModel | None:
    return session.get(InstanceModel, instance_id)


def upsert_instance(
    session: Session,
    *,
    instance_id: str,
    public_key: str,
    ip_hash: str,
    fields: dict[str, Any],
) -> tuple[InstanceModel, bool]:
    """Create the instance or refresh its profile. Identity columns never change."""
    now = now_utc()
    row = session.get(InstanceModel, instance_id)
    created = row is None
    if created:
        row = InstanceModel(
            id=instance_id,
            public_key=public_key,
            ip_hash=ip_hash,
            repo_url=fields.get("repo_url") or "",
            registered_at=now,
        )
        session.add(row)

    row.nickname = fields["nickname"]
    row.description = fields.get("description") or ""
    row.avatar_color = fields.get("avatar_color") or "#50fa7b"
    row.avatar_icon = fields.get("avatar_icon") or "bot"
    row.avatar_border = fields.get("avatar_border") or "#ff79c6"
    row.featured_skills = list(fields.get("featured_skills") or [])
    row.skills_writeup = fields.get("skills_writeup") or ""
    row.app_version = fields.get("app_version") or row.app_version or ""
    if fields.get("local_ports"):
        row.local_ports = fields["local_ports"]
    if fields.get("lan_hostname"):
        row.lan_hostname = fields["lan_hostname"]
    row.online = True
    row.last_heartbeat = now
    row.updated_at = now
    session.flush()
    return row, created


def update_profile(session: Session, row: InstanceModel, updates: dict[str, Any]) -> InstanceModel:
    for name in _PROFILE_COLUMNS:
        if name in updates:
            setattr(row, name, updates[name])
    now = now_utc()
    row.updated_at = now
    row.online = True
    row.last_heartbeat = now
    session.flush()
    return row


def touch_heartbeat(session: Session, row: InstanceModel) -> None:
    row.online = True
    row.last_heartbeat = now_utc()
    session.flush()


def mark_stale_offline(session: Session, minutes: int) -> int:
    cutoff = now_utc() - timedelta(minutes=minutes)
    result = session.execute(
        update(InstanceModel)
        .where(InstanceModel.online.is_(True), InstanceModel.last_heartbeat < cutoff)
        .values(online=False)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


def list_gallery(session: Session, limit: int, offset: int) -> list[InstanceModel]:
    stmt = (
        select(InstanceModel)
        .order_by(
            InstanceModel.online.desc(),
            InstanceModel.last_heartbeat.desc().nulls_last(),
            InstanceModel.id,
        )
        .limit(limit)
        .offset(offset)
    )
    return list(session.execute(stmt).scalars())


def count_instances(session: Session) -> int:
    return session.execute(select(func.count()).select_from(InstanceModel)).scalar_one()


def list_peers(session: Session, caller: InstanceModel) -> list[InstanceModel]:
    stmt = (
        select(InstanceModel)
        .where(InstanceModel.ip_hash == caller.ip_hash, InstanceModel.id != caller.id)
        .order_by(InstanceModel.last_heartbeat.desc().nulls_last())
        .limit(PEER_LIMIT)
    )
    return list(session.execute(stmt).scalars())


# --- forum ---


def post_to_dict(row: ForumPostModel) -> dict[str, Any]:
    return {
        "id": row.id,
        "channel_id": row.channel_id,
        "instance_id": row.instance_id,
        "instance_nickname": row.instance_nickname,
        "title": row.title,
        "body": row.body,
        "created_at": iso_z(row.created_at),
    }


def create_post(session: Session, *, author: InstanceModel, channel_id: str, title: str, body: str) -> ForumPostModel:
    row = ForumPostModel(
        id=str(uuid.uuid4()),
        channel_id=channel_id,
        instance_id=author.id,
        instance_nickname=author.nickname,
        title=title,
        body=body,
        created_at=now_utc(),
    )
    session.add(row)
    session.flush()
    return row


def list_channel_posts(session: Session, channel_id: str, limit: int, offset: int) -> list[ForumPostModel]:
    stmt = (
        select(ForumPostModel)
        .where(ForumPostModel.channel_id == channel_id)
        .order_by(ForumPostModel.created_at.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(session.execute(stmt).scalars())
