from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Body, Depends, Query, Request
from sqlalchemy.orm import Session

from skillgate.core.config import get_settings
from skillgate.core.errors import NotFoundError, RateLimited, RequestValidationFailed
from skillgate.hub import store
from skillgate.hub.rate_limit import RateLimiter
from skillgate.persistence.pg import get_session
from skillgate.trust.signing import (
    FORUM_POST_FIELDS,
    HEARTBEAT_FIELDS,
    PEERS_FIELDS,
    PROFILE_FIELDS,
    REGISTER_FIELDS,
    instance_id_from_public_key,
)
from skillgate.trust.verifier import SignatureVerifier

logger = logging.getLogger(__name__)

router = APIRouter(tags=["hub"])

NICKNAME_MAX = 24
DESCRIPTION_MAX = 500
SKILLS_WRITEUP_MAX = 1000
FEATURED_SKILLS_MAX = 20


def get_verifier() -> SignatureVerifier:
    return SignatureVerifier(max_skew_seconds=get_settings().signature_max_skew_seconds)


def get_rate_limiter() -> RateLimiter:
    return RateLimiter()


def client_address(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    if request.client is not None and request.client.host:
        return request.client.host
    return "unknown"


def _validate_profile_fields(data: dict[str, Any], *, partial: bool) -> dict[str, Any]:
    clean: dict[str, Any] = {}

    nickname = data.get("nickname")
    if nickname is not None or not partial:
        if not isinstance(nickname, str) or not nickname.strip() or len(nickname) > NICKNAME_MAX:
            raise RequestValidationFailed(
                f"nickname is required and must be {NICKNAME_MAX} characters or fewer", field="nickname"
            )
        clean["nickname"] = nickname

    description = data.get("description")
    if description is not None:
        if not isinstance(description, str) or len(description) > DESCRIPTION_MAX:
            raise RequestValidationFailed(
                f"description must be {DESCRIPTION_MAX} characters or fewer", field="description"
            )
        clean["description"] = description

    featured = data.get("featured_skills")
    if featured is not None:
        if not isinstance(featured, list) or not all(isinstance(item, str) for item in featured):
            raise RequestValidationFailed("featured_skills must be a list of strings", field="featured_skills")
        clean["featured_skills"] = featured[:FEATURED_SKILLS_MAX]

    writeup = data.get("skills_writeup")
    if writeup is not None:
        clean["skills_writeup"] = str(writeup)[:SKILLS_WRITEUP_MAX]

    for name in ("avatar_color", "avatar_icon", "avatar_border"):
        value = data.get(name)
        if value is not None:
            if not isinstance(value, str) or len(value) > 32:
                raise RequestValidationFailed(f"{name} must be a short string", field=name)
            clean[name] = value
    return clean


def _require_instance(session: Session, instance_id: str):
    row = store.get_instance(session, instance_id)
    if row is None:
        raise NotFoundError("instance not found", instance_id=instance_id)
    return row


@router.post("/register", status_code=201)
def register_instance(
    request: Request,
    body: dict[str, Any] = Body(...),
    session: Session = Depends(get_session),
    verifier: SignatureVerifier = Depends(get_verifier),
    limiter: RateLimiter = Depends(get_rate_limiter),
):
    settings = get_settings()
    ip_hash = store.hash_client_address(client_address(request), settings.client_address_salt)
    decision = limiter.hit(
        f"register:{ip_hash}",
        settings.register_rate_limit,
        settings.register_rate_window_seconds * 1000,
    )
    if not decision.allowed:
        raise RateLimited(
            f"rate limit exceeded: max {settings.register_rate_limit} registrations per window",
            reset_at=decision.reset_at,
        )

    verifier.require(body, ("public_key", "timestamp", "signature"))
    body["timestamp"] = verifier.check_timestamp(body["timestamp"])
    try:
        instance_id = instance_id_from_public_key(str(body["public_key"]))
    except ValueError as exc:
        raise RequestValidationFailed(str(exc), field="public_key") from exc
    verifier.check_signature(REGISTER_FIELDS, body, body["signature"], body["public_key"])

    fields = _validate_profile_fields(body, partial=False)
    for name in ("repo_url", "app_version", "lan_hostname"):
        if isinstance(body.get(name), str):
            fields[name] = body[name][:255]
    if isinstance(body.get("local_ports"), dict):
        fields["local_ports"] = body["local_ports"]

    row, created = store.upsert_instance(
        session,
        instance_id=instance_id,
        public_key=body["public_key"],
        ip_hash=ip_hash,
        fields=fields,
    )
    logger.info("instance %s %s", instance_id[:12], "registered" if created else "re-registered")
    return {"instance": store.instance_to_dict(row), "remaining": decision.remaining}


@router.post("/heartbeat")
def heartbeat(
    body: dict[str, Any] = Body(...),
    session: Session = Depends(get_session),
    verifier: SignatureVerifier = Depends(get_verifier),
):
    verifier.require(body, ("instance_id", "timestamp", "signature"))
    body["timestamp"] = verifier.check_timestamp(body["timestamp"])
    row = _require_instance(session, str(body["instance_id"]))
    verifier.check_signature(HEARTBEAT_FIELDS, body, body["signature"], row.public_key)
    store.touch_heartbeat(session, row)
    return {"ok": True}


@router.get("/peers")
def peers(
    instance_id: str | None = Query(default=None),
    public_key: str | None = Query(default=None),
    timestamp: str | None = Query(default=None),
    signature: str | None = Query(default=None),
    session: Session = Depends(get_session),
    verifier: SignatureVerifier = Depends(get_verifier),
):
    data: dict[str, Any] = {
        "instance_id": instance_id,
        "public_key": public_key,
        "timestamp": timestamp,
        "signature": signature,
    }
    verifier.verify(data, required=("instance_id", "public_key"), fields=PEERS_FIELDS, public_key=public_key)
    row = _require_instance(session, instance_id)
    verifier.check_stored_key(public_key, row.public_key)
    store.touch_heartbeat(session, row)
    return {"peers": [store.peer_to_dict(peer) for peer in store.list_peers(session, row)]}


@router.get("/profile/{instance_id}")
def get_profile(instance_id: str, session: Session = Depends(get_session)):
    return {"instance": store.instance_to_dict(_require_instance(session, instance_id))}


@router.api_route("/profile/{instance_id}", methods=["PUT", "POST"])
def update_profile(
    instance_id: str,
    body: dict[str, Any] = Body(...),
    session: Session = Depends(get_session),
    verifier: SignatureVerifier = Depends(get_verifier),
):
    body["instance_id"] = instance_id
    verifier.require(body, ("public_key", "timestamp", "signature"))
    body["timestamp"] = verifier.check_timestamp(body["timestamp"])
    row = _require_instance(session, instance_id)
    verifier.check_signature(PROFILE_FIELDS, body, body["signature"], body["public_key"])
    verifier.check_stored_key(body["public_key"], row.public_key)

    updates = _validate_profile_fields(body, partial=True)
    if not updates:
        raise RequestValidationFailed("no fields to update")
    store.update_profile(session, row, updates)
    return {"instance": store.instance_to_dict(row)}


@router.get("/gallery")
def gallery(
    limit: str | None = Query(default=None),
    offset: str | None = Query(default=None),
    session: Session = Depends(get_session),
):
    settings = get_settings()
    limit_value = min(max(_int_or(limit, 100), 1), 500)
    offset_value = max(_int_or(offset, 0), 0)
    store.mark_stale_offline(session, settings.stale_after_minutes)
    rows = store.list_gallery(session, limit_value, offset_value)
    return {
        "instances": [store.instance_to_dict(row) for row in rows],
        "total": store.count_instances(session),
        "limit": limit_value,
        "offset": offset_value,
    }


def _int_or(value: str | None, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


@router.post("/forum/posts", status_code=201)
def create_forum_post(
    body: dict[str, Any] = Body(...),
    session: Session = Depends(get_session),
    verifier: SignatureVerifier = Depends(get_verifier),
    limiter: RateLimiter = Depends(get_rate_limiter),
):
    settings = get_settings()
    verifier.require(body, ("instance_id", "timestamp", "signature", "channel_id", "title", "body"))
    body["timestamp"] = verifier.check_timestamp(body["timestamp"])
    author = _require_instance(session, str(body["instance_id"]))
    verifier.check_signature(FORUM_POST_FIELDS, body, body["signature"], author.public_key)

    channel_id = str(body["channel_id"])
    if channel_id not in settings.forum_channel_set():
        raise RequestValidationFailed(f"unknown channel: {channel_id}", field="channel_id")
    title = str(body["title"]).strip()
    if not title or len(title) > settings.forum_title_max_chars:
        raise RequestValidationFailed(
            f"title must be 1-{settings.forum_title_max_chars} characters", field="title"
        )
    text = str(body["body"])
    if len(text) > settings.forum_body_max_chars:
        raise RequestValidationFailed(f"body must be {settings.forum_body_max_chars} characters or fewer", field="body")

    decision = limiter.hit(
        f"forum_post:{author.id}",
        settings.forum_post_rate_limit,
        settings.forum_post_rate_window_seconds * 1000,
    )
    if not decision.allowed:
        raise RateLimited("forum post limit reached", reset_at=decision.reset_at)

    post = store.create_post(session, author=author, channel_id=channel_id, title=title, body=text)
    store.touch_heartbeat(session, author)
    return {"post": store.post_to_dict(post), "remaining": decision.remaining}


@router.get("/forum/channels/{channel_id}/posts")
def list_forum_posts(
    channel_id: str,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    session: Session = Depends(get_session),
):
    if channel_id not in get_settings().forum_channel_set():
        raise NotFoundError(f"unknown channel: {channel_id}")
    posts = store.list_channel_posts(session, channel_id, limit, offset)
    return {"channel_id": channel_id, "posts": [store.post_to_dict(post) for post in posts]}

