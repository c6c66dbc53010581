"""API-key actors for the local (instance side) surface.

Agents dispatch skills; only humans resolve approvals, change auto-post
policy or store vault secrets. The system actor is used by automation such
as unlocking the signing session at boot.
"""

from __future__ import annotations

import hmac
from typing import Literal

from fastapi import Header, HTTPException
from pydantic import BaseModel

from skillgate.core.config import Settings, get_settings

ActorType = Literal["agent", "human", "system"]


class Actor(BaseModel):
    type: ActorType
    id: str


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=401, detail=detail, headers={"WWW-Authenticate": "Bearer"})


def _presented_key(authorization: str | None, x_api_key: str | None) -> str | None:
    if authorization:
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            raise _unauthorized("invalid authorization header")
        return token.strip()
    if x_api_key and x_api_key.strip():
        return x_api_key.strip()
    return None


def _match_actor(settings: Settings, presented: str) -> Actor | None:
    candidates = (
        (settings.human_api_key, "human", settings.human_actor_id),
        (settings.system_api_key, "system", settings.system_actor_id),
        (settings.agent_api_key, "agent", settings.agent_actor_id),
    )
    for expected, actor_type, actor_id in candidates:
        if hmac.compare_digest(expected.encode("utf-8"), presented.encode("utf-8")):
            return Actor(type=actor_type, id=actor_id)
    return None


def get_actor(
    authorization: str | None = Header(default=None),
    x_api_key: str | None = Header(default=None),
) -> Actor:
    settings = get_settings()
    if not settings.auth_enabled:
        return Actor(type="agent", id=settings.agent_actor_id)

    presented = _presented_key(authorization, x_api_key)
    if not presented:
        raise _unauthorized("missing api key")
    actor = _match_actor(settings, presented)
    if actor is None:
        raise _unauthorized("invalid api key")
    return actor


def require_human(actor: Actor) -> None:
    if actor.type != "human":
        raise HTTPException(status_code=403, detail="a human reviewer is required for this action")


def require_roles(actor: Actor, allowed: set[str], detail: str = "insufficient role") -> None:
    if actor.type not in allowed:
        raise HTTPException(status_code=403, detail=detail)
