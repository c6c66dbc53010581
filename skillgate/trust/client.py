from __future__ import annotations

import logging
import secrets
import threading
import time
from contextlib import closing, contextmanager
from typing import Any, Callable, Iterator, Sequence

import httpx
from sqlalchemy.orm import Session

from skillgate.core.errors import ExecutionFailed
from skillgate.persistence.app_settings import (
    MARKETPLACE_INSTANCE_ID,
    MARKETPLACE_NICKNAME,
    get_app_setting,
    set_app_setting,
)
from skillgate.persistence.utils import now_ms
from skillgate.trust.session import UnlockedSigningSession
from skillgate.trust.signing import (
    FORUM_POST_FIELDS,
    HEARTBEAT_FIELDS,
    PEERS_FIELDS,
    PROFILE_FIELDS,
    REGISTER_FIELDS,
    sign_fields,
)

logger = logging.getLogger(__name__)


class MarketplaceClient:
    """Signed request client for the shared hub.

    Every outbound call is signed with the key held by the signing session;
    a locked session surfaces as ``SigningLockedError`` before any network I/O.
    """

    def __init__(
        self,
        http: httpx.Client,
        base_url: str,
        signing: UnlockedSigningSession,
        session_factory: Callable[[], Session],
        *,
        poll_delays: Sequence[float] = (0.5, 1.0, 2.0, 4.0),
        clock: Callable[[], int] = now_ms,
        sleep: Callable[[float], None] = time.sleep,
        app_version: str = "0.1.0",
    ):
        self.http = http
        self.base_url = base_url.rstrip("/")
        self.signing = signing
        self._session_factory = session_factory
        self.poll_delays = tuple(poll_delays)
        self._clock = clock
        self._sleep = sleep
        self.app_version = app_version
        self._registration_lock = threading.Lock()
        self._registering = False
        self._instance_id: str | None = None

    # --- transport ---

    def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = self.http.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise ExecutionFailed(f"marketplace unreachable: {exc}") from exc
        try:
            payload = response.json()
        except ValueError:
            payload = {"detail": response.text}
        if response.status_code >= 400:
            detail = payload.get("detail") if isinstance(payload, dict) else None
            raise ExecutionFailed(
                f"marketplace {path} failed ({response.status_code}): {detail or 'unknown error'}",
                status=response.status_code,
            )
        return payload if isinstance(payload, dict) else {"result": payload}

    def _signed(self, fields: Sequence[str], body: dict[str, Any]) -> dict[str, Any]:
        key = self.signing.key()
        body = {name: value for name, value in body.items() if value is not None}
        body.setdefault("timestamp", self._clock())
        body["signature"] = sign_fields(fields, body, key)
        return body

    # --- registration state ---

    @contextmanager
    def _state_session(self, session: Session | None) -> Iterator[Session]:
        # A caller inside a transaction passes its own session; SQLite allows one writer.
        if session is not None:
            yield session
            return
        with closing(self._session_factory()) as own:
            yield own
            own.commit()

    def registered_instance_id(self, session: Session | None = None) -> str | None:
        if self._instance_id:
            return self._instance_id
        with self._state_session(session) as state:
            return get_app_setting(state, MARKETPLACE_INSTANCE_ID)

    def _remember_registration(self, instance_id: str, nickname: str, session: Session | None = None) -> None:
        with self._state_session(session) as state:
            set_app_setting(state, MARKETPLACE_INSTANCE_ID, instance_id)
            set_app_setting(state, MARKETPLACE_NICKNAME, nickname)
        self._instance_id = instance_id

    def _require_instance_id(self, session: Session | None = None) -> str:
        instance_id = self.registered_instance_id(session)
        if not instance_id:
            raise ExecutionFailed("instance is not registered on the marketplace")
        return instance_id

    # --- operations ---

    def register(self, profile: dict[str, Any], session: Session | None = None) -> dict[str, Any]:
        key = self.signing.key()
        body = {name: profile.get(name) for name in REGISTER_FIELDS if name not in {"public_key", "timestamp"}}
        body["public_key"] = key.public_key_b64
        if not body.get("app_version"):
            body["app_version"] = self.app_version
        result = self._request("POST", "/register", json=self._signed(REGISTER_FIELDS, body))
        instance = result.get("instance") or {}
        instance_id = instance.get("id")
        if not instance_id:
            raise ExecutionFailed("marketplace registration returned no instance id")
        self._remember_registration(instance_id, str(instance.get("nickname") or body.get("nickname") or ""), session)
        logger.info("registered on marketplace as %s", instance_id[:12])
        return result

    def ensure_registered(self, profile: dict[str, Any] | None = None, session: Session | None = None) -> str:
        instance_id = self.registered_instance_id(session)
        if instance_id:
            return instance_id

        with self._registration_lock:
            owner = not self._registering
            if owner:
                self._registering = True

        if owner:
            try:
                # Another owner may have finished between the read above and taking ownership.
                instance_id = self.registered_instance_id(session)
                if instance_id:
                    return instance_id
                result = self.register(profile or self.default_profile(session), session)
                return result["instance"]["id"]
            finally:
                with self._registration_lock:
                    self._registering = False

        for delay in self.poll_delays:
            self._sleep(delay)
            instance_id = self.registered_instance_id()
            if instance_id:
                return instance_id
        raise ExecutionFailed("marketplace registration in progress elsewhere did not complete in time")

    def default_profile(self, session: Session | None = None) -> dict[str, Any]:
        with self._state_session(session) as state:
            nickname = get_app_setting(state, MARKETPLACE_NICKNAME)
        if not nickname:
            nickname = f"skillgate-{secrets.token_hex(2)}"
        return {"nickname": nickname[:24], "description": "Skillgate instance"}

    def heartbeat(self, session: Session | None = None) -> dict[str, Any]:
        body = self._signed(HEARTBEAT_FIELDS, {"instance_id": self._require_instance_id(session)})
        return self._request("POST", "/heartbeat", json=body)

    def fetch_peers(self, session: Session | None = None) -> list[dict[str, Any]]:
        key = self.signing.key()
        body = self._signed(
            PEERS_FIELDS,
            {"instance_id": self._require_instance_id(session), "public_key": key.public_key_b64},
        )
        params = {name: str(value) for name, value in body.items()}
        return list(self._request("GET", "/peers", params=params).get("peers") or [])

    def update_profile(self, changes: dict[str, Any], session: Session | None = None) -> dict[str, Any]:
        key = self.signing.key()
        body = {name: changes.get(name) for name in PROFILE_FIELDS if name in changes}
        body["instance_id"] = self._require_instance_id(session)
        body["public_key"] = key.public_key_b64
        instance_id = body["instance_id"]
        result = self._request("PUT", f"/profile/{instance_id}", json=self._signed(PROFILE_FIELDS, body))
        if changes.get("nickname"):
            self._remember_registration(instance_id, str(changes["nickname"]), session)
        return result

    def forum_post(self, channel_id: str, title: str, body: str, session: Session | None = None) -> dict[str, Any]:
        payload = self._signed(
            FORUM_POST_FIELDS,
            {
                "instance_id": self._require_instance_id(session),
                "channel_id": channel_id,
                "title": title,
                "body": body,
            },
        )
        return self._request("POST", "/forum/posts", json=payload)
