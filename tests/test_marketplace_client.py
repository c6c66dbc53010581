from __future__ import annotations

import json

import httpx
import pytest

import skillgate.persistence.pg as pg
from skillgate.core.errors import ExecutionFailed, SigningLockedError
from skillgate.persistence.app_settings import MARKETPLACE_INSTANCE_ID, get_app_setting, set_app_setting
from skillgate.trust.client import MarketplaceClient
from skillgate.trust.keystore import create_identity
from skillgate.trust.session import UnlockedSigningSession
from skillgate.trust.signing import REGISTER_FIELDS, verify_fields


class Recorder:
    def __init__(self, status: int = 201, payload: dict | None = None):
        self.status = status
        self.payload = payload
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status, json=self.payload or {})


@pytest.fixture()
def signing(tmp_path):
    path = tmp_path / "identity.json"
    create_identity(path, "pw", kdf="min")
    return UnlockedSigningSession(path, idle_timeout=600)


def _client(handler, signing, sleeps=None):
    return MarketplaceClient(
        httpx.Client(transport=httpx.MockTransport(handler)),
        "http://hub.test",
        signing,
        pg.session_factory,
        poll_delays=(0.5, 1.0, 2.0),
        sleep=(sleeps.append if sleeps is not None else (lambda _: None)),
    )


def _remember(instance_id: str) -> None:
    with pg.session_scope() as session:
        set_app_setting(session, MARKETPLACE_INSTANCE_ID, instance_id)


def test_locked_signing_session_fails_before_any_network_call(signing):
    recorder = Recorder()
    client = _client(recorder, signing)

    with pytest.raises(SigningLockedError):
        client.register({"nickname": "alpha"})
    assert recorder.requests == []


def test_register_signs_body_and_persists_instance_id(signing):
    key = signing.acquire("pw")
    recorder = Recorder(payload={"instance": {"id": key.instance_id, "nickname": "alpha"}, "remaining": 19})
    client = _client(recorder, signing)

    client.register({"nickname": "alpha", "description": None})

    sent = json.loads(recorder.requests[0].content)
    assert "description" not in sent
    assert verify_fields(REGISTER_FIELDS, sent, sent["signature"], key.public_key_b64)
    with pg.session_scope() as session:
        assert get_app_setting(session, MARKETPLACE_INSTANCE_ID) == key.instance_id


def test_hub_errors_surface_as_execution_failures(signing):
    signing.acquire("pw")
    client = _client(Recorder(status=429, payload={"detail": "rate limit exceeded"}), signing)

    with pytest.raises(ExecutionFailed) as excinfo:
        client.register({"nickname": "alpha"})
    assert "429" in excinfo.value.detail


def test_concurrent_caller_polls_for_registration_in_progress(signing):
    signing.acquire("pw")
    recorder = Recorder()
    sleeps: list[float] = []
    client = _client(recorder, signing, sleeps)
    client._registering = True

    def finish_elsewhere(delay: float) -> None:
        sleeps.append(delay)
        if len(sleeps) == 2:
            _remember("registered-by-owner")

    client._sleep = finish_elsewhere

    assert client.ensure_registered() == "registered-by-owner"
    assert sleeps == [0.5, 1.0]
    assert recorder.requests == []


def test_polling_gives_up_after_bounded_backoff(signing):
    signing.acquire("pw")
    sleeps: list[float] = []
    client = _client(Recorder(), signing, sleeps)
    client._registering = True

    with pytest.raises(ExecutionFailed):
        client.ensure_registered()
    assert sleeps == [0.5, 1.0, 2.0]


def test_already_registered_instance_skips_registration(signing):
    signing.acquire("pw")
    _remember("known-instance")
    recorder = Recorder()

    assert _client(recorder, signing).ensure_registered() == "known-instance"
    assert recorder.requests == []


def test_caller_that_read_before_a_finished_registration_does_not_register_again(signing):
    key = signing.acquire("pw")
    recorder = Recorder(payload={"instance": {"id": key.instance_id, "nickname": "alpha"}, "remaining": 19})
    client = _client(recorder, signing)
    lookup = client.registered_instance_id

    def stale_read_then_owner_finishes(session=None):
        # This caller saw "not registered"; another caller completes before it takes ownership.
        client.registered_instance_id = lookup
        assert client.ensure_registered({"nickname": "alpha"}) == key.instance_id
        return None

    client.registered_instance_id = stale_read_then_owner_finishes

    assert client.ensure_registered({"nickname": "alpha"}) == key.instance_id
    assert len(recorder.requests) == 1


def test_registration_state_is_written_through_the_callers_session(signing):
    key = signing.acquire("pw")
    recorder = Recorder(payload={"instance": {"id": key.instance_id, "nickname": "alpha"}, "remaining": 19})
    client = _client(recorder, signing)

    with pg.session_scope() as session:
        set_app_setting(session, "auto_post_policy:forum", "off")
        assert client.ensure_registered({"nickname": "alpha"}, session=session) == key.instance_id
        assert get_app_setting(session, MARKETPLACE_INSTANCE_ID) == key.instance_id

    with pg.session_scope() as session:
        assert get_app_setting(session, MARKETPLACE_INSTANCE_ID) == key.instance_id
