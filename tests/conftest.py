from __future__ import annotations

from pathlib import Path

import httpx
import pytest
from fastapi.testclient import TestClient

import skillgate.persistence.pg as pg
from skillgate.bootstrap import build_execution_registry
from skillgate.core.config import get_settings
from skillgate.persistence.models import Base
from skillgate.risk.classifier import RiskAssessment
from skillgate.skills.registry import SkillRegistry

REPO_ROOT = Path(__file__).resolve().parents[1]


class FakeProvider:
    """Records prompts and answers with a fixed reply (or raises)."""

    def __init__(self, reply: str = "ok", error: Exception | None = None):
        self.reply = reply
        self.error = error
        self.calls: list[dict] = []

    def complete(self, messages, api_key, model_id, system=None):
        self.calls.append({"messages": messages, "api_key": api_key, "model_id": model_id, "system": system})
        if self.error is not None:
            raise self.error
        return self.reply


class StaticClassifier:
    def __init__(self, risk_level: str = "safe"):
        self.risk_level = risk_level
        self.calls = 0

    def classify(self, session, title, body):
        self.calls += 1
        return RiskAssessment(risk_level=self.risk_level, reason=f"static {self.risk_level}")


def _offline(request: httpx.Request) -> httpx.Response:
    return httpx.Response(503, json={"error": f"no route for {request.url}"})


@pytest.fixture(scope="session")
def test_db_path(tmp_path_factory: pytest.TempPathFactory) -> Path:
    return tmp_path_factory.mktemp("db") / "test.sqlite"


@pytest.fixture(scope="session", autouse=True)
def configure_test_engine(test_db_path: Path):
    settings = get_settings()
    settings.skills_root = REPO_ROOT / "skills"
    settings.identity_path = test_db_path.parent / "identity.json"
    settings.keystore_kdf = "min"
    settings.hub_base_url = "http://testserver"
    settings.gateway_url = "http://gateway.test"
    settings.registration_poll_delays = [0.0, 0.0]

    engine = pg.create_engine_from_url(f"sqlite+pysqlite:///{test_db_path}")
    pg.engine = engine
    pg.SessionLocal.configure(bind=engine)

    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clean_tables(configure_test_engine):
    yield
    with pg.engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture()
def make_runtime(configure_test_engine):
    def _make(handler=None, *, skills=None, providers=None, classifier=None):
        http = httpx.Client(transport=httpx.MockTransport(handler or _offline))
        return build_execution_registry(
            get_settings(),
            http=http,
            skills=skills if skills is not None else SkillRegistry.load(get_settings().skills_root),
            providers=providers if providers is not None else {},
            classifier=classifier if classifier is not None else StaticClassifier("safe"),
        )

    return _make


@pytest.fixture()
def runtime(make_runtime):
    return make_runtime()


@pytest.fixture()
def client(runtime):
    from skillgate.main import app

    app.state.runtime = runtime
    with TestClient(app) as c:
        yield c
    app.state.runtime = None


@pytest.fixture()
def session(configure_test_engine):
    with pg.session_scope() as s:
        yield s


@pytest.fixture()
def auth_headers():
    settings = get_settings()
    return {
        "agent": {"X-API-Key": settings.agent_api_key},
        "human": {"X-API-Key": settings.human_api_key},
        "system": {"X-API-Key": settings.system_api_key},
    }


@pytest.fixture()
def fake_provider():
    return FakeProvider


@pytest.fixture()
def static_classifier():
    return StaticClassifier
