from __future__ import annotations

import json

import httpx
import pytest
from sqlalchemy import select

from skillgate.llm.exceptions import ProviderConnectionError
from skillgate.llm.models import estimate_cost, estimate_tokens
from skillgate.persistence.models import AuditLogModel, LLMUsageModel
from skillgate.persistence.vault import put_vault_secret
from skillgate.skills.dispatcher import SkillDispatcher
from skillgate.skills.models import ExecutionOptions, ExecutionResult
from skillgate.skills.registry import SkillRegistry

WEATHER_API = {
    "id": "weather-api",
    "name": "Weather API",
    "connection_type": "declarative",
    "api_config": {"base_url": "https://api.weather.test/v1"},
    "commands": [
        {
            "name": "current",
            "parameters": [
                {"name": "city", "required": True},
                {"name": "units", "default": "metric"},
            ],
            "request": {"method": "GET", "path": "/current/{city}", "query": {"units": "{units}"}},
            "response": {"extract": {"temp": "main.temp", "sky": "weather[0].description"}},
            "output_template": "{city}: {temp} and {sky}",
        },
        {
            "name": "cities",
            "request": {"method": "GET", "path": "/current/{city}"},
            "response": {"extract_raw": "main.temp"},
            "multi_request": {"iterate_param": "city", "iterate_over": ["oslo", "lima", "pune"]},
        },
        {
            "name": "cities_strict",
            "request": {"method": "GET", "path": "/current/{city}"},
            "response": {"extract_raw": "main.temp"},
            "multi_request": {
                "iterate_param": "city",
                "iterate_over": ["oslo", "lima"],
                "merge_strategy": "object",
                "failure_policy": "all_or_nothing",
            },
        },
        {
            "name": "paid",
            "request": {"method": "GET", "path": "/current/{city}"},
            "response": {"extract_raw": "main.temp"},
            "post_processors": [{"type": "estimate_cost", "config": {"base_cost_usd": 0.04}}],
        },
    ],
}

TOOLBOX = {
    "id": "toolbox",
    "name": "Toolbox",
    "risk_level": "dangerous",
    "handler_runtime": "node",
    "commands": [
        {"name": "deploy", "handler_file": "handlers/deploy.js", "vault_service": "Netlify"},
        {"name": "summarize", "prompt_template": "Summarize {topic} in one line."},
    ],
}

ORPHAN_HANDLER = {
    "id": "orphan",
    "name": "Orphan",
    "commands": [{"name": "go", "handler_file": "go.js"}],
}

WRITER = {"id": "writer", "name": "Writer", "model": "Claude Haiku 4.5"}
DISABLED = {"id": "off", "name": "Off", "enabled": False, "model": "Claude Haiku 4.5"}
WEATHER_CLI = {"id": "weather-cli", "name": "Weather", "connection_type": "cli"}
UNLISTED_CLI = {"id": "mystery-cli", "name": "Mystery", "connection_type": "cli"}

LOOKUP = {
    "id": "lookup",
    "name": "Lookup",
    "commands": [
        {
            "name": "status",
            "parameters": [{"name": "host", "required": True}],
            "cli_command_template": {"url_template": "https://{host}/status", "response_type": "text"},
        },
        {
            "name": "grep",
            "parameters": [{"name": "pattern", "required": True}],
            "cli_command_template": {"gateway_exec": True, "command_template": "grep -n {pattern} notes.txt"},
        },
    ],
}

TEMPS = {"oslo": 3, "lima": 19, "pune": 31}


def _weather(request: httpx.Request) -> httpx.Response:
    city = request.url.path.rsplit("/", 1)[-1]
    if request.url.host == "api.weather.test" and city in TEMPS:
        return httpx.Response(200, json={"main": {"temp": TEMPS[city]}, "weather": [{"description": "clear"}]})
    return httpx.Response(404, json={"error": "unknown city"})


@pytest.fixture()
def skills():
    return SkillRegistry.from_dicts([WEATHER_API, TOOLBOX, ORPHAN_HANDLER, WRITER, DISABLED, WEATHER_CLI, UNLISTED_CLI, LOOKUP])


def _audit(session):
    return list(session.execute(select(AuditLogModel).order_by(AuditLogModel.id)).scalars())


def test_declarative_strategy_wins_over_local_handler(session, make_runtime, skills):
    runtime = make_runtime(_weather, skills=skills)
    calls = []
    runtime.register_local_handler("weather-api", "current", lambda ctx, params: calls.append(params))

    result = SkillDispatcher(session, runtime).execute_skill("weather-api", "current", {"city": "oslo"})

    assert result.success, result.error
    assert result.strategy == "declarative"
    assert result.output == "oslo: 3 and clear"
    assert calls == []


def test_declarative_applies_parameter_defaults(session, make_runtime, skills):
    seen = []

    def handler(request):
        seen.append(request.url.params.get("units"))
        return _weather(request)

    SkillDispatcher(session, make_runtime(handler, skills=skills)).execute_skill("weather-api", "current", {"city": "lima"})
    assert seen == ["metric"]


def test_local_handler_returning_none_fails_closed(session, make_runtime, skills, fake_provider):
    provider = fake_provider("hallucinated")
    runtime = make_runtime(skills=skills, providers={"Anthropic": provider})
    put_vault_secret(session, "Anthropic", "sk-test")
    runtime.register_local_handler("writer", "draft", lambda ctx, params: None)

    result = SkillDispatcher(session, runtime).execute_skill("writer", "draft", {})

    assert not result.success
    assert "produced no result" in result.error
    assert provider.calls == []


def test_missing_and_disabled_skills_fail_with_reason(session, make_runtime, skills):
    dispatcher = SkillDispatcher(session, make_runtime(skills=skills))

    missing = dispatcher.execute_skill("nope", "run")
    disabled = dispatcher.execute_skill("off", "run")

    assert not missing.success and "not found" in missing.error
    assert not disabled.success and "disabled" in disabled.error


def test_gateway_receives_only_the_declared_secret(session, make_runtime, skills):
    put_vault_secret(session, "Netlify", "nf-token")
    put_vault_secret(session, "OpenAI", "sk-should-not-leak")
    sent = []

    def gateway(request):
        sent.append((str(request.url), json.loads(request.content)))
        return httpx.Response(200, json={"result": {"deployed": True}})

    result = SkillDispatcher(session, make_runtime(gateway, skills=skills)).execute_skill(
        "toolbox", "deploy", {"site": "blog"}
    )

    assert result.success, result.error
    assert result.strategy == "gateway"
    url, body = sent[0]
    assert url == "http://gateway.test/exec/deploy"
    assert body == {"params": {"site": "blog"}, "secrets": {"Netlify": "nf-token"}}


def test_handler_command_without_runtime_does_not_fall_back_to_llm(session, make_runtime, skills):
    result = SkillDispatcher(session, make_runtime(skills=skills)).execute_skill("orphan", "go")
    assert not result.success
    assert "no handler runtime" in result.error


def test_unknown_command_on_declared_skill_fails(session, make_runtime, skills):
    result = SkillDispatcher(session, make_runtime(skills=skills)).execute_skill("weather-api", "forecast")
    assert not result.success
    assert "Unknown command" in result.error


def test_cli_skill_uses_fixed_handler_set(session, make_runtime, skills):
    def wttr(request):
        assert request.url.host == "wttr.in"
        return httpx.Response(
            200,
            json={
                "current_condition": [
                    {"temp_F": "50", "temp_C": "10", "humidity": "70", "windspeedMiles": "5", "weatherDesc": [{"value": "Fog"}]}
                ],
                "nearest_area": [{"areaName": [{"value": "Bergen"}]}],
            },
        )

    dispatcher = SkillDispatcher(session, make_runtime(wttr, skills=skills))
    result = dispatcher.execute_skill("weather-cli", "get_current", {"location": "Bergen"})

    assert result.success, result.error
    assert result.strategy == "cli"
    assert result.output.startswith("Fog in Bergen")

    unlisted = dispatcher.execute_skill("mystery-cli", "anything")
    assert not unlisted.success
    assert "No CLI handler" in unlisted.error


def test_llm_strategy_estimates_tokens_and_cost(session, make_runtime, skills, fake_provider):
    provider = fake_provider("three taglines")
    put_vault_secret(session, "Anthropic", "sk-test")
    runtime = make_runtime(skills=skills, providers={"Anthropic": provider})

    result = SkillDispatcher(session, runtime).execute_skill(
        "toolbox", "summarize", {"topic": "ledgers"}, ExecutionOptions(agent_id="agent-7", mission_id="m-1", model_override="Claude Haiku 4.5")
    )

    assert result.success, result.error
    call = provider.calls[0]
    assert call["api_key"] == "sk-test"
    assert call["model_id"] == "claude-haiku-4-5-20251001"
    assert call["messages"][0].content == "Summarize ledgers in one line."

    input_tokens = estimate_tokens(call["system"] + call["messages"][0].content)
    output_tokens = estimate_tokens("three taglines")
    assert result.tokens_used == input_tokens + output_tokens
    assert result.cost_usd == pytest.approx(estimate_cost("Claude Haiku 4.5", input_tokens, output_tokens))

    usage = session.execute(select(LLMUsageModel)).scalars().one()
    assert usage.agent_id == "agent-7"
    assert usage.mission_id == "m-1"
    assert usage.context == "skill_execution"


def test_provider_failure_becomes_failed_result(session, make_runtime, skills, fake_provider):
    put_vault_secret(session, "Anthropic", "sk-test")
    runtime = make_runtime(skills=skills, providers={"Anthropic": fake_provider(error=ProviderConnectionError("down"))})

    result = SkillDispatcher(session, runtime).execute_skill("writer", "draft", {"topic": "x"})
    assert not result.success
    assert result.strategy == "llm"


def test_dispatcher_never_raises(session, make_runtime, skills):
    runtime = make_runtime(skills=skills)

    def explode(ctx, params):
        raise RuntimeError("boom")

    runtime.register_local_handler("writer", "draft", explode)
    result = SkillDispatcher(session, runtime).execute_skill("writer", "draft")

    assert not result.success
    assert "boom" in result.error


def test_every_dispatch_is_audited_with_risk_severity(session, make_runtime, skills):
    runtime = make_runtime(_weather, skills=skills)
    runtime.register_local_handler(
        "toolbox", "noop", lambda ctx, params: ExecutionResult(success=True, output="ok", strategy="local")
    )
    dispatcher = SkillDispatcher(session, runtime)

    dispatcher.execute_skill("weather-api", "current", {"city": "oslo"}, ExecutionOptions(agent_id="agent-1"))
    dispatcher.execute_skill("toolbox", "noop")
    dispatcher.execute_skill("nope", "run")

    entries = _audit(session)
    assert [(e.action, e.severity) for e in entries] == [
        ("SKILL_EXECUTED", "info"),
        ("SKILL_EXECUTED", "warning"),
        ("SKILL_EXECUTION_FAILED", "info"),
    ]
    assert entries[0].agent_id == "agent-1"


def test_fan_out_partial_policy_lists_failed_iterations(session, make_runtime, skills, monkeypatch):
    monkeypatch.delitem(TEMPS, "pune")

    result = SkillDispatcher(session, make_runtime(_weather, skills=skills)).execute_skill("weather-api", "cities")

    assert result.success, result.error
    assert result.output.split("\n\n") == ["3", "19"]
    assert result.details["iterations"] == 3
    assert [f["key"] for f in result.details["failed"]] == ["pune"]


def test_fan_out_all_or_nothing_fails_on_any_error(session, make_runtime, skills, monkeypatch):
    ok = SkillDispatcher(session, make_runtime(_weather, skills=skills)).execute_skill("weather-api", "cities_strict")
    assert ok.success
    assert json.loads(ok.output) == {"oslo": "3", "lima": "19"}

    monkeypatch.delitem(TEMPS, "lima")
    failed = SkillDispatcher(session, make_runtime(_weather, skills=skills)).execute_skill("weather-api", "cities_strict")
    assert not failed.success
    assert "city=lima" in failed.error


def test_estimate_cost_post_processor_records_usage(session, make_runtime, skills):
    result = SkillDispatcher(session, make_runtime(_weather, skills=skills)).execute_skill(
        "weather-api", "paid", {"city": "oslo"}
    )

    assert result.success
    assert result.cost_usd == 0
    assert result.details["estimated_cost_usd"] == pytest.approx(0.04)
    usage = session.execute(select(LLMUsageModel)).scalars().one()
    assert usage.estimated_cost == pytest.approx(0.04)


def test_missing_required_parameter_fails_before_any_request(session, make_runtime, skills):
    seen = []

    def handler(request):
        seen.append(request)
        return _weather(request)

    result = SkillDispatcher(session, make_runtime(handler, skills=skills)).execute_skill(
        "weather-api", "current", {"units": "imperial"}
    )

    assert not result.success
    assert "city" in result.error
    assert result.details == {"category": "validation", "missing": ["city"]}
    assert seen == []


def test_cli_template_url_must_target_an_allowed_host(session, make_runtime, skills):
    seen = []

    def handler(request):
        seen.append(request.url.host)
        return httpx.Response(200, text="up")

    dispatcher = SkillDispatcher(session, make_runtime(handler, skills=skills))

    allowed = dispatcher.execute_skill("lookup", "status", {"host": "wttr.in"})
    rejected = dispatcher.execute_skill("lookup", "status", {"host": "169.254.169.254"})

    assert allowed.success and allowed.output == "up"
    assert not rejected.success
    assert "allow-list" in rejected.error
    assert seen == ["wttr.in"]


def test_cli_template_gateway_command_quotes_parameters(session, make_runtime, skills):
    sent = []

    def gateway(request):
        sent.append(json.loads(request.content))
        return httpx.Response(200, json={"result": "3: needle"})

    result = SkillDispatcher(session, make_runtime(gateway, skills=skills)).execute_skill(
        "lookup", "grep", {"pattern": "needle; rm -rf /"}
    )

    assert result.success, result.error
    assert sent[0]["command"] == "grep -n 'needle; rm -rf /' notes.txt"
