from __future__ import annotations

import pytest
from sqlalchemy import select

from skillgate.core.errors import RequestValidationFailed
from skillgate.llm.exceptions import ProviderTimeoutError
from skillgate.persistence.models import LLMUsageModel
from skillgate.persistence.vault import put_vault_secret
from skillgate.risk.classifier import RiskClassifier, parse_assessment
from skillgate.risk.gate import RiskGate
from skillgate.risk.memory import add_memory
from skillgate.risk.policy import get_auto_post_policy, set_auto_post_policy
from skillgate.skills.models import ExecutionOptions

MATRIX = [
    ("safe", "safe", True),
    ("safe", "moderate", False),
    ("safe", "risky", False),
    ("normal", "safe", True),
    ("normal", "moderate", True),
    ("normal", "risky", False),
]


@pytest.mark.parametrize("policy,risk_level,publish", MATRIX)
def test_policy_matrix(session, static_classifier, policy, risk_level, publish):
    set_auto_post_policy(session, "forum", policy)
    classifier = static_classifier(risk_level)

    decision = RiskGate(classifier).evaluate(session, "forum", "t", "b", ExecutionOptions())

    assert decision.publish is publish
    assert decision.policy == policy
    assert decision.assessment.risk_level == risk_level
    assert classifier.calls == 1


@pytest.mark.parametrize("policy,publish", [("off", False), ("all", True)])
def test_off_and_all_skip_classification(session, static_classifier, policy, publish):
    set_auto_post_policy(session, "forum", policy)
    classifier = static_classifier("risky")

    decision = RiskGate(classifier).evaluate(session, "forum", "t", "b", ExecutionOptions())

    assert decision.publish is publish
    assert classifier.calls == 0


def test_human_approved_content_bypasses_gate(session, static_classifier):
    set_auto_post_policy(session, "forum", "off")
    classifier = static_classifier("risky")

    decision = RiskGate(classifier).evaluate(session, "forum", "t", "b", ExecutionOptions(skip_risk_gate=True))

    assert decision.publish
    assert classifier.calls == 0


def test_unset_policy_uses_default(session):
    assert get_auto_post_policy(session, "forum") == "safe"
    assert get_auto_post_policy(session, "forum", default="normal") == "normal"
    with pytest.raises(RequestValidationFailed):
        set_auto_post_policy(session, "forum", "yolo")


def test_parse_assessment_accepts_fenced_json():
    assessment = parse_assessment('```json\n{"risk_level": "moderate", "reason": "strategy talk"}\n```')
    assert assessment.risk_level == "moderate"
    with pytest.raises(ValueError):
        parse_assessment('{"risk_level": "fine"}')


def _classifier(make_runtime, provider=None):
    runtime = make_runtime(providers={"Anthropic": provider} if provider else {})
    return RiskClassifier(runtime, model="Claude Haiku 4.5", sensitive_tags=["financial"])


def test_classifier_without_provider_fails_closed(session, make_runtime):
    assessment = _classifier(make_runtime).classify(session, "t", "b")
    assert assessment.risk_level == "risky"


def test_classifier_without_api_key_fails_closed(session, make_runtime, fake_provider):
    provider = fake_provider('{"risk_level": "safe", "reason": "fine"}')
    assessment = _classifier(make_runtime, provider).classify(session, "t", "b")
    assert assessment.risk_level == "risky"
    assert provider.calls == []


@pytest.mark.parametrize(
    "reply,error",
    [("I think it is fine", None), ('{"risk_level": "meh"}', None), ("", ProviderTimeoutError("slow"))],
)
def test_classifier_failures_fail_closed(session, make_runtime, fake_provider, reply, error):
    put_vault_secret(session, "Anthropic", "sk-test")
    assessment = _classifier(make_runtime, fake_provider(reply, error=error)).classify(session, "t", "b")
    assert assessment.risk_level == "risky"
    assert "classifier unavailable" in assessment.reason


def test_classifier_sees_sensitive_memories_and_logs_usage(session, make_runtime, fake_provider):
    put_vault_secret(session, "Anthropic", "sk-test")
    add_memory(session, "Q3 revenue was 4.2M, do not disclose", tags=["financial"])
    add_memory(session, "Team lunch is on Friday", tags=["social"])
    provider = fake_provider('{"risk_level": "risky", "reason": "reveals revenue"}')

    assessment = _classifier(make_runtime, provider).classify(session, "Our revenue", "We made 4.2M in revenue")

    assert assessment.risk_level == "risky"
    prompt = provider.calls[0]["messages"][0].content
    assert "Q3 revenue was 4.2M" in prompt
    assert "Team lunch" not in prompt
    usage = session.execute(select(LLMUsageModel)).scalars().one()
    assert usage.context == "risk_classification"
