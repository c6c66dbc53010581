from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Sequence

from sqlalchemy.orm import Session

from skillgate.llm.models import api_model_id, estimate_cost, estimate_tokens, service_for_model
from skillgate.llm.providers import ChatMessage
from skillgate.persistence.vault import get_vault_secret
from skillgate.risk.memory import sensitive_memories
from skillgate.skills.audit import log_usage

if TYPE_CHECKING:
    from skillgate.skills.runtime import ExecutionRegistry

logger = logging.getLogger(__name__)

RISK_LEVELS = ("safe", "moderate", "risky")

_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)

CLASSIFIER_SYSTEM_PROMPT = """You review content an AI agent wants to publish on a public community forum.
Decide whether it reveals private information about the organization.

Rules:
- "safe": general discussion, questions, public knowledge, nothing specific to the organization.
- "moderate": business opinions, strategy discussion or plans that reveal no concrete private facts.
- "risky": concrete secrets, credentials, financial figures, customer or personal identifying data,
  or any of the listed sensitive memory items, even paraphrased.

Answer with strict JSON only: {"risk_level": "safe" | "moderate" | "risky", "reason": "<one sentence>"}"""


@dataclass(frozen=True)
class RiskAssessment:
    risk_level: str
    reason: str

    def to_dict(self) -> dict[str, str]:
        return {"risk_level": self.risk_level, "reason": self.reason}


def fail_closed(reason: str) -> RiskAssessment:
    return RiskAssessment(risk_level="risky", reason=f"classifier unavailable: {reason}")


def parse_assessment(text: str) -> RiskAssessment:
    match = _JSON_OBJECT.search(text or "")
    if match is None:
        raise ValueError("classifier reply contains no JSON object")
    data = json.loads(match.group(0))
    if not isinstance(data, dict):
        raise ValueError("classifier reply is not a JSON object")
    level = data.get("risk_level")
    if level not in RISK_LEVELS:
        raise ValueError(f"classifier returned unknown risk_level {level!r}")
    return RiskAssessment(risk_level=level, reason=str(data.get("reason") or ""))


def build_classifier_prompt(title: str, body: str, memories: Sequence[str]) -> str:
    if memories:
        items = "\n".join(f"- {item}" for item in memories)
    else:
        items = "(none on record)"
    return f"Sensitive memory items:\n{items}\n\nCandidate title:\n{title}\n\nCandidate body:\n{body}"


class RiskClassifier:
    """One classification pass per content item; never cached."""

    def __init__(self, runtime: "ExecutionRegistry", model: str, sensitive_tags: Sequence[str], memory_limit: int = 20):
        self.runtime = runtime
        self.model = model
        self.sensitive_tags = list(sensitive_tags)
        self.memory_limit = memory_limit

    def classify(self, session: Session, title: str, body: str) -> RiskAssessment:
        service = service_for_model(self.model)
        provider = self.runtime.provider(service) if service else None
        if provider is None:
            return fail_closed(f"no provider for model {self.model}")
        api_key = get_vault_secret(session, service)
        if api_key is None:
            return fail_closed(f"no {service} key in the vault")

        memories = sensitive_memories(session, f"{title}\n{body}", self.sensitive_tags, self.memory_limit)
        prompt = build_classifier_prompt(title, body, [row.content for row in memories])
        try:
            reply = provider.complete(
                [ChatMessage(role="user", content=prompt)],
                api_key,
                api_model_id(self.model),
                CLASSIFIER_SYSTEM_PROMPT,
            )
            assessment = parse_assessment(reply)
        except Exception as exc:
            logger.warning("risk classification failed, treating content as risky: %s", exc)
            return fail_closed(str(exc))

        input_tokens = estimate_tokens(CLASSIFIER_SYSTEM_PROMPT + prompt)
        output_tokens = estimate_tokens(reply)
        log_usage(
            session,
            provider=service,
            model=self.model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            estimated_cost=estimate_cost(self.model, input_tokens, output_tokens),
            context="risk_classification",
        )
        return assessment
