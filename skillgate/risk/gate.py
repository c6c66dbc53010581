from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Protocol

from sqlalchemy.orm import Session

from skillgate.risk.classifier import RiskAssessment
from skillgate.risk.policy import ALLOWED_RISK_LEVELS, get_auto_post_policy
from skillgate.skills.models import ExecutionOptions

logger = logging.getLogger(__name__)


class ContentClassifier(Protocol):
    def classify(self, session: Session, title: str, body: str) -> RiskAssessment:
        ...


@dataclass(frozen=True)
class GateDecision:
    publish: bool
    policy: str
    reason: str
    assessment: RiskAssessment | None = None

    def to_metadata(self) -> dict[str, str | None]:
        return {
            "policy": self.policy,
            "risk_level": self.assessment.risk_level if self.assessment else None,
            "risk_reason": self.assessment.reason if self.assessment else None,
            "gate_reason": self.reason,
        }


class RiskGate:
    def __init__(self, classifier: ContentClassifier, default_policy: str = "safe"):
        self.classifier = classifier
        self.default_policy = default_policy

    def evaluate(
        self,
        session: Session,
        surface: str,
        title: str,
        body: str,
        options: ExecutionOptions,
    ) -> GateDecision:
        if options.skip_risk_gate:
            return GateDecision(publish=True, policy="approved", reason="approved by a human reviewer")

        policy = get_auto_post_policy(session, surface, self.default_policy)
        if policy == "off":
            return GateDecision(publish=False, policy=policy, reason="auto-posting is off")
        if policy == "all":
            return GateDecision(publish=True, policy=policy, reason="auto-posting allows everything")

        assessment = self.classifier.classify(session, title, body)
        allowed = assessment.risk_level in ALLOWED_RISK_LEVELS[policy]
        logger.info("risk gate %s: policy=%s risk=%s publish=%s", surface, policy, assessment.risk_level, allowed)
        reason = (
            f"{assessment.risk_level} content allowed by {policy} policy"
            if allowed
            else f"{assessment.risk_level} content exceeds {policy} policy"
        )
        return GateDecision(publish=allowed, policy=policy, reason=reason, assessment=assessment)
