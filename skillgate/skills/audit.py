from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from skillgate.persistence.models import AuditLogModel, LLMUsageModel
from skillgate.persistence.utils import now_utc

logger = logging.getLogger(__name__)


def log_audit(
    session: Session,
    *,
    agent_id: str | None,
    action: str,
    details: str,
    severity: str = "info",
) -> AuditLogModel:
    row = AuditLogModel(
        agent_id=agent_id,
        action=action,
        details=details,
        severity=severity,
        created_at=now_utc(),
    )
    session.add(row)
    session.flush()
    return row


def log_usage(
    session: Session,
    *,
    provider: str,
    model: str,
    input_tokens: int,
    output_tokens: int,
    estimated_cost: float,
    context: str,
    agent_id: str | None = None,
    mission_id: str | None = None,
) -> LLMUsageModel:
    row = LLMUsageModel(
        provider=provider,
        model=model,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        estimated_cost=estimated_cost,
        context=context,
        agent_id=agent_id,
        mission_id=mission_id,
        created_at=now_utc(),
    )
    session.add(row)
    session.flush()
    logger.debug("usage %s/%s in=%s out=%s cost=%.6f", provider, model, input_tokens, output_tokens, estimated_cost)
    return row


def recent_audit(session: Session, limit: int = 50) -> list[AuditLogModel]:
    stmt = select(AuditLogModel).order_by(AuditLogModel.id.desc()).limit(limit)
    return list(session.execute(stmt).scalars())
