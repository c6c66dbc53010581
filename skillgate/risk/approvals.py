from __future__ import annotations

import logging
import uuid
from typing import Any, Callable

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from skillgate.core.errors import ConflictError, NotFoundError
from skillgate.core.events import ChangeNotifier
from skillgate.persistence.models import ApprovalModel
from skillgate.persistence.utils import iso_z, now_utc
from skillgate.skills.models import ExecutionOptions, ExecutionResult

logger = logging.getLogger(__name__)

APPROVAL_STATUSES = ("pending", "approved", "dismissed")
TOPIC = "approvals"

Resubmit = Callable[[str, str, dict[str, Any], ExecutionOptions], ExecutionResult]


def approval_to_dict(row: ApprovalModel) -> dict[str, Any]:
    return {
        "id": row.id,
        "type": row.type,
        "title": row.title,
        "description": row.description,
        "status": row.status,
        "metadata": dict(row.metadata_json or {}),
        "created_at": iso_z(row.created_at),
        "resolved_at": iso_z(row.resolved_at),
        "resolved_by": row.resolved_by,
    }


class ApprovalQueue:
    def __init__(self, session: Session, notifier: ChangeNotifier | None = None):
        self.session = session
        self.notifier = notifier

    def _notify(self, row: ApprovalModel, change: str) -> None:
        if self.notifier is not None:
            self.notifier.publish(TOPIC, {"change": change, "approval_id": row.id, "status": row.status})

    def create(self, *, type: str, title: str, description: str, metadata: dict[str, Any]) -> ApprovalModel:
        row = ApprovalModel(
            id=f"approval-{uuid.uuid4().hex[:20]}",
            type=type,
            title=title[:512],
            description=description,
            status="pending",
            metadata_json=metadata,
            created_at=now_utc(),
        )
        self.session.add(row)
        self.session.flush()
        logger.info("queued %s approval %s", type, row.id)
        self._notify(row, "created")
        return row

    def get(self, approval_id: str) -> ApprovalModel:
        row = self.session.get(ApprovalModel, approval_id)
        if row is None:
            raise NotFoundError("approval not found", approval_id=approval_id)
        return row

    def list_approvals(self, status: str | None = None) -> list[ApprovalModel]:
        stmt = select(ApprovalModel).order_by(ApprovalModel.created_at.desc())
        if status:
            stmt = stmt.where(ApprovalModel.status == status)
        return list(self.session.execute(stmt).scalars())

    def _resolve(self, approval_id: str, status: str, resolved_by: str) -> ApprovalModel:
        row = self.get(approval_id)
        # Conditional on 'pending' so two reviewers cannot both resolve it.
        changed = self.session.execute(
            update(ApprovalModel)
            .where(ApprovalModel.id == approval_id, ApprovalModel.status == "pending")
            .values(status=status, resolved_at=now_utc(), resolved_by=resolved_by)
            .execution_options(synchronize_session=False)
        )
        if changed.rowcount != 1:
            self.session.refresh(row)
            raise ConflictError(f"approval already {row.status}", approval_id=approval_id, status=row.status)
        self.session.refresh(row)
        self._notify(row, status)
        return row

    def dismiss(self, approval_id: str, resolved_by: str) -> ApprovalModel:
        return self._resolve(approval_id, "dismissed", resolved_by)

    def approve(self, approval_id: str, resolved_by: str, resubmit: Resubmit) -> tuple[ApprovalModel, ExecutionResult | None]:
        """Mark approved and, for diverted skill actions, resubmit them once past the risk gate.

        The approval stays approved only if the resubmission succeeds; otherwise it
        goes back to pending with the error recorded, so a reviewer can retry.
        """
        row = self._resolve(approval_id, "approved", resolved_by)
        metadata = dict(row.metadata_json or {})
        skill_id = metadata.get("skill_id")
        command = metadata.get("command")
        if not skill_id or not command:
            return row, None

        result = resubmit(
            skill_id,
            command,
            dict(metadata.get("params") or {}),
            ExecutionOptions(
                agent_id=metadata.get("agent_id"),
                mission_id=metadata.get("mission_id"),
                skip_risk_gate=True,
            ),
        )
        metadata["resubmission"] = {"success": result.success, "error": result.error, "output": result.output[:500]}
        row.metadata_json = metadata
        if not result.success:
            logger.warning("resubmission of approval %s failed, reopening: %s", row.id, result.error)
            row.status = "pending"
            row.resolved_at = None
            row.resolved_by = None
        self.session.flush()
        if not result.success:
            self._notify(row, "reopened")
        return row, result
