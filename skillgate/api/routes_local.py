from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from skillgate.core.errors import AuthenticationFailed, NotFoundError
from skillgate.core.security import Actor, get_actor, require_human, require_roles
from skillgate.persistence.pg import get_session
from skillgate.persistence.utils import iso_z
from skillgate.persistence.vault import list_vault_services, put_vault_secret
from skillgate.risk.approvals import APPROVAL_STATUSES, ApprovalQueue, approval_to_dict
from skillgate.risk.memory import add_memory
from skillgate.risk.policy import AUTO_POST_POLICIES, get_auto_post_policy, policy_key, set_auto_post_policy
from skillgate.skills.audit import recent_audit
from skillgate.skills.dispatcher import SkillDispatcher
from skillgate.skills.models import ExecutionOptions
from skillgate.skills.runtime import ExecutionRegistry
from skillgate.trust.keystore import KeystoreError

logger = logging.getLogger(__name__)

router = APIRouter(tags=["local"], dependencies=[Depends(get_actor)])


class SkillRunRequest(BaseModel):
    params: dict[str, Any] = Field(default_factory=dict)
    mission_id: str | None = None
    model_override: str | None = None


class ApprovalDecisionRequest(BaseModel):
    note: str | None = None


class UnlockRequest(BaseModel):
    passphrase: str = Field(min_length=1)


class AutoPostPolicyRequest(BaseModel):
    policy: str


class VaultSecretRequest(BaseModel):
    key_value: str = Field(min_length=1)
    name: str = ""


class MemoryCreateRequest(BaseModel):
    category: str = Field(min_length=1)
    content: str = Field(min_length=1)
    tags: list[str] = Field(default_factory=list)
    importance: int = Field(default=5, ge=1, le=10)


def get_runtime(request: Request) -> ExecutionRegistry:
    return request.app.state.runtime


@router.get("/skills")
def list_skills(runtime: ExecutionRegistry = Depends(get_runtime)):
    return {"skills": [skill.summary() for skill in runtime.skills.all()]}


@router.post("/skills/{skill_id}/commands/{command_name}")
def run_skill(
    skill_id: str,
    command_name: str,
    request: SkillRunRequest,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
    runtime: ExecutionRegistry = Depends(get_runtime),
):
    if runtime.skills.get(skill_id) is None:
        raise NotFoundError("skill not found", skill_id=skill_id)
    options = ExecutionOptions(
        agent_id=actor.id,
        mission_id=request.mission_id,
        model_override=request.model_override,
    )
    result = SkillDispatcher(session, runtime).execute_skill(skill_id, command_name, request.params, options)
    return result.to_dict()


@router.get("/approvals")
def list_approvals(
    status: str | None = Query(default=None),
    session: Session = Depends(get_session),
):
    if status is not None and status not in APPROVAL_STATUSES:
        raise HTTPException(status_code=400, detail=f"status must be one of {', '.join(APPROVAL_STATUSES)}")
    rows = ApprovalQueue(session).list_approvals(status)
    return {"approvals": [approval_to_dict(row) for row in rows]}


@router.get("/approvals/{approval_id}")
def get_approval(approval_id: str, session: Session = Depends(get_session)):
    return {"approval": approval_to_dict(ApprovalQueue(session).get(approval_id))}


@router.post("/approvals/{approval_id}/approve")
def approve(
    approval_id: str,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
    runtime: ExecutionRegistry = Depends(get_runtime),
):
    require_human(actor)
    dispatcher = SkillDispatcher(session, runtime)
    row, result = ApprovalQueue(session, runtime.notifier).approve(approval_id, actor.id, dispatcher.execute_skill)
    return {
        "approval": approval_to_dict(row),
        "resubmission": result.to_dict() if result is not None else None,
    }


@router.post("/approvals/{approval_id}/dismiss")
def dismiss(
    approval_id: str,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
    runtime: ExecutionRegistry = Depends(get_runtime),
):
    require_human(actor)
    row = ApprovalQueue(session, runtime.notifier).dismiss(approval_id, actor.id)
    return {"approval": approval_to_dict(row)}


@router.get("/identity")
def identity_status(runtime: ExecutionRegistry = Depends(get_runtime)):
    stored = runtime.signing.identity() if runtime.signing is not None else None
    return {
        "exists": stored is not None,
        "instance_id": stored.instance_id if stored else None,
        "public_key": stored.public_key if stored else None,
        "unlocked": bool(runtime.signing and runtime.signing.unlocked),
    }


@router.post("/identity/unlock")
def unlock_identity(
    request: UnlockRequest,
    actor: Actor = Depends(get_actor),
    runtime: ExecutionRegistry = Depends(get_runtime),
):
    require_roles(actor, {"human", "system"}, detail="only a human or the system may unlock signing")
    if runtime.signing is None:
        raise HTTPException(status_code=503, detail="signing session is not configured")
    try:
        key = runtime.signing.acquire(request.passphrase)
    except KeystoreError as exc:
        raise AuthenticationFailed(str(exc)) from exc
    return {"unlocked": True, "instance_id": key.instance_id}


@router.post("/identity/lock")
def lock_identity(actor: Actor = Depends(get_actor), runtime: ExecutionRegistry = Depends(get_runtime)):
    require_roles(actor, {"human", "system"}, detail="only a human or the system may lock signing")
    if runtime.signing is not None:
        runtime.signing.release()
    return {"unlocked": False}


@router.get("/settings/auto-post/{surface}")
def read_auto_post_policy(
    surface: str,
    session: Session = Depends(get_session),
    runtime: ExecutionRegistry = Depends(get_runtime),
):
    policy = get_auto_post_policy(session, surface, runtime.settings.default_auto_post_policy)
    return {"surface": surface, "policy": policy, "choices": list(AUTO_POST_POLICIES)}


@router.put("/settings/auto-post/{surface}")
def write_auto_post_policy(
    surface: str,
    request: AutoPostPolicyRequest,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
    runtime: ExecutionRegistry = Depends(get_runtime),
):
    require_human(actor)
    set_auto_post_policy(session, surface, request.policy)
    runtime.notifier.publish("settings", {"key": policy_key(surface), "value": request.policy})
    logger.info("auto-post policy for %s set to %s by %s", surface, request.policy, actor.id)
    return {"surface": surface, "policy": request.policy}


@router.get("/vault")
def vault_services(actor: Actor = Depends(get_actor), session: Session = Depends(get_session)):
    require_roles(actor, {"human", "system"})
    return {"services": list_vault_services(session)}


@router.put("/vault/{service}")
def store_vault_secret(
    service: str,
    request: VaultSecretRequest,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    require_human(actor)
    put_vault_secret(session, service, request.key_value, name=request.name)
    logger.info("vault entry for %s updated by %s", service, actor.id)
    return {"service": service, "stored": True}


@router.post("/memory", status_code=201)
def create_memory(
    request: MemoryCreateRequest,
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_session),
):
    require_roles(actor, {"human", "system"})
    row = add_memory(
        session,
        category=request.category,
        content=request.content,
        tags=request.tags,
        importance=request.importance,
    )
    return {"id": row.id, "category": row.category, "tags": list(row.tags or [])}


@router.get("/audit")
def audit_log(limit: int = Query(default=50, ge=1, le=500), session: Session = Depends(get_session)):
    return {
        "entries": [
            {
                "id": row.id,
                "agent_id": row.agent_id,
                "action": row.action,
                "details": row.details,
                "severity": row.severity,
                "created_at": iso_z(row.created_at),
            }
            for row in recent_audit(session, limit)
        ]
    }
