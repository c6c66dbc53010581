"""Handlers that must run where the private signing key lives.

Registered for ``("marketplace", <command>)``. Every call is signed by the
instance's unlocked signing session and can never be delegated to the gateway.
"""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any, Callable

from skillgate.core.errors import SkillgateError
from skillgate.risk.approvals import ApprovalQueue
from skillgate.skills.models import ExecutionResult

if TYPE_CHECKING:
    from skillgate.skills.runtime import LocalHandler, StrategyContext
    from skillgate.trust.client import MarketplaceClient

logger = logging.getLogger(__name__)

STRATEGY = "local"
MARKETPLACE_SKILL_ID = "marketplace"
FORUM_SURFACE = "forum"

_PROFILE_KEYS = (
    "nickname",
    "description",
    "repo_url",
    "avatar_color",
    "avatar_icon",
    "avatar_border",
    "featured_skills",
    "skills_writeup",
    "local_ports",
    "lan_hostname",
)


def _client(ctx: "StrategyContext") -> "MarketplaceClient":
    client = ctx.runtime.marketplace
    if client is None:
        raise SkillgateError("marketplace client is not configured")
    return client


def _guarded(action: Callable[["StrategyContext", dict[str, Any]], ExecutionResult]) -> "LocalHandler":
    def handler(ctx: "StrategyContext", params: dict[str, Any]) -> ExecutionResult:
        try:
            return action(ctx, params)
        except SkillgateError as exc:
            logger.warning("marketplace %s failed: %s", ctx.command_name, exc.detail)
            return ExecutionResult.failure(exc.detail, strategy=STRATEGY, details={"category": exc.category})

    handler.__name__ = action.__name__
    return handler


def _json_output(payload: Any) -> str:
    return json.dumps(payload, indent=2)


def register(ctx: "StrategyContext", params: dict[str, Any]) -> ExecutionResult:
    client = _client(ctx)
    profile = {key: params[key] for key in _PROFILE_KEYS if params.get(key) is not None}
    if "nickname" not in profile:
        profile = {**client.default_profile(ctx.session), **profile}
    result = client.register(profile, ctx.session)
    instance = result.get("instance") or {}
    return ExecutionResult(
        success=True,
        output=f"Registered on the marketplace as {instance.get('nickname')} ({instance.get('id')})",
        strategy=STRATEGY,
        details={"instance_id": instance.get("id"), "remaining": result.get("remaining")},
    )


def heartbeat(ctx: "StrategyContext", params: dict[str, Any]) -> ExecutionResult:
    client = _client(ctx)
    client.ensure_registered(session=ctx.session)
    client.heartbeat(ctx.session)
    return ExecutionResult(success=True, output="Heartbeat sent.", strategy=STRATEGY)


def fetch_peers(ctx: "StrategyContext", params: dict[str, Any]) -> ExecutionResult:
    client = _client(ctx)
    client.ensure_registered(session=ctx.session)
    peers = client.fetch_peers(ctx.session)
    if not peers:
        return ExecutionResult(success=True, output="No peers found on this network.", strategy=STRATEGY)
    return ExecutionResult(success=True, output=_json_output(peers), strategy=STRATEGY, details={"count": len(peers)})


def update_profile(ctx: "StrategyContext", params: dict[str, Any]) -> ExecutionResult:
    client = _client(ctx)
    client.ensure_registered(session=ctx.session)
    changes = {key: params[key] for key in _PROFILE_KEYS if params.get(key) is not None}
    result = client.update_profile(changes, ctx.session)
    return ExecutionResult(success=True, output=_json_output(result.get("instance")), strategy=STRATEGY)


def forum_post(ctx: "StrategyContext", params: dict[str, Any]) -> ExecutionResult:
    channel_id = str(params.get("channel_id") or "general")
    title = str(params.get("title") or "").strip()
    body = str(params.get("body") or "").strip()
    if not title or not body:
        return ExecutionResult.failure("forum_post requires a title and a body", strategy=STRATEGY)

    gate = ctx.runtime.risk_gate
    if gate is None:
        return ExecutionResult.failure("risk gate is not configured; refusing to publish", strategy=STRATEGY)
    decision = gate.evaluate(ctx.session, FORUM_SURFACE, title, body, ctx.options)

    if not decision.publish:
        queue = ApprovalQueue(ctx.session, ctx.runtime.notifier)
        approval = queue.create(
            type="forum_post",
            title=f"Forum post: {title}",
            description=body,
            metadata={
                "skill_id": ctx.skill.id,
                "command": ctx.command_name,
                "params": {"channel_id": channel_id, "title": title, "body": body},
                "channel_id": channel_id,
                "agent_id": ctx.options.agent_id,
                "mission_id": ctx.options.mission_id,
                **decision.to_metadata(),
            },
        )
        return ExecutionResult(
            success=True,
            output=f"Post queued for human approval ({decision.reason}).",
            strategy=STRATEGY,
            details={"queued": True, "approval_id": approval.id, **decision.to_metadata()},
        )

    client = _client(ctx)
    client.ensure_registered(session=ctx.session)
    result = client.forum_post(channel_id, title, body, ctx.session)
    post = result.get("post") or {}
    return ExecutionResult(
        success=True,
        output=f"Posted to #{channel_id}: {title}",
        strategy=STRATEGY,
        details={"queued": False, "post_id": post.get("id"), **decision.to_metadata()},
    )


def marketplace_handlers() -> dict[str, "LocalHandler"]:
    return {
        "register": _guarded(register),
        "heartbeat": _guarded(heartbeat),
        "fetch_peers": _guarded(fetch_peers),
        "update_profile": _guarded(update_profile),
        "forum_post": _guarded(forum_post),
    }
