from __future__ import annotations

import json
import re
from pathlib import PurePosixPath
from typing import TYPE_CHECKING, Any

import httpx

from skillgate.persistence.vault import get_vault_secret
from skillgate.skills.models import ExecutionResult, HandlerCommand

if TYPE_CHECKING:
    from skillgate.skills.runtime import StrategyContext

STRATEGY = "gateway"
_HANDLER_NAME = re.compile(r"^[A-Za-z0-9_-]+$")


def handler_name(handler_file: str) -> str:
    return PurePosixPath(handler_file.replace("\\", "/")).stem


def run_gateway(ctx: "StrategyContext", command: HandlerCommand, params: dict[str, Any]) -> ExecutionResult:
    name = handler_name(command.handler_file)
    if not _HANDLER_NAME.match(name):
        return ExecutionResult.failure(f"invalid handler name: {name!r}", strategy=STRATEGY)

    # Only the one secret the handler declares is forwarded.
    secrets: dict[str, str] = {}
    if command.vault_service:
        secret = get_vault_secret(ctx.session, command.vault_service)
        if secret is None:
            return ExecutionResult.failure(
                f"No {command.vault_service} key found in the vault.", strategy=STRATEGY
            )
        secrets[command.vault_service] = secret

    url = f"{ctx.runtime.settings.gateway_url.rstrip('/')}/exec/{name}"
    try:
        response = ctx.runtime.http.post(url, json={"params": params, "secrets": secrets})
    except httpx.HTTPError as exc:
        return ExecutionResult.failure(f"gateway unreachable: {exc}", strategy=STRATEGY)

    try:
        data = response.json()
    except ValueError:
        data = {"result": response.text}
    if response.status_code >= 400:
        reason = data.get("error") if isinstance(data, dict) else None
        return ExecutionResult.failure(
            f"handler {name} failed ({response.status_code}): {reason or 'unknown error'}", strategy=STRATEGY
        )

    result = data.get("result", data) if isinstance(data, dict) else data
    output = result if isinstance(result, str) else json.dumps(result, indent=2)
    return ExecutionResult(success=True, output=output, strategy=STRATEGY, details={"handler": name})
