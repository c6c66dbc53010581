from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

import httpx

from skillgate.skills.interpolation import extract_by_path, interpolate_shell, interpolate_string, interpolate_template
from skillgate.skills.models import CliTemplateCommand, ExecutionResult, apply_parameter_defaults

if TYPE_CHECKING:
    from skillgate.skills.runtime import StrategyContext

STRATEGY = "cli_template"


def _gateway_exec(ctx: "StrategyContext", command: CliTemplateCommand, variables: dict[str, Any]) -> ExecutionResult:
    template = command.template
    shell_command = interpolate_shell(template.command_template or "", variables)
    url = f"{ctx.runtime.settings.gateway_url.rstrip('/')}/exec-cli"
    try:
        response = ctx.runtime.http.post(
            url,
            json={"command": shell_command, "timeout": template.timeout},
            timeout=template.timeout + 5,
        )
    except httpx.HTTPError as exc:
        return ExecutionResult.failure(f"gateway unreachable: {exc}", strategy=STRATEGY)
    try:
        data = response.json()
    except ValueError:
        data = {"error": response.text}
    if response.status_code >= 400:
        reason = data.get("error") if isinstance(data, dict) else None
        return ExecutionResult.failure(
            f"Gateway CLI exec failed: {reason or response.reason_phrase}", strategy=STRATEGY
        )
    result = data.get("result") if isinstance(data, dict) else data
    output = result if isinstance(result, str) else json.dumps(result, indent=2)
    return ExecutionResult(success=True, output=output, strategy=STRATEGY)


def _url_fetch(ctx: "StrategyContext", command: CliTemplateCommand, variables: dict[str, Any]) -> ExecutionResult:
    template = command.template
    url = interpolate_string(template.url_template or "", variables)
    try:
        parsed = httpx.URL(url)
    except httpx.InvalidURL as exc:
        return ExecutionResult.failure(f"invalid url: {exc}", strategy=STRATEGY)
    allowed = ctx.runtime.settings.cli_template_host_set()
    if parsed.scheme not in ("http", "https") or parsed.host.lower() not in allowed:
        return ExecutionResult.failure(
            f"host {parsed.host or url!r} is not on the CLI template allow-list",
            strategy=STRATEGY,
            details={"category": "validation"},
        )
    try:
        response = ctx.runtime.http.request(template.method, url, headers=template.headers)
    except httpx.HTTPError as exc:
        return ExecutionResult.failure(f"request failed: {exc}", strategy=STRATEGY)
    if response.status_code >= 400:
        return ExecutionResult.failure(f"HTTP {response.status_code}: {response.text[:500]}", strategy=STRATEGY)

    if template.response_type == "text":
        return ExecutionResult(success=True, output=response.text, strategy=STRATEGY)

    try:
        data = response.json()
    except ValueError:
        return ExecutionResult.failure("response is not valid JSON", strategy=STRATEGY)

    if command.response.extract:
        extracted = {name: extract_by_path(data, path) for name, path in command.response.extract.items()}
        if command.output_template:
            output = interpolate_template(command.output_template, {**variables, **extracted})
        else:
            output = json.dumps(extracted, indent=2)
    elif command.output_template:
        output = interpolate_template(command.output_template, {**variables, "raw": data})
    else:
        output = json.dumps(data, indent=2)
    return ExecutionResult(success=True, output=output, strategy=STRATEGY)


def run_cli_template(ctx: "StrategyContext", command: CliTemplateCommand, params: dict[str, Any]) -> ExecutionResult:
    variables = apply_parameter_defaults(command.parameters, params)
    if command.template.gateway_exec and command.template.command_template:
        return _gateway_exec(ctx, command, variables)
    return _url_fetch(ctx, command, variables)
