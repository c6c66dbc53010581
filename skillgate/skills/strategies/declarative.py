from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

import httpx

from skillgate.persistence.vault import get_vault_secret
from skillgate.skills.audit import log_usage
from skillgate.skills.interpolation import extract_by_path, interpolate_body, interpolate_string, interpolate_template
from skillgate.skills.models import (
    ApiConfig,
    DeclarativeCommand,
    ExecutionResult,
    RequestTemplate,
    ResponseSpec,
    apply_parameter_defaults,
)

if TYPE_CHECKING:
    from skillgate.skills.runtime import StrategyContext

logger = logging.getLogger(__name__)

STRATEGY = "declarative"
_ERROR_BODY_LIMIT = 500
_MIN_IMAGE_B64 = 100


def _dump(value: Any) -> str:
    return value if isinstance(value, str) else json.dumps(value, indent=2)


def build_request(
    api: ApiConfig,
    request: RequestTemplate,
    params: dict[str, Any],
    api_key: str | None,
) -> tuple[str, str, dict[str, str], dict[str, str], Any]:
    variables = {**params, "api_model": api.api_model, "api_key": api_key or ""}
    base_url = api.base_url.rstrip("/")
    path = interpolate_string(request.path, variables)
    if not path:
        url = base_url
    elif base_url:
        url = f"{base_url}/{path.lstrip('/')}"
    else:
        url = path

    query = {key: interpolate_string(value, variables) for key, value in request.query.items()}
    if api_key and api.auth_in_query:
        query[api.auth_in_query] = api_key

    headers = {**api.headers, **request.headers}
    if api_key and not api.auth_in_query:
        headers[api.auth_header] = f"{api.auth_prefix} {api_key}" if api.auth_prefix else api_key

    body = None
    if request.method != "GET" and request.body is not None:
        body = interpolate_body(request.body, variables)
    return request.method, url, query, headers, body


def _extract(response: ResponseSpec, raw: Any, response_format: str) -> tuple[dict[str, Any], str]:
    if response.passthrough or response_format == "text":
        return {"raw": raw}, _dump(raw)
    if response.extract_raw:
        value = extract_by_path(raw, response.extract_raw)
        return {"raw": value}, _dump(value)
    if response.extract:
        extracted = {name: extract_by_path(raw, path) for name, path in response.extract.items()}
        return extracted, json.dumps(extracted, indent=2)
    return {"raw": raw}, _dump(raw)


def _image_artifact(response: ResponseSpec, raw: Any) -> str | None:
    if not response.image_field:
        return None
    b64 = extract_by_path(raw, response.image_field)
    mime = "image/png"
    if not isinstance(b64, str):
        for part in extract_by_path(raw, "candidates[0].content.parts") or []:
            inline = part.get("inlineData") if isinstance(part, dict) else None
            if isinstance(inline, dict) and isinstance(inline.get("data"), str):
                b64 = inline["data"]
                mime = inline.get("mimeType") or mime
                break
    if isinstance(b64, str) and len(b64) > _MIN_IMAGE_B64:
        return f"data:{mime};base64,{b64}"
    return None


def _resolve_api_key(ctx: "StrategyContext") -> tuple[str | None, str | None]:
    service = ctx.skill.api_config.vault_service
    if not service or service == "none":
        return None, None
    secret = get_vault_secret(ctx.session, service)
    if secret is None:
        return None, f"No {service} API key found in the vault."
    return secret, None


def run_single(ctx: "StrategyContext", command: DeclarativeCommand, params: dict[str, Any]) -> ExecutionResult:
    resolved = apply_parameter_defaults(command.parameters, params)
    api_key, error = _resolve_api_key(ctx)
    if error:
        return ExecutionResult.failure(error, strategy=STRATEGY)

    method, url, query, headers, body = build_request(ctx.skill.api_config, command.request, resolved, api_key)
    try:
        response = ctx.runtime.http.request(method, url, params=query or None, headers=headers, json=body)
    except httpx.HTTPError as exc:
        return ExecutionResult.failure(f"request to {ctx.skill.name} failed: {exc}", strategy=STRATEGY)

    if response.status_code >= 400:
        return ExecutionResult.failure(
            f"API returned {response.status_code}: {response.text[:_ERROR_BODY_LIMIT]}", strategy=STRATEGY
        )

    fmt = command.request.response_format
    if fmt == "text":
        raw: Any = response.text
    else:
        try:
            raw = response.json()
        except ValueError:
            return ExecutionResult.failure("API returned a body that is not valid JSON", strategy=STRATEGY)

    if command.response.error_path:
        api_error = extract_by_path(raw, command.response.error_path)
        if api_error:
            return ExecutionResult.failure(str(api_error), strategy=STRATEGY)

    extracted, output = _extract(command.response, raw, fmt)

    estimated_cost = 0.0
    for processor in command.post_processors:
        if processor.type == "estimate_cost":
            base_cost = processor.config.get("base_cost_usd") or 0
            if isinstance(base_cost, (int, float)) and base_cost > 0:
                estimated_cost = float(base_cost)
        else:
            logger.warning("unknown post processor %r on %s.%s", processor.type, ctx.skill.id, command.name)

    artifact_url = _image_artifact(command.response, raw)
    if artifact_url:
        extracted["image_url"] = artifact_url

    if command.output_template:
        output = interpolate_template(command.output_template, {**resolved, **extracted})

    details: dict[str, Any] = {}
    if estimated_cost > 0:
        details["estimated_cost_usd"] = estimated_cost
        log_usage(
            ctx.session,
            provider=ctx.skill.api_config.vault_service or "unknown",
            model=ctx.skill.api_config.api_model or "unknown",
            input_tokens=0,
            output_tokens=0,
            estimated_cost=estimated_cost,
            context="skill_execution",
            agent_id=ctx.options.agent_id,
            mission_id=ctx.options.mission_id,
        )

    return ExecutionResult(
        success=True,
        output=output,
        artifact_url=artifact_url,
        strategy=STRATEGY,
        details=details,
    )


def run_multi_request(ctx: "StrategyContext", command: DeclarativeCommand, params: dict[str, Any]) -> ExecutionResult:
    multi = command.multi_request
    if multi is None:
        return run_single(ctx, command, params)
    results: list[tuple[str, ExecutionResult]] = []
    for value in multi.iterate_over:
        results.append((value, run_single(ctx, command, {**params, multi.iterate_param: value})))

    succeeded = [(key, result) for key, result in results if result.success]
    failed = [{"key": key, "error": result.error} for key, result in results if not result.success]
    estimated_cost = sum(result.details.get("estimated_cost_usd", 0.0) for _, result in succeeded)
    details: dict[str, Any] = {"iterations": len(results), "failed": failed, "failure_policy": multi.failure_policy}
    if estimated_cost:
        details["estimated_cost_usd"] = estimated_cost

    if failed and (multi.failure_policy == "all_or_nothing" or not succeeded):
        first = failed[0]
        return ExecutionResult.failure(
            f"iteration {multi.iterate_param}={first['key']} failed: {first['error']}",
            strategy=STRATEGY,
            details=details,
        )

    if multi.merge_strategy == "object":
        merged = json.dumps({key: result.output for key, result in succeeded}, indent=2)
    elif multi.merge_strategy == "array":
        merged = json.dumps([{"key": key, "output": result.output} for key, result in succeeded], indent=2)
    else:
        merged = "\n\n".join(result.output for _, result in succeeded if result.output.strip())

    return ExecutionResult(
        success=True,
        output=merged or "No results returned.",
        strategy=STRATEGY,
        details=details,
    )


def run_declarative(ctx: "StrategyContext", command: DeclarativeCommand, params: dict[str, Any]) -> ExecutionResult:
    if command.multi_request is not None:
        return run_multi_request(ctx, command, params)
    return run_single(ctx, command, params)
