from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from skillgate.skills.models import (
    ApiConfig,
    CliTemplate,
    CliTemplateCommand,
    Command,
    DeclarativeCommand,
    HandlerCommand,
    MultiRequest,
    PostProcessor,
    PromptCommand,
    RequestTemplate,
    ResponseSpec,
    SkillDefinition,
    SkillParameter,
)

logger = logging.getLogger(__name__)

_RISK_LEVELS = {"safe", "dangerous"}
_CONNECTION_TYPES = {"cli", "api", "declarative", "none"}
_MERGE_STRATEGIES = {"concat", "object", "array"}
_FAILURE_POLICIES = {"partial", "all_or_nothing"}


class SkillDefinitionError(ValueError):
    pass


def _str_dict(value: Any, where: str) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise SkillDefinitionError(f"{where} must be an object")
    return {str(k): str(v) for k, v in value.items()}


def _parameters(raw: Any) -> tuple[SkillParameter, ...]:
    if not raw:
        return tuple()
    out: list[SkillParameter] = []
    for item in raw:
        if not isinstance(item, dict) or not item.get("name"):
            raise SkillDefinitionError("command parameters need a name")
        out.append(
            SkillParameter(
                name=str(item["name"]),
                type=str(item.get("type") or "string"),
                required=bool(item.get("required", False)),
                description=str(item.get("description") or ""),
                default=item.get("default"),
            )
        )
    return tuple(out)


def _response(raw: Any) -> ResponseSpec:
    raw = raw or {}
    return ResponseSpec(
        error_path=raw.get("error_path"),
        passthrough=bool(raw.get("passthrough", False)),
        extract_raw=raw.get("extract_raw"),
        extract=_str_dict(raw.get("extract"), "response.extract"),
        image_field=raw.get("image_field"),
    )


def _multi_request(raw: Any, where: str) -> MultiRequest | None:
    if not raw:
        return None
    iterate_over = raw.get("iterate_over")
    if not raw.get("iterate_param") or not isinstance(iterate_over, list) or not iterate_over:
        raise SkillDefinitionError(f"{where}: multi_request needs iterate_param and a non-empty iterate_over")
    merge = raw.get("merge_strategy") or "concat"
    policy = raw.get("failure_policy") or "partial"
    if merge not in _MERGE_STRATEGIES:
        raise SkillDefinitionError(f"{where}: unknown merge_strategy {merge!r}")
    if policy not in _FAILURE_POLICIES:
        raise SkillDefinitionError(f"{where}: unknown failure_policy {policy!r}")
    return MultiRequest(
        iterate_param=str(raw["iterate_param"]),
        iterate_over=tuple(str(item) for item in iterate_over),
        merge_strategy=merge,
        failure_policy=policy,
    )


def parse_command(raw: dict[str, Any], skill_id: str) -> Command:
    name = str(raw.get("name") or "").strip()
    if not name:
        raise SkillDefinitionError(f"skill '{skill_id}' has a command without a name")
    where = f"{skill_id}.{name}"
    description = str(raw.get("description") or "")
    parameters = _parameters(raw.get("parameters"))

    if raw.get("request"):
        request = raw["request"]
        if not isinstance(request, dict):
            raise SkillDefinitionError(f"{where}: request must be an object")
        fmt = request.get("response_format") or "json"
        if fmt not in {"json", "text"}:
            raise SkillDefinitionError(f"{where}: unsupported response_format {fmt!r}")
        return DeclarativeCommand(
            name=name,
            description=description,
            parameters=parameters,
            request=RequestTemplate(
                method=str(request.get("method") or "GET").upper(),
                path=str(request.get("path") or ""),
                query=_str_dict(request.get("query"), f"{where}.request.query"),
                headers=_str_dict(request.get("headers"), f"{where}.request.headers"),
                body=request.get("body"),
                response_format=fmt,
            ),
            response=_response(raw.get("response")),
            post_processors=tuple(
                PostProcessor(type=str(pp.get("type")), config=dict(pp.get("config") or {}))
                for pp in raw.get("post_processors") or []
            ),
            multi_request=_multi_request(raw.get("multi_request"), where),
            output_template=raw.get("output_template"),
        )

    if raw.get("cli_command_template"):
        cli = raw["cli_command_template"]
        if not cli.get("url_template") and not (cli.get("gateway_exec") and cli.get("command_template")):
            raise SkillDefinitionError(
                f"{where}: cli_command_template requires url_template or gateway_exec + command_template"
            )
        return CliTemplateCommand(
            name=name,
            description=description,
            parameters=parameters,
            template=CliTemplate(
                url_template=cli.get("url_template"),
                method=str(cli.get("method") or "GET").upper(),
                headers=_str_dict(cli.get("headers"), f"{where}.cli_command_template.headers"),
                response_type="text" if cli.get("response_type") == "text" else "json",
                gateway_exec=bool(cli.get("gateway_exec", False)),
                command_template=cli.get("command_template"),
                timeout=int(cli.get("timeout") or 30),
            ),
            response=_response(raw.get("response")),
            output_template=raw.get("output_template"),
        )

    if raw.get("handler_file"):
        return HandlerCommand(
            name=name,
            description=description,
            parameters=parameters,
            handler_file=str(raw["handler_file"]),
            vault_service=raw.get("vault_service"),
        )

    return PromptCommand(
        name=name,
        description=description,
        parameters=parameters,
        prompt_template=raw.get("prompt_template"),
        system_prompt=raw.get("system_prompt"),
    )


def parse_skill_definition(raw: dict[str, Any], source_path: Path | None = None) -> SkillDefinition:
    skill_id = str(raw.get("id") or "").strip()
    if not skill_id:
        raise SkillDefinitionError(f"skill definition missing id ({source_path})")

    risk = raw.get("risk_level") or "safe"
    if risk not in _RISK_LEVELS:
        raise SkillDefinitionError(f"skill '{skill_id}' has unknown risk_level {risk!r}")
    connection = raw.get("connection_type") or "none"
    if connection not in _CONNECTION_TYPES:
        raise SkillDefinitionError(f"skill '{skill_id}' has unknown connection_type {connection!r}")

    api = raw.get("api_config") or {}
    commands = tuple(parse_command(item, skill_id) for item in raw.get("commands") or [])
    names = [c.name for c in commands]
    if len(names) != len(set(names)):
        raise SkillDefinitionError(f"skill '{skill_id}' declares duplicate command names")

    return SkillDefinition(
        id=skill_id,
        name=str(raw.get("name") or skill_id),
        description=str(raw.get("description") or ""),
        enabled=bool(raw.get("enabled", True)),
        risk_level=risk,
        connection_type=connection,
        commands=commands,
        handler_runtime=raw.get("handler_runtime"),
        model=raw.get("model"),
        default_model=raw.get("default_model"),
        api_config=ApiConfig(
            base_url=str(api.get("base_url") or ""),
            vault_service=api.get("vault_service"),
            auth_header=str(api.get("auth_header") or "Authorization"),
            auth_prefix=str(api["auth_prefix"]) if api.get("auth_prefix") is not None else "Bearer",
            auth_in_query=api.get("auth_in_query"),
            headers=_str_dict(api.get("headers"), f"{skill_id}.api_config.headers"),
            api_model=str(api.get("api_model") or ""),
        ),
        source_path=source_path,
    )


def parse_skill_file(path: Path) -> SkillDefinition:
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except ValueError as exc:
        raise SkillDefinitionError(f"{path}: invalid JSON ({exc})") from exc
    if not isinstance(raw, dict):
        raise SkillDefinitionError(f"{path}: skill definition must be a JSON object")
    return parse_skill_definition(raw, source_path=path)
