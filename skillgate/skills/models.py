from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal, Union

RiskLevel = Literal["safe", "dangerous"]
ConnectionType = Literal["cli", "api", "declarative", "none"]
MergeStrategy = Literal["concat", "object", "array"]
FailurePolicy = Literal["partial", "all_or_nothing"]


@dataclass(frozen=True)
class SkillParameter:
    name: str
    type: str = "string"
    required: bool = False
    description: str = ""
    default: Any = None


@dataclass(frozen=True)
class ApiConfig:
    base_url: str = ""
    vault_service: str | None = None
    auth_header: str = "Authorization"
    auth_prefix: str = "Bearer"
    auth_in_query: str | None = None
    headers: dict[str, str] = field(default_factory=dict)
    api_model: str = ""


@dataclass(frozen=True)
class RequestTemplate:
    method: str
    path: str
    query: dict[str, str] = field(default_factory=dict)
    headers: dict[str, str] = field(default_factory=dict)
    body: Any = None
    response_format: Literal["json", "text"] = "json"


@dataclass(frozen=True)
class ResponseSpec:
    error_path: str | None = None
    passthrough: bool = False
    extract_raw: str | None = None
    extract: dict[str, str] = field(default_factory=dict)
    image_field: str | None = None


@dataclass(frozen=True)
class PostProcessor:
    type: str
    config: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class MultiRequest:
    iterate_param: str
    iterate_over: tuple[str, ...]
    merge_strategy: MergeStrategy = "concat"
    failure_policy: FailurePolicy = "partial"


@dataclass(frozen=True)
class CliTemplate:
    url_template: str | None = None
    method: str = "GET"
    headers: dict[str, str] = field(default_factory=dict)
    response_type: Literal["json", "text"] = "json"
    gateway_exec: bool = False
    command_template: str | None = None
    timeout: int = 30


# Command variants. Exactly one is chosen per command when the definition is loaded.


@dataclass(frozen=True)
class DeclarativeCommand:
    name: str
    description: str
    parameters: tuple[SkillParameter, ...]
    request: RequestTemplate
    response: ResponseSpec = field(default_factory=ResponseSpec)
    post_processors: tuple[PostProcessor, ...] = ()
    multi_request: MultiRequest | None = None
    output_template: str | None = None
    kind: Literal["declarative"] = "declarative"


@dataclass(frozen=True)
class CliTemplateCommand:
    name: str
    description: str
    parameters: tuple[SkillParameter, ...]
    template: CliTemplate
    response: ResponseSpec = field(default_factory=ResponseSpec)
    output_template: str | None = None
    kind: Literal["cli_template"] = "cli_template"


@dataclass(frozen=True)
class HandlerCommand:
    name: str
    description: str
    parameters: tuple[SkillParameter, ...]
    handler_file: str
    vault_service: str | None = None
    kind: Literal["handler"] = "handler"


@dataclass(frozen=True)
class PromptCommand:
    name: str
    description: str
    parameters: tuple[SkillParameter, ...]
    prompt_template: str | None = None
    system_prompt: str | None = None
    kind: Literal["prompt"] = "prompt"


Command = Union[DeclarativeCommand, CliTemplateCommand, HandlerCommand, PromptCommand]


@dataclass(frozen=True)
class SkillDefinition:
    id: str
    name: str
    description: str = ""
    enabled: bool = True
    risk_level: RiskLevel = "safe"
    connection_type: ConnectionType = "none"
    commands: tuple[Command, ...] = ()
    handler_runtime: str | None = None
    model: str | None = None
    default_model: str | None = None
    api_config: ApiConfig = field(default_factory=ApiConfig)
    source_path: Path | None = None

    @property
    def dangerous(self) -> bool:
        return self.risk_level == "dangerous"

    def command(self, name: str) -> Command | None:
        for command in self.commands:
            if command.name == name:
                return command
        return None

    def summary(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "enabled": self.enabled,
            "risk_level": self.risk_level,
            "connection_type": self.connection_type,
            "commands": [{"name": c.name, "kind": c.kind, "description": c.description} for c in self.commands],
        }


def apply_parameter_defaults(parameters: tuple[SkillParameter, ...], params: dict[str, Any]) -> dict[str, Any]:
    resolved = dict(params)
    for parameter in parameters:
        if resolved.get(parameter.name) is None and parameter.default is not None:
            resolved[parameter.name] = parameter.default
    return resolved


def missing_required_parameters(parameters: tuple[SkillParameter, ...], params: dict[str, Any]) -> list[str]:
    return [p.name for p in parameters if p.required and params.get(p.name) in (None, "")]


@dataclass(frozen=True)
class ExecutionOptions:
    agent_id: str | None = None
    mission_id: str | None = None
    model_override: str | None = None
    # Set only by approval resubmission.
    skip_risk_gate: bool = False


@dataclass(frozen=True)
class ExecutionResult:
    success: bool
    output: str = ""
    tokens_used: int = 0
    cost_usd: float = 0.0
    duration_ms: int = 0
    error: str | None = None
    artifact_url: str | None = None
    strategy: str = ""
    details: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.success and not self.error:
            raise ValueError("failed execution results must carry an error")

    @classmethod
    def failure(cls, error: str, **kwargs: Any) -> "ExecutionResult":
        return cls(success=False, error=error or "unknown error", **kwargs)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "output": self.output,
            "tokens_used": self.tokens_used,
            "cost_usd": self.cost_usd,
            "duration_ms": self.duration_ms,
            "error": self.error,
            "artifact_url": self.artifact_url,
            "strategy": self.strategy,
            "details": self.details,
        }
