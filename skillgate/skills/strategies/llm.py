from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING, Any

from skillgate.llm.exceptions import ProviderError
from skillgate.llm.models import api_model_id, estimate_cost, estimate_tokens, service_for_model
from skillgate.llm.providers import ChatMessage
from skillgate.persistence.vault import get_vault_secret
from skillgate.skills.audit import log_usage
from skillgate.skills.models import ExecutionResult, PromptCommand, SkillDefinition

if TYPE_CHECKING:
    from skillgate.skills.runtime import StrategyContext

logger = logging.getLogger(__name__)

STRATEGY = "llm"


def build_skill_prompt(
    skill: SkillDefinition,
    command_name: str,
    command: PromptCommand | None,
    params: dict[str, Any],
) -> str:
    if command is not None and command.prompt_template:
        prompt = command.prompt_template
        for key, value in params.items():
            prompt = prompt.replace("{" + key + "}", "" if value is None else str(value))
        return prompt

    if command is not None:
        command_line = f"\nCommand: {command.name} - {command.description}"
    else:
        command_line = f"\nCommand: {command_name}"
    param_block = f"\n\nParameters:\n{json.dumps(params, indent=2)}" if params else ""
    return (
        f'You are executing the skill "{skill.name}".{command_line}{param_block}\n\n'
        "Execute this task and return the result. Be thorough and provide actionable output."
    )


def system_prompt_for(skill: SkillDefinition, command: PromptCommand | None) -> str:
    if command is not None and command.system_prompt:
        return command.system_prompt
    return (
        f'You are an AI agent executing the "{skill.name}" skill. '
        "Be precise, thorough, and return structured output when possible."
    )


def run_llm(ctx: "StrategyContext", command: PromptCommand | None, params: dict[str, Any]) -> ExecutionResult:
    skill = ctx.skill
    model = ctx.options.model_override or skill.model or skill.default_model
    if not model:
        return ExecutionResult.failure("No model configured for this skill", strategy=STRATEGY)
    service = service_for_model(model)
    if service is None:
        return ExecutionResult.failure(f'Unknown service for model "{model}"', strategy=STRATEGY)
    provider = ctx.runtime.provider(service)
    if provider is None:
        return ExecutionResult.failure(f'No provider available for service "{service}"', strategy=STRATEGY)
    api_key = get_vault_secret(ctx.session, service)
    if api_key is None:
        return ExecutionResult.failure(f"No API key found for {service}. Add one to the vault.", strategy=STRATEGY)

    prompt = build_skill_prompt(skill, ctx.command_name, command, params)
    system = system_prompt_for(skill, command)
    try:
        output = provider.complete([ChatMessage(role="user", content=prompt)], api_key, api_model_id(model), system)
    except ProviderError as exc:
        logger.warning("provider %s failed for %s.%s: %s", service, skill.id, ctx.command_name, exc)
        return ExecutionResult.failure(str(exc), strategy=STRATEGY, details={"model": model, "service": service})

    input_tokens = estimate_tokens(system + prompt)
    output_tokens = estimate_tokens(output)
    cost = estimate_cost(model, input_tokens, output_tokens)
    log_usage(
        ctx.session,
        provider=service,
        model=model,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        estimated_cost=cost,
        context="skill_execution",
        agent_id=ctx.options.agent_id,
        mission_id=ctx.options.mission_id,
    )
    return ExecutionResult(
        success=True,
        output=output,
        tokens_used=input_tokens + output_tokens,
        cost_usd=cost,
        strategy=STRATEGY,
        details={"model": model, "service": service, "input_tokens": input_tokens, "output_tokens": output_tokens},
    )
