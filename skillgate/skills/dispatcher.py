"""Skill dispatch.

Strategy precedence for one (skill, command) call:

1. missing or disabled skill fails
2. declarative command (``request``), with ``multi_request`` fan-out
3. CLI template command (``cli_command_template``)
4. local handler registered for (skill, command); ``None`` from it fails closed
5. handler command with a ``handler_runtime`` goes to the gateway
6. ``connection_type == "cli"`` runs the fixed CLI handler set
7. LLM prompt, for prompt commands and skills without explicit commands

A handler command without a runtime, or an unknown command on a skill that
declares commands, fails instead of falling through to the LLM.
"""

from __future__ import annotations

import logging
import time
from dataclasses import replace
from typing import Any

from sqlalchemy.orm import Session

from skillgate.skills.audit import log_audit
from skillgate.skills.models import (
    CliTemplateCommand,
    DeclarativeCommand,
    ExecutionOptions,
    ExecutionResult,
    HandlerCommand,
    PromptCommand,
    SkillDefinition,
    apply_parameter_defaults,
    missing_required_parameters,
)
from skillgate.skills.runtime import ExecutionRegistry, StrategyContext
from skillgate.skills.strategies import cli_handlers, local
from skillgate.skills.strategies.cli_template import run_cli_template
from skillgate.skills.strategies.declarative import run_declarative
from skillgate.skills.strategies.gateway import run_gateway
from skillgate.skills.strategies.llm import run_llm

logger = logging.getLogger(__name__)

ACTION_EXECUTED = "SKILL_EXECUTED"
ACTION_FAILED = "SKILL_EXECUTION_FAILED"


class SkillDispatcher:
    def __init__(self, session: Session, runtime: ExecutionRegistry):
        self.session = session
        self.runtime = runtime

    def execute_skill(
        self,
        skill_id: str,
        command_name: str,
        params: dict[str, Any] | None = None,
        options: ExecutionOptions | None = None,
    ) -> ExecutionResult:
        """Run one command. Never raises; every failure comes back as a result."""
        options = options or ExecutionOptions()
        params = dict(params or {})
        started = time.monotonic()
        skill = self.runtime.skills.get(skill_id)

        try:
            result = self._dispatch(skill, skill_id, command_name, params, options)
        except Exception as exc:
            logger.exception("skill %s.%s raised", skill_id, command_name)
            result = ExecutionResult.failure(f"{type(exc).__name__}: {exc}", strategy="error")

        duration_ms = int((time.monotonic() - started) * 1000)
        result = replace(result, duration_ms=duration_ms)
        self._audit(skill, skill_id, command_name, options, result)
        if not result.success:
            logger.warning("skill %s.%s failed via %s: %s", skill_id, command_name, result.strategy or "-", result.error)
        return result

    def _dispatch(
        self,
        skill: SkillDefinition | None,
        skill_id: str,
        command_name: str,
        params: dict[str, Any],
        options: ExecutionOptions,
    ) -> ExecutionResult:
        if skill is None:
            return ExecutionResult.failure(f"Skill not found: {skill_id}")
        if not skill.enabled:
            return ExecutionResult.failure(f"Skill is disabled: {skill_id}")

        command = skill.command(command_name)
        if command is not None:
            params = apply_parameter_defaults(command.parameters, params)
            missing = missing_required_parameters(command.parameters, params)
            if isinstance(command, DeclarativeCommand) and command.multi_request is not None:
                missing = [name for name in missing if name != command.multi_request.iterate_param]
            if missing:
                return ExecutionResult.failure(
                    f"Missing required parameter(s) for {skill.id}.{command_name}: {', '.join(missing)}",
                    details={"category": "validation", "missing": missing},
                )
        ctx = StrategyContext(
            session=self.session,
            skill=skill,
            command_name=command_name,
            options=options,
            runtime=self.runtime,
        )

        if isinstance(command, DeclarativeCommand):
            return self._run("declarative", skill, command_name, lambda: run_declarative(ctx, command, params))
        if isinstance(command, CliTemplateCommand):
            return self._run("cli_template", skill, command_name, lambda: run_cli_template(ctx, command, params))

        handler = self.runtime.local_handler(skill.id, command_name)
        if handler is not None:
            logger.debug("skill %s.%s -> local handler", skill.id, command_name)
            result = handler(ctx, params)
            if result is None:
                return ExecutionResult.failure(
                    f"Local handler for {skill.id}.{command_name} produced no result",
                    strategy=local.STRATEGY,
                )
            return result

        if isinstance(command, HandlerCommand) and skill.handler_runtime:
            return self._run("gateway", skill, command_name, lambda: run_gateway(ctx, command, params))

        if skill.connection_type == "cli":
            cli_handler = self.runtime.cli_handler(skill.id)
            if cli_handler is None:
                return ExecutionResult.failure(
                    f"No CLI handler registered for {skill.id}",
                    strategy=cli_handlers.STRATEGY,
                )
            return self._run("cli", skill, command_name, lambda: cli_handler(self.runtime.http, command_name, params))

        if isinstance(command, HandlerCommand):
            return ExecutionResult.failure(
                f"Handler command {skill.id}.{command_name} has no handler runtime configured",
                strategy="gateway",
            )
        if command is None and skill.commands:
            return ExecutionResult.failure(f"Unknown command {command_name!r} for skill {skill.id}")

        prompt = command if isinstance(command, PromptCommand) else None
        return self._run("llm", skill, command_name, lambda: run_llm(ctx, prompt, params))

    @staticmethod
    def _run(strategy: str, skill: SkillDefinition, command_name: str, call) -> ExecutionResult:
        logger.debug("skill %s.%s -> %s", skill.id, command_name, strategy)
        return call()

    def _audit(
        self,
        skill: SkillDefinition | None,
        skill_id: str,
        command_name: str,
        options: ExecutionOptions,
        result: ExecutionResult,
    ) -> None:
        name = skill.name if skill is not None else skill_id
        if result.success:
            details = f"{name}.{command_name} via {result.strategy} in {result.duration_ms}ms"
        else:
            details = f"{name}.{command_name} failed: {result.error}"
        log_audit(
            self.session,
            agent_id=options.agent_id,
            action=ACTION_EXECUTED if result.success else ACTION_FAILED,
            details=details[:2000],
            severity="warning" if skill is not None and skill.dangerous else "info",
        )
