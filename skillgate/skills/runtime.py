from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Optional

import httpx
from sqlalchemy.orm import Session

from skillgate.core.config import Settings
from skillgate.core.events import ChangeNotifier
from skillgate.llm.providers import LLMProvider
from skillgate.skills.models import ExecutionOptions, ExecutionResult, SkillDefinition
from skillgate.skills.registry import SkillRegistry
from skillgate.skills.strategies.cli_handlers import CliHandler

if TYPE_CHECKING:
    from skillgate.risk.gate import RiskGate
    from skillgate.trust.client import MarketplaceClient
    from skillgate.trust.session import UnlockedSigningSession


@dataclass
class StrategyContext:
    """Everything one dispatch call hands to a strategy."""

    session: Session
    skill: SkillDefinition
    command_name: str
    options: ExecutionOptions
    runtime: "ExecutionRegistry"


LocalHandler = Callable[[StrategyContext, dict[str, Any]], Optional[ExecutionResult]]


@dataclass
class ExecutionRegistry:
    """Providers, handlers and clients shared by every dispatch.

    Built once at startup and passed by reference; nothing here is module-global.
    """

    settings: Settings
    skills: SkillRegistry
    http: httpx.Client
    providers: dict[str, LLMProvider] = field(default_factory=dict)
    local_handlers: dict[tuple[str, str], LocalHandler] = field(default_factory=dict)
    cli_handlers: dict[str, CliHandler] = field(default_factory=dict)
    notifier: ChangeNotifier = field(default_factory=ChangeNotifier)
    signing: Optional["UnlockedSigningSession"] = None
    marketplace: Optional["MarketplaceClient"] = None
    risk_gate: Optional["RiskGate"] = None

    def register_local_handler(self, skill_id: str, command_name: str, handler: LocalHandler) -> None:
        key = (skill_id, command_name)
        if key in self.local_handlers:
            raise ValueError(f"local handler already registered for {skill_id}.{command_name}")
        self.local_handlers[key] = handler

    def register_cli_handler(self, skill_id: str, handler: CliHandler) -> None:
        self.cli_handlers[skill_id] = handler

    def local_handler(self, skill_id: str, command_name: str) -> LocalHandler | None:
        return self.local_handlers.get((skill_id, command_name))

    def cli_handler(self, skill_id: str) -> CliHandler | None:
        return self.cli_handlers.get(skill_id)

    def provider(self, service: str) -> LLMProvider | None:
        return self.providers.get(service)
