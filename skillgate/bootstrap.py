from __future__ import annotations

import logging
from typing import Callable

import httpx
from sqlalchemy.orm import Session

from skillgate import __version__
from skillgate.core.config import Settings
from skillgate.core.events import ChangeNotifier
from skillgate.llm.providers import LLMProvider, default_providers
from skillgate.persistence import pg
from skillgate.risk.classifier import RiskClassifier
from skillgate.risk.gate import ContentClassifier, RiskGate
from skillgate.skills.registry import SkillRegistry
from skillgate.skills.runtime import ExecutionRegistry
from skillgate.skills.strategies.cli_handlers import default_cli_handlers
from skillgate.skills.strategies.local import MARKETPLACE_SKILL_ID, marketplace_handlers
from skillgate.trust.client import MarketplaceClient
from skillgate.trust.session import UnlockedSigningSession

logger = logging.getLogger(__name__)


def build_execution_registry(
    settings: Settings,
    *,
    http: httpx.Client | None = None,
    skills: SkillRegistry | None = None,
    providers: dict[str, LLMProvider] | None = None,
    classifier: ContentClassifier | None = None,
    session_factory: Callable[[], Session] = pg.session_factory,
) -> ExecutionRegistry:
    """Wire providers, handlers, the signing session and the risk gate once."""
    http = http or httpx.Client(timeout=settings.http_timeout_seconds)
    skills = skills if skills is not None else SkillRegistry.load(settings.skills_root)
    signing = UnlockedSigningSession(settings.identity_path, idle_timeout=settings.signing_idle_timeout_seconds)

    runtime = ExecutionRegistry(
        settings=settings,
        skills=skills,
        http=http,
        providers=providers if providers is not None else default_providers(http),
        cli_handlers=default_cli_handlers(),
        notifier=ChangeNotifier(),
        signing=signing,
        marketplace=MarketplaceClient(
            http,
            settings.hub_base_url,
            signing,
            session_factory,
            poll_delays=settings.registration_poll_delays,
            app_version=__version__,
        ),
    )
    for command_name, handler in marketplace_handlers().items():
        runtime.register_local_handler(MARKETPLACE_SKILL_ID, command_name, handler)

    if classifier is None:
        classifier = RiskClassifier(
            runtime,
            model=settings.risk_classifier_model,
            sensitive_tags=settings.sensitive_tag_list(),
            memory_limit=settings.risk_memory_limit,
        )
    runtime.risk_gate = RiskGate(classifier, default_policy=settings.default_auto_post_policy)

    logger.info("execution registry ready: %d skills, %d providers", len(skills.ids()), len(runtime.providers))
    return runtime
