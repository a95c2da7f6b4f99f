"""Wiring of the orchestration components around one repository."""

from __future__ import annotations

import logging
import secrets
from typing import Optional

import httpx

from .config import AutoflowConfig, load_config
from .dispatch import WorkflowDispatcher
from .events import EventRouter
from .lifecycle import ExecutionLifecycle
from .persistence import OrchestrationRepository, get_repository
from .scheduler import IdentityResolver, Scheduler, owner_identity
from .security import CapabilityTokenIssuer
from .steps import StepOutcomeRecorder
from .triggers import TriggerStore
from .webhooks import WebhookIngestionQueue

logger = logging.getLogger(__name__)


class Engine:
    """All orchestration services sharing one repository and configuration."""

    def __init__(
        self,
        config: AutoflowConfig,
        repository: OrchestrationRepository,
        identity_resolver: IdentityResolver = owner_identity,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.config = config
        self.repository = repository

        secret = config.security.capability_secret
        if not secret:
            logger.warning(
                "No capability secret configured; using an ephemeral one. "
                "Tokens will not survive a restart."
            )
            secret = secrets.token_hex(32)
        self.tokens = CapabilityTokenIssuer(
            secret,
            issuer=config.security.token_issuer,
            audience=config.security.token_audience,
            ttl_seconds=config.security.token_ttl_seconds,
            leeway=config.security.token_leeway_seconds,
        )

        self.triggers = TriggerStore(
            repository, claim_timeout_seconds=config.scheduler.claim_timeout_seconds
        )
        self.lifecycle = ExecutionLifecycle(repository, self.triggers)
        self.dispatcher = WorkflowDispatcher(
            self.lifecycle, config.dispatch, self.tokens, client=http_client
        )
        self.scheduler = Scheduler(
            repository,
            self.triggers,
            self.dispatcher,
            identity_resolver=identity_resolver,
            config=config.scheduler,
        )
        self.webhooks = WebhookIngestionQueue(
            repository,
            self.triggers,
            config.security.webhook_token or config.dispatch.external_token,
        )
        self.steps = StepOutcomeRecorder(repository)
        self.events = EventRouter(
            repository, self.triggers, self.dispatcher, identity_resolver=identity_resolver
        )

    async def aclose(self) -> None:
        await self.dispatcher.aclose()


def build_engine(
    config: Optional[AutoflowConfig] = None,
    repository: Optional[OrchestrationRepository] = None,
    **kwargs,
) -> Engine:
    """Build an :class:`Engine` from configuration, defaulting to ``load_config()``."""
    config = config or load_config()
    repository = repository or get_repository(config=config)
    return Engine(config, repository, **kwargs)
