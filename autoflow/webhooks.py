"""Webhook ingestion: authenticate, resolve the trigger key and queue a run."""

from __future__ import annotations

import hmac
import logging
from typing import Dict, Mapping, Optional

from .errors import AuthorizationError
from .persistence.models import WorkflowRun
from .persistence.repository import OrchestrationRepository
from .triggers import TriggerStore

logger = logging.getLogger(__name__)

WEBHOOK_TOKEN_HEADER = "x-webhook-token"
REDACTED_HEADERS = frozenset({"authorization", WEBHOOK_TOKEN_HEADER, "cookie"})


def _lower_keys(headers: Mapping[str, str]) -> Dict[str, str]:
    return {key.lower(): value for key, value in headers.items()}


def extract_token(headers: Mapping[str, str]) -> Optional[str]:
    """Webhook token from ``X-Webhook-Token`` or a bearer ``Authorization`` header."""
    lowered = _lower_keys(headers)
    if token := lowered.get(WEBHOOK_TOKEN_HEADER):
        return token.strip()
    authorization = lowered.get("authorization", "")
    scheme, _, credentials = authorization.partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return credentials.strip()
    return None


class WebhookIngestionQueue:
    """Accepts inbound webhook calls and stores them as queued runs.

    Ingestion never dispatches; the scheduler consumes queued runs on its
    next tick.
    """

    def __init__(
        self,
        repository: OrchestrationRepository,
        trigger_store: TriggerStore,
        secret: Optional[str],
    ) -> None:
        self._repository = repository
        self._triggers = trigger_store
        self._secret = secret
        if not secret:
            logger.warning("No webhook secret configured; all webhook calls will be rejected")

    def authenticate(self, headers: Mapping[str, str]) -> None:
        """Raise :class:`AuthorizationError` unless ``headers`` carry the shared secret."""
        token = extract_token(headers)
        if not self._secret or not token:
            raise AuthorizationError("Unauthorized")
        if not hmac.compare_digest(token.encode(), self._secret.encode()):
            raise AuthorizationError("Unauthorized")

    async def ingest(
        self,
        trigger_key: str,
        payload: str,
        headers: Mapping[str, str],
        query: Optional[Mapping[str, str]] = None,
    ) -> str:
        """Queue one webhook call and return the run id."""
        self.authenticate(headers)
        trigger = await self._triggers.resolve_webhook_key(trigger_key)

        lowered = _lower_keys(headers)
        run = WorkflowRun(
            trigger_id=trigger.id,
            organization_id=trigger.organization_id,
            payload=payload,
            content_type=lowered.get("content-type"),
            user_agent=lowered.get("user-agent"),
            headers={k: v for k, v in lowered.items() if k not in REDACTED_HEADERS},
            query=dict(query or {}),
        )
        await self._repository.create_run(run)
        logger.info(f"Queued webhook run {run.id} for trigger {trigger.id}")
        return run.id
