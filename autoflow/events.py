"""Internal events: derived from record changes and routed to event triggers."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

from .contracts import BatchResult, DispatchRequest
from .dispatch import WorkflowDispatcher
from .persistence.models import utcnow
from .persistence.repository import OrchestrationRepository
from .scheduler import IdentityResolver, owner_identity, resolve_identity
from .triggers import TriggerStore

logger = logging.getLogger(__name__)

TABLE_EVENT_MAP: Dict[str, Dict[str, str]] = {
    "chats": {"insert": "on_chat_create", "delete": "on_chat_delete"},
    "sandboxes": {"insert": "on_sandbox_provision", "delete": "on_sandbox_delete"},
    "todos": {"insert": "on_todo_create"},
}


def events_for_change(
    table: str,
    operation: str,
    old: Optional[Mapping[str, Any]] = None,
    new: Optional[Mapping[str, Any]] = None,
) -> List[str]:
    """Event names raised by one insert, update or delete."""
    events = []
    if event := TABLE_EVENT_MAP.get(table, {}).get(operation):
        events.append(event)
    # a todo completes when its status moves to "done"
    if table == "todos" and operation == "update" and old is not None and new is not None:
        if old.get("status") != "done" and new.get("status") == "done":
            events.append("on_todo_complete")
    return events


def _organization_of(document: Mapping[str, Any]) -> Optional[str]:
    return document.get("organization_id") or document.get("organizationId")


class EventRouter:
    """Dispatches enabled workflows whose event trigger matches an event.

    Events are routed directly, without going through the webhook queue.
    """

    def __init__(
        self,
        repository: OrchestrationRepository,
        trigger_store: TriggerStore,
        dispatcher: WorkflowDispatcher,
        identity_resolver: IdentityResolver = owner_identity,
    ) -> None:
        self._repository = repository
        self._triggers = trigger_store
        self._dispatcher = dispatcher
        self._resolve = identity_resolver

    async def emit(
        self,
        event: str,
        organization_id: str,
        document: Mapping[str, Any],
        *,
        table: Optional[str] = None,
        operation: Optional[str] = None,
        document_id: Optional[str] = None,
    ) -> BatchResult:
        requests = []
        for trigger in await self._triggers.find_triggers_for_event(event, organization_id):
            workflow = await self._repository.get_workflow(trigger.workflow_id)
            if workflow is None or not workflow.enabled:
                continue
            identity = await resolve_identity(self._resolve, workflow)
            if identity is None:
                logger.warning(f"No identity for workflow {workflow.id}; skipping {event}")
                continue
            requests.append(
                DispatchRequest.with_payload(
                    workflow.id,
                    {
                        "event": event,
                        "table": table,
                        "operation": operation,
                        "documentId": document_id,
                        "document": dict(document),
                        "timestamp": utcnow().isoformat(),
                    },
                    identity,
                )
            )
        if not requests:
            return BatchResult()
        logger.info(f"Event {event} matched {len(requests)} workflows")
        return await self._dispatcher.dispatch_batch(requests)

    async def handle_change(
        self,
        table: str,
        operation: str,
        document_id: Optional[str] = None,
        old: Optional[Mapping[str, Any]] = None,
        new: Optional[Mapping[str, Any]] = None,
    ) -> BatchResult:
        """Derive events from a record change and emit each of them."""
        result = BatchResult()
        events = events_for_change(table, operation, old, new)
        document = old if operation == "delete" else new
        if not events or not document:
            return result
        organization_id = _organization_of(document)
        if not organization_id:
            logger.debug(f"Change on {table} has no organization; ignoring")
            return result
        for event in events:
            batch = await self.emit(
                event,
                organization_id,
                document,
                table=table,
                operation=operation,
                document_id=document_id,
            )
            result.execution_ids.extend(batch.execution_ids)
            result.skipped.extend(batch.skipped)
            result.failures.extend(batch.failures)
        return result
