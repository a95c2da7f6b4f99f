"""Scheduler tick loop turning due schedules and queued webhook runs into dispatches."""

from __future__ import annotations

import asyncio
import inspect
import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from .config import SchedulerConfig
from .contracts import BatchResult, DispatchRequest
from .dispatch import WorkflowDispatcher
from .persistence.models import (
    IdentityContext,
    WebhookTrigger,
    Workflow,
    WorkflowRun,
    utcnow,
)
from .persistence.repository import OrchestrationRepository
from .triggers import DueSchedule, TriggerStore, schedule_payload

logger = logging.getLogger(__name__)

IdentityResolver = Callable[
    [Workflow], Union[Optional[IdentityContext], Awaitable[Optional[IdentityContext]]]
]


def owner_identity(workflow: Workflow) -> IdentityContext:
    """Run a workflow as the member who owns it."""
    return IdentityContext(
        user_id=workflow.member_id,
        organization_id=workflow.organization_id,
        member_id=workflow.member_id,
        role="member",
    )


async def resolve_identity(
    resolver: IdentityResolver, workflow: Workflow
) -> Optional[IdentityContext]:
    identity = resolver(workflow)
    if inspect.isawaitable(identity):
        identity = await identity
    return identity


def webhook_payload(run: WorkflowRun) -> Dict[str, Any]:
    """Trigger payload handed to the execution host for a webhook run."""
    return {
        "type": "webhook",
        "runId": run.id,
        "payload": run.payload,
        "contentType": run.content_type,
        "userAgent": run.user_agent,
        "headers": run.headers,
        "query": run.query,
    }


class TickReport(BaseModel):
    """What a single scheduler tick did."""

    started_at: datetime
    schedules_due: int = 0
    schedules_claimed: int = 0
    runs_consumed: int = 0
    runs_discarded: int = 0
    batch: BatchResult = Field(default_factory=BatchResult)


class Scheduler:
    """Periodic driver of schedule triggers and the webhook queue.

    Ticks never overlap within one scheduler. Across processes, schedule
    claims and run claims are compare-and-set writes, so only one evaluator
    dispatches a given fire time or run. A schedule claim is released once
    the dispatch batch has settled; a claim left behind by a crash is
    offered again by the trigger store after its timeout.
    """

    def __init__(
        self,
        repository: OrchestrationRepository,
        trigger_store: TriggerStore,
        dispatcher: WorkflowDispatcher,
        identity_resolver: IdentityResolver = owner_identity,
        config: Optional[SchedulerConfig] = None,
    ) -> None:
        self._repository = repository
        self._triggers = trigger_store
        self._dispatcher = dispatcher
        self._resolve = identity_resolver
        self._config = config or SchedulerConfig()
        self._lock = asyncio.Lock()

    async def tick(self, now: Optional[datetime] = None) -> Optional[TickReport]:
        """Run one tick; returns ``None`` if the previous tick is still running."""
        if self._lock.locked():
            logger.warning("Previous scheduler tick still running; skipping")
            return None
        async with self._lock:
            now = now or utcnow()
            report = TickReport(started_at=now)
            claimed = await self._claim_schedules(now, report)
            requests: List[DispatchRequest] = []
            for due in claimed:
                identity = await self._identity_for(due.trigger.workflow_id)
                if identity is not None:
                    requests.append(
                        DispatchRequest.with_payload(
                            due.trigger.workflow_id, schedule_payload(due), identity
                        )
                    )
            requests.extend(await self._collect_runs(report))
            report.batch = await self._dispatcher.dispatch_batch(requests)
            for due in claimed:
                await self._triggers.release_claim(due)
            logger.info(
                f"Tick at {now.isoformat()}: {report.schedules_claimed} schedules, "
                f"{report.runs_consumed} webhook runs, "
                f"{len(report.batch.execution_ids)} dispatched, "
                f"{len(report.batch.failures)} failed"
            )
            return report

    async def run_forever(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Tick every ``tick_interval_seconds`` until ``stop_event`` is set."""
        stop_event = stop_event or asyncio.Event()
        interval = self._config.tick_interval_seconds
        logger.info(f"Scheduler started; ticking every {interval}s")
        while not stop_event.is_set():
            try:
                await self.tick()
            except Exception:
                logger.exception("Scheduler tick failed")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval)
            except asyncio.TimeoutError:
                continue
        logger.info("Scheduler stopped")

    async def _identity_for(self, workflow_id: str) -> Optional[IdentityContext]:
        workflow = await self._repository.get_workflow(workflow_id)
        if workflow is None or not workflow.enabled:
            logger.info(f"Workflow {workflow_id} missing or disabled; skipping")
            return None
        identity = await resolve_identity(self._resolve, workflow)
        if identity is None:
            logger.warning(f"No identity for workflow {workflow_id}; skipping")
        return identity

    async def _claim_schedules(self, now: datetime, report: TickReport) -> List[DueSchedule]:
        due_schedules = await self._triggers.find_due_schedules(now)
        report.schedules_due = len(due_schedules)
        claimed = []
        for due in due_schedules:
            if await self._triggers.mark_evaluated(due, now):
                claimed.append(due)
        report.schedules_claimed = len(claimed)
        return claimed

    async def _collect_runs(self, report: TickReport) -> List[DispatchRequest]:
        runs = await self._repository.list_runs(
            status="queued", limit=self._config.max_runs_per_tick
        )
        requests = []
        for run in runs:
            if not await self._repository.transition_run(run.id, "queued", "consuming"):
                continue
            request = await self._run_request(run)
            if request is None:
                await self._repository.transition_run(run.id, "consuming", "discarded")
                report.runs_discarded += 1
                continue
            await self._repository.transition_run(run.id, "consuming", "consumed")
            report.runs_consumed += 1
            requests.append(request)
        return requests

    async def _run_request(self, run: WorkflowRun) -> Optional[DispatchRequest]:
        trigger = await self._repository.get_trigger(run.trigger_id)
        if not isinstance(trigger, WebhookTrigger):
            logger.info(f"Discarding run {run.id}: trigger {run.trigger_id} is gone")
            return None
        identity = await self._identity_for(trigger.workflow_id)
        if identity is None:
            logger.info(f"Discarding run {run.id} for workflow {trigger.workflow_id}")
            return None
        return DispatchRequest.with_payload(
            trigger.workflow_id, webhook_payload(run), identity
        )
