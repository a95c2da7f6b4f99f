"""In-memory implementation of the orchestration repository."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, Iterable, List, Optional

from ..errors import DuplicateWebhookKeyError, NotFoundError
from .models import (
    ScheduleTrigger,
    StepOutcome,
    Trigger,
    WebhookTrigger,
    Workflow,
    WorkflowExecution,
    WorkflowRun,
    utcnow,
)
from .repository import OrchestrationRepository


class InMemoryOrchestrationRepository(OrchestrationRepository):
    """Store orchestration state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Every method body runs without an
    ``await``, so conditional writes are atomic within one event loop.
    """

    def __init__(self) -> None:
        self._workflows: Dict[str, Workflow] = {}
        self._triggers: Dict[str, Trigger] = {}
        self._webhook_keys: Dict[str, str] = {}
        self._runs: Dict[str, WorkflowRun] = {}
        self._executions: Dict[str, WorkflowExecution] = {}
        self._steps: Dict[str, List[StepOutcome]] = {}

    # ------------------------------------------------------------------
    async def save_workflow(self, workflow: Workflow) -> None:
        self._workflows[workflow.id] = workflow.model_copy(deep=True)

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        wf = self._workflows.get(workflow_id)
        return wf.model_copy(deep=True) if wf else None

    async def list_workflows(self) -> list[Workflow]:
        return [wf.model_copy(deep=True) for wf in self._workflows.values()]

    async def set_workflow_enabled(self, workflow_id: str, enabled: bool) -> bool:
        wf = self._workflows.get(workflow_id)
        if not wf:
            return False
        wf.enabled = enabled
        wf.updated_at = utcnow()
        return True

    async def delete_workflow(self, workflow_id: str) -> bool:
        return self._workflows.pop(workflow_id, None) is not None

    # ------------------------------------------------------------------
    async def create_trigger(self, trigger: Trigger) -> None:
        if isinstance(trigger, WebhookTrigger):
            if trigger.webhook_key in self._webhook_keys:
                raise DuplicateWebhookKeyError(trigger.webhook_key)
            self._webhook_keys[trigger.webhook_key] = trigger.id
        self._triggers[trigger.id] = trigger.model_copy(deep=True)

    async def get_trigger(self, trigger_id: str) -> Trigger | None:
        trigger = self._triggers.get(trigger_id)
        return trigger.model_copy(deep=True) if trigger else None

    async def get_trigger_by_webhook_key(self, webhook_key: str) -> Trigger | None:
        trigger_id = self._webhook_keys.get(webhook_key)
        if trigger_id is None:
            return None
        return await self.get_trigger(trigger_id)

    async def list_triggers(
        self,
        workflow_id: Optional[str] = None,
        kind: Optional[str] = None,
        event: Optional[str] = None,
        organization_id: Optional[str] = None,
    ) -> list[Trigger]:
        found = []
        for trigger in self._triggers.values():
            if workflow_id is not None and trigger.workflow_id != workflow_id:
                continue
            if kind is not None and trigger.kind != kind:
                continue
            if event is not None and getattr(trigger, "event", None) != event:
                continue
            if organization_id is not None and trigger.organization_id != organization_id:
                continue
            found.append(trigger.model_copy(deep=True))
        return sorted(found, key=lambda t: t.created_at)

    async def delete_trigger(self, trigger_id: str) -> bool:
        trigger = self._triggers.pop(trigger_id, None)
        if trigger is None:
            return False
        if isinstance(trigger, WebhookTrigger):
            self._webhook_keys.pop(trigger.webhook_key, None)
        return True

    async def advance_schedule(
        self,
        trigger_id: str,
        expected_last_evaluated_at: Optional[datetime],
        evaluated_at: datetime,
        next_run_at: Optional[datetime],
        claimed_fire_at: Optional[datetime] = None,
    ) -> bool:
        trigger = self._triggers.get(trigger_id)
        if not isinstance(trigger, ScheduleTrigger):
            return False
        if trigger.last_evaluated_at != expected_last_evaluated_at:
            return False
        trigger.last_evaluated_at = evaluated_at
        trigger.next_run_at = next_run_at
        trigger.claimed_fire_at = claimed_fire_at
        return True

    async def clear_schedule_claim(self, trigger_id: str, fire_time: datetime) -> bool:
        trigger = self._triggers.get(trigger_id)
        if not isinstance(trigger, ScheduleTrigger) or trigger.claimed_fire_at != fire_time:
            return False
        trigger.claimed_fire_at = None
        return True

    async def set_next_run(self, trigger_id: str, next_run_at: Optional[datetime]) -> None:
        trigger = self._triggers.get(trigger_id)
        if isinstance(trigger, ScheduleTrigger):
            trigger.next_run_at = next_run_at

    # ------------------------------------------------------------------
    async def create_run(self, run: WorkflowRun) -> None:
        self._runs[run.id] = run.model_copy(deep=True)

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def list_runs(self, status: str = "queued", limit: int = 100) -> list[WorkflowRun]:
        runs = sorted(
            (r for r in self._runs.values() if r.status == status),
            key=lambda r: r.created_at,
        )
        return [r.model_copy(deep=True) for r in runs[:limit]]

    async def transition_run(self, run_id: str, from_status: str, to_status: str) -> bool:
        run = self._runs.get(run_id)
        if run is None or run.status != from_status:
            return False
        run.status = to_status
        run.updated_at = utcnow()
        return True

    # ------------------------------------------------------------------
    async def create_execution(self, execution: WorkflowExecution) -> None:
        self._executions[execution.id] = execution.model_copy(
            deep=True, update={"steps": []}
        )
        self._steps[execution.id] = []

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        execution = self._executions.get(execution_id)
        if execution is None:
            return None
        return execution.model_copy(
            deep=True,
            update={"steps": [s.model_copy() for s in self._steps[execution_id]]},
        )

    async def list_executions(
        self, workflow_id: Optional[str] = None
    ) -> list[WorkflowExecution]:
        executions = [
            e.model_copy(deep=True)
            for e in self._executions.values()
            if workflow_id is None or e.workflow_id == workflow_id
        ]
        return sorted(executions, key=lambda e: e.started_at, reverse=True)

    async def transition_execution(
        self,
        execution_id: str,
        from_statuses: Iterable[str],
        to_status: str,
        *,
        output: Optional[str] = None,
        error: Optional[str] = None,
        completed_at: Optional[datetime] = None,
    ) -> bool:
        execution = self._executions.get(execution_id)
        if execution is None or execution.status not in set(from_statuses):
            return False
        execution.status = to_status
        if output is not None:
            execution.output = output
        if error is not None:
            execution.error = error
        if completed_at is not None:
            execution.completed_at = completed_at
        return True

    async def append_step_outcome(self, outcome: StepOutcome) -> StepOutcome:
        steps = self._steps.get(outcome.execution_id)
        if steps is None:
            raise NotFoundError(f"Execution {outcome.execution_id} not found")
        stored = outcome.model_copy(update={"sequence": len(steps) + 1})
        steps.append(stored)
        return stored.model_copy()
