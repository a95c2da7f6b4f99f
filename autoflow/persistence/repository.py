"""Repository abstraction for orchestration state persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Iterable, Optional, Protocol

from .models import (
    StepOutcome,
    Trigger,
    Workflow,
    WorkflowExecution,
    WorkflowRun,
)


class OrchestrationRepository(Protocol):
    """Protocol for orchestration state persistence backends.

    Methods returning ``bool`` perform conditional (compare-and-set) writes
    and report whether the write was applied.
    """

    # -- workflows -----------------------------------------------------
    async def save_workflow(self, workflow: Workflow) -> None:
        """Insert or replace a workflow definition."""

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        """Retrieve a workflow by id."""

    async def list_workflows(self) -> list[Workflow]:
        """Return all workflows."""

    async def set_workflow_enabled(self, workflow_id: str, enabled: bool) -> bool:
        """Toggle the ``enabled`` flag."""

    async def delete_workflow(self, workflow_id: str) -> bool:
        """Delete a workflow. Triggers and executions are left in place."""

    # -- triggers ------------------------------------------------------
    async def create_trigger(self, trigger: Trigger) -> None:
        """Persist a new trigger; duplicate webhook keys are rejected."""

    async def get_trigger(self, trigger_id: str) -> Trigger | None:
        """Retrieve a trigger by id."""

    async def get_trigger_by_webhook_key(self, webhook_key: str) -> Trigger | None:
        """Look up the trigger owning ``webhook_key``."""

    async def list_triggers(
        self,
        workflow_id: Optional[str] = None,
        kind: Optional[str] = None,
        event: Optional[str] = None,
        organization_id: Optional[str] = None,
    ) -> list[Trigger]:
        """Return triggers matching every given filter."""

    async def delete_trigger(self, trigger_id: str) -> bool:
        """Delete a trigger."""

    async def advance_schedule(
        self,
        trigger_id: str,
        expected_last_evaluated_at: Optional[datetime],
        evaluated_at: datetime,
        next_run_at: Optional[datetime],
        claimed_fire_at: Optional[datetime] = None,
    ) -> bool:
        """Move ``last_evaluated_at`` forward if it still equals the expected value.

        ``claimed_fire_at`` is written in the same update and stays set until
        :meth:`clear_schedule_claim` is called for it.
        """

    async def clear_schedule_claim(self, trigger_id: str, fire_time: datetime) -> bool:
        """Clear ``claimed_fire_at`` if it still equals ``fire_time``."""

    async def set_next_run(self, trigger_id: str, next_run_at: Optional[datetime]) -> None:
        """Record the next scheduled occurrence of a schedule trigger."""

    # -- webhook runs --------------------------------------------------
    async def create_run(self, run: WorkflowRun) -> None:
        """Persist a queued webhook run."""

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        """Retrieve a run by id."""

    async def list_runs(self, status: str = "queued", limit: int = 100) -> list[WorkflowRun]:
        """Return runs in ``status`` ordered by creation time."""

    async def transition_run(self, run_id: str, from_status: str, to_status: str) -> bool:
        """Atomically move a run from ``from_status`` to ``to_status``."""

    # -- executions ----------------------------------------------------
    async def create_execution(self, execution: WorkflowExecution) -> None:
        """Persist a new execution record."""

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        """Retrieve an execution with its step log."""

    async def list_executions(
        self, workflow_id: Optional[str] = None
    ) -> list[WorkflowExecution]:
        """Return executions, newest first, without step logs."""

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
        """Atomically change status if the current status is in ``from_statuses``."""

    async def append_step_outcome(self, outcome: StepOutcome) -> StepOutcome:
        """Append a step outcome to its execution and return it with a sequence."""
