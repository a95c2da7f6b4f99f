"""Execution lifecycle: creation, status transitions and rescheduling."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from .contracts import ExecutionOutcome, ExecutionTarget
from .errors import InvalidTransitionError, NotFoundError
from .persistence.models import (
    ACTIVE_STATUSES,
    TERMINAL_STATUSES,
    IdentityContext,
    Workflow,
    WorkflowExecution,
    new_id,
    utcnow,
)
from .persistence.repository import OrchestrationRepository
from .triggers import TriggerStore

logger = logging.getLogger(__name__)


def execution_namespace(workflow: Workflow, execution_id: str) -> str:
    """Execution-context namespace on the remote host.

    Shared workflows reuse one context across executions; isolated workflows
    get a fresh one per execution.
    """
    if workflow.isolation_mode == "shared":
        return f"workflow-{workflow.id}"
    return f"workflow-{execution_id}"


class ExecutionLifecycle:
    """Owns every status change of a :class:`WorkflowExecution`.

    ``pending -> dispatching -> running -> completed | failed | cancelled``.
    Terminal states are final: every transition is a conditional write, so
    a late or repeated call against a finished execution does nothing.
    """

    def __init__(
        self, repository: OrchestrationRepository, trigger_store: TriggerStore
    ) -> None:
        self._repository = repository
        self._triggers = trigger_store

    async def get_enabled_workflow(self, workflow_id: str) -> Workflow | None:
        """Return the workflow when it exists and is enabled."""
        workflow = await self._repository.get_workflow(workflow_id)
        if workflow is None or not workflow.enabled:
            return None
        return workflow

    async def create_execution(
        self,
        workflow_id: str,
        trigger_payload: str,
        identity: IdentityContext,
    ) -> ExecutionTarget:
        workflow = await self._repository.get_workflow(workflow_id)
        if workflow is None:
            raise NotFoundError(f"Workflow {workflow_id} not found")

        execution_id = new_id()
        namespace = execution_namespace(workflow, execution_id)
        execution = WorkflowExecution(
            id=execution_id,
            workflow_id=workflow.id,
            organization_id=workflow.organization_id,
            member_id=identity.member_id,
            identity=identity,
            namespace=namespace,
            sandbox_id=workflow.sandbox_id,
            trigger_payload=trigger_payload,
        )
        await self._repository.create_execution(execution)
        logger.info(f"Created execution {execution_id} for workflow {workflow_id}")
        return ExecutionTarget(
            execution_id=execution_id,
            workflow_id=workflow.id,
            namespace=namespace,
            identity=identity,
            model=workflow.model,
            input_modalities=list(workflow.input_modalities),
            sandbox_id=workflow.sandbox_id,
            trigger_payload=trigger_payload,
        )

    async def get_execution(self, execution_id: str) -> WorkflowExecution:
        execution = await self._repository.get_execution(execution_id)
        if execution is None:
            raise NotFoundError(f"Execution {execution_id} not found")
        return execution

    async def mark_dispatching(self, execution_id: str) -> bool:
        return await self._repository.transition_execution(
            execution_id, ("pending",), "dispatching"
        )

    async def mark_running(self, execution_id: str) -> bool:
        return await self._repository.transition_execution(
            execution_id, ("pending", "dispatching"), "running"
        )

    async def finalize_execution(
        self, execution_id: str, outcome: ExecutionOutcome | Dict[str, Any]
    ) -> bool:
        """Apply the terminal outcome once.

        Returns ``False`` when the execution was already terminal. Raises
        :class:`NotFoundError` for an unknown execution and
        :class:`InvalidTransitionError` for a non-terminal target status.
        """
        if isinstance(outcome, dict):
            if outcome.get("status") not in TERMINAL_STATUSES:
                raise InvalidTransitionError(
                    f"Cannot finalize execution with status {outcome.get('status')!r}"
                )
            outcome = ExecutionOutcome(**outcome)

        execution = await self.get_execution(execution_id)
        completed_at = utcnow()
        applied = await self._repository.transition_execution(
            execution_id,
            ACTIVE_STATUSES,
            outcome.status,
            output=outcome.output,
            error=outcome.error,
            completed_at=completed_at,
        )
        if not applied:
            logger.info(
                f"Execution {execution_id} already finalized; ignoring {outcome.status}"
            )
            return False
        logger.info(f"Execution {execution_id} finalized as {outcome.status}")
        await self._triggers.schedule_next(execution.workflow_id, completed_at)
        return True

    async def fail_execution(self, execution_id: str, error: str) -> bool:
        """Mark a non-terminal execution failed and reschedule its workflow."""
        execution = await self._repository.get_execution(execution_id)
        if execution is None:
            logger.warning(f"Cannot fail unknown execution {execution_id}: {error}")
            return False
        completed_at = utcnow()
        applied = await self._repository.transition_execution(
            execution_id,
            ACTIVE_STATUSES,
            "failed",
            error=error,
            completed_at=completed_at,
        )
        if not applied:
            logger.info(f"Execution {execution_id} already terminal; not failing it")
            return False
        logger.error(f"Execution {execution_id} failed: {error}")
        await self._triggers.schedule_next(execution.workflow_id, completed_at)
        return True

    async def cancel_execution(
        self, execution_id: str, reason: Optional[str] = None
    ) -> bool:
        await self.get_execution(execution_id)
        applied = await self._repository.transition_execution(
            execution_id,
            ACTIVE_STATUSES,
            "cancelled",
            error=reason,
            completed_at=utcnow(),
        )
        if applied:
            logger.info(f"Execution {execution_id} cancelled")
        return applied
