"""Per-step outcome recording and the action wrapper that reports it."""

from __future__ import annotations

import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, Literal, Optional

from pydantic import BaseModel, Field

from .persistence.models import StepOutcome, StepResult, WorkflowExecution
from .persistence.repository import OrchestrationRepository

logger = logging.getLogger(__name__)

ActionStatus = Literal["success", "failure", "pending", "not_called"]
StepReporter = Callable[[str, StepResult, Optional[str]], Awaitable[Any]]


class StepOutcomeRecorder:
    """Appends step outcomes to an execution's log.

    Recording is telemetry: it must never break the action being reported,
    so every failure is logged and turned into a ``False`` result.
    """

    def __init__(self, repository: OrchestrationRepository) -> None:
        self._repository = repository

    async def record_step_outcome(
        self,
        execution_id: str,
        action: str,
        outcome: StepResult,
        error: Optional[str] = None,
    ) -> bool:
        try:
            stored = await self._repository.append_step_outcome(
                StepOutcome(
                    execution_id=execution_id,
                    action=action,
                    outcome=outcome,
                    error=error,
                )
            )
        except Exception:
            logger.exception(
                f"Failed to record step outcome for {action!r} on execution {execution_id}"
            )
            return False
        logger.debug(f"Recorded step {stored.sequence} {action}={outcome} for {execution_id}")
        return True

    def reporter_for(self, execution_id: str) -> StepReporter:
        async def report(action: str, outcome: StepResult, error: Optional[str]) -> bool:
            return await self.record_step_outcome(execution_id, action, outcome, error)

        return report


class StepTracker:
    """Wraps actions so each call reports its outcome.

    The action's own result or exception always wins over reporting errors.
    """

    def __init__(self, report: StepReporter) -> None:
        self._report = report

    async def _safe_report(
        self, action: str, outcome: StepResult, error: Optional[str] = None
    ) -> None:
        try:
            await self._report(action, outcome, error)
        except Exception as exc:
            logger.error(f"Failed to record step outcome for {action!r}: {exc}")

    async def track(self, action: str, func: Callable[..., Any], *args, **kwargs) -> Any:
        try:
            result = func(*args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
        except Exception as exc:
            await self._safe_report(action, "failure", str(exc) or type(exc).__name__)
            raise
        await self._safe_report(action, "success")
        return result

    def wrap(self, action: str, func: Callable[..., Any]) -> Callable[..., Awaitable[Any]]:
        """Return an async callable that tracks every call of ``func``."""

        async def tracked(*args, **kwargs) -> Any:
            return await self.track(action, func, *args, **kwargs)

        tracked.__name__ = getattr(func, "__name__", action)
        tracked.__doc__ = getattr(func, "__doc__", None)
        return tracked


class StepSummary(BaseModel):
    actions: Dict[str, ActionStatus] = Field(default_factory=dict)
    total: int = 0
    success: int = 0
    failure: int = 0
    pending: int = 0
    not_called: int = 0
    status: Literal["success", "failure", "pending"] = "pending"


def summarize_steps(
    execution: WorkflowExecution, allowed_actions: Iterable[str]
) -> StepSummary:
    """Status of each required action, derived from the step log.

    An action with any recorded failure is ``failure``. Once the execution
    is terminal, required actions that never ran are ``not_called`` and
    count against the run.
    """
    seen: Dict[str, ActionStatus] = {}
    for step in execution.steps:
        if step.outcome == "failure":
            seen[step.action] = "failure"
        else:
            seen.setdefault(step.action, "success")

    summary = StepSummary()
    for action in dict.fromkeys(allowed_actions):
        if action in seen:
            status = seen[action]
        elif execution.is_terminal:
            status = "not_called"
        else:
            status = "pending"
        summary.actions[action] = status

    statuses = list(summary.actions.values())
    summary.total = len(statuses)
    summary.success = statuses.count("success")
    summary.failure = statuses.count("failure")
    summary.pending = statuses.count("pending")
    summary.not_called = statuses.count("not_called")
    if summary.failure or summary.not_called:
        summary.status = "failure"
    elif summary.success == summary.total:
        summary.status = "success"
    else:
        summary.status = "pending"
    return summary
