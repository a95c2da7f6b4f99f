"""Message contracts exchanged between the engine and the remote execution host."""

from __future__ import annotations

import json
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from .persistence.models import IdentityContext, StepResult


class DispatchRequest(BaseModel):
    """Everything needed to start one execution of a workflow."""

    workflow_id: str
    trigger_payload: str = "{}"
    identity: IdentityContext

    @classmethod
    def with_payload(
        cls, workflow_id: str, payload: Dict[str, Any], identity: IdentityContext
    ) -> "DispatchRequest":
        return cls(
            workflow_id=workflow_id,
            trigger_payload=json.dumps(payload, default=str),
            identity=identity,
        )


class ExecutionTarget(BaseModel):
    """Routing information returned when an execution record is created."""

    execution_id: str
    workflow_id: str
    namespace: str
    identity: IdentityContext
    model: Optional[str] = None
    input_modalities: List[str] = Field(default_factory=lambda: ["text"])
    sandbox_id: Optional[str] = None
    trigger_payload: str = "{}"


class ModeConfig(BaseModel):
    """Tells the remote host to run in workflow mode for one execution."""

    mode: Literal["workflow"] = "workflow"
    workflow: str
    executionId: str
    triggerPayload: str
    sandboxId: Optional[str] = None


class TokenConfig(BaseModel):
    """Capability token the remote host uses for its callbacks."""

    type: Literal["capability"] = "capability"
    token: str


class ExecutionOutcome(BaseModel):
    """Terminal result reported for an execution."""

    status: Literal["completed", "failed", "cancelled"]
    output: Optional[str] = None
    error: Optional[str] = None


class StepOutcomeReport(BaseModel):
    """Body of the step-outcome callback."""

    action: str
    outcome: StepResult
    error: Optional[str] = None


class DispatchFailure(BaseModel):
    workflow_id: str
    error: str
    execution_id: Optional[str] = None


class BatchResult(BaseModel):
    """Settled results of a dispatch batch."""

    execution_ids: List[str] = Field(default_factory=list)
    skipped: List[str] = Field(default_factory=list)
    failures: List[DispatchFailure] = Field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.execution_ids) + len(self.skipped) + len(self.failures)
