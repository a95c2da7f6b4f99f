"""Data models for persisted orchestration state."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter

ExecutionStatus = Literal[
    "pending", "dispatching", "running", "completed", "failed", "cancelled"
]
RunStatus = Literal["queued", "consuming", "consumed", "discarded"]
StepResult = Literal["success", "failure"]
IsolationMode = Literal["isolated", "shared"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "failed", "cancelled"})
ACTIVE_STATUSES: frozenset[str] = frozenset({"pending", "dispatching", "running"})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


class IdentityContext(BaseModel):
    """Who an execution acts on behalf of, captured when it is created."""

    user_id: str
    organization_id: str
    member_id: str
    role: str
    team_id: Optional[str] = None


class Workflow(BaseModel):
    """User-authored automation."""

    id: str = Field(default_factory=new_id)
    organization_id: str
    member_id: str
    name: str
    description: Optional[str] = None
    instructions: str = ""
    allowed_actions: list[str] = Field(default_factory=list)
    model: Optional[str] = None
    input_modalities: list[str] = Field(default_factory=lambda: ["text"])
    isolation_mode: IsolationMode = "isolated"
    sandbox_id: Optional[str] = None
    enabled: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class _TriggerBase(BaseModel):
    id: str = Field(default_factory=new_id)
    workflow_id: str
    organization_id: str
    created_at: datetime = Field(default_factory=utcnow)


class EventTrigger(_TriggerBase):
    kind: Literal["event"] = "event"
    event: str


class ScheduleTrigger(_TriggerBase):
    kind: Literal["schedule"] = "schedule"
    cron: str
    last_evaluated_at: Optional[datetime] = None
    next_run_at: Optional[datetime] = None
    # fire time claimed by a scheduler and not yet settled by the dispatcher
    claimed_fire_at: Optional[datetime] = None


class WebhookTrigger(_TriggerBase):
    kind: Literal["webhook"] = "webhook"
    webhook_key: str


Trigger = Annotated[
    Union[EventTrigger, ScheduleTrigger, WebhookTrigger],
    Field(discriminator="kind"),
]

_trigger_adapter: TypeAdapter[Trigger] = TypeAdapter(Trigger)


def trigger_from_record(record: dict[str, Any]) -> Trigger:
    """Build the trigger variant selected by ``record['kind']``.

    Columns belonging to other variants are ignored.
    """
    data = {key: value for key, value in record.items() if value is not None}
    return _trigger_adapter.validate_python(data)


class StepOutcome(BaseModel):
    """Append-only record of one action performed during an execution."""

    sequence: Optional[int] = None
    execution_id: str
    action: str
    outcome: StepResult
    error: Optional[str] = None
    recorded_at: datetime = Field(default_factory=utcnow)


class WorkflowExecution(BaseModel):
    """One attempt to run a workflow."""

    id: str = Field(default_factory=new_id)
    workflow_id: str
    organization_id: str
    member_id: str
    status: ExecutionStatus = "pending"
    identity: IdentityContext
    namespace: Optional[str] = None
    sandbox_id: Optional[str] = None
    trigger_payload: Optional[str] = None
    output: Optional[str] = None
    error: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    steps: list[StepOutcome] = Field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.status)


class WorkflowRun(BaseModel):
    """Inbound webhook call waiting to be promoted to an execution."""

    id: str = Field(default_factory=new_id)
    trigger_id: str
    organization_id: str
    payload: str = ""
    content_type: Optional[str] = None
    user_agent: Optional[str] = None
    headers: dict[str, str] = Field(default_factory=dict)
    query: dict[str, str] = Field(default_factory=dict)
    status: RunStatus = "queued"
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
