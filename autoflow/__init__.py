"""autoflow: trigger-to-execution orchestration for user-defined workflows."""

__version__ = "0.1.0"

from .config import AutoflowConfig, load_config
from .contracts import BatchResult, DispatchRequest, ExecutionOutcome, ExecutionTarget
from .dispatch import WorkflowDispatcher
from .engine import Engine, build_engine
from .events import EventRouter, events_for_change
from .lifecycle import ExecutionLifecycle
from .persistence import get_repository
from .scheduler import Scheduler, TickReport
from .steps import StepOutcomeRecorder, StepTracker, summarize_steps
from .triggers import DueSchedule, TriggerStore
from .webhooks import WebhookIngestionQueue

__all__ = [
    "AutoflowConfig",
    "BatchResult",
    "DispatchRequest",
    "DueSchedule",
    "Engine",
    "EventRouter",
    "ExecutionLifecycle",
    "ExecutionOutcome",
    "ExecutionTarget",
    "Scheduler",
    "StepOutcomeRecorder",
    "StepTracker",
    "TickReport",
    "TriggerStore",
    "WebhookIngestionQueue",
    "WorkflowDispatcher",
    "build_engine",
    "events_for_change",
    "get_repository",
    "load_config",
    "summarize_steps",
]
