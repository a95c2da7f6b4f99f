"""Persistence layer for autoflow orchestration state."""

from __future__ import annotations

import os
from typing import Optional

from ..config import AutoflowConfig, load_config
from .inmemory import InMemoryOrchestrationRepository
from .models import (
    EventTrigger,
    IdentityContext,
    ScheduleTrigger,
    StepOutcome,
    Trigger,
    WebhookTrigger,
    Workflow,
    WorkflowExecution,
    WorkflowRun,
)
from .repository import OrchestrationRepository
from .sqlite import SQLiteOrchestrationRepository

try:  # pragma: no cover - optional dependency
    from .postgres import PostgresOrchestrationRepository
except ImportError:  # pragma: no cover - optional dependency
    PostgresOrchestrationRepository = None  # type: ignore

_repository_instance: OrchestrationRepository | None = None


def get_repository(
    database_url: Optional[str] = None, config: Optional[AutoflowConfig] = None
) -> OrchestrationRepository:
    """Factory function to obtain an orchestration repository.

    The repository backend is selected based on ``database_url`` which can be
    provided explicitly, via environment variable ``AUTOFLOW_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory repository is returned.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("AUTOFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or getattr(config, "database_url", None)
    )

    if not database_url:
        _repository_instance = InMemoryOrchestrationRepository()
        return _repository_instance

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        _repository_instance = SQLiteOrchestrationRepository(path)
    elif database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        if PostgresOrchestrationRepository is None:
            raise RuntimeError("Postgres support not available")
        _repository_instance = PostgresOrchestrationRepository(database_url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _repository_instance


__all__ = [
    "EventTrigger",
    "IdentityContext",
    "ScheduleTrigger",
    "StepOutcome",
    "Trigger",
    "WebhookTrigger",
    "Workflow",
    "WorkflowExecution",
    "WorkflowRun",
    "OrchestrationRepository",
    "InMemoryOrchestrationRepository",
    "SQLiteOrchestrationRepository",
    "PostgresOrchestrationRepository",
    "get_repository",
]
