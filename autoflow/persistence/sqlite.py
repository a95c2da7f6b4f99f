"""SQLite implementation of the orchestration repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Optional

from ..errors import DuplicateWebhookKeyError, NotFoundError
from .models import (
    IdentityContext,
    StepOutcome,
    Trigger,
    Workflow,
    WorkflowExecution,
    WorkflowRun,
    trigger_from_record,
    utcnow,
)
from .repository import OrchestrationRepository

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS workflows (
        id TEXT PRIMARY KEY,
        organization_id TEXT NOT NULL,
        member_id TEXT NOT NULL,
        name TEXT NOT NULL,
        description TEXT,
        instructions TEXT NOT NULL,
        allowed_actions TEXT NOT NULL,
        model TEXT,
        input_modalities TEXT NOT NULL,
        isolation_mode TEXT NOT NULL,
        sandbox_id TEXT,
        enabled INTEGER NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS triggers (
        id TEXT PRIMARY KEY,
        workflow_id TEXT NOT NULL,
        organization_id TEXT NOT NULL,
        kind TEXT NOT NULL,
        event TEXT,
        cron TEXT,
        last_evaluated_at TEXT,
        next_run_at TEXT,
        claimed_fire_at TEXT,
        webhook_key TEXT UNIQUE,
        created_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS triggers_kind_event ON triggers (kind, organization_id, event)",
    """
    CREATE TABLE IF NOT EXISTS workflow_runs (
        id TEXT PRIMARY KEY,
        trigger_id TEXT NOT NULL,
        organization_id TEXT NOT NULL,
        payload TEXT NOT NULL,
        content_type TEXT,
        user_agent TEXT,
        headers TEXT NOT NULL,
        query TEXT NOT NULL,
        status TEXT NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS workflow_runs_status ON workflow_runs (status, created_at)",
    """
    CREATE TABLE IF NOT EXISTS workflow_executions (
        id TEXT PRIMARY KEY,
        workflow_id TEXT NOT NULL,
        organization_id TEXT NOT NULL,
        member_id TEXT NOT NULL,
        status TEXT NOT NULL,
        identity TEXT NOT NULL,
        namespace TEXT,
        sandbox_id TEXT,
        trigger_payload TEXT,
        output TEXT,
        error TEXT,
        started_at TEXT NOT NULL,
        completed_at TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS workflow_executions_workflow ON workflow_executions (workflow_id, started_at)",
    """
    CREATE TABLE IF NOT EXISTS step_outcomes (
        execution_id TEXT NOT NULL,
        sequence INTEGER NOT NULL,
        action TEXT NOT NULL,
        outcome TEXT NOT NULL,
        error TEXT,
        recorded_at TEXT NOT NULL,
        PRIMARY KEY (execution_id, sequence)
    )
    """,
)

_INSERT_RUN = """
INSERT INTO workflow_runs (
    id, trigger_id, organization_id, payload, content_type,
    user_agent, headers, query, status, created_at, updated_at
) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class SQLiteOrchestrationRepository(OrchestrationRepository):
    """Persist orchestration state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        for statement in _SCHEMA:
            cur.execute(statement)
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        # the connection context commits, or rolls back when the statement fails
        with self._lock, self._conn:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    def _insert_step(self, outcome: StepOutcome) -> int:
        with self._lock, self._conn:
            cur = self._conn.cursor()
            cur.execute(
                "SELECT 1 FROM workflow_executions WHERE id = ?", (outcome.execution_id,)
            )
            if cur.fetchone() is None:
                raise NotFoundError(f"Execution {outcome.execution_id} not found")
            cur.execute(
                "SELECT COALESCE(MAX(sequence), 0) + 1 FROM step_outcomes WHERE execution_id = ?",
                (outcome.execution_id,),
            )
            sequence = cur.fetchone()[0]
            cur.execute(
                """
                INSERT INTO step_outcomes
                    (execution_id, sequence, action, outcome, error, recorded_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    outcome.execution_id,
                    sequence,
                    outcome.action,
                    outcome.outcome,
                    outcome.error,
                    _ts(outcome.recorded_at),
                ),
            )
            return sequence

    @staticmethod
    def _run_params(run: WorkflowRun) -> tuple:
        return (
            run.id,
            run.trigger_id,
            run.organization_id,
            run.payload,
            run.content_type,
            run.user_agent,
            json.dumps(run.headers),
            json.dumps(run.query),
            run.status,
            _ts(run.created_at),
            _ts(run.updated_at),
        )

    @staticmethod
    def _workflow(row: sqlite3.Row) -> Workflow:
        data = dict(row)
        data["allowed_actions"] = json.loads(data["allowed_actions"])
        data["input_modalities"] = json.loads(data["input_modalities"])
        data["enabled"] = bool(data["enabled"])
        return Workflow.model_validate(data)

    @staticmethod
    def _run(row: sqlite3.Row) -> WorkflowRun:
        data = dict(row)
        data["headers"] = json.loads(data["headers"])
        data["query"] = json.loads(data["query"])
        return WorkflowRun.model_validate(data)

    @staticmethod
    def _execution(row: sqlite3.Row, steps: list[StepOutcome] | None = None) -> WorkflowExecution:
        data = dict(row)
        data["identity"] = IdentityContext.model_validate_json(data["identity"])
        data["steps"] = steps or []
        return WorkflowExecution.model_validate(data)

    # ------------------------------------------------------------------
    # Workflows
    async def save_workflow(self, workflow: Workflow) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT OR REPLACE INTO workflows (
                id, organization_id, member_id, name, description, instructions,
                allowed_actions, model, input_modalities, isolation_mode,
                sandbox_id, enabled, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            workflow.id,
            workflow.organization_id,
            workflow.member_id,
            workflow.name,
            workflow.description,
            workflow.instructions,
            json.dumps(workflow.allowed_actions),
            workflow.model,
            json.dumps(workflow.input_modalities),
            workflow.isolation_mode,
            workflow.sandbox_id,
            int(workflow.enabled),
            _ts(workflow.created_at),
            _ts(workflow.updated_at),
        )

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM workflows WHERE id = ?", workflow_id
        )
        return self._workflow(row) if row else None

    async def list_workflows(self) -> list[Workflow]:
        rows = await asyncio.to_thread(
            self._fetchall, "SELECT * FROM workflows ORDER BY created_at"
        )
        return [self._workflow(r) for r in rows]

    async def set_workflow_enabled(self, workflow_id: str, enabled: bool) -> bool:
        count = await asyncio.to_thread(
            self._execute,
            "UPDATE workflows SET enabled = ?, updated_at = ? WHERE id = ?",
            int(enabled),
            _ts(utcnow()),
            workflow_id,
        )
        return count > 0

    async def delete_workflow(self, workflow_id: str) -> bool:
        count = await asyncio.to_thread(
            self._execute, "DELETE FROM workflows WHERE id = ?", workflow_id
        )
        return count > 0

    # ------------------------------------------------------------------
    # Triggers
    async def create_trigger(self, trigger: Trigger) -> None:
        try:
            await asyncio.to_thread(
                self._execute,
                """
                INSERT INTO triggers (
                    id, workflow_id, organization_id, kind, event, cron,
                    last_evaluated_at, next_run_at, webhook_key, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                trigger.id,
                trigger.workflow_id,
                trigger.organization_id,
                trigger.kind,
                getattr(trigger, "event", None),
                getattr(trigger, "cron", None),
                _ts(getattr(trigger, "last_evaluated_at", None)),
                _ts(getattr(trigger, "next_run_at", None)),
                getattr(trigger, "webhook_key", None),
                _ts(trigger.created_at),
            )
        except sqlite3.IntegrityError as exc:
            raise DuplicateWebhookKeyError(str(exc)) from exc

    async def get_trigger(self, trigger_id: str) -> Trigger | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM triggers WHERE id = ?", trigger_id
        )
        return trigger_from_record(dict(row)) if row else None

    async def get_trigger_by_webhook_key(self, webhook_key: str) -> Trigger | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM triggers WHERE webhook_key = ?", webhook_key
        )
        return trigger_from_record(dict(row)) if row else None

    async def list_triggers(
        self,
        workflow_id: Optional[str] = None,
        kind: Optional[str] = None,
        event: Optional[str] = None,
        organization_id: Optional[str] = None,
    ) -> list[Trigger]:
        clauses: list[str] = []
        params: list[Any] = []
        for column, value in (
            ("workflow_id", workflow_id),
            ("kind", kind),
            ("event", event),
            ("organization_id", organization_id),
        ):
            if value is not None:
                clauses.append(f"{column} = ?")
                params.append(value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await asyncio.to_thread(
            self._fetchall, f"SELECT * FROM triggers {where} ORDER BY created_at", *params
        )
        return [trigger_from_record(dict(r)) for r in rows]

    async def delete_trigger(self, trigger_id: str) -> bool:
        count = await asyncio.to_thread(
            self._execute, "DELETE FROM triggers WHERE id = ?", trigger_id
        )
        return count > 0

    async def advance_schedule(
        self,
        trigger_id: str,
        expected_last_evaluated_at: Optional[datetime],
        evaluated_at: datetime,
        next_run_at: Optional[datetime],
        claimed_fire_at: Optional[datetime] = None,
    ) -> bool:
        count = await asyncio.to_thread(
            self._execute,
            """
            UPDATE triggers
            SET last_evaluated_at = ?, next_run_at = ?, claimed_fire_at = ?
            WHERE id = ? AND kind = 'schedule' AND last_evaluated_at IS ?
            """,
            _ts(evaluated_at),
            _ts(next_run_at),
            _ts(claimed_fire_at),
            trigger_id,
            _ts(expected_last_evaluated_at),
        )
        return count == 1

    async def clear_schedule_claim(self, trigger_id: str, fire_time: datetime) -> bool:
        count = await asyncio.to_thread(
            self._execute,
            "UPDATE triggers SET claimed_fire_at = NULL WHERE id = ? AND claimed_fire_at = ?",
            trigger_id,
            _ts(fire_time),
        )
        return count == 1

    async def set_next_run(self, trigger_id: str, next_run_at: Optional[datetime]) -> None:
        await asyncio.to_thread(
            self._execute,
            "UPDATE triggers SET next_run_at = ? WHERE id = ? AND kind = 'schedule'",
            _ts(next_run_at),
            trigger_id,
        )

    # ------------------------------------------------------------------
    # Queued runs
    async def create_run(self, run: WorkflowRun) -> None:
        await asyncio.to_thread(self._execute, _INSERT_RUN, *self._run_params(run))

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM workflow_runs WHERE id = ?", run_id
        )
        return self._run(row) if row else None

    async def list_runs(self, status: str = "queued", limit: int = 100) -> list[WorkflowRun]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM workflow_runs WHERE status = ? ORDER BY created_at LIMIT ?",
            status,
            limit,
        )
        return [self._run(r) for r in rows]

    async def transition_run(self, run_id: str, from_status: str, to_status: str) -> bool:
        count = await asyncio.to_thread(
            self._execute,
            "UPDATE workflow_runs SET status = ?, updated_at = ? WHERE id = ? AND status = ?",
            to_status,
            _ts(utcnow()),
            run_id,
            from_status,
        )
        return count == 1

    # ------------------------------------------------------------------
    # Executions
    async def create_execution(self, execution: WorkflowExecution) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO workflow_executions (
                id, workflow_id, organization_id, member_id, status, identity,
                namespace, sandbox_id, trigger_payload, output, error,
                started_at, completed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            execution.id,
            execution.workflow_id,
            execution.organization_id,
            execution.member_id,
            execution.status,
            execution.identity.model_dump_json(),
            execution.namespace,
            execution.sandbox_id,
            execution.trigger_payload,
            execution.output,
            execution.error,
            _ts(execution.started_at),
            _ts(execution.completed_at),
        )

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM workflow_executions WHERE id = ?", execution_id
        )
        if not row:
            return None
        step_rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM step_outcomes WHERE execution_id = ? ORDER BY sequence",
            execution_id,
        )
        steps = [StepOutcome.model_validate(dict(r)) for r in step_rows]
        return self._execution(row, steps)

    async def list_executions(
        self, workflow_id: Optional[str] = None
    ) -> list[WorkflowExecution]:
        if workflow_id is None:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT * FROM workflow_executions ORDER BY started_at DESC",
            )
        else:
            rows = await asyncio.to_thread(
                self._fetchall,
                "SELECT * FROM workflow_executions WHERE workflow_id = ? ORDER BY started_at DESC",
                workflow_id,
            )
        return [self._execution(r) for r in rows]

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
        allowed = list(from_statuses)
        if not allowed:
            return False
        placeholders = ", ".join("?" for _ in allowed)
        count = await asyncio.to_thread(
            self._execute,
            f"""
            UPDATE workflow_executions
            SET status = ?,
                output = COALESCE(?, output),
                error = COALESCE(?, error),
                completed_at = COALESCE(?, completed_at)
            WHERE id = ? AND status IN ({placeholders})
            """,
            to_status,
            output,
            error,
            _ts(completed_at),
            execution_id,
            *allowed,
        )
        return count == 1

    async def append_step_outcome(self, outcome: StepOutcome) -> StepOutcome:
        sequence = await asyncio.to_thread(self._insert_step, outcome)
        return outcome.model_copy(update={"sequence": sequence})
