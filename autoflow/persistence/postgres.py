"""PostgreSQL implementation of the orchestration repository."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Iterable, Optional

import asyncpg

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
        allowed_actions JSONB NOT NULL,
        model TEXT,
        input_modalities JSONB NOT NULL,
        isolation_mode TEXT NOT NULL,
        sandbox_id TEXT,
        enabled BOOLEAN NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL
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
        last_evaluated_at TIMESTAMPTZ,
        next_run_at TIMESTAMPTZ,
        claimed_fire_at TIMESTAMPTZ,
        webhook_key TEXT UNIQUE,
        created_at TIMESTAMPTZ NOT NULL
    )
    """,
    "ALTER TABLE triggers ADD COLUMN IF NOT EXISTS claimed_fire_at TIMESTAMPTZ",
    "CREATE INDEX IF NOT EXISTS triggers_kind_event ON triggers (kind, organization_id, event)",
    """
    CREATE TABLE IF NOT EXISTS workflow_runs (
        id TEXT PRIMARY KEY,
        trigger_id TEXT NOT NULL,
        organization_id TEXT NOT NULL,
        payload TEXT NOT NULL,
        content_type TEXT,
        user_agent TEXT,
        headers JSONB NOT NULL,
        query JSONB NOT NULL,
        status TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL
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
        identity JSONB NOT NULL,
        namespace TEXT,
        sandbox_id TEXT,
        trigger_payload TEXT,
        output TEXT,
        error TEXT,
        started_at TIMESTAMPTZ NOT NULL,
        completed_at TIMESTAMPTZ
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
        recorded_at TIMESTAMPTZ NOT NULL,
        PRIMARY KEY (execution_id, sequence)
    )
    """,
)

_INSERT_RUN = """
INSERT INTO workflow_runs (
    id, trigger_id, organization_id, payload, content_type,
    user_agent, headers, query, status, created_at, updated_at
) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
"""


def _affected(status: str) -> int:
    """Row count from an asyncpg command tag such as ``UPDATE 1``."""
    try:
        return int(status.split()[-1])
    except (IndexError, ValueError):
        return 0


class PostgresOrchestrationRepository(OrchestrationRepository):
    """Persist orchestration state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        for statement in _SCHEMA:
            await conn.execute(statement)

    async def _execute(self, query: str, *params: Any) -> int:
        conn = await self._connect()
        try:
            return _affected(await conn.execute(query, *params))
        finally:
            await conn.close()

    async def _fetchrow(self, query: str, *params: Any) -> asyncpg.Record | None:
        conn = await self._connect()
        try:
            return await conn.fetchrow(query, *params)
        finally:
            await conn.close()

    async def _fetch(self, query: str, *params: Any) -> list[asyncpg.Record]:
        conn = await self._connect()
        try:
            return await conn.fetch(query, *params)
        finally:
            await conn.close()

    @staticmethod
    def _workflow(row: asyncpg.Record) -> Workflow:
        data = dict(row)
        data["allowed_actions"] = json.loads(data["allowed_actions"])
        data["input_modalities"] = json.loads(data["input_modalities"])
        return Workflow.model_validate(data)

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
            run.created_at,
            run.updated_at,
        )

    @staticmethod
    def _run(row: asyncpg.Record) -> WorkflowRun:
        data = dict(row)
        data["headers"] = json.loads(data["headers"])
        data["query"] = json.loads(data["query"])
        return WorkflowRun.model_validate(data)

    @staticmethod
    def _execution(row: asyncpg.Record, steps: list[StepOutcome] | None = None) -> WorkflowExecution:
        data = dict(row)
        data["identity"] = IdentityContext.model_validate_json(data["identity"])
        data["steps"] = steps or []
        return WorkflowExecution.model_validate(data)

    # ------------------------------------------------------------------
    async def save_workflow(self, workflow: Workflow) -> None:
        await self._execute(
            """
            INSERT INTO workflows (
                id, organization_id, member_id, name, description, instructions,
                allowed_actions, model, input_modalities, isolation_mode,
                sandbox_id, enabled, created_at, updated_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14)
            ON CONFLICT (id) DO UPDATE SET
                organization_id = EXCLUDED.organization_id,
                member_id = EXCLUDED.member_id,
                name = EXCLUDED.name,
                description = EXCLUDED.description,
                instructions = EXCLUDED.instructions,
                allowed_actions = EXCLUDED.allowed_actions,
                model = EXCLUDED.model,
                input_modalities = EXCLUDED.input_modalities,
                isolation_mode = EXCLUDED.isolation_mode,
                sandbox_id = EXCLUDED.sandbox_id,
                enabled = EXCLUDED.enabled,
                updated_at = EXCLUDED.updated_at
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
            workflow.enabled,
            workflow.created_at,
            workflow.updated_at,
        )

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        row = await self._fetchrow("SELECT * FROM workflows WHERE id = $1", workflow_id)
        return self._workflow(row) if row else None

    async def list_workflows(self) -> list[Workflow]:
        rows = await self._fetch("SELECT * FROM workflows ORDER BY created_at")
        return [self._workflow(r) for r in rows]

    async def set_workflow_enabled(self, workflow_id: str, enabled: bool) -> bool:
        count = await self._execute(
            "UPDATE workflows SET enabled = $1, updated_at = $2 WHERE id = $3",
            enabled,
            utcnow(),
            workflow_id,
        )
        return count > 0

    async def delete_workflow(self, workflow_id: str) -> bool:
        return await self._execute("DELETE FROM workflows WHERE id = $1", workflow_id) > 0

    # ------------------------------------------------------------------
    async def create_trigger(self, trigger: Trigger) -> None:
        try:
            await self._execute(
                """
                INSERT INTO triggers (
                    id, workflow_id, organization_id, kind, event, cron,
                    last_evaluated_at, next_run_at, webhook_key, created_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                """,
                trigger.id,
                trigger.workflow_id,
                trigger.organization_id,
                trigger.kind,
                getattr(trigger, "event", None),
                getattr(trigger, "cron", None),
                getattr(trigger, "last_evaluated_at", None),
                getattr(trigger, "next_run_at", None),
                getattr(trigger, "webhook_key", None),
                trigger.created_at,
            )
        except asyncpg.UniqueViolationError as exc:
            raise DuplicateWebhookKeyError(str(exc)) from exc

    async def get_trigger(self, trigger_id: str) -> Trigger | None:
        row = await self._fetchrow("SELECT * FROM triggers WHERE id = $1", trigger_id)
        return trigger_from_record(dict(row)) if row else None

    async def get_trigger_by_webhook_key(self, webhook_key: str) -> Trigger | None:
        row = await self._fetchrow(
            "SELECT * FROM triggers WHERE webhook_key = $1", webhook_key
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
                params.append(value)
                clauses.append(f"{column} = ${len(params)}")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await self._fetch(f"SELECT * FROM triggers {where} ORDER BY created_at", *params)
        return [trigger_from_record(dict(r)) for r in rows]

    async def delete_trigger(self, trigger_id: str) -> bool:
        return await self._execute("DELETE FROM triggers WHERE id = $1", trigger_id) > 0

    async def advance_schedule(
        self,
        trigger_id: str,
        expected_last_evaluated_at: Optional[datetime],
        evaluated_at: datetime,
        next_run_at: Optional[datetime],
        claimed_fire_at: Optional[datetime] = None,
    ) -> bool:
        count = await self._execute(
            """
            UPDATE triggers
            SET last_evaluated_at = $1, next_run_at = $2, claimed_fire_at = $3
            WHERE id = $4 AND kind = 'schedule'
              AND last_evaluated_at IS NOT DISTINCT FROM $5::timestamptz
            """,
            evaluated_at,
            next_run_at,
            claimed_fire_at,
            trigger_id,
            expected_last_evaluated_at,
        )
        return count == 1

    async def clear_schedule_claim(self, trigger_id: str, fire_time: datetime) -> bool:
        count = await self._execute(
            "UPDATE triggers SET claimed_fire_at = NULL WHERE id = $1 AND claimed_fire_at = $2",
            trigger_id,
            fire_time,
        )
        return count == 1

    async def set_next_run(self, trigger_id: str, next_run_at: Optional[datetime]) -> None:
        await self._execute(
            "UPDATE triggers SET next_run_at = $1 WHERE id = $2 AND kind = 'schedule'",
            next_run_at,
            trigger_id,
        )

    # ------------------------------------------------------------------
    async def create_run(self, run: WorkflowRun) -> None:
        await self._execute(_INSERT_RUN, *self._run_params(run))

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        row = await self._fetchrow("SELECT * FROM workflow_runs WHERE id = $1", run_id)
        return self._run(row) if row else None

    async def list_runs(self, status: str = "queued", limit: int = 100) -> list[WorkflowRun]:
        rows = await self._fetch(
            "SELECT * FROM workflow_runs WHERE status = $1 ORDER BY created_at LIMIT $2",
            status,
            limit,
        )
        return [self._run(r) for r in rows]

    async def transition_run(self, run_id: str, from_status: str, to_status: str) -> bool:
        count = await self._execute(
            "UPDATE workflow_runs SET status = $1, updated_at = $2 WHERE id = $3 AND status = $4",
            to_status,
            utcnow(),
            run_id,
            from_status,
        )
        return count == 1

    # ------------------------------------------------------------------
    async def create_execution(self, execution: WorkflowExecution) -> None:
        await self._execute(
            """
            INSERT INTO workflow_executions (
                id, workflow_id, organization_id, member_id, status, identity,
                namespace, sandbox_id, trigger_payload, output, error,
                started_at, completed_at
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13)
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
            execution.started_at,
            execution.completed_at,
        )

    async def get_execution(self, execution_id: str) -> WorkflowExecution | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT * FROM workflow_executions WHERE id = $1", execution_id
            )
            if not row:
                return None
            step_rows = await conn.fetch(
                "SELECT * FROM step_outcomes WHERE execution_id = $1 ORDER BY sequence",
                execution_id,
            )
        finally:
            await conn.close()
        steps = [StepOutcome.model_validate(dict(r)) for r in step_rows]
        return self._execution(row, steps)

    async def list_executions(
        self, workflow_id: Optional[str] = None
    ) -> list[WorkflowExecution]:
        if workflow_id is None:
            rows = await self._fetch(
                "SELECT * FROM workflow_executions ORDER BY started_at DESC"
            )
        else:
            rows = await self._fetch(
                "SELECT * FROM workflow_executions WHERE workflow_id = $1 ORDER BY started_at DESC",
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
        count = await self._execute(
            """
            UPDATE workflow_executions
            SET status = $1,
                output = COALESCE($2, output),
                error = COALESCE($3, error),
                completed_at = COALESCE($4, completed_at)
            WHERE id = $5 AND status = ANY($6::text[])
            """,
            to_status,
            output,
            error,
            completed_at,
            execution_id,
            list(from_statuses),
        )
        return count == 1

    async def append_step_outcome(self, outcome: StepOutcome) -> StepOutcome:
        conn = await self._connect()
        try:
            async with conn.transaction():
                exists = await conn.fetchval(
                    "SELECT 1 FROM workflow_executions WHERE id = $1 FOR UPDATE",
                    outcome.execution_id,
                )
                if exists is None:
                    raise NotFoundError(f"Execution {outcome.execution_id} not found")
                sequence = await conn.fetchval(
                    """
                    INSERT INTO step_outcomes
                        (execution_id, sequence, action, outcome, error, recorded_at)
                    SELECT $1, COALESCE(MAX(sequence), 0) + 1, $2, $3, $4, $5
                    FROM step_outcomes WHERE execution_id = $1
                    RETURNING sequence
                    """,
                    outcome.execution_id,
                    outcome.action,
                    outcome.outcome,
                    outcome.error,
                    outcome.recorded_at,
                )
        finally:
            await conn.close()
        return outcome.model_copy(update={"sequence": sequence})
