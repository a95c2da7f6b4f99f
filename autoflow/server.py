"""FastAPI app factory.

Endpoints are thin wrappers over the engine services: webhook ingestion for
external callers, and execution callbacks for the remote execution host.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Header, HTTPException, Request

from . import __version__
from .contracts import ExecutionOutcome, StepOutcomeReport
from .engine import Engine
from .errors import AuthorizationError, ForbiddenError, NotFoundError
from .steps import summarize_steps

logger = logging.getLogger(__name__)


def _bearer(authorization: Optional[str]) -> str:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(status_code=401, detail="Missing bearer token")
    return token.strip()


def create_app(engine: Engine) -> FastAPI:
    app = FastAPI(
        title="autoflow",
        version=__version__,
        description="Trigger-to-execution orchestration for user-defined workflows.",
    )
    app.state.engine = engine

    def authorize(execution_id: str, authorization: Optional[str]) -> None:
        token = _bearer(authorization)
        try:
            engine.tokens.verify_for_execution(token, execution_id)
        except ForbiddenError as exc:
            raise HTTPException(status_code=403, detail=str(exc)) from exc
        except AuthorizationError as exc:
            raise HTTPException(status_code=401, detail=str(exc)) from exc

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/webhooks/{trigger_key}")
    async def receive_webhook(trigger_key: str, request: Request) -> Dict[str, Any]:
        body = (await request.body()).decode("utf-8", errors="replace")
        try:
            await engine.webhooks.ingest(
                trigger_key,
                body,
                dict(request.headers),
                dict(request.query_params),
            )
        except AuthorizationError as exc:
            raise HTTPException(status_code=401, detail="Unauthorized") from exc
        except NotFoundError as exc:
            raise HTTPException(status_code=404, detail="Webhook not found") from exc
        return {"ok": True}

    @app.post("/executions/{execution_id}/steps")
    async def record_step(
        execution_id: str,
        report: StepOutcomeReport,
        authorization: Optional[str] = Header(default=None),
    ) -> Dict[str, Any]:
        authorize(execution_id, authorization)
        recorded = await engine.steps.record_step_outcome(
            execution_id, report.action, report.outcome, report.error
        )
        return {"ok": recorded}

    @app.post("/executions/{execution_id}/running")
    async def mark_running(
        execution_id: str, authorization: Optional[str] = Header(default=None)
    ) -> Dict[str, Any]:
        authorize(execution_id, authorization)
        return {"ok": await engine.lifecycle.mark_running(execution_id)}

    @app.post("/executions/{execution_id}/finalize")
    async def finalize(
        execution_id: str,
        outcome: ExecutionOutcome,
        authorization: Optional[str] = Header(default=None),
    ) -> Dict[str, Any]:
        authorize(execution_id, authorization)
        try:
            applied = await engine.lifecycle.finalize_execution(execution_id, outcome)
        except NotFoundError as exc:
            raise HTTPException(status_code=404, detail="Execution not found") from exc
        return {"ok": applied}

    @app.get("/executions/{execution_id}")
    async def get_execution(
        execution_id: str, authorization: Optional[str] = Header(default=None)
    ) -> Dict[str, Any]:
        authorize(execution_id, authorization)
        try:
            execution = await engine.lifecycle.get_execution(execution_id)
        except NotFoundError as exc:
            raise HTTPException(status_code=404, detail="Execution not found") from exc
        workflow = await engine.repository.get_workflow(execution.workflow_id)
        allowed = workflow.allowed_actions if workflow else []
        return {
            "execution": execution.model_dump(mode="json", exclude={"identity"}),
            "summary": summarize_steps(execution, allowed).model_dump(mode="json"),
        }

    return app
