"""Workflow dispatcher: hands executions to the remote execution host."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Sequence

import httpx

from .config import DispatchConfig
from .contracts import (
    BatchResult,
    DispatchFailure,
    DispatchRequest,
    ExecutionTarget,
    ModeConfig,
    TokenConfig,
)
from .errors import DispatchError, InvalidTransitionError
from .lifecycle import ExecutionLifecycle
from .security import CapabilityTokenIssuer

logger = logging.getLogger(__name__)


class WorkflowDispatcher:
    """Service responsible for dispatching workflow executions.

    Each dispatch creates exactly one execution record, then posts it to the
    remote host. Any failure after the record exists marks it ``failed``.
    """

    def __init__(
        self,
        lifecycle: ExecutionLifecycle,
        config: DispatchConfig,
        token_issuer: CapabilityTokenIssuer,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._lifecycle = lifecycle
        self._config = config
        self._tokens = token_issuer
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=config.timeout_seconds)

    async def __aenter__(self) -> "WorkflowDispatcher":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    def _endpoint(self, target: ExecutionTarget) -> str:
        path = self._config.dispatch_path.format(namespace=target.namespace)
        return self._config.agent_base_url.rstrip("/") + path

    def _build_request(self, target: ExecutionTarget) -> httpx.Request:
        token = self._tokens.issue(target.identity, target.execution_id)
        mode = ModeConfig(
            workflow=target.workflow_id,
            executionId=target.execution_id,
            triggerPayload=target.trigger_payload,
            sandboxId=target.sandbox_id,
        )
        params = {
            "inputModalities": ",".join(target.input_modalities),
            "tokenConfig": TokenConfig(token=token).model_dump_json(),
            "modeConfig": mode.model_dump_json(exclude_none=True),
        }
        if target.model:
            params["model"] = target.model
        headers = {"X-Member-Id": target.identity.member_id}
        if self._config.external_token:
            headers["Authorization"] = f"Bearer {self._config.external_token}"
        return self._client.build_request(
            "POST",
            self._endpoint(target),
            params=params,
            headers=headers,
            json={
                "executionId": target.execution_id,
                "workflow": target.workflow_id,
                "triggerPayload": target.trigger_payload,
            },
            timeout=self._config.timeout_seconds,
        )

    async def dispatch(self, request: DispatchRequest) -> Optional[str]:
        """Create and send one execution.

        Returns the execution id, or ``None`` when the workflow is missing or
        disabled at dispatch time. Raises :class:`DispatchError` when the
        remote host could not be reached or rejected the call.
        """
        workflow = await self._lifecycle.get_enabled_workflow(request.workflow_id)
        if workflow is None:
            logger.info(f"Skipping dispatch of missing or disabled workflow {request.workflow_id}")
            return None

        target = await self._lifecycle.create_execution(
            workflow.id, request.trigger_payload, request.identity
        )
        execution_id = target.execution_id
        await self._lifecycle.mark_dispatching(execution_id)

        # the execution already exists, so nothing below may leave it dispatching
        try:
            response = await self._client.send(self._build_request(target))
        except Exception as exc:
            message = f"Dispatch error: {str(exc) or type(exc).__name__}"
            if not isinstance(exc, httpx.HTTPError):
                logger.exception(f"Unexpected error dispatching execution {execution_id}")
            await self._lifecycle.fail_execution(execution_id, message)
            raise DispatchError(message, execution_id=execution_id) from exc

        if not response.is_success:
            message = f"Dispatch failed: {response.status_code} {response.text}"
            await self._lifecycle.fail_execution(execution_id, message)
            raise DispatchError(message, execution_id=execution_id)

        logger.info(f"Dispatched execution {execution_id} of workflow {workflow.id}")
        return execution_id

    async def dispatch_batch(self, requests: Sequence[DispatchRequest]) -> BatchResult:
        """Dispatch ``requests`` concurrently and wait for all of them to settle."""
        result = BatchResult()
        if not requests:
            return result

        outcomes = await asyncio.gather(
            *(self.dispatch(request) for request in requests), return_exceptions=True
        )
        for request, outcome in zip(requests, outcomes):
            if isinstance(outcome, BaseException):
                if not isinstance(outcome, Exception):
                    raise outcome
                result.failures.append(
                    DispatchFailure(
                        workflow_id=request.workflow_id,
                        error=str(outcome),
                        execution_id=getattr(outcome, "execution_id", None),
                    )
                )
            elif outcome is None:
                result.skipped.append(request.workflow_id)
            else:
                result.execution_ids.append(outcome)

        if result.failures:
            logger.error(
                f"{len(result.failures)}/{len(requests)} dispatches failed: "
                + "; ".join(f"{f.workflow_id}: {f.error}" for f in result.failures)
            )
        return result

    async def retry_execution(self, execution_id: str) -> Optional[str]:
        """Dispatch a new execution with the payload and identity of a failed one."""
        execution = await self._lifecycle.get_execution(execution_id)
        if execution.status != "failed":
            raise InvalidTransitionError(
                f"Only failed executions can be retried; {execution_id} is {execution.status}"
            )
        return await self.dispatch(
            DispatchRequest(
                workflow_id=execution.workflow_id,
                trigger_payload=execution.trigger_payload or "{}",
                identity=execution.identity,
            )
        )
