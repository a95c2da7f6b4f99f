import json
from datetime import datetime, timezone

import httpx
import pytest

from autoflow.contracts import DispatchRequest
from autoflow.engine import Engine
from autoflow.errors import DispatchError, InvalidTransitionError

PAST = datetime(2026, 1, 1, 8, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_dispatch_posts_execution_to_remote_host(engine, remote, repo, make_workflow, identity):
    wf = await make_workflow(input_modalities=["text", "image"], sandbox_id="sbx-9")
    request = DispatchRequest.with_payload(wf.id, {"type": "manual"}, identity)

    execution_id = await engine.dispatcher.dispatch(request)

    assert execution_id is not None
    assert len(remote.requests) == 1
    sent = remote.requests[0]
    assert sent.method == "POST"
    assert sent.url.host == "agent.test"
    assert sent.url.path == "/executeWorkflow"
    assert sent.headers["Authorization"] == "Bearer external-secret"
    assert sent.headers["X-Member-Id"] == "member-1"

    params = sent.url.params
    assert params["model"] == "gpt-test"
    assert params["inputModalities"] == "text,image"
    mode = json.loads(params["modeConfig"])
    assert mode == {
        "mode": "workflow",
        "workflow": wf.id,
        "executionId": execution_id,
        "triggerPayload": '{"type": "manual"}',
        "sandboxId": "sbx-9",
    }
    token_config = json.loads(params["tokenConfig"])
    claims = engine.tokens.verify_for_execution(token_config["token"], execution_id)
    assert claims["sub"] == "user-1"
    assert claims["role"] == "admin"

    body = json.loads(sent.content)
    assert body == {
        "executionId": execution_id,
        "workflow": wf.id,
        "triggerPayload": '{"type": "manual"}',
    }

    execution = await repo.get_execution(execution_id)
    assert execution.status == "dispatching"
    assert execution.identity == identity


@pytest.mark.asyncio
async def test_connection_refused_fails_execution(engine, remote, repo, make_workflow, identity):
    wf = await make_workflow()
    remote.error = httpx.ConnectError("Connection refused")

    with pytest.raises(DispatchError) as excinfo:
        await engine.dispatcher.dispatch(DispatchRequest(workflow_id=wf.id, identity=identity))

    execution = await repo.get_execution(excinfo.value.execution_id)
    assert execution.status == "failed"
    assert execution.error == "Dispatch error: Connection refused"
    assert execution.completed_at is not None


@pytest.mark.asyncio
async def test_timeout_fails_execution(engine, remote, repo, make_workflow, identity):
    wf = await make_workflow()
    remote.error = httpx.ReadTimeout("timed out")

    with pytest.raises(DispatchError) as excinfo:
        await engine.dispatcher.dispatch(DispatchRequest(workflow_id=wf.id, identity=identity))

    execution = await repo.get_execution(excinfo.value.execution_id)
    assert execution.status == "failed"
    assert execution.error.startswith("Dispatch error:")


@pytest.mark.asyncio
async def test_non_success_status_fails_execution_and_reschedules(
    engine, remote, repo, make_workflow, identity
):
    wf = await make_workflow()
    trigger = await engine.triggers.add_schedule_trigger(wf, "*/5 * * * *", now=PAST)
    remote.status_code = 503
    remote.body = "worker busy"

    with pytest.raises(DispatchError, match="Dispatch failed: 503 worker busy") as excinfo:
        await engine.dispatcher.dispatch(DispatchRequest(workflow_id=wf.id, identity=identity))

    execution = await repo.get_execution(excinfo.value.execution_id)
    assert execution.status == "failed"
    assert execution.error == "Dispatch failed: 503 worker busy"
    next_run = (await repo.get_trigger(trigger.id)).next_run_at
    assert next_run > execution.completed_at


@pytest.mark.asyncio
async def test_disabled_workflow_is_skipped(engine, remote, repo, make_workflow, identity):
    wf = await make_workflow(enabled=False)

    assert await engine.dispatcher.dispatch(DispatchRequest(workflow_id=wf.id, identity=identity)) is None
    assert await engine.dispatcher.dispatch(DispatchRequest(workflow_id="gone", identity=identity)) is None
    assert remote.requests == []
    assert await repo.list_executions() == []


@pytest.mark.asyncio
async def test_batch_settles_every_request(engine, remote, repo, make_workflow, identity):
    workflows = [await make_workflow(name=f"wf-{i}") for i in range(5)]
    remote.fail_workflows = {workflows[1].id, workflows[3].id}

    result = await engine.dispatcher.dispatch_batch(
        [DispatchRequest(workflow_id=wf.id, identity=identity) for wf in workflows]
    )

    assert len(result.execution_ids) == 3
    assert sorted(f.workflow_id for f in result.failures) == sorted(remote.fail_workflows)
    assert all(f.error.startswith("Dispatch failed: 500") for f in result.failures)
    assert result.total == 5

    executions = await repo.list_executions()
    assert len(executions) == 5
    assert sorted(e.status for e in executions) == ["dispatching"] * 3 + ["failed"] * 2


@pytest.mark.asyncio
async def test_empty_batch(engine):
    result = await engine.dispatcher.dispatch_batch([])
    assert result.total == 0


@pytest.mark.asyncio
async def test_retry_dispatches_new_execution(engine, remote, repo, make_workflow, identity):
    wf = await make_workflow()
    remote.status_code = 500
    with pytest.raises(DispatchError) as excinfo:
        await engine.dispatcher.dispatch(
            DispatchRequest.with_payload(wf.id, {"type": "webhook"}, identity)
        )
    failed_id = excinfo.value.execution_id

    remote.status_code = 200
    retry_id = await engine.dispatcher.retry_execution(failed_id)

    assert retry_id != failed_id
    original = await repo.get_execution(failed_id)
    retried = await repo.get_execution(retry_id)
    assert original.status == "failed"
    assert retried.trigger_payload == original.trigger_payload
    assert retried.identity == original.identity

    with pytest.raises(InvalidTransitionError):
        await engine.dispatcher.retry_execution(retry_id)


@pytest.mark.asyncio
async def test_dispatch_path_may_embed_namespace(config, repo, remote, make_workflow, identity):
    config.dispatch.dispatch_path = "/agents/agent-worker/{namespace}/executeWorkflow"
    client = httpx.AsyncClient(transport=httpx.MockTransport(remote.handler))
    engine = Engine(config, repo, http_client=client)
    wf = await make_workflow(isolation_mode="shared")

    await engine.dispatcher.dispatch(DispatchRequest(workflow_id=wf.id, identity=identity))

    assert remote.requests[0].url.path == f"/agents/agent-worker/workflow-{wf.id}/executeWorkflow"
    await client.aclose()


@pytest.mark.asyncio
async def test_bad_dispatch_path_fails_execution(config, repo, remote, make_workflow, identity):
    config.dispatch.dispatch_path = "/agents/{agent}/executeWorkflow"
    client = httpx.AsyncClient(transport=httpx.MockTransport(remote.handler))
    engine = Engine(config, repo, http_client=client)
    wf = await make_workflow()

    with pytest.raises(DispatchError, match="Dispatch error:") as excinfo:
        await engine.dispatcher.dispatch(DispatchRequest(workflow_id=wf.id, identity=identity))

    execution = await repo.get_execution(excinfo.value.execution_id)
    assert execution.status == "failed"
    assert execution.completed_at is not None
    assert remote.requests == []

    result = await engine.dispatcher.dispatch_batch(
        [DispatchRequest(workflow_id=wf.id, identity=identity)]
    )
    assert len(result.failures) == 1
    failure = result.failures[0]
    assert failure.execution_id is not None
    assert (await repo.get_execution(failure.execution_id)).status == "failed"
    await client.aclose()
