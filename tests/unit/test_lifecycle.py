import json
from datetime import datetime, timezone

import pytest

from autoflow.contracts import ExecutionOutcome
from autoflow.errors import InvalidTransitionError, NotFoundError
from autoflow.lifecycle import ExecutionLifecycle
from autoflow.triggers import TriggerStore

PAST = datetime(2026, 1, 1, 8, 0, tzinfo=timezone.utc)


def _lifecycle(repo):
    store = TriggerStore(repo)
    return ExecutionLifecycle(repo, store), store


@pytest.mark.asyncio
async def test_create_execution_isolated_namespace(repo, make_workflow, identity):
    lifecycle, _ = _lifecycle(repo)
    wf = await make_workflow(sandbox_id="sbx-1", input_modalities=["text", "image"])

    target = await lifecycle.create_execution(wf.id, json.dumps({"type": "manual"}), identity)

    assert target.namespace == f"workflow-{target.execution_id}"
    assert target.model == "gpt-test"
    assert target.input_modalities == ["text", "image"]
    assert target.sandbox_id == "sbx-1"
    execution = await repo.get_execution(target.execution_id)
    assert execution.status == "pending"
    assert execution.identity == identity
    assert execution.member_id == identity.member_id
    assert execution.trigger_payload == '{"type": "manual"}'


@pytest.mark.asyncio
async def test_create_execution_shared_namespace(repo, make_workflow, identity):
    lifecycle, _ = _lifecycle(repo)
    wf = await make_workflow(isolation_mode="shared")

    first = await lifecycle.create_execution(wf.id, "{}", identity)
    second = await lifecycle.create_execution(wf.id, "{}", identity)
    assert first.namespace == second.namespace == f"workflow-{wf.id}"
    assert first.execution_id != second.execution_id


@pytest.mark.asyncio
async def test_create_execution_for_missing_workflow(repo, identity):
    lifecycle, _ = _lifecycle(repo)
    with pytest.raises(NotFoundError):
        await lifecycle.create_execution("missing", "{}", identity)


@pytest.mark.asyncio
async def test_finalize_applies_once_and_schedules_next(repo, make_workflow, identity):
    lifecycle, store = _lifecycle(repo)
    wf = await make_workflow()
    trigger = await store.add_schedule_trigger(wf, "*/5 * * * *", now=PAST)
    target = await lifecycle.create_execution(wf.id, "{}", identity)
    await lifecycle.mark_dispatching(target.execution_id)
    assert await lifecycle.mark_running(target.execution_id)

    assert await lifecycle.finalize_execution(
        target.execution_id, ExecutionOutcome(status="completed", output="sent 3 messages")
    )
    assert not await lifecycle.finalize_execution(
        target.execution_id, {"status": "failed", "error": "late report"}
    )

    execution = await repo.get_execution(target.execution_id)
    assert execution.status == "completed"
    assert execution.output == "sent 3 messages"
    assert execution.error is None
    next_run = (await repo.get_trigger(trigger.id)).next_run_at
    assert next_run > execution.completed_at


@pytest.mark.asyncio
async def test_finalize_rejects_non_terminal_status(repo, make_workflow, identity):
    lifecycle, _ = _lifecycle(repo)
    wf = await make_workflow()
    target = await lifecycle.create_execution(wf.id, "{}", identity)

    with pytest.raises(InvalidTransitionError):
        await lifecycle.finalize_execution(target.execution_id, {"status": "running"})
    with pytest.raises(NotFoundError):
        await lifecycle.finalize_execution("missing", {"status": "completed"})


@pytest.mark.asyncio
async def test_fail_does_not_overwrite_terminal_state(repo, make_workflow, identity):
    lifecycle, store = _lifecycle(repo)
    wf = await make_workflow()
    trigger = await store.add_schedule_trigger(wf, "0 0 1 1 *", now=PAST)
    target = await lifecycle.create_execution(wf.id, "{}", identity)
    await lifecycle.finalize_execution(target.execution_id, {"status": "completed"})
    next_run = (await repo.get_trigger(trigger.id)).next_run_at

    assert not await lifecycle.fail_execution(target.execution_id, "Dispatch error: late")

    execution = await repo.get_execution(target.execution_id)
    assert execution.status == "completed"
    assert execution.error is None
    assert (await repo.get_trigger(trigger.id)).next_run_at == next_run


@pytest.mark.asyncio
async def test_fail_unknown_execution_is_ignored(repo):
    lifecycle, _ = _lifecycle(repo)
    assert not await lifecycle.fail_execution("missing", "boom")


@pytest.mark.asyncio
async def test_cancel_and_late_running(repo, make_workflow, identity):
    lifecycle, _ = _lifecycle(repo)
    wf = await make_workflow()
    target = await lifecycle.create_execution(wf.id, "{}", identity)

    assert await lifecycle.cancel_execution(target.execution_id, "user request")
    assert not await lifecycle.mark_running(target.execution_id)
    assert not await lifecycle.cancel_execution(target.execution_id)

    execution = await repo.get_execution(target.execution_id)
    assert execution.status == "cancelled"
    assert execution.error == "user request"
    assert execution.completed_at is not None
