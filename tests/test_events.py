import json

import pytest

from autoflow.events import events_for_change


@pytest.mark.parametrize(
    "table, operation, old, new, expected",
    [
        ("chats", "insert", None, {"id": "c1"}, ["on_chat_create"]),
        ("chats", "delete", {"id": "c1"}, None, ["on_chat_delete"]),
        ("chats", "update", {"id": "c1"}, {"id": "c1"}, []),
        ("sandboxes", "insert", None, {"id": "s1"}, ["on_sandbox_provision"]),
        ("sandboxes", "delete", {"id": "s1"}, None, ["on_sandbox_delete"]),
        ("todos", "insert", None, {"status": "todo"}, ["on_todo_create"]),
        ("todos", "update", {"status": "todo"}, {"status": "done"}, ["on_todo_complete"]),
        ("todos", "update", {"status": "done"}, {"status": "done"}, []),
        ("todos", "update", {"status": "done"}, {"status": "todo"}, []),
        ("messages", "insert", None, {"id": "m1"}, []),
    ],
)
def test_events_for_change(table, operation, old, new, expected):
    assert events_for_change(table, operation, old, new) == expected


@pytest.mark.asyncio
async def test_change_dispatches_matching_workflows(engine, remote, make_workflow):
    matching = await make_workflow(name="on new todo")
    other_org = await make_workflow(name="elsewhere", organization_id="org-2")
    disabled = await make_workflow(name="off", enabled=False)
    unrelated = await make_workflow(name="chats only")
    for wf in (matching, other_org, disabled):
        await engine.triggers.add_event_trigger(wf, "on_todo_create")
    await engine.triggers.add_event_trigger(unrelated, "on_chat_create")

    result = await engine.events.handle_change(
        "todos",
        "insert",
        document_id="todo-7",
        new={"organizationId": "org-1", "title": "ship it", "status": "todo"},
    )

    assert len(result.execution_ids) == 1
    assert len(remote.requests) == 1
    body = json.loads(remote.requests[0].content)
    assert body["workflow"] == matching.id
    payload = json.loads(body["triggerPayload"])
    assert payload["event"] == "on_todo_create"
    assert payload["table"] == "todos"
    assert payload["documentId"] == "todo-7"
    assert payload["document"]["title"] == "ship it"


@pytest.mark.asyncio
async def test_delete_uses_old_document(engine, remote, make_workflow):
    wf = await make_workflow()
    await engine.triggers.add_event_trigger(wf, "on_chat_delete")

    result = await engine.events.handle_change(
        "chats", "delete", document_id="chat-1", old={"organization_id": "org-1"}
    )

    assert len(result.execution_ids) == 1


@pytest.mark.asyncio
async def test_change_without_organization_is_ignored(engine, remote, make_workflow):
    wf = await make_workflow()
    await engine.triggers.add_event_trigger(wf, "on_chat_create")

    result = await engine.events.handle_change("chats", "insert", new={"title": "hi"})

    assert result.total == 0
    assert remote.requests == []
