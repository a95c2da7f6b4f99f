import asyncio

import pytest
from typer.testing import CliRunner

import autoflow.persistence as persistence
from autoflow.cli import app
from autoflow.lifecycle import ExecutionLifecycle
from autoflow.persistence import InMemoryOrchestrationRepository, SQLiteOrchestrationRepository
from autoflow.persistence.models import IdentityContext, Workflow
from autoflow.steps import StepOutcomeRecorder
from autoflow.triggers import TriggerStore

IDENTITY = IdentityContext(
    user_id="user-1", organization_id="org-1", member_id="member-1", role="member"
)


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    monkeypatch.setenv("AUTOFLOW_CONFIG", str(tmp_path / "missing.yaml"))
    yield
    persistence._repository_instance = None


def _setup_repo() -> InMemoryOrchestrationRepository:
    repo = InMemoryOrchestrationRepository()
    persistence._repository_instance = repo
    return repo


def _workflow(repo, name) -> Workflow:
    wf = Workflow(
        organization_id="org-1",
        member_id="member-1",
        name=name,
        allowed_actions=["send_message", "create_todo"],
    )
    asyncio.run(repo.save_workflow(wf))
    return wf


def test_workflow_list_shows_workflows_and_triggers():
    repo = _setup_repo()
    digest = _workflow(repo, "digest")
    triage = _workflow(repo, "triage")
    asyncio.run(TriggerStore(repo).add_schedule_trigger(digest, "0 9 * * *"))
    asyncio.run(repo.set_workflow_enabled(triage.id, False))

    result = CliRunner().invoke(app, ["workflow", "list"])
    assert result.exit_code == 0, result.output
    assert digest.id in result.output
    assert "schedule 0 9 * * *" in result.output
    assert "disabled" in result.output


def test_workflow_list_empty():
    _setup_repo()
    result = CliRunner().invoke(app, ["workflow", "list"])
    assert result.exit_code == 0
    assert "No workflows found" in result.output


def test_workflow_show_and_missing():
    repo = _setup_repo()
    wf = _workflow(repo, "digest")
    asyncio.run(TriggerStore(repo).add_event_trigger(wf, "on_todo_create"))

    runner = CliRunner()
    result = runner.invoke(app, ["workflow", "show", wf.id])
    assert result.exit_code == 0, result.output
    assert "digest" in result.output
    assert "event on_todo_create" in result.output

    missing = runner.invoke(app, ["workflow", "show", "missing-id"])
    assert missing.exit_code == 1
    assert "Workflow not found" in missing.output


def test_execution_show_lists_steps_and_summary():
    repo = _setup_repo()
    wf = _workflow(repo, "digest")
    lifecycle = ExecutionLifecycle(repo, TriggerStore(repo))
    target = asyncio.run(lifecycle.create_execution(wf.id, "{}", IDENTITY))
    recorder = StepOutcomeRecorder(repo)
    asyncio.run(recorder.record_step_outcome(target.execution_id, "send_message", "success"))
    asyncio.run(lifecycle.finalize_execution(target.execution_id, {"status": "completed"}))

    result = CliRunner().invoke(app, ["execution", "show", target.execution_id])
    assert result.exit_code == 0, result.output
    assert "completed" in result.output
    assert "1. send_message: success" in result.output
    assert "create_todo: not_called" in result.output

    missing = CliRunner().invoke(app, ["execution", "show", "missing-id"])
    assert missing.exit_code == 1
    assert "Execution not found" in missing.output


def test_scheduler_tick_with_nothing_due():
    _setup_repo()
    result = CliRunner().invoke(app, ["scheduler", "tick"])
    assert result.exit_code == 0, result.output
    assert "Dispatched: 0" in result.output


def test_cron_describe():
    runner = CliRunner()
    result = runner.invoke(app, ["cron", "describe", "*/15 * * * *"])
    assert result.exit_code == 0
    assert "Every 15 minutes" in result.output
    assert "Next run:" in result.output

    invalid = runner.invoke(app, ["cron", "describe", "whenever"])
    assert invalid.exit_code == 1


def test_config_option_selects_repository(tmp_path, monkeypatch):
    monkeypatch.delenv("AUTOFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    db_path = tmp_path / "state.db"
    config_path = tmp_path / "autoflow.yaml"
    config_path.write_text(f"database_url: sqlite://{db_path}\nlog_level: debug\n")
    stored = SQLiteOrchestrationRepository(db_path)
    on_disk = _workflow(stored, "on disk")
    in_memory = _workflow(_setup_repo(), "in memory")

    result = CliRunner().invoke(app, ["--config", str(config_path), "workflow", "list"])

    assert result.exit_code == 0, result.output
    assert on_disk.id in result.output
    assert in_memory.id not in result.output
    assert isinstance(persistence._repository_instance, SQLiteOrchestrationRepository)
    assert persistence._repository_instance.db_path == str(db_path)
