"""Command line interface for the autoflow engine."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

import typer

from autoflow.config import load_config
from autoflow.cron import describe_cron, next_fire_after
from autoflow.engine import build_engine
from autoflow.errors import AutoflowError, NotFoundError
from autoflow.persistence import get_repository
from autoflow.persistence.models import utcnow
from autoflow.steps import summarize_steps
from autoflow.triggers import describe_trigger

app = typer.Typer(help="CLI for autoflow workflows")

workflow_app = typer.Typer(help="Inspect workflows")
execution_app = typer.Typer(help="Inspect and retry executions")
scheduler_app = typer.Typer(help="Run the scheduler")
cron_app = typer.Typer(help="Cron expression helpers")

app.add_typer(workflow_app, name="workflow")
app.add_typer(execution_app, name="execution")
app.add_typer(scheduler_app, name="scheduler")
app.add_typer(cron_app, name="cron")


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None, "--config", help="Path to a YAML config file (default: $AUTOFLOW_CONFIG)"
    ),
) -> None:
    """autoflow CLI entry point."""
    settings = load_config(config)
    ctx.obj = settings
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _repository(ctx: typer.Context):
    config = ctx.obj
    if config is not None and config.database_url:
        return get_repository(config=config)
    return get_repository()


def _engine(ctx: typer.Context):
    return build_engine(ctx.obj, repository=_repository(ctx))


@workflow_app.command("list")
def workflow_list(ctx: typer.Context) -> None:
    """
    List all workflows with their enabled flag and triggers.

    Example:
        autoflow workflow list
        # Output: 5d0c...    nightly-report    enabled    schedule 0 2 * * * (next ...)
    """
    repo = _repository(ctx)
    workflows = asyncio.run(repo.list_workflows())
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        triggers = asyncio.run(repo.list_triggers(workflow_id=wf.id))
        state = "enabled" if wf.enabled else "disabled"
        described = ", ".join(describe_trigger(t) for t in triggers) or "no triggers"
        typer.echo(f"{wf.id}\t{wf.name}\t{state}\t{described}")


@workflow_app.command("show")
def workflow_show(ctx: typer.Context, workflow_id: str) -> None:
    """
    Show a workflow, its triggers and its recent executions.

    Args:
        workflow_id: Workflow ID to inspect (get from 'workflow list')
    """
    repo = _repository(ctx)
    wf = asyncio.run(repo.get_workflow(workflow_id))
    if wf is None:
        typer.echo("Workflow not found")
        raise typer.Exit(code=1)
    typer.echo(f"Workflow {wf.id}: {wf.name} ({'enabled' if wf.enabled else 'disabled'})")
    if wf.allowed_actions:
        typer.echo(f"Actions: {', '.join(wf.allowed_actions)}")
    for trigger in asyncio.run(repo.list_triggers(workflow_id=wf.id)):
        typer.echo(f"- trigger {trigger.id}: {describe_trigger(trigger)}")
    for execution in asyncio.run(repo.list_executions(workflow_id=wf.id))[:10]:
        typer.echo(
            f"- execution {execution.id}: {execution.status}"
            + (f" ({execution.error})" if execution.error else "")
        )


@execution_app.command("show")
def execution_show(ctx: typer.Context, execution_id: str) -> None:
    """
    Show an execution with its step log and required-action summary.

    Example:
        autoflow execution show 8f1e...
        # Output: Execution 8f1e...: completed
        #         1. send_message: success
    """
    repo = _repository(ctx)
    execution = asyncio.run(repo.get_execution(execution_id))
    if execution is None:
        typer.echo("Execution not found")
        raise typer.Exit(code=1)
    typer.echo(f"Execution {execution.id}: {execution.status}")
    typer.echo(f"Workflow: {execution.workflow_id}")
    if execution.error:
        typer.echo(f"Error: {execution.error}")
    if execution.output:
        typer.echo(f"Output: {execution.output}")
    for step in execution.steps:
        typer.echo(
            f"{step.sequence}. {step.action}: {step.outcome}"
            + (f" ({step.error})" if step.error else "")
        )
    workflow = asyncio.run(repo.get_workflow(execution.workflow_id))
    if workflow and workflow.allowed_actions:
        summary = summarize_steps(execution, workflow.allowed_actions)
        typer.echo(f"Required actions: {summary.status}")
        for action, status in summary.actions.items():
            typer.echo(f"  {action}: {status}")


@execution_app.command("retry")
def execution_retry(ctx: typer.Context, execution_id: str) -> None:
    """Dispatch a new execution with the payload of a failed one."""
    engine = _engine(ctx)

    async def _retry() -> Optional[str]:
        try:
            return await engine.dispatcher.retry_execution(execution_id)
        finally:
            await engine.aclose()

    try:
        new_id = asyncio.run(_retry())
    except NotFoundError:
        typer.echo("Execution not found")
        raise typer.Exit(code=1)
    except AutoflowError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    if new_id is None:
        typer.echo("Workflow is missing or disabled; nothing dispatched")
        raise typer.Exit(code=1)
    typer.echo(f"Dispatched execution {new_id}")


@scheduler_app.command("tick")
def scheduler_tick(ctx: typer.Context) -> None:
    """Run a single scheduler tick and print what it did."""
    engine = _engine(ctx)

    async def _tick():
        try:
            return await engine.scheduler.tick()
        finally:
            await engine.aclose()

    report = asyncio.run(_tick())
    if report is None:
        typer.echo("Tick skipped")
        return
    typer.echo(
        f"Schedules due: {report.schedules_due}, claimed: {report.schedules_claimed}; "
        f"runs consumed: {report.runs_consumed}, discarded: {report.runs_discarded}"
    )
    typer.echo(
        f"Dispatched: {len(report.batch.execution_ids)}, "
        f"skipped: {len(report.batch.skipped)}, failed: {len(report.batch.failures)}"
    )


@scheduler_app.command("run")
def scheduler_run(ctx: typer.Context) -> None:
    """Tick forever at the configured interval. Stop with Ctrl+C."""
    engine = _engine(ctx)

    async def _run() -> None:
        try:
            await engine.scheduler.run_forever()
        finally:
            await engine.aclose()

    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        typer.echo("Scheduler stopped")


@app.command("serve")
def serve(
    ctx: typer.Context,
    host: Optional[str] = typer.Option(None, help="Bind address"),
    port: Optional[int] = typer.Option(None, help="Bind port"),
) -> None:
    """Serve the webhook and execution callback API with uvicorn."""
    import uvicorn

    from autoflow.server import create_app

    engine = _engine(ctx)
    settings = engine.config.server
    uvicorn.run(create_app(engine), host=host or settings.host, port=port or settings.port)


@cron_app.command("describe")
def cron_describe(expression: str) -> None:
    """Print a readable summary of a cron expression and its next fire time (UTC)."""
    try:
        upcoming = next_fire_after(expression, utcnow())
    except ValueError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    typer.echo(describe_cron(expression))
    typer.echo(f"Next run: {upcoming.isoformat()}")


if __name__ == "__main__":
    app()
