"""autoflow quickstart: schedule a workflow, queue a webhook and run one tick.

Point ``AUTOFLOW_AGENT_URL`` at a running execution host before running this.
"""

import asyncio
from datetime import datetime, timedelta, timezone

from autoflow import build_engine, load_config
from autoflow.persistence import InMemoryOrchestrationRepository
from autoflow.persistence.models import Workflow


async def main():
    config = load_config()
    config.security.webhook_token = config.security.webhook_token or "local-webhook-token"
    engine = build_engine(config, repository=InMemoryOrchestrationRepository())

    workflow = Workflow(
        organization_id="org-demo",
        member_id="member-demo",
        name="Morning digest",
        instructions="Summarise yesterday's todos and post them to the team chat.",
        allowed_actions=["send_message", "create_todo"],
    )
    await engine.repository.save_workflow(workflow)

    an_hour_ago = datetime.now(timezone.utc) - timedelta(hours=1)
    schedule = await engine.triggers.add_schedule_trigger(workflow, "*/15 * * * *", now=an_hour_ago)
    webhook = await engine.triggers.add_webhook_trigger(workflow)
    print(f"📅 Schedule trigger {schedule.id}: {schedule.cron}")
    print(f"🔗 Webhook URL: /webhooks/{webhook.webhook_key}")

    run_id = await engine.webhooks.ingest(
        webhook.webhook_key,
        '{"source": "quickstart"}',
        {"X-Webhook-Token": config.security.webhook_token},
    )
    print(f"📥 Queued webhook run {run_id}")

    report = await engine.scheduler.tick()
    print(f"✅ Dispatched: {report.batch.execution_ids}")
    for failure in report.batch.failures:
        print(f"❌ {failure.workflow_id}: {failure.error}")

    await engine.aclose()


if __name__ == "__main__":
    asyncio.run(main())
