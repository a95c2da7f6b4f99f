"""Trigger store: trigger lookup, schedule evaluation and webhook key issuing."""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from pydantic import BaseModel

from .constants import DEFAULT_CLAIM_TIMEOUT_SECONDS, WEBHOOK_KEY_BYTES
from .cron import due_fire_time, next_fire_after, validate_cron
from .errors import InvalidCronError, NotFoundError
from .persistence.models import (
    EventTrigger,
    ScheduleTrigger,
    Trigger,
    WebhookTrigger,
    Workflow,
    utcnow,
)
from .persistence.repository import OrchestrationRepository

logger = logging.getLogger(__name__)


class DueSchedule(BaseModel):
    """A schedule trigger with the fire time selected for this evaluation."""

    trigger: ScheduleTrigger
    fire_time: datetime


def schedule_payload(due: DueSchedule) -> Dict[str, Any]:
    """Trigger payload handed to the execution host for one schedule fire."""
    return {
        "type": "schedule",
        "cron": due.trigger.cron,
        "scheduledAt": due.fire_time.isoformat(),
    }


def describe_trigger(trigger: Trigger) -> str:
    """One-line description of a trigger for listings."""
    if isinstance(trigger, EventTrigger):
        return f"event {trigger.event}"
    if isinstance(trigger, ScheduleTrigger):
        next_run = trigger.next_run_at.isoformat() if trigger.next_run_at else "-"
        return f"schedule {trigger.cron} (next {next_run})"
    if isinstance(trigger, WebhookTrigger):
        return f"webhook {trigger.webhook_key}"
    raise TypeError(f"Unknown trigger type: {type(trigger).__name__}")


class TriggerStore:
    """Reads and advances triggers through an :class:`OrchestrationRepository`.

    ``claim_timeout_seconds`` is how long a claimed schedule fire may stay
    unsettled before it is treated as abandoned and offered again.
    """

    def __init__(
        self,
        repository: OrchestrationRepository,
        claim_timeout_seconds: float = DEFAULT_CLAIM_TIMEOUT_SECONDS,
    ) -> None:
        self._repository = repository
        self._claim_timeout = timedelta(seconds=claim_timeout_seconds)

    @property
    def repository(self) -> OrchestrationRepository:
        return self._repository

    async def add_event_trigger(self, workflow: Workflow, event: str) -> EventTrigger:
        trigger = EventTrigger(
            workflow_id=workflow.id,
            organization_id=workflow.organization_id,
            event=event,
        )
        await self._repository.create_trigger(trigger)
        return trigger

    async def add_schedule_trigger(
        self, workflow: Workflow, cron: str, now: Optional[datetime] = None
    ) -> ScheduleTrigger:
        """Create a schedule trigger; raises :class:`InvalidCronError` on bad input."""
        expression = validate_cron(cron)
        now = now or utcnow()
        trigger = ScheduleTrigger(
            workflow_id=workflow.id,
            organization_id=workflow.organization_id,
            cron=expression,
            created_at=now,
            next_run_at=next_fire_after(expression, now),
        )
        await self._repository.create_trigger(trigger)
        return trigger

    async def add_webhook_trigger(
        self, workflow: Workflow, webhook_key: Optional[str] = None
    ) -> WebhookTrigger:
        trigger = WebhookTrigger(
            workflow_id=workflow.id,
            organization_id=workflow.organization_id,
            webhook_key=webhook_key or secrets.token_hex(WEBHOOK_KEY_BYTES),
        )
        await self._repository.create_trigger(trigger)
        return trigger

    async def find_triggers_for_event(
        self, event_name: str, organization_id: str
    ) -> List[EventTrigger]:
        triggers = await self._repository.list_triggers(
            kind="event", event=event_name, organization_id=organization_id
        )
        return [t for t in triggers if isinstance(t, EventTrigger)]

    async def find_due_schedules(self, now: Optional[datetime] = None) -> List[DueSchedule]:
        """Schedule triggers with a fire time in ``(last evaluation, now]``.

        Triggers never evaluated use their creation time as the window start.
        A claim left unsettled past the claim timeout is returned again with
        its original fire time, unless a newer fire time is already due.
        Triggers with an invalid cron expression are logged and skipped.
        """
        now = now or utcnow()
        due: List[DueSchedule] = []
        for trigger in await self._repository.list_triggers(kind="schedule"):
            if not isinstance(trigger, ScheduleTrigger):
                continue
            window_start = trigger.last_evaluated_at or trigger.created_at
            try:
                fire_time = due_fire_time(trigger.cron, window_start, now)
            except InvalidCronError:
                logger.warning(
                    f"Skipping schedule trigger {trigger.id} with invalid cron {trigger.cron!r}"
                )
                continue
            if fire_time is None and self._claim_abandoned(trigger, now):
                logger.warning(
                    f"Re-firing abandoned claim {trigger.claimed_fire_at.isoformat()} "
                    f"of schedule trigger {trigger.id}"
                )
                fire_time = trigger.claimed_fire_at
            if fire_time is not None:
                due.append(DueSchedule(trigger=trigger, fire_time=fire_time))
        return due

    def _claim_abandoned(self, trigger: ScheduleTrigger, now: datetime) -> bool:
        if trigger.claimed_fire_at is None or trigger.last_evaluated_at is None:
            return False
        return trigger.last_evaluated_at + self._claim_timeout <= now

    async def mark_evaluated(self, due: DueSchedule, now: Optional[datetime] = None) -> bool:
        """Claim ``due`` for this evaluator.

        The fire time is recorded on the trigger together with the new
        evaluation timestamp and stays there until :meth:`release_claim`.
        Returns ``False`` when another evaluator already advanced the trigger,
        in which case the caller must not dispatch it.
        """
        now = now or utcnow()
        trigger = due.trigger
        claimed = await self._repository.advance_schedule(
            trigger.id,
            trigger.last_evaluated_at,
            now,
            next_fire_after(trigger.cron, now),
            claimed_fire_at=due.fire_time,
        )
        if not claimed:
            logger.info(f"Schedule trigger {trigger.id} already evaluated elsewhere")
        return claimed

    async def release_claim(self, due: DueSchedule) -> bool:
        """Mark the claimed fire of ``due`` as settled by the dispatcher."""
        return await self._repository.clear_schedule_claim(due.trigger.id, due.fire_time)

    async def resolve_webhook_key(self, webhook_key: str) -> WebhookTrigger:
        trigger = await self._repository.get_trigger_by_webhook_key(webhook_key)
        if not isinstance(trigger, WebhookTrigger):
            raise NotFoundError("Unknown webhook trigger")
        return trigger

    async def schedule_next(
        self, workflow_id: str, from_time: Optional[datetime] = None
    ) -> List[datetime]:
        """Set the next occurrence of every schedule trigger of ``workflow_id``."""
        from_time = from_time or utcnow()
        scheduled: List[datetime] = []
        triggers = await self._repository.list_triggers(
            workflow_id=workflow_id, kind="schedule"
        )
        for trigger in triggers:
            if not isinstance(trigger, ScheduleTrigger):
                continue
            try:
                next_run = next_fire_after(trigger.cron, from_time)
            except InvalidCronError:
                logger.warning(
                    f"Cannot schedule trigger {trigger.id} with invalid cron {trigger.cron!r}"
                )
                continue
            await self._repository.set_next_run(trigger.id, next_run)
            scheduled.append(next_run)
        return scheduled
