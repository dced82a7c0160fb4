"""
Flowgate Schedule Trigger Handler

Cron-based schedule triggers.
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

import pytz
import structlog
from croniter import croniter

from flowgate.types import Trigger
from flowgate.triggers.manager import BaseTriggerHandler

logger = structlog.get_logger(__name__)


def _aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return pytz.utc.localize(value)
    return value


class ScheduleTriggerHandler(BaseTriggerHandler):
    """
    Handler for schedule (cron) triggers.

    Features:
    - Cron expression evaluation in the trigger's timezone
    - At-least-once firing: a tick missed while the engine was down fires
      once on the next check, then the schedule resumes from now
    """

    def __init__(self, manager):
        super().__init__(manager)
        self._scheduled: List[Trigger] = []

    async def register(self, trigger: Trigger) -> None:
        """Register a schedule trigger."""
        self._scheduled.append(trigger)
        self.reschedule(trigger)

        logger.info(
            "schedule_registered",
            trigger_id=trigger.id,
            cron=trigger.config.cron_expression,
            timezone=trigger.config.timezone,
            next_fire=trigger.next_fire_at.isoformat() if trigger.next_fire_at else None,
        )

    async def unregister(self, trigger: Trigger) -> None:
        """Unregister a schedule trigger."""
        self._scheduled = [t for t in self._scheduled if t.id != trigger.id]
        logger.info("schedule_unregistered", trigger_id=trigger.id)

    def reschedule(self, trigger: Trigger) -> None:
        """
        Compute the next fire time.

        With a known last fire the next tick is counted from it, so a tick
        that passed during downtime is already due.
        """
        base = trigger.last_fired_at or self.manager.clock()
        trigger.next_fire_at = self.calculate_next(
            trigger.config.cron_expression,
            trigger.config.timezone,
            base,
        )

    async def check_due(self, now: Optional[datetime] = None) -> List[Trigger]:
        """Fire every enabled schedule trigger whose next fire time has passed."""
        now = _aware(now or self.manager.clock())
        fired = []

        for trigger in list(self._scheduled):
            if not trigger.config.enabled or trigger.next_fire_at is None:
                continue
            if trigger.next_fire_at > now:
                continue

            scheduled_for = trigger.next_fire_at
            missed = trigger.last_fired_at is not None and self.calculate_next(
                trigger.config.cron_expression, trigger.config.timezone, scheduled_for
            ) <= now

            run_id = await self.manager.fire(
                trigger,
                {
                    "type": "scheduled",
                    "scheduled_time": scheduled_for.isoformat(),
                    "cron": trigger.config.cron_expression,
                    "catch_up": missed,
                },
            )
            if run_id is None:
                # Stays due; retried on the next check
                continue

            trigger.last_fired_at = now
            trigger.next_fire_at = self.calculate_next(
                trigger.config.cron_expression,
                trigger.config.timezone,
                now,
            )
            fired.append(trigger)

            if missed:
                logger.info(
                    "schedule_caught_up",
                    trigger_id=trigger.id,
                    scheduled_time=scheduled_for.isoformat(),
                )

        return fired

    @staticmethod
    def calculate_next(
        cron_expression: str,
        timezone: str = "UTC",
        base: Optional[datetime] = None,
    ) -> Optional[datetime]:
        """Next fire time strictly after ``base``."""
        if not cron_expression:
            return None

        tz = pytz.timezone(timezone or "UTC")
        start = _aware(base or datetime.now(pytz.utc)).astimezone(tz)

        cron = croniter(cron_expression, start)
        return cron.get_next(datetime)
