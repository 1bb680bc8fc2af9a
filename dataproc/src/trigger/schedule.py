"""
Daily schedule trigger.

Maps a fixed daily firing time to orchestrator runs:
- DailySchedule parses the calendar expression and computes firing slots
- ScheduleTrigger turns a firing into exactly one WorkflowRun, applying the
  overlap policy and ignoring redelivered firings for a slot that already
  has a run

Accepted expressions:
    cron(0 22 * * ? *)   EventBridge form, fixed minute and hour
    22:00                HH:MM, UTC

Usage:
    trigger = ScheduleTrigger(orchestrator, DailySchedule.parse("cron(0 22 * * ? *)"))
    await trigger.fire()          # one firing (external scheduler)
    await trigger.run_forever()   # local scheduler loop
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Set

from dataproc.src.models import WorkflowRun, scheduled_run_id, utcnow
from dataproc.src.orchestrate.workflow_orchestrator import WorkflowOrchestrator

logger = logging.getLogger(__name__)

OVERLAP_SKIP = "skip"
OVERLAP_QUEUE = "queue"

_CRON_PATTERN = re.compile(r"^cron\((.+)\)$")
_HHMM_PATTERN = re.compile(r"^(\d{1,2}):(\d{2})$")


def _as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@dataclass(frozen=True)
class DailySchedule:
    """
    One firing per day at hour:minute UTC.

    Attributes:
        hour: 0-23
        minute: 0-59
    """

    hour: int
    minute: int

    def __post_init__(self):
        if not 0 <= self.hour <= 23:
            raise ValueError(f"Hour out of range: {self.hour}")
        if not 0 <= self.minute <= 59:
            raise ValueError(f"Minute out of range: {self.minute}")

    @classmethod
    def parse(cls, expression: str) -> "DailySchedule":
        """
        Parse a daily schedule expression.

        Raises:
            ValueError: If the expression is not a fixed daily time
        """
        expression = expression.strip()

        match = _HHMM_PATTERN.match(expression)
        if match:
            return cls(hour=int(match.group(1)), minute=int(match.group(2)))

        match = _CRON_PATTERN.match(expression)
        if not match:
            raise ValueError(f"Unsupported schedule expression: {expression!r}")

        fields = match.group(1).split()
        if len(fields) != 6:
            raise ValueError(
                f"cron expression needs 6 fields (minute hour day month weekday year), "
                f"got {len(fields)}: {expression!r}"
            )

        minute, hour, day, month, weekday, year = fields
        if not (minute.isdigit() and hour.isdigit()):
            raise ValueError(f"Minute and hour must be fixed values: {expression!r}")
        if day not in ("*", "?") or weekday not in ("*", "?") or month != "*" or year != "*":
            raise ValueError(f"Only daily schedules are supported: {expression!r}")

        return cls(hour=int(hour), minute=int(minute))

    def __str__(self) -> str:
        return f"{self.hour:02d}:{self.minute:02d} UTC"

    def _on_day(self, dt: datetime) -> datetime:
        return dt.replace(hour=self.hour, minute=self.minute, second=0, microsecond=0)

    def next_after(self, dt: datetime) -> datetime:
        """First firing strictly after dt."""
        dt = _as_utc(dt)
        candidate = self._on_day(dt)
        if candidate <= dt:
            candidate += timedelta(days=1)
        return candidate

    def slot_for(self, dt: datetime) -> datetime:
        """Most recent firing at or before dt."""
        dt = _as_utc(dt)
        candidate = self._on_day(dt)
        if candidate > dt:
            candidate -= timedelta(days=1)
        return candidate


class ScheduleTrigger:
    """
    Turn schedule firings into orchestrator runs.

    Each firing maps to a calendar slot and a deterministic run id, so a
    firing delivered twice for the same slot starts at most one run.
    """

    def __init__(
        self,
        orchestrator: WorkflowOrchestrator,
        schedule: DailySchedule,
        overlap_policy: str = OVERLAP_SKIP,
    ):
        if overlap_policy not in (OVERLAP_SKIP, OVERLAP_QUEUE):
            raise ValueError(f"Unknown overlap policy: {overlap_policy}")
        self.orchestrator = orchestrator
        self.schedule = schedule
        self.overlap_policy = overlap_policy
        self._pending: Set[asyncio.Task] = set()

    async def fire(self, fired_at: Optional[datetime] = None) -> Optional[WorkflowRun]:
        """
        Handle one firing.

        Args:
            fired_at: Firing time (defaults to now)

        Returns:
            The terminal WorkflowRun, or None if the firing was skipped
        """
        slot = self.schedule.slot_for(fired_at or utcnow())
        run_id = scheduled_run_id(slot)

        if self.orchestrator.run_exists(run_id):
            logger.info(f"Firing for {slot.isoformat()} already handled as {run_id}, skipping")
            return None

        foreign = self.orchestrator.stored_active_run()
        if foreign is not None:
            # Another process owns it; there is nothing to wait on here
            logger.warning(
                f"Run {foreign['run_id']} is active in another process, "
                f"skipping firing for {slot.isoformat()}"
            )
            return None

        active = self.orchestrator.active_run
        if active is not None:
            if self.overlap_policy == OVERLAP_SKIP:
                logger.warning(
                    f"Run {active.run_id} still {active.stage}, "
                    f"skipping firing for {slot.isoformat()}"
                )
                return None

            logger.info(f"Run {active.run_id} still {active.stage}, queueing {run_id}")
            while self.orchestrator.active_run is not None:
                await self.orchestrator.wait_idle()

            if self.orchestrator.run_exists(run_id):
                logger.info(f"{run_id} was started while queued, skipping")
                return None

            foreign = self.orchestrator.stored_active_run()
            if foreign is not None:
                logger.warning(
                    f"Run {foreign['run_id']} became active in another process "
                    f"while {run_id} was queued, skipping"
                )
                return None

        logger.info(f"Firing for {slot.isoformat()}: starting {run_id}")
        return await self.orchestrator.start(run_id=run_id, scheduled_for=slot)

    def _on_fire_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Scheduled firing failed: {error}", exc_info=error)

    async def run_forever(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """
        Local scheduler loop: sleep until the next slot, fire, repeat.

        Firings run as background tasks so a long run never delays the next
        firing; the overlap policy decides what happens then. On stop, waits
        for firings already started.
        """
        stop_event = stop_event or asyncio.Event()
        logger.info(f"Scheduler started: daily at {self.schedule}, overlap={self.overlap_policy}")

        while not stop_event.is_set():
            now = utcnow()
            next_fire = self.schedule.next_after(now)
            delay = (next_fire - now).total_seconds()
            logger.info(f"Next firing at {next_fire.isoformat()} (in {delay:.0f}s)")

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=delay)
                break
            except asyncio.TimeoutError:
                pass

            task = asyncio.create_task(self.fire(next_fire))
            self._pending.add(task)
            task.add_done_callback(self._on_fire_done)

        if self._pending:
            logger.info(f"Scheduler stopping, waiting for {len(self._pending)} firing(s)")
            await asyncio.gather(*self._pending, return_exceptions=True)
        logger.info("Scheduler stopped")
