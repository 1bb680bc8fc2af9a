"""Daily schedule trigger."""

from dataproc.src.trigger.schedule import DailySchedule, ScheduleTrigger

__all__ = ["DailySchedule", "ScheduleTrigger"]
