"""
Schedule module.
Recurring jobs: cron expressions and the sweep that enqueues due slots.
"""

from jobqueue.schedule.cron import CronExpression
from jobqueue.schedule.manager import ScheduleManager

__all__ = ["CronExpression", "ScheduleManager"]
