"""Recurring transaction package."""

from fintrack.recurrence.schedule import calculate_next_date
from fintrack.recurrence.scheduler import RecurrenceScheduler, end_reason
from fintrack.recurrence.templates import RecurringTemplateService

__all__ = [
    "RecurrenceScheduler",
    "RecurringTemplateService",
    "calculate_next_date",
    "end_reason",
]
