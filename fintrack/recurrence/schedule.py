"""
Calendar arithmetic for recurring templates.
"""

import calendar
from datetime import datetime, timedelta
from typing import Optional

from dateutil.relativedelta import relativedelta

from fintrack.models.ledger import Frequency


def _clamp_day(moment: datetime, day_of_month: int) -> datetime:
    last_day = calendar.monthrange(moment.year, moment.month)[1]
    return moment.replace(day=min(day_of_month, last_day))


def calculate_next_date(
    current: datetime,
    frequency: Frequency,
    interval: int = 1,
    day_of_month: Optional[int] = None,
    day_of_week: Optional[int] = None,
) -> datetime:
    """
    Next execution moment after `current`.

    Monthly steps land on the same day number, or on the month's last day
    when that month is shorter (31 Jan -> 28/29 Feb). With `day_of_month`
    set, the day is pinned to it (clamped the same way), so a template on
    the 31st returns to the 31st after a short month.

    `day_of_week` is carried on templates for display only; weekly steps
    keep the weekday of `current`.
    """
    frequency = Frequency(frequency)
    interval = max(1, interval or 1)

    if frequency == Frequency.DAILY:
        return current + timedelta(days=interval)
    if frequency == Frequency.WEEKLY:
        return current + timedelta(weeks=interval)
    if frequency == Frequency.BIWEEKLY:
        return current + timedelta(days=14)
    if frequency == Frequency.MONTHLY:
        following = current + relativedelta(months=interval)
        return _clamp_day(following, day_of_month) if day_of_month else following
    if frequency == Frequency.QUARTERLY:
        return current + relativedelta(months=3)
    if frequency == Frequency.YEARLY:
        return current + relativedelta(years=interval)

    raise ValueError(f"Unsupported frequency: {frequency}")
