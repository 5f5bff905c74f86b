"""
Recurring Order Scheduler

Calculates next execution times based on frequency.

Advancement is always computed from the moment of processing, never from the
previous scheduled time, so a backlog catches up to real time instead of
firing compressed back-to-back cycles.
"""

from __future__ import annotations

import calendar
from datetime import datetime, timedelta
from typing import Any, Optional

from .models import Frequency, utcnow

FALLBACK_INTERVAL = timedelta(days=7)


class RecurringScheduler:
    """Calculates recurring order schedules."""

    @staticmethod
    def get_next_execution(
        frequency: Any,
        after: Optional[datetime] = None,
    ) -> datetime:
        """
        Calculate the next execution time based on frequency.

        Args:
            frequency: Frequency enum or raw token ("Weekly", "bi-weekly", ...)
            after: Calculate next execution after this time (default: now)

        Returns:
            Next scheduled execution datetime. Unrecognized frequencies
            fall back to one week.
        """
        if after is None:
            after = utcnow()

        parsed = Frequency.parse(frequency)

        if parsed == Frequency.HOURLY:
            return after + timedelta(hours=1)

        elif parsed == Frequency.DAILY:
            return after + timedelta(days=1)

        elif parsed == Frequency.WEEKLY:
            return after + timedelta(days=7)

        elif parsed == Frequency.BIWEEKLY:
            return after + timedelta(days=14)

        elif parsed == Frequency.MONTHLY:
            return RecurringScheduler._add_month(after)

        return after + FALLBACK_INTERVAL

    @staticmethod
    def _add_month(after: datetime) -> datetime:
        """Same day-of-month next month, clamped to the month's last day."""
        year = after.year
        month = after.month + 1
        if month > 12:
            year += 1
            month = 1

        max_day = calendar.monthrange(year, month)[1]
        return after.replace(year=year, month=month, day=min(after.day, max_day))

    @staticmethod
    def format_schedule_description(frequency: Any) -> str:
        """Generate human-readable schedule description."""
        parsed = Frequency.parse(frequency)

        if parsed == Frequency.HOURLY:
            return "Every hour"
        elif parsed == Frequency.DAILY:
            return "Every day"
        elif parsed == Frequency.WEEKLY:
            return "Every week"
        elif parsed == Frequency.BIWEEKLY:
            return "Every two weeks"
        elif parsed == Frequency.MONTHLY:
            return "Every month"

        return "Every week (default)"
