"""Calendar arithmetic for billing periods."""

import calendar
from datetime import datetime
from typing import Optional

from coursegate.models.plan import BillingPeriod


def add_months(start: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day (Jan 31 + 1 month -> Feb 28/29)."""
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def period_end(start: datetime, subscription_type: str) -> Optional[datetime]:
    """End of one billing period starting at start; None for lifetime."""
    if subscription_type == BillingPeriod.MONTHLY.value:
        return add_months(start, 1)
    if subscription_type == BillingPeriod.YEARLY.value:
        return add_months(start, 12)
    return None
