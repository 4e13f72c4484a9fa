"""
Date helpers pinned to the business timezone (America/Sao_Paulo by default).
"""
from datetime import date, datetime, timedelta
from typing import Optional, Tuple

import pytz

from hudlab.config import settings


def local_today(tz_name: Optional[str] = None) -> date:
    """Today's date in the business timezone, regardless of server timezone."""
    tz = pytz.timezone(tz_name or settings.app_timezone)
    return datetime.now(pytz.UTC).astimezone(tz).date()


def trailing_day_range(days: int, today: Optional[date] = None) -> Tuple[str, str]:
    """
    Inclusive (start, end) YYYY-MM-DD range covering the last `days` days.

    The range ends today, so days=1 is just today.
    """
    end = today or local_today()
    start = end - timedelta(days=max(days, 1) - 1)
    return start.isoformat(), end.isoformat()
