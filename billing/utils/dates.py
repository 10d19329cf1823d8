from datetime import datetime, timezone
from typing import Optional

from billing.constants import DISPLAY_TZ


def utcnow() -> datetime:
    """Текущее время в UTC (aware)"""
    return datetime.now(timezone.utc)


def format_datetime(dt: Optional[datetime]) -> str:
    """Форматирует datetime для администраторов (UTC+8)"""
    if dt is None:
        return "—"
    # Если datetime без timezone - считаем UTC
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(DISPLAY_TZ).strftime("%Y-%m-%d %H:%M")
