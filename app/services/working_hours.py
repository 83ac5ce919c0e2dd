"""
Office hours evaluation for agents.

Agent office hours are stored as:
    {"enabled": true, "timezone": "Europe/Berlin",
     "schedule": {"monday": {"enabled": true, "start": "09:00", "end": "17:00"}, ...}}
"""

import logging
from datetime import datetime, timedelta, timezone, time
from typing import Optional, Dict, Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from app.config.settings import settings

logger = logging.getLogger(__name__)

WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]
BUSINESS_DAY_START = time(8, 0)


def _zone(office_hours: Optional[Dict[str, Any]]) -> ZoneInfo:
    name = (office_hours or {}).get("timezone") or settings.default_timezone
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Unknown timezone '{name}', using {settings.default_timezone}")
        return ZoneInfo(settings.default_timezone)


def _parse_time(value: Optional[str], fallback: time) -> time:
    try:
        hours, minutes = str(value).split(":")[:2]
        return time(int(hours), int(minutes))
    except (TypeError, ValueError):
        return fallback


def local_now(office_hours: Optional[Dict[str, Any]], now: Optional[datetime] = None) -> datetime:
    now = now or datetime.utcnow()
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(_zone(office_hours))


def is_within_office_hours(office_hours: Optional[Dict[str, Any]], now: Optional[datetime] = None) -> bool:
    """
    Whether the agent is currently open.

    Args:
        office_hours: Agent office hours config; missing or disabled means always open
        now: Reference time (naive UTC or aware); defaults to now

    Returns:
        bool: True when replies may be sent automatically
    """
    if not office_hours or not office_hours.get("enabled"):
        return True

    local = local_now(office_hours, now)
    day = (office_hours.get("schedule") or {}).get(WEEKDAYS[local.weekday()])
    if not day or not day.get("enabled"):
        return False

    start = _parse_time(day.get("start"), time(0, 0))
    end = _parse_time(day.get("end"), time(23, 59))
    return start <= local.time().replace(second=0, microsecond=0) < end


def next_business_day_start(office_hours: Optional[Dict[str, Any]], now: Optional[datetime] = None) -> datetime:
    """
    08:00 local time on the next weekday, returned as naive UTC.
    """
    local = local_now(office_hours, now)
    candidate = local + timedelta(days=1)
    while candidate.weekday() >= 5:
        candidate += timedelta(days=1)
    start = datetime.combine(candidate.date(), BUSINESS_DAY_START, tzinfo=local.tzinfo)
    return start.astimezone(timezone.utc).replace(tzinfo=None)
