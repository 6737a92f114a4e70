from __future__ import annotations

import logging
from datetime import date, datetime, time, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from geoattend.settings import get_settings

logger = logging.getLogger("geoattend.local_time")

DEFAULT_TIMEZONE = "Asia/Kolkata"


def normalize_ts(ts_utc: datetime | None) -> datetime:
    if ts_utc is None:
        return datetime.now(timezone.utc)

    # Naive values come back from SQLite; everything is stored as UTC.
    if ts_utc.tzinfo is None:
        return ts_utc.replace(tzinfo=timezone.utc)

    return ts_utc.astimezone(timezone.utc)


def attendance_timezone() -> ZoneInfo:
    raw_name = (get_settings().attendance_timezone or "").strip() or DEFAULT_TIMEZONE
    try:
        return ZoneInfo(raw_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("attendance_timezone_invalid", extra={"timezone": raw_name})
        return ZoneInfo(DEFAULT_TIMEZONE)


def local_day(ts_utc: datetime) -> date:
    return normalize_ts(ts_utc).astimezone(attendance_timezone()).date()


def parse_hhmm(raw: str, *, fallback: time) -> time:
    try:
        hour_text, minute_text = (raw or "").strip().split(":", 1)
        return time(int(hour_text), int(minute_text))
    except ValueError:
        logger.warning("local_time_setting_invalid", extra={"value": raw})
        return fallback


def local_instant_utc(day_date: date, local_clock: time) -> datetime:
    return datetime.combine(day_date, local_clock, tzinfo=attendance_timezone()).astimezone(timezone.utc)
