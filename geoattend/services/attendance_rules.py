from __future__ import annotations

import enum
from datetime import datetime, time

from geoattend.models import AttendanceDay, AttendanceStatus
from geoattend.services.local_time import attendance_timezone, normalize_ts, parse_hhmm
from geoattend.settings import get_settings

DEFAULT_WORK_START = time(9, 0)
DEFAULT_LATE_CUTOFF = time(9, 15)
DEFAULT_AUTO_CHECKOUT_CUTOFF = time(18, 0)


class DayState(str, enum.Enum):
    NOT_STARTED = "NOT_STARTED"
    CHECKED_IN = "CHECKED_IN"
    CHECKED_OUT = "CHECKED_OUT"


def day_state(day: AttendanceDay | None) -> DayState:
    if day is None or day.check_in_at is None:
        return DayState.NOT_STARTED
    if day.check_out_at is None:
        return DayState.CHECKED_IN
    return DayState.CHECKED_OUT


def work_start_local() -> time:
    return parse_hhmm(get_settings().work_start_local, fallback=DEFAULT_WORK_START)


def late_cutoff_local() -> time:
    cutoff = parse_hhmm(get_settings().late_cutoff_local, fallback=DEFAULT_LATE_CUTOFF)
    return max(cutoff, work_start_local())


def auto_checkout_cutoff_local() -> time:
    return parse_hhmm(get_settings().auto_checkout_cutoff_local, fallback=DEFAULT_AUTO_CHECKOUT_CUTOFF)


def derive_checkin_status(check_in_at: datetime) -> AttendanceStatus:
    """LATE strictly after the cutoff in the attendance timezone; the cutoff itself is on time."""
    local_clock = normalize_ts(check_in_at).astimezone(attendance_timezone()).time()
    if local_clock > late_cutoff_local():
        return AttendanceStatus.LATE
    return AttendanceStatus.PRESENT


def compute_work_hours(check_in_at: datetime, check_out_at: datetime) -> tuple[float, float]:
    """Return (work_hours, overtime_hours), both rounded to two decimals."""
    elapsed_seconds = (normalize_ts(check_out_at) - normalize_ts(check_in_at)).total_seconds()
    work_hours = round(max(0.0, elapsed_seconds) / 3600.0, 2)
    standard_hours = float(get_settings().standard_work_hours)
    overtime_hours = round(max(0.0, work_hours - standard_hours), 2)
    return work_hours, overtime_hours
