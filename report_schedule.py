"""
Recurring export rules for report subscriptions.

A subscription fires at schedule_time (UTC, 'HH:MM' or 'HH:MM:SS') according
to its frequency:

    once      first matching time slot, never again
    daily     every day
    weekly    on the weekdays in schedule_days_of_week (0 = Sunday)
    monthly   on schedule_day_of_month
    interval  every schedule_interval_hours since the last send

The processing job runs every few minutes, so a slot matches when the hour is
equal and the minute is within MATCH_WINDOW_MINUTES of the scheduled minute.
"""

import re
import calendar
from datetime import datetime, timedelta, timezone
from typing import Dict, Any, Optional, List, Tuple

FREQUENCIES = ('once', 'daily', 'weekly', 'monthly', 'interval')
EXPORT_FORMATS = ('pdf', 'pptx', 'png')

MATCH_WINDOW_MINUTES = 5
RESEND_GUARD_MINUTES = 60
DEFAULT_INTERVAL_HOURS = 6
MAX_INTERVAL_HOURS = 168

# How far ahead to look for a month that has the configured day
MONTH_SEARCH_LIMIT = 48

SCHEDULE_TIME_RE = re.compile(r'^([01]\d|2[0-3]):([0-5]\d)(:[0-5]\d)?$')


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse a timestamptz string from Supabase into an aware UTC datetime."""
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def parse_schedule_time(value: str) -> Tuple[int, int]:
    match = SCHEDULE_TIME_RE.match((value or '').strip())
    if not match:
        raise ValueError(f"Invalid schedule_time: {value!r}")
    return int(match.group(1)), int(match.group(2))


def js_weekday(moment: datetime) -> int:
    """Weekday numbered from Sunday = 0, as stored in schedule_days_of_week."""
    return (moment.weekday() + 1) % 7


def _interval_hours(sub: Dict[str, Any]) -> float:
    return sub.get('schedule_interval_hours') or DEFAULT_INTERVAL_HOURS


def is_due(sub: Dict[str, Any], now: Optional[datetime] = None) -> bool:
    """Whether the processing run at `now` should deliver this subscription."""
    now = now or utc_now()
    if not sub.get('is_active', True):
        return False

    frequency = sub.get('frequency')
    last_sent = parse_timestamp(sub.get('last_sent_at'))

    if frequency == 'interval':
        if last_sent is None:
            return True
        hours_since = (now - last_sent).total_seconds() / 3600
        return hours_since >= _interval_hours(sub)

    hour, minute = parse_schedule_time(sub.get('schedule_time', ''))
    time_matches = now.hour == hour and abs(now.minute - minute) <= MATCH_WINDOW_MINUTES

    if frequency == 'once':
        due = last_sent is None and time_matches
    elif frequency == 'daily':
        due = time_matches
    elif frequency == 'weekly':
        due = time_matches and js_weekday(now) in (sub.get('schedule_days_of_week') or [])
    elif frequency == 'monthly':
        due = time_matches and sub.get('schedule_day_of_month') == now.day
    else:
        return False

    if due and last_sent is not None:
        if now - last_sent < timedelta(minutes=RESEND_GUARD_MINUTES):
            return False
    return due


def _slot(day: datetime, hour: int, minute: int) -> datetime:
    return datetime(day.year, day.month, day.day, hour, minute, tzinfo=timezone.utc)


def compute_next_send_at(sub: Dict[str, Any], now: Optional[datetime] = None) -> Optional[datetime]:
    """
    Next UTC moment the subscription will fire, or None when it never will
    (inactive, a 'once' rule already sent, a weekly rule with no weekdays).
    """
    now = now or utc_now()
    if not sub.get('is_active', True):
        return None

    frequency = sub.get('frequency')
    last_sent = parse_timestamp(sub.get('last_sent_at'))

    if frequency == 'interval':
        if last_sent is None:
            return now
        return max(last_sent + timedelta(hours=_interval_hours(sub)), now)

    if frequency not in FREQUENCIES:
        return None
    if frequency == 'once' and last_sent is not None:
        return None

    hour, minute = parse_schedule_time(sub.get('schedule_time', ''))

    earliest = now.replace(second=0, microsecond=0)
    if last_sent is not None:
        earliest = max(earliest, last_sent + timedelta(minutes=RESEND_GUARD_MINUTES))

    if frequency in ('once', 'daily'):
        candidate = _slot(earliest, hour, minute)
        if candidate < earliest:
            candidate += timedelta(days=1)
        return candidate

    if frequency == 'weekly':
        days = set(sub.get('schedule_days_of_week') or [])
        if not days:
            return None
        for offset in range(8):
            candidate = _slot(earliest + timedelta(days=offset), hour, minute)
            if candidate >= earliest and js_weekday(candidate) in days:
                return candidate
        return None

    # monthly
    day_of_month = sub.get('schedule_day_of_month')
    if not day_of_month:
        return None
    year, month = earliest.year, earliest.month
    for _ in range(MONTH_SEARCH_LIMIT):
        if day_of_month <= calendar.monthrange(year, month)[1]:
            candidate = datetime(year, month, day_of_month, hour, minute, tzinfo=timezone.utc)
            if candidate >= earliest:
                return candidate
        month += 1
        if month > 12:
            year, month = year + 1, 1
    return None


def validate_schedule(payload: Dict[str, Any]) -> List[str]:
    """Return a list of human-readable problems with a subscription's schedule fields."""
    errors = []

    frequency = payload.get('frequency', 'daily')
    if frequency not in FREQUENCIES:
        errors.append(f"frequency must be one of {', '.join(FREQUENCIES)}")

    export_format = payload.get('export_format', 'pdf')
    if export_format not in EXPORT_FORMATS:
        errors.append(f"export_format must be one of {', '.join(EXPORT_FORMATS)}")

    if frequency != 'interval':
        try:
            parse_schedule_time(payload.get('schedule_time') or '')
        except ValueError:
            errors.append('schedule_time must be HH:MM or HH:MM:SS')

    if frequency == 'weekly':
        days = payload.get('schedule_days_of_week')
        if not days or not isinstance(days, list):
            errors.append('schedule_days_of_week is required for weekly subscriptions')
        elif any(not isinstance(d, int) or d < 0 or d > 6 for d in days):
            errors.append('schedule_days_of_week values must be between 0 (Sunday) and 6 (Saturday)')

    if frequency == 'monthly':
        day = payload.get('schedule_day_of_month')
        if not isinstance(day, int) or day < 1 or day > 31:
            errors.append('schedule_day_of_month must be between 1 and 31')

    if frequency == 'interval':
        hours = payload.get('schedule_interval_hours')
        if hours is None:
            hours = DEFAULT_INTERVAL_HOURS
        if isinstance(hours, bool) or not isinstance(hours, int) or hours < 1 or hours > MAX_INTERVAL_HOURS:
            errors.append(f'schedule_interval_hours must be between 1 and {MAX_INTERVAL_HOURS}')

    return errors
