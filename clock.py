"""Calendar-day helpers. "Today" is the day in the configured APP_TIMEZONE."""

import re
from datetime import date, datetime, timedelta, timezone as tz
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from flask import current_app, has_app_context

from errors import ValidationFailure

DEFAULT_TIMEZONE = 'Europe/Belgrade'
_YMD = re.compile(r'^\d{4}-\d{2}-\d{2}$')


def validate_timezone(tz_name):
    """Return a valid IANA timezone name or 'UTC' as fallback."""
    if not tz_name or not isinstance(tz_name, str):
        return 'UTC'
    try:
        ZoneInfo(tz_name)
        return tz_name
    except (ZoneInfoNotFoundError, KeyError, ValueError):
        return 'UTC'


def app_timezone():
    tz_name = DEFAULT_TIMEZONE
    if has_app_context():
        tz_name = current_app.config.get('APP_TIMEZONE', DEFAULT_TIMEZONE)
    return ZoneInfo(validate_timezone(tz_name))


def app_today():
    """Today's date in the application timezone."""
    return datetime.now(tz.utc).astimezone(app_timezone()).date()


def utc_now():
    return datetime.now(tz.utc)


def resolve_today(today=None):
    return parse_day(today, 'today') if today is not None else app_today()


def parse_day(value, field='date'):
    """Accept a date or a YYYY-MM-DD string; anything else is a ValidationFailure."""
    if isinstance(value, datetime):
        raise ValidationFailure(f'{field} must be a calendar day, not a timestamp')
    if isinstance(value, date):
        return value
    if isinstance(value, str) and _YMD.match(value):
        try:
            return datetime.strptime(value, '%Y-%m-%d').date()
        except ValueError:
            pass
    raise ValidationFailure(f'{field} must be YYYY-MM-DD')


def days_between(later, earlier):
    return (later - earlier).days


def add_days(day, n):
    return day + timedelta(days=n)
