"""
Admin override path: absolute trophies and streak values.

Trophies go through the ledger as an admin_set transaction. A positive
current streak installs a baseline floor dated today (or the given
baseline_date); a current streak of 0 clears the floor and hands the
streak back to recomputation.
"""

import logging

from clock import parse_day, resolve_today
from errors import ValidationFailure
from events import emit, trophies_changed
from models import db
from streaks import set_admin_baseline, recompute_streak, ensure_streak, get_streak
from trophies import admin_set_trophies
from uploads import get_user

logger = logging.getLogger('streak_ledger.admin')


def _non_negative_int(value, field):
    if value is None or value == '':
        return None
    if isinstance(value, bool):
        raise ValidationFailure(f'{field} must be a non-negative integer')
    if isinstance(value, str):
        value = value.strip()
        if not value.isdigit():
            raise ValidationFailure(f'{field} must be a non-negative integer')
        value = int(value)
    if not isinstance(value, int) or value < 0:
        raise ValidationFailure(f'{field} must be a non-negative integer')
    return value


def apply_admin_override(user_id, trophies=None, current_streak=None, longest_streak=None,
                         baseline_date=None, today=None, admin_username=None):
    today = resolve_today(today)
    trophies = _non_negative_int(trophies, 'trophies')
    current_streak = _non_negative_int(current_streak, 'current_streak')
    longest_streak = _non_negative_int(longest_streak, 'longest_streak')
    if baseline_date not in (None, ''):
        baseline_date = parse_day(baseline_date, 'baseline_date')
        if baseline_date > today:
            raise ValidationFailure('baseline_date cannot be in the future')
    else:
        baseline_date = None

    user = get_user(user_id)
    tx = None
    try:
        if trophies is not None:
            tx = admin_set_trophies(user_id, trophies)

        if current_streak is not None or longest_streak is not None:
            streak = ensure_streak(user_id)
            desired_current = current_streak if current_streak is not None else streak.current_streak
            desired_longest = longest_streak if longest_streak is not None else streak.longest_streak
            set_admin_baseline(user_id, desired_current, desired_longest, baseline_date or today)
            # Fresh activity above the floor still wins
            recompute_streak(user_id, today)

        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    streak = get_streak(user_id)
    last_activity = streak.last_activity_date if streak else None
    baseline_day = streak.admin_baseline_date if streak else None
    summary = {
        'user_id': user_id,
        'trophies': user.trophies or 0,
        'current_streak': streak.current_streak if streak else 0,
        'longest_streak': streak.longest_streak if streak else 0,
        'last_activity_date': last_activity.isoformat() if last_activity else None,
        'admin_baseline_date': baseline_day.isoformat() if baseline_day else None,
        'admin_baseline_streak': (streak.admin_baseline_streak or 0) if streak else 0,
    }
    logger.info(f'ADMIN: {admin_username or "admin"} overrode user {user_id}: trophies={summary["trophies"]}, '
                f'current={summary["current_streak"]}, longest={summary["longest_streak"]}, '
                f'baseline={summary["admin_baseline_streak"]}@{summary["admin_baseline_date"]}')

    if tx is not None:
        emit(trophies_changed, user_id, delta=tx.delta, reason=tx.reason, balance=user.trophies)

    return summary
