"""
Streak ledger.

Streaks are never incremented in place. Every change re-walks the user's
satisfied days (approved uploads plus rest days) and writes the result,
so a rejection after an approval undoes itself automatically.

An admin baseline is a floor on top of that walk. It holds at its value
(extended by any satisfied days directly after the baseline date) until
the nightly rollup sees a missed day after it, at which point the floor
on the current streak is dropped. The longest-streak floor survives.
"""

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Iterable, List, Optional

from clock import resolve_today, parse_day
from models import db, Streak, get_setting, LAST_ROLLUP_KEY
from uploads import satisfied_dates, get_user

logger = logging.getLogger('streak_ledger.streaks')

STREAK_MILESTONES = (7, 14, 30, 50, 100, 365)


@dataclass(frozen=True)
class Baseline:
    day: date
    streak: int
    longest: int


@dataclass(frozen=True)
class StreakState:
    current_streak: int
    longest_streak: int
    last_activity_date: Optional[date]
    baseline_applied: bool = False
    baseline_lapsed: bool = False


@dataclass(frozen=True)
class StreakUpdate:
    user_id: int
    previous_current: int
    state: StreakState

    @property
    def milestones(self) -> List[int]:
        return crossed_milestones(self.previous_current, self.state.current_streak)


def compute_streak(
    dates: Iterable[date],
    today: date,
    last_rollup: Optional[date] = None,
    baseline: Optional[Baseline] = None,
    longest_floor: int = 0,
    apply_decay: bool = False,
) -> StreakState:
    """Derive current/longest streak from satisfied days. Pure; no I/O.

    Only the nightly rollup passes apply_decay=True. A request-triggered
    recompute zeroes a run that ended before yesterday only if a rollup
    dated two or more days after its last day (last_rollup) has already
    decayed it; otherwise the run still stands.
    """
    yesterday = today - timedelta(days=1)
    days = sorted({d for d in dates if d <= today})

    computed_longest = 0
    tail_run = 0
    last = None
    if days:
        run = 1
        computed_longest = 1
        for prev, cur in zip(days, days[1:]):
            run = run + 1 if (cur - prev).days == 1 else 1
            computed_longest = max(computed_longest, run)
        tail_run = run
        last = days[-1]

    current = tail_run
    if last is not None and last < yesterday:
        if apply_decay or (last_rollup is not None and last_rollup >= last + timedelta(days=2)):
            current = 0

    baseline_applied = False
    baseline_lapsed = False
    if baseline is not None and baseline.streak > 0:
        day_set = set(days)
        extension = 0
        cursor = baseline.day + timedelta(days=1)
        while cursor in day_set:
            extension += 1
            cursor += timedelta(days=1)
        extended_end = baseline.day + timedelta(days=extension)
        extended = baseline.streak + extension

        if apply_decay and extended_end < yesterday:
            baseline_lapsed = True
        elif extended >= current:
            current = extended
            baseline_applied = True
            if last is None or extended_end > last:
                last = extended_end
        longest_floor = max(longest_floor, baseline.longest)

    longest = max(computed_longest, current, longest_floor)
    return StreakState(
        current_streak=current,
        longest_streak=longest,
        last_activity_date=last,
        baseline_applied=baseline_applied,
        baseline_lapsed=baseline_lapsed,
    )


def crossed_milestones(previous, current):
    return [m for m in STREAK_MILESTONES if previous < m <= current]


def ensure_streak(user_id):
    """Return the user's streak row, staging an empty one if missing."""
    streak = Streak.query.filter_by(user_id=user_id).first()
    if streak is None:
        get_user(user_id)
        streak = Streak(user_id=user_id, current_streak=0, longest_streak=0)
        db.session.add(streak)
        db.session.flush()
    return streak


def _last_rollup_date():
    marker = get_setting(LAST_ROLLUP_KEY)
    return parse_day(marker, LAST_ROLLUP_KEY) if marker else None


def get_streak(user_id):
    """Read-only view; never creates a row."""
    return Streak.query.filter_by(user_id=user_id).first()


def recompute_streak(user_id, today=None, apply_decay=False):
    """Recompute and stage the user's streak. The caller's atomic unit commits."""
    today = resolve_today(today)
    streak = ensure_streak(user_id)

    baseline = None
    if streak.has_baseline:
        baseline = Baseline(
            day=streak.admin_baseline_date,
            streak=streak.admin_baseline_streak,
            longest=streak.admin_baseline_longest or 0,
        )

    state = compute_streak(
        satisfied_dates(user_id),
        today,
        last_rollup=_last_rollup_date(),
        baseline=baseline,
        longest_floor=streak.admin_baseline_longest or 0,
        apply_decay=apply_decay,
    )

    if state.baseline_lapsed:
        logger.info(f'Admin baseline of {streak.admin_baseline_streak} for user {user_id} '
                    f'lapsed after a missed day (set {streak.admin_baseline_date})')
        streak.admin_baseline_date = None
        streak.admin_baseline_streak = None

    previous = streak.current_streak or 0
    streak.current_streak = state.current_streak
    streak.longest_streak = state.longest_streak
    streak.last_activity_date = state.last_activity_date
    db.session.flush()

    if previous != state.current_streak:
        logger.info(f'Streak for user {user_id}: {previous} -> {state.current_streak} '
                    f'(longest {state.longest_streak}, decay={apply_decay})')
    return StreakUpdate(user_id=user_id, previous_current=previous, state=state)


def set_admin_baseline(user_id, current_streak, longest_streak, baseline_date):
    """Install (or with current_streak=0, clear) the admin floor. Caller commits."""
    streak = ensure_streak(user_id)
    longest_streak = max(longest_streak, current_streak)

    if current_streak > 0:
        streak.admin_baseline_date = baseline_date
        streak.admin_baseline_streak = current_streak
        streak.admin_baseline_longest = longest_streak
        streak.current_streak = current_streak
        streak.longest_streak = longest_streak
        streak.last_activity_date = baseline_date
    else:
        streak.admin_baseline_date = None
        streak.admin_baseline_streak = None
        streak.admin_baseline_longest = longest_streak or None
    db.session.flush()
    return streak
