"""
Nightly rollup: time-based effects that no single request triggers.

Runs once per calendar day, gated on the persisted last_rollup_date
marker. Steps run in order across all users:

  1. auto-approve uploads from earlier days still pending, through the
     verification handler so they get the same side effects as a manual approval
  2. recompute streaks with missed-day decay
  3. close elapsed weekly challenges (and reopen for users still active)
  4. pay weekly bonuses for completed challenges that have none yet

Each user/step is its own commit. A failure is rolled back, logged and
reported in the result; it never stops the batch or the marker.
"""

import logging
from dataclasses import dataclass, field, asdict
from datetime import date
from typing import List

from challenges import roll_over_user, get_active_challenge, open_challenge, announce_closed
from clock import resolve_today
from errors import Conflict
from events import emit, trophies_changed
from models import (
    db, User, Upload, WeeklyChallenge, get_setting, set_setting,
    LAST_ROLLUP_KEY, PENDING, APPROVED, COMPLETED,
)
from streaks import recompute_streak, get_streak
from trophies import award_weekly_bonus, has_weekly_bonus, users_with_unbalanced_ledger
from verification import on_upload_verified

logger = logging.getLogger('streak_ledger.rollup')


@dataclass
class RollupResult:
    today: date
    skipped: bool = False
    users_processed: int = 0
    auto_approved: int = 0
    streaks_decayed: int = 0
    challenges_closed: int = 0
    challenges_opened: int = 0
    bonuses_awarded: int = 0
    errors: List[dict] = field(default_factory=list)

    def to_dict(self):
        data = asdict(self)
        data['today'] = self.today.isoformat()
        return data


def run_nightly_rollup(today=None):
    today = resolve_today(today)
    if get_setting(LAST_ROLLUP_KEY) == today.isoformat():
        logger.info(f'Nightly rollup already ran for {today}, skipping')
        return RollupResult(today=today, skipped=True)

    result = RollupResult(today=today)
    logger.info(f'Nightly rollup starting for {today}')

    _auto_resolve_pending(result, today)

    user_ids = [row[0] for row in db.session.query(User.id).order_by(User.id).all()]
    result.users_processed = len(user_ids)

    for step, handler in (('decay', _decay_streak), ('rollover', _roll_over), ('bonus', _sync_bonuses)):
        for user_id in user_ids:
            try:
                handler(result, user_id, today)
            except Exception as e:
                db.session.rollback()
                logger.exception(f'Rollup step {step} failed for user {user_id}')
                result.errors.append({'user_id': user_id, 'step': step, 'error': str(e)})

    try:
        set_setting(LAST_ROLLUP_KEY, today.isoformat())
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    unbalanced = users_with_unbalanced_ledger()
    if unbalanced:
        logger.error(f'Trophy cache differs from ledger for users {unbalanced}')

    logger.info(
        f'Nightly rollup for {today} done: {result.users_processed} users, '
        f'{result.auto_approved} auto-approved, {result.streaks_decayed} streaks reset, '
        f'{result.challenges_closed} challenges closed, {result.bonuses_awarded} bonuses, '
        f'{len(result.errors)} errors'
    )
    return result


def _auto_resolve_pending(result, today):
    pending = Upload.query.filter(
        Upload.verification_status == PENDING,
        Upload.upload_date < today,
    ).order_by(Upload.upload_date, Upload.id).all()
    targets = [(u.id, u.user_id, u.challenge_id) for u in pending]

    for upload_id, user_id, challenge_id in targets:
        try:
            on_upload_verified(upload_id, user_id, challenge_id, APPROVED, verifier_id=None, today=today,
                               actor='auto-approval')
            result.auto_approved += 1
        except Conflict:
            logger.info(f'Upload {upload_id} was verified before auto-approval reached it')
        except Exception as e:
            logger.exception(f'Auto-approval failed for upload {upload_id}')
            result.errors.append({'user_id': user_id, 'step': 'auto_approve', 'error': str(e)})


def _decay_streak(result, user_id, today):
    update = recompute_streak(user_id, today, apply_decay=True)
    db.session.commit()
    if update.state.current_streak < update.previous_current:
        result.streaks_decayed += 1


def _roll_over(result, user_id, today):
    closed = roll_over_user(user_id, today)
    opened = None
    if closed and get_active_challenge(user_id) is None:
        streak = get_streak(user_id)
        if streak and streak.current_streak > 0:
            opened = open_challenge(user_id, today)
    db.session.commit()

    result.challenges_closed += len(closed)
    if opened is not None:
        result.challenges_opened += 1
    announce_closed(closed)


def _sync_bonuses(result, user_id, today):
    candidates = WeeklyChallenge.query.filter_by(user_id=user_id, status=COMPLETED).order_by(
        WeeklyChallenge.start_date
    ).all()
    for challenge in candidates:
        if has_weekly_bonus(challenge.id):
            continue
        tx = award_weekly_bonus(challenge)
        if tx is not None:
            result.bonuses_awarded += 1
            emit(trophies_changed, user_id, delta=tx.delta, reason=tx.reason,
                 balance=tx.user.trophies)
