"""
Trophy ledger.
Every change is an appended TrophyTransaction and the same delta applied
to User.trophies, in one flush. Nothing else writes User.trophies.
"""

import logging

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from errors import ValidationFailure
from models import (
    db, User, TrophyTransaction, WeeklyChallenge,
    TROPHY_REASONS, WEEKLY_BONUS, ADMIN_SET, COMPLETED,
)
from uploads import get_user

logger = logging.getLogger('streak_ledger.trophies')

# Approval reward is 26..32, fixed per upload so it can't be re-rolled
BASE_TROPHY_MIN = 26
BASE_TROPHY_RANGE = 7

WEEKLY_BONUS_PER_WEEK = 10
WEEKLY_BONUS_CAP = 70


def trophies_for_approval(upload_id):
    return BASE_TROPHY_MIN + (abs(upload_id) % BASE_TROPHY_RANGE)


def weekly_bonus_amount(consecutive_completed_weeks):
    return min(consecutive_completed_weeks * WEEKLY_BONUS_PER_WEEK, WEEKLY_BONUS_CAP)


def apply_trophy_delta(user_id, delta, reason, upload_id=None, challenge_id=None):
    """Append a transaction and move the cached balance by the same amount.

    Negative deltas are clamped so the balance stops at zero; the clamped
    value is what gets recorded. Returns the transaction, or None when the
    applied delta is zero. Does not commit.
    """
    if reason not in TROPHY_REASONS:
        raise ValidationFailure(f'Unknown trophy reason: {reason}')
    if isinstance(delta, bool) or not isinstance(delta, int):
        raise ValidationFailure('Trophy delta must be an integer')

    user = get_user(user_id)
    balance = user.trophies or 0
    applied = delta
    if delta < 0 and balance + delta < 0:
        applied = -balance
    if applied == 0:
        return None

    tx = TrophyTransaction(
        user_id=user_id,
        upload_id=upload_id,
        challenge_id=challenge_id,
        delta=applied,
        reason=reason,
    )
    db.session.add(tx)
    user.trophies = balance + applied
    db.session.flush()

    logger.info(f'Trophies for user {user_id}: {applied:+d} ({reason}) -> {user.trophies}')
    return tx


def get_trophy_total(user_id):
    return get_user(user_id).trophies or 0


def ledger_sum(user_id):
    return db.session.query(func.coalesce(func.sum(TrophyTransaction.delta), 0)).filter(
        TrophyTransaction.user_id == user_id
    ).scalar()


def upload_trophy_net(upload_id):
    return db.session.query(func.coalesce(func.sum(TrophyTransaction.delta), 0)).filter(
        TrophyTransaction.upload_id == upload_id
    ).scalar()


def admin_set_trophies(user_id, absolute_value):
    """Move the balance to an exact value through an admin_set transaction."""
    if isinstance(absolute_value, bool) or not isinstance(absolute_value, int) or absolute_value < 0:
        raise ValidationFailure('Trophies must be a non-negative integer')
    delta = absolute_value - get_trophy_total(user_id)
    return apply_trophy_delta(user_id, delta, ADMIN_SET)


def has_weekly_bonus(challenge_id):
    return db.session.query(TrophyTransaction.id).filter_by(
        challenge_id=challenge_id, reason=WEEKLY_BONUS
    ).first() is not None


def consecutive_completed_weeks(user_id, up_to_challenge):
    """Completed challenges in a row ending at up_to_challenge (inclusive)."""
    challenges = WeeklyChallenge.query.filter(
        WeeklyChallenge.user_id == user_id,
        WeeklyChallenge.start_date <= up_to_challenge.start_date,
    ).order_by(WeeklyChallenge.start_date.desc()).all()

    count = 0
    for challenge in challenges:
        if challenge.status != COMPLETED:
            break
        count += 1
    return count


def sync_weekly_bonus(challenge):
    """Award the bonus for a completed challenge exactly once. Does not commit."""
    if challenge.status != COMPLETED or has_weekly_bonus(challenge.id):
        return None
    weeks = consecutive_completed_weeks(challenge.user_id, challenge)
    amount = weekly_bonus_amount(weeks)
    tx = apply_trophy_delta(challenge.user_id, amount, WEEKLY_BONUS, challenge_id=challenge.id)
    logger.info(f'Weekly bonus for challenge {challenge.id} (user {challenge.user_id}): '
                f'+{amount} for {weeks} consecutive week(s)')
    return tx


def users_with_unbalanced_ledger():
    """Users whose cached balance differs from their transaction sum. Should always be empty."""
    sums = db.session.query(
        TrophyTransaction.user_id, func.sum(TrophyTransaction.delta).label('total')
    ).group_by(TrophyTransaction.user_id).subquery()
    rows = db.session.query(User.id).outerjoin(sums, sums.c.user_id == User.id).filter(
        func.coalesce(sums.c.total, 0) != func.coalesce(User.trophies, 0)
    ).all()
    return [row[0] for row in rows]


def award_weekly_bonus(challenge):
    """Pay and commit the weekly bonus for one challenge.

    A concurrent run that already inserted the bonus trips the unique
    index; that is a skip, not an error. Returns the transaction or None.
    """
    challenge_id = challenge.id
    try:
        tx = sync_weekly_bonus(challenge)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        logger.info(f'Weekly bonus for challenge {challenge_id} was already paid, skipping')
        return None
    except Exception:
        db.session.rollback()
        raise
    return tx
