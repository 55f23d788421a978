"""
Weekly challenge tracker.

A challenge is a 7-day window opened on the day the user first needs one.
completed_days is always recounted from the ledgers, never adjusted by
hand. Rollover moves an elapsed window to completed or failed once; the
weekly bonus for completed windows is paid by the nightly rollup.
"""

import logging
from datetime import timedelta

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from clock import parse_day, resolve_today, utc_now
from errors import NotFound, ValidationFailure, RestDayUnavailable
from events import emit, streak_milestone, challenge_completed
from models import db, WeeklyChallenge, RestDay, Upload, ACTIVE, COMPLETED, FAILED, PENDING, APPROVED, REJECTED
from streaks import recompute_streak
from uploads import get_user, day_is_covered, satisfied_dates

logger = logging.getLogger('streak_ledger.challenges')

WEEK_LENGTH_DAYS = 7
REQUIRED_DAYS = 7
DEFAULT_REST_DAYS = 3


def get_challenge(challenge_id, user_id=None):
    challenge = db.session.get(WeeklyChallenge, challenge_id)
    if not challenge or (user_id is not None and challenge.user_id != user_id):
        raise NotFound('Challenge not found')
    return challenge


def get_active_challenge(user_id):
    """The user's open challenge, if any. Read-only."""
    return WeeklyChallenge.query.filter_by(user_id=user_id, status=ACTIVE).order_by(
        WeeklyChallenge.start_date.desc()
    ).first()


def open_challenge(user_id, start_date):
    challenge = WeeklyChallenge(
        user_id=user_id,
        start_date=start_date,
        end_date=start_date + timedelta(days=WEEK_LENGTH_DAYS - 1),
        completed_days=0,
        rest_days_available=DEFAULT_REST_DAYS,
        status=ACTIVE,
    )
    db.session.add(challenge)
    db.session.flush()
    recompute_completed_days(challenge)
    logger.info(f'Opened challenge {challenge.id} for user {user_id}: '
                f'{challenge.start_date}..{challenge.end_date}')
    return challenge


def recompute_completed_days(challenge):
    """Distinct approved-upload and rest-day dates inside the window."""
    days = satisfied_dates(challenge.user_id, challenge.start_date, challenge.end_date)
    challenge.completed_days = len(days)
    db.session.flush()
    return challenge.completed_days


def evaluate_rollover(challenge, today=None):
    """Close an elapsed active challenge. Returns True only on the transition.

    Terminal challenges are never re-evaluated. Uploads still pending at
    this point do not count. Does not commit.
    """
    today = resolve_today(today)
    if challenge.status != ACTIVE or challenge.end_date >= today:
        return False

    recompute_completed_days(challenge)
    challenge.status = COMPLETED if challenge.completed_days >= REQUIRED_DAYS else FAILED
    challenge.closed_at = utc_now()
    db.session.flush()
    logger.info(f'Challenge {challenge.id} for user {challenge.user_id} closed as '
                f'{challenge.status} ({challenge.completed_days}/{REQUIRED_DAYS})')
    return True


def roll_over_user(user_id, today):
    """Close every elapsed active challenge of a user. Returns the closed ones. Does not commit."""
    closed = []
    actives = WeeklyChallenge.query.filter_by(user_id=user_id, status=ACTIVE).order_by(
        WeeklyChallenge.start_date
    ).all()
    for challenge in actives:
        if evaluate_rollover(challenge, today):
            closed.append(challenge)
    return closed


def announce_closed(closed):
    for challenge in closed:
        if challenge.status == COMPLETED:
            emit(challenge_completed, challenge.user_id, challenge_id=challenge.id,
                 completed_days=challenge.completed_days)


def get_or_create_active_challenge(user_id, today=None):
    """Return the challenge covering today, rolling over and opening one as needed."""
    today = resolve_today(today)
    get_user(user_id)

    try:
        closed = roll_over_user(user_id, today)
        challenge = get_active_challenge(user_id)
        if challenge is None:
            challenge = open_challenge(user_id, today)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    announce_closed(closed)
    return challenge


def use_rest_day(user_id, challenge_id, rest_date, today=None):
    """Spend one rest-day unit to mark a date in the window as satisfied."""
    rest_date = parse_day(rest_date, 'rest_date')
    today = resolve_today(today)
    challenge = get_challenge(challenge_id, user_id)

    if challenge.status != ACTIVE:
        raise ValidationFailure('This challenge has already ended')
    if not challenge.covers(rest_date):
        raise ValidationFailure('Rest date is outside the challenge window')
    if rest_date > today:
        raise ValidationFailure('Rest days cannot be booked in advance')

    try:
        if day_is_covered(user_id, rest_date):
            raise RestDayUnavailable('Rest day already used or upload exists for this date')

        result = db.session.execute(
            update(WeeklyChallenge)
            .where(WeeklyChallenge.id == challenge.id, WeeklyChallenge.rest_days_available > 0)
            .values(rest_days_available=WeeklyChallenge.rest_days_available - 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise RestDayUnavailable('No rest days left this week')

        rest_day = RestDay(user_id=user_id, challenge_id=challenge.id, rest_date=rest_date)
        db.session.add(rest_day)
        db.session.flush()
        db.session.refresh(challenge)

        recompute_completed_days(challenge)
        streak_update = recompute_streak(user_id, today)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise RestDayUnavailable('Rest day already used or upload exists for this date')
    except Exception:
        db.session.rollback()
        raise

    logger.info(f'User {user_id} used a rest day on {rest_date} '
                f'({challenge.rest_days_available} left in challenge {challenge.id})')
    for milestone in streak_update.milestones:
        emit(streak_milestone, user_id, milestone=milestone)
    return rest_day


def challenge_progress(challenge):
    """Day-by-day view of a window for the dashboard."""
    uploads = {u.upload_date: u for u in Upload.query.filter(
        Upload.user_id == challenge.user_id,
        Upload.upload_date >= challenge.start_date,
        Upload.upload_date <= challenge.end_date,
    ).all()}
    rest_dates = {r.rest_date for r in RestDay.query.filter(
        RestDay.user_id == challenge.user_id,
        RestDay.rest_date >= challenge.start_date,
        RestDay.rest_date <= challenge.end_date,
    ).all()}

    days = []
    counts = {PENDING: 0, APPROVED: 0, REJECTED: 0}
    for offset in range(WEEK_LENGTH_DAYS):
        day = challenge.start_date + timedelta(days=offset)
        upload = uploads.get(day)
        if upload:
            counts[upload.verification_status] += 1
        days.append({
            'date': day.isoformat(),
            'uploaded': upload is not None,
            'verification_status': upload.verification_status if upload else None,
            'photo_reference': upload.photo_reference if upload else None,
            'is_rest_day': day in rest_dates,
        })

    return {
        'total_days': WEEK_LENGTH_DAYS,
        'required_days': REQUIRED_DAYS,
        'completed_days': challenge.completed_days,
        'pending_days': counts[PENDING],
        'rejected_days': counts[REJECTED],
        'days': days,
    }
