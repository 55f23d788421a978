"""
Upload and rest-day ledgers: the source of truth for every derived value.
Creation is the only write here; status changes belong to verification.py.
"""

import logging

from sqlalchemy.exc import IntegrityError

from clock import parse_day
from errors import Conflict, NotFound, ValidationFailure
from models import db, Upload, RestDay, WeeklyChallenge, User, PENDING, APPROVED, ACTIVE

logger = logging.getLogger('streak_ledger.uploads')


def create_upload(user_id, challenge_id, upload_date, photo_reference):
    """Record a proof-of-activity photo for a day. One per user per calendar day."""
    upload_date = parse_day(upload_date, 'upload_date')
    if not photo_reference or not isinstance(photo_reference, str):
        raise ValidationFailure('photo_reference is required')

    challenge = db.session.get(WeeklyChallenge, challenge_id)
    if not challenge or challenge.user_id != user_id:
        raise NotFound('Challenge not found')
    if challenge.status != ACTIVE or not challenge.covers(upload_date):
        raise ValidationFailure('Upload date is outside the active challenge window')

    try:
        if day_is_covered(user_id, upload_date):
            raise Conflict('Upload or rest day already exists for this date')

        upload = Upload(
            user_id=user_id,
            challenge_id=challenge_id,
            upload_date=upload_date,
            photo_reference=photo_reference,
            verification_status=PENDING,
        )
        db.session.add(upload)
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise Conflict('Upload already exists for this date')
    except Exception:
        db.session.rollback()
        raise

    logger.info(f'Upload {upload.id} created for user {user_id} on {upload_date}')
    return upload


def get_upload(upload_id):
    upload = db.session.get(Upload, upload_id)
    if not upload:
        raise NotFound('Upload not found')
    return upload


def get_user(user_id):
    user = db.session.get(User, user_id)
    if not user:
        raise NotFound('User not found')
    return user


def day_is_covered(user_id, day):
    """True if the user already has an upload (any status) or a rest day on that date."""
    has_upload = db.session.query(Upload.id).filter_by(user_id=user_id, upload_date=day).first()
    if has_upload:
        return True
    return db.session.query(RestDay.id).filter_by(user_id=user_id, rest_date=day).first() is not None


def pending_uploads():
    return Upload.query.filter_by(verification_status=PENDING).order_by(Upload.created_at, Upload.id).all()


def satisfied_dates(user_id, start=None, end=None):
    """Sorted distinct dates with an approved upload or a rest day."""
    uploads = db.session.query(Upload.upload_date).filter(
        Upload.user_id == user_id,
        Upload.verification_status == APPROVED,
    )
    rests = db.session.query(RestDay.rest_date).filter(RestDay.user_id == user_id)
    if start is not None:
        uploads = uploads.filter(Upload.upload_date >= start)
        rests = rests.filter(RestDay.rest_date >= start)
    if end is not None:
        uploads = uploads.filter(Upload.upload_date <= end)
        rests = rests.filter(RestDay.rest_date <= end)

    days = {row[0] for row in uploads.all()}
    days.update(row[0] for row in rests.all())
    return sorted(days)
