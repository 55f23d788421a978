"""
Verification handler: the one place a verify/reject decision turns into
durable side effects.

Within a single commit it moves the upload to its terminal status,
re-derives the user's streak, recounts the challenge's completed days and
writes the trophy transaction. The status change is a conditional UPDATE
on the status we read, so of two concurrent callers only one can win;
the other gets a Conflict and writes nothing.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy import update

from challenges import get_challenge, recompute_completed_days
from clock import resolve_today, utc_now
from errors import Conflict, ValidationFailure
from events import emit, upload_verified, streak_milestone, trophies_changed
from models import db, Upload, PENDING, APPROVED, REJECTED, VERIFIED_UPLOAD, REJECTION_REVERSAL
from streaks import recompute_streak
from trophies import apply_trophy_delta, trophies_for_approval, upload_trophy_net
from uploads import get_upload

logger = logging.getLogger('streak_ledger.verification')

DECISIONS = (APPROVED, REJECTED)


@dataclass
class VerificationOutcome:
    upload_id: int
    user_id: int
    challenge_id: int
    previous_status: str
    status: str
    current_streak: int
    longest_streak: int
    completed_days: int
    trophy_delta: int
    trophies: int
    milestones: List[int]
    verifier_id: Optional[int] = None

    def to_dict(self):
        return {
            'upload_id': self.upload_id,
            'status': self.status,
            'previous_status': self.previous_status,
            'current_streak': self.current_streak,
            'longest_streak': self.longest_streak,
            'completed_days': self.completed_days,
            'trophy_delta': self.trophy_delta,
            'trophies': self.trophies,
        }


def on_upload_verified(upload_id, user_id, challenge_id, decision, verifier_id=None,
                       today=None, allow_reversal=False, actor=None):
    """Apply a verification decision atomically.

    Only pending uploads can be decided. With allow_reversal=True an
    approved upload may additionally be rejected, which claws back exactly
    the trophies it earned. Any other call on a decided upload is a Conflict.
    actor only labels the audit log line (e.g. 'auto-approval', 'admin boss').
    """
    if decision not in DECISIONS:
        raise ValidationFailure(f'Decision must be one of {", ".join(DECISIONS)}')
    today = resolve_today(today)

    upload = get_upload(upload_id)
    if upload.user_id != user_id or upload.challenge_id != challenge_id:
        raise ValidationFailure('Upload does not belong to this user and challenge')

    previous_status = upload.verification_status
    reversible = allow_reversal and previous_status == APPROVED and decision == REJECTED
    if previous_status != PENDING and not reversible:
        raise Conflict(f'Upload already {previous_status}', status=previous_status)

    try:
        result = db.session.execute(
            update(Upload)
            .where(Upload.id == upload_id, Upload.verification_status == previous_status)
            .values(verification_status=decision, verifier_id=verifier_id, verified_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise Conflict('Upload was verified by another request')
        db.session.refresh(upload)

        streak_update = recompute_streak(user_id, today)

        challenge = get_challenge(challenge_id, user_id)
        completed_days = recompute_completed_days(challenge)

        tx = None
        if decision == APPROVED:
            tx = apply_trophy_delta(user_id, trophies_for_approval(upload_id), VERIFIED_UPLOAD,
                                    upload_id=upload_id)
        elif previous_status == APPROVED:
            net = upload_trophy_net(upload_id)
            tx = apply_trophy_delta(user_id, -net, REJECTION_REVERSAL, upload_id=upload_id)

        trophies = upload.user.trophies or 0
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    outcome = VerificationOutcome(
        upload_id=upload_id,
        user_id=user_id,
        challenge_id=challenge_id,
        previous_status=previous_status,
        status=decision,
        current_streak=streak_update.state.current_streak,
        longest_streak=streak_update.state.longest_streak,
        completed_days=completed_days,
        trophy_delta=tx.delta if tx else 0,
        trophies=trophies,
        milestones=streak_update.milestones,
        verifier_id=verifier_id,
    )
    who = actor or (f'user {verifier_id}' if verifier_id else 'unknown actor')
    logger.info(f'Upload {upload_id} {previous_status} -> {decision} by {who}; '
                f'streak {outcome.current_streak}, trophies {outcome.trophy_delta:+d}')

    emit(upload_verified, user_id, upload_id=upload_id, status=decision, previous_status=previous_status)
    if tx is not None:
        emit(trophies_changed, user_id, delta=tx.delta, reason=tx.reason, balance=trophies)
    for milestone in outcome.milestones:
        emit(streak_milestone, user_id, milestone=milestone)
    return outcome
