"""
In-app notifications fed by domain events.
Each notification is its own commit, after the accounting commit, so a
failure here can only lose a notification.
"""

import logging

from events import upload_verified, challenge_completed, streak_milestone, trophies_changed
from models import db, Notification, APPROVED, REJECTED, VERIFIED_UPLOAD, REJECTION_REVERSAL, WEEKLY_BONUS, ADMIN_SET

logger = logging.getLogger('streak_ledger.notifications')

TROPHY_MESSAGES = {
    VERIFIED_UPLOAD: 'Your upload was approved.',
    REJECTION_REVERSAL: 'An approved upload was rejected after review.',
    WEEKLY_BONUS: 'Perfect week bonus awarded.',
    ADMIN_SET: 'Your trophies were adjusted by an admin.',
}


def create_notification(user_id, notif_type, title, message):
    """Create a notification for a user."""
    notification = Notification(
        user_id=user_id,
        type=notif_type,
        title=title,
        message=message,
    )
    db.session.add(notification)
    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return notification


def on_upload_verified(user_id, upload_id, status, previous_status, **_):
    if status == APPROVED:
        create_notification(user_id, 'upload_approved', 'Upload approved',
                            'Your proof photo was verified. Keep the streak going.')
    elif status == REJECTED:
        create_notification(user_id, 'upload_rejected', 'Upload rejected',
                            'Your proof photo did not pass verification.')


def on_trophies_changed(user_id, delta, reason, balance, **_):
    verb = 'earned' if delta > 0 else 'lost'
    create_notification(user_id, 'trophy', f'{delta:+d} Trophies',
                        f'You {verb} {abs(delta)} trophies. {TROPHY_MESSAGES.get(reason, "")}'.strip())


def on_challenge_completed(user_id, challenge_id, completed_days, **_):
    create_notification(user_id, 'challenge_completed', 'Week complete',
                        f'You satisfied {completed_days} of 7 days this week.')


def on_streak_milestone(user_id, milestone, **_):
    create_notification(user_id, 'streak_milestone', f'{milestone}-day streak',
                        f'You reached a {milestone}-day streak.')


def register_notification_handlers():
    """Subscribe the notification writers to the domain events."""
    upload_verified.connect(on_upload_verified, weak=False)
    trophies_changed.connect(on_trophies_changed, weak=False)
    challenge_completed.connect(on_challenge_completed, weak=False)
    streak_milestone.connect(on_streak_milestone, weak=False)
    logger.info('Notification handlers registered')
