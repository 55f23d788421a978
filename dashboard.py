"""Read-only summary for the UI."""

from challenges import get_active_challenge, challenge_progress
from clock import resolve_today
from streaks import get_streak
from uploads import get_user


def get_user_dashboard_summary(user_id, today=None):
    """Streak, trophies and active challenge progress. Never writes."""
    today = resolve_today(today)
    user = get_user(user_id)
    streak = get_streak(user_id)
    challenge = get_active_challenge(user_id)

    summary = {
        'user_id': user.id,
        'today': today.isoformat(),
        'current_streak': streak.current_streak if streak else 0,
        'longest_streak': streak.longest_streak if streak else 0,
        'last_activity_date': (
            streak.last_activity_date.isoformat() if streak and streak.last_activity_date else None
        ),
        'trophies': user.trophies or 0,
        'challenge': None,
    }

    if challenge:
        progress = challenge_progress(challenge)
        summary['challenge'] = {
            'id': challenge.id,
            'start_date': challenge.start_date.isoformat(),
            'end_date': challenge.end_date.isoformat(),
            'status': challenge.status,
            'completed_days': challenge.completed_days,
            'rest_days_available': challenge.rest_days_available,
            'covers_today': challenge.covers(today),
            'progress': progress,
        }
    return summary
