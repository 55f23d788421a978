from datetime import date, timedelta

import pytest

from challenges import (
    evaluate_rollover, get_or_create_active_challenge, use_rest_day, challenge_progress,
    DEFAULT_REST_DAYS,
)
from errors import RestDayUnavailable, ValidationFailure, NotFound
from models import db, WeeklyChallenge, RestDay, APPROVED, REJECTED, ACTIVE, COMPLETED, FAILED
from streaks import get_streak

START = date(2024, 1, 1)


def _day(n):
    return START + timedelta(days=n)


def test_get_or_create_opens_one_window(make_user):
    user = make_user()
    challenge = get_or_create_active_challenge(user.id, _day(0))

    assert challenge.start_date == _day(0)
    assert challenge.end_date == _day(6)
    assert challenge.status == ACTIVE
    assert challenge.rest_days_available == DEFAULT_REST_DAYS
    assert get_or_create_active_challenge(user.id, _day(3)).id == challenge.id
    assert WeeklyChallenge.query.count() == 1


def test_get_or_create_rolls_over_elapsed_window(make_user):
    user = make_user()
    first = get_or_create_active_challenge(user.id, _day(0))

    second = get_or_create_active_challenge(user.id, _day(9))

    assert second.id != first.id
    assert second.start_date == _day(9)
    assert db.session.get(WeeklyChallenge, first.id).status == FAILED


def test_get_or_create_unknown_user(app):
    with pytest.raises(NotFound):
        get_or_create_active_challenge(404, _day(0))


def test_rest_day_spends_allowance_and_counts(make_user, make_challenge):
    user = make_user()
    challenge = make_challenge(user, START)

    use_rest_day(user.id, challenge.id, _day(2), today=_day(2))

    assert challenge.rest_days_available == DEFAULT_REST_DAYS - 1
    assert challenge.completed_days == 1
    assert get_streak(user.id).current_streak == 1


def test_rest_day_accepts_past_day_in_window(make_user, make_challenge):
    user = make_user()
    challenge = make_challenge(user, START)

    rest = use_rest_day(user.id, challenge.id, '2024-01-02', today=_day(3))

    assert rest.rest_date == _day(1)


def test_rest_day_allowance_runs_out(make_user, make_challenge):
    user = make_user()
    challenge = make_challenge(user, START)
    for n in range(DEFAULT_REST_DAYS):
        use_rest_day(user.id, challenge.id, _day(n), today=_day(n))

    with pytest.raises(RestDayUnavailable):
        use_rest_day(user.id, challenge.id, _day(3), today=_day(3))

    assert challenge.rest_days_available == 0
    assert RestDay.query.count() == DEFAULT_REST_DAYS


def test_rest_day_conflicts_with_existing_upload(make_user, make_challenge, make_upload):
    user = make_user()
    challenge = make_challenge(user, START)
    make_upload(user, challenge, _day(1), status=REJECTED)

    with pytest.raises(RestDayUnavailable):
        use_rest_day(user.id, challenge.id, _day(1), today=_day(1))

    assert challenge.rest_days_available == DEFAULT_REST_DAYS


def test_rest_day_twice_for_same_date(make_user, make_challenge):
    user = make_user()
    challenge = make_challenge(user, START)
    use_rest_day(user.id, challenge.id, _day(1), today=_day(1))

    with pytest.raises(RestDayUnavailable):
        use_rest_day(user.id, challenge.id, _day(1), today=_day(1))

    assert challenge.rest_days_available == DEFAULT_REST_DAYS - 1


@pytest.mark.parametrize('rest_date,today', [
    (_day(4), _day(2)),        # booked in advance
    (_day(8), _day(8)),        # outside the window
    ('2024-13-01', _day(2)),   # malformed
])
def test_rest_day_validation(make_user, make_challenge, rest_date, today):
    user = make_user()
    challenge = make_challenge(user, START)

    with pytest.raises(ValidationFailure):
        use_rest_day(user.id, challenge.id, rest_date, today=today)


def test_rest_day_on_someone_elses_challenge(make_user, make_challenge):
    alice = make_user('alice')
    bob = make_user('bob')
    challenge = make_challenge(alice, START)

    with pytest.raises(NotFound):
        use_rest_day(bob.id, challenge.id, _day(0), today=_day(0))


def test_seven_satisfied_days_complete_the_week(make_user, make_challenge, make_upload, make_rest_day):
    user = make_user()
    challenge = make_challenge(user, START)
    for n in range(5):
        make_upload(user, challenge, _day(n), status=APPROVED)
    make_rest_day(user, challenge, _day(5))
    make_rest_day(user, challenge, _day(6))

    assert evaluate_rollover(challenge, _day(7)) is True
    db.session.commit()

    assert challenge.status == COMPLETED
    assert challenge.completed_days == 7
    assert challenge.closed_at is not None


def test_six_days_fail_the_week(make_user, make_challenge, make_upload):
    user = make_user()
    challenge = make_challenge(user, START)
    for n in range(6):
        make_upload(user, challenge, _day(n), status=APPROVED)
    make_upload(user, challenge, _day(6))  # still pending at rollover

    assert evaluate_rollover(challenge, _day(7)) is True

    assert challenge.status == FAILED
    assert challenge.completed_days == 6


def test_rollover_waits_for_window_end_and_runs_once(make_user, make_challenge):
    user = make_user()
    challenge = make_challenge(user, START)

    assert evaluate_rollover(challenge, _day(6)) is False
    assert evaluate_rollover(challenge, _day(7)) is True
    assert evaluate_rollover(challenge, _day(8)) is False
    assert challenge.status == FAILED


def test_progress_lists_each_day(make_user, make_challenge, make_upload, make_rest_day):
    user = make_user()
    challenge = make_challenge(user, START)
    make_upload(user, challenge, _day(0), status=APPROVED)
    make_upload(user, challenge, _day(1))
    make_upload(user, challenge, _day(2), status=REJECTED)
    make_rest_day(user, challenge, _day(3))

    progress = challenge_progress(challenge)

    assert len(progress['days']) == 7
    assert progress['pending_days'] == 1
    assert progress['rejected_days'] == 1
    assert progress['days'][0]['verification_status'] == APPROVED
    assert progress['days'][3]['is_rest_day'] is True
    assert progress['days'][6]['uploaded'] is False
