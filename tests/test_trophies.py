from datetime import date

import pytest

import trophies

from errors import ValidationFailure, NotFound
from models import db, TrophyTransaction, ADMIN_SET, VERIFIED_UPLOAD, WEEKLY_BONUS, COMPLETED
from trophies import (
    apply_trophy_delta, admin_set_trophies, award_weekly_bonus, ledger_sum, get_trophy_total,
    trophies_for_approval, weekly_bonus_amount, users_with_unbalanced_ledger,
)


def test_approval_reward_is_fixed_per_upload():
    assert trophies_for_approval(7) == 26
    assert trophies_for_approval(13) == 32
    assert all(26 <= trophies_for_approval(n) <= 32 for n in range(1, 50))


@pytest.mark.parametrize('weeks,amount', [(1, 10), (3, 30), (7, 70), (12, 70)])
def test_weekly_bonus_scales_and_caps(weeks, amount):
    assert weekly_bonus_amount(weeks) == amount


def test_delta_writes_transaction_and_cache(make_user):
    user = make_user()

    tx = apply_trophy_delta(user.id, 30, VERIFIED_UPLOAD)
    db.session.commit()

    assert tx.delta == 30
    assert get_trophy_total(user.id) == 30 == ledger_sum(user.id)


def test_negative_delta_is_clamped_at_zero(make_user):
    user = make_user()
    apply_trophy_delta(user.id, 10, VERIFIED_UPLOAD)

    tx = apply_trophy_delta(user.id, -30, ADMIN_SET)
    db.session.commit()

    assert tx.delta == -10
    assert user.trophies == 0
    assert ledger_sum(user.id) == 0


def test_zero_delta_writes_nothing(make_user):
    user = make_user()

    assert apply_trophy_delta(user.id, 0, WEEKLY_BONUS) is None
    assert apply_trophy_delta(user.id, -5, ADMIN_SET) is None
    assert TrophyTransaction.query.count() == 0


def test_admin_set_moves_to_absolute_value(make_user):
    user = make_user()
    admin_set_trophies(user.id, 50)
    tx = admin_set_trophies(user.id, 20)
    db.session.commit()

    assert tx.delta == -30
    assert tx.reason == ADMIN_SET
    assert user.trophies == 20 == ledger_sum(user.id)


@pytest.mark.parametrize('value', [-1, 1.5, '10', True, None])
def test_admin_set_rejects_bad_values(make_user, value):
    user = make_user()
    with pytest.raises(ValidationFailure):
        admin_set_trophies(user.id, value)


def test_unknown_reason_and_user(make_user):
    user = make_user()
    with pytest.raises(ValidationFailure):
        apply_trophy_delta(user.id, 5, 'gift')
    with pytest.raises(NotFound):
        apply_trophy_delta(404, 5, VERIFIED_UPLOAD)


def test_unbalanced_ledger_is_detected(make_user):
    alice = make_user('alice')
    bob = make_user('bob')
    apply_trophy_delta(alice.id, 12, VERIFIED_UPLOAD)
    apply_trophy_delta(bob.id, 12, VERIFIED_UPLOAD)
    db.session.commit()
    assert users_with_unbalanced_ledger() == []

    bob.trophies = 999
    db.session.commit()
    assert users_with_unbalanced_ledger() == [bob.id]


def test_weekly_bonus_paid_once_when_check_is_stale(make_user, make_challenge, monkeypatch):
    user = make_user()
    challenge = make_challenge(user, date(2024, 1, 1))
    challenge.status = COMPLETED
    db.session.commit()

    # Both calls believe no bonus exists yet, as two overlapping rollups would
    monkeypatch.setattr(trophies, 'has_weekly_bonus', lambda challenge_id: False)

    first = award_weekly_bonus(challenge)
    second = award_weekly_bonus(challenge)

    assert first.delta == 10
    assert second is None
    assert TrophyTransaction.query.filter_by(reason=WEEKLY_BONUS).count() == 1
    assert user.trophies == 10 == ledger_sum(user.id)
