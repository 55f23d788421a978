from datetime import date, timedelta

import pytest

from errors import Conflict, NotFound, ValidationFailure
from models import Upload, PENDING, APPROVED
from uploads import create_upload, day_is_covered, pending_uploads, satisfied_dates

START = date(2024, 1, 1)


def test_create_upload_is_pending(make_user, make_challenge):
    user = make_user()
    challenge = make_challenge(user, START)

    upload = create_upload(user.id, challenge.id, '2024-01-02', 'https://img.example/a.jpg')

    assert upload.verification_status == PENDING
    assert upload.upload_date == date(2024, 1, 2)
    assert day_is_covered(user.id, date(2024, 1, 2))
    assert pending_uploads() == [upload]


def test_one_upload_per_day(make_user, make_challenge):
    user = make_user()
    challenge = make_challenge(user, START)
    create_upload(user.id, challenge.id, START, 'https://img.example/a.jpg')

    with pytest.raises(Conflict):
        create_upload(user.id, challenge.id, START, 'https://img.example/b.jpg')

    assert Upload.query.count() == 1


def test_rest_day_blocks_upload(make_user, make_challenge, make_rest_day):
    user = make_user()
    challenge = make_challenge(user, START)
    make_rest_day(user, challenge, START)

    with pytest.raises(Conflict):
        create_upload(user.id, challenge.id, START, 'https://img.example/a.jpg')


@pytest.mark.parametrize('upload_date,reference', [
    (START + timedelta(days=7), 'https://img.example/a.jpg'),
    ('not-a-date', 'https://img.example/a.jpg'),
    (START, ''),
    (START, None),
])
def test_create_upload_validation(make_user, make_challenge, upload_date, reference):
    user = make_user()
    challenge = make_challenge(user, START)

    with pytest.raises(ValidationFailure):
        create_upload(user.id, challenge.id, upload_date, reference)


def test_create_upload_on_missing_challenge(make_user):
    user = make_user()
    with pytest.raises(NotFound):
        create_upload(user.id, 42, START, 'https://img.example/a.jpg')


def test_satisfied_dates_merge_approved_and_rest(make_user, make_challenge, make_upload, make_rest_day):
    user = make_user()
    challenge = make_challenge(user, START)
    make_upload(user, challenge, START, status=APPROVED)
    make_upload(user, challenge, START + timedelta(days=1))
    make_rest_day(user, challenge, START + timedelta(days=2))

    assert satisfied_dates(user.id) == [START, START + timedelta(days=2)]
    assert satisfied_dates(user.id, start=START + timedelta(days=1)) == [START + timedelta(days=2)]
