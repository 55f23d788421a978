import os

os.environ['SECRET_KEY'] = 'test-secret-key'
os.environ['DATABASE_URL'] = 'sqlite://'
os.environ['RATELIMIT_ENABLED'] = '0'
os.environ['APP_TIMEZONE'] = 'Europe/Belgrade'
os.environ['CRON_SECRET'] = 'cron-test-secret'
os.environ['ADMIN_USERNAMES'] = 'boss'
for _var in ('CLOUDINARY_URL', 'CLOUDINARY_CLOUD_NAME', 'CLOUDINARY_API_KEY', 'CLOUDINARY_API_SECRET'):
    os.environ.pop(_var, None)

import pytest

from app import app as flask_app
from challenges import open_challenge
from models import db, User, Upload, RestDay, PENDING, APPROVED
from verification import on_upload_verified


@pytest.fixture
def app():
    flask_app.config.update(TESTING=True, WTF_CSRF_ENABLED=False)
    with flask_app.app_context():
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(app):
    def _make_user(username='alice'):
        user = User(username=username, display_name=username.title(), trophies=0)
        db.session.add(user)
        db.session.commit()
        return user
    return _make_user


@pytest.fixture
def make_challenge(app):
    def _make_challenge(user, start):
        challenge = open_challenge(user.id, start)
        db.session.commit()
        return challenge
    return _make_challenge


@pytest.fixture
def make_upload(app):
    """Insert an upload row directly, bypassing verification side effects."""
    def _make_upload(user, challenge, day, status=PENDING):
        upload = Upload(
            user_id=user.id,
            challenge_id=challenge.id,
            upload_date=day,
            photo_reference=f'https://img.example/{user.id}/{day.isoformat()}.jpg',
            verification_status=status,
        )
        db.session.add(upload)
        db.session.commit()
        return upload
    return _make_upload


@pytest.fixture
def make_rest_day(app):
    def _make_rest_day(user, challenge, day):
        rest = RestDay(user_id=user.id, challenge_id=challenge.id, rest_date=day)
        db.session.add(rest)
        db.session.commit()
        return rest
    return _make_rest_day


@pytest.fixture
def approve(app):
    """Approve an upload through the verification handler, dated on its own day."""
    def _approve(upload, today=None):
        return on_upload_verified(upload.id, upload.user_id, upload.challenge_id, APPROVED,
                                  verifier_id=None, today=today or upload.upload_date)
    return _approve

