"""
SQLAlchemy Models for the streak ledger
Uploads and rest days are the source of truth; streaks, weekly challenges
and trophy balances are derived from them.
"""

from flask_sqlalchemy import SQLAlchemy
from datetime import datetime, timezone

db = SQLAlchemy()


# Upload verification states
PENDING = 'pending'
APPROVED = 'approved'
REJECTED = 'rejected'
UPLOAD_STATUSES = (PENDING, APPROVED, REJECTED)

# Weekly challenge states
ACTIVE = 'active'
COMPLETED = 'completed'
FAILED = 'failed'

# Trophy transaction reasons
VERIFIED_UPLOAD = 'verified_upload'
REJECTION_REVERSAL = 'rejection_reversal'
WEEKLY_BONUS = 'weekly_bonus'
ADMIN_SET = 'admin_set'
TROPHY_REASONS = (VERIFIED_UPLOAD, REJECTION_REVERSAL, WEEKLY_BONUS, ADMIN_SET)

# AppSetting key holding the calendar day of the last completed nightly rollup
LAST_ROLLUP_KEY = 'last_rollup_date'


class User(db.Model):
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False, index=True)
    display_name = db.Column(db.String(120))
    trophies = db.Column(db.Integer, default=0, nullable=False)  # Cached sum of trophy_transactions
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    # Relationships
    uploads = db.relationship('Upload', back_populates='user', foreign_keys='Upload.user_id',
                              cascade='all, delete-orphan')
    rest_days = db.relationship('RestDay', back_populates='user', cascade='all, delete-orphan')
    streak = db.relationship('Streak', back_populates='user', uselist=False, cascade='all, delete-orphan')
    challenges = db.relationship('WeeklyChallenge', back_populates='user', cascade='all, delete-orphan')
    trophy_transactions = db.relationship('TrophyTransaction', back_populates='user', cascade='all, delete-orphan')
    notifications = db.relationship('Notification', back_populates='user', cascade='all, delete-orphan')

    def __repr__(self):
        return f'<User {self.username}>'


class WeeklyChallenge(db.Model):
    __tablename__ = 'weekly_challenges'
    __table_args__ = (
        db.Index('idx_challenges_user_status', 'user_id', 'status'),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    start_date = db.Column(db.Date, nullable=False)
    end_date = db.Column(db.Date, nullable=False)
    completed_days = db.Column(db.Integer, default=0, nullable=False)
    rest_days_available = db.Column(db.Integer, default=3, nullable=False)
    status = db.Column(db.String(20), default=ACTIVE, nullable=False)
    closed_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    # Relationships
    user = db.relationship('User', back_populates='challenges')
    uploads = db.relationship('Upload', back_populates='challenge')
    rest_days = db.relationship('RestDay', back_populates='challenge')

    def covers(self, day):
        return self.start_date <= day <= self.end_date

    def __repr__(self):
        return f'<WeeklyChallenge user={self.user_id} {self.start_date}..{self.end_date} {self.status}>'


class Upload(db.Model):
    __tablename__ = 'uploads'
    __table_args__ = (
        db.UniqueConstraint('user_id', 'upload_date', name='uq_upload_daily'),
        db.Index('idx_uploads_status', 'verification_status'),
        db.Index('idx_uploads_challenge', 'challenge_id'),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    challenge_id = db.Column(db.Integer, db.ForeignKey('weekly_challenges.id'), nullable=False)
    upload_date = db.Column(db.Date, nullable=False)
    photo_reference = db.Column(db.String(512), nullable=False)  # Cloudinary URL or storage key
    verification_status = db.Column(db.String(20), default=PENDING, nullable=False)
    verifier_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)  # None when auto-approved
    verified_at = db.Column(db.DateTime, nullable=True)
    metadata_json = db.Column(db.Text)  # Enrichment only, never read by accounting
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    # Relationships
    user = db.relationship('User', back_populates='uploads', foreign_keys=[user_id])
    verifier = db.relationship('User', foreign_keys=[verifier_id])
    challenge = db.relationship('WeeklyChallenge', back_populates='uploads')

    def __repr__(self):
        return f'<Upload user={self.user_id} date={self.upload_date} {self.verification_status}>'


class RestDay(db.Model):
    __tablename__ = 'rest_days'
    __table_args__ = (
        db.UniqueConstraint('user_id', 'rest_date', name='uq_rest_day_daily'),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    challenge_id = db.Column(db.Integer, db.ForeignKey('weekly_challenges.id'), nullable=False)
    rest_date = db.Column(db.Date, nullable=False)
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    # Relationships
    user = db.relationship('User', back_populates='rest_days')
    challenge = db.relationship('WeeklyChallenge', back_populates='rest_days')

    def __repr__(self):
        return f'<RestDay user={self.user_id} date={self.rest_date}>'


class Streak(db.Model):
    __tablename__ = 'streaks'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), unique=True, nullable=False)
    current_streak = db.Column(db.Integer, default=0, nullable=False)
    longest_streak = db.Column(db.Integer, default=0, nullable=False)
    last_activity_date = db.Column(db.Date, nullable=True)
    # Admin floor; admin_baseline_streak of 0 (or NULL) means no floor on the current streak
    admin_baseline_date = db.Column(db.Date, nullable=True)
    admin_baseline_streak = db.Column(db.Integer, nullable=True)
    admin_baseline_longest = db.Column(db.Integer, nullable=True)
    updated_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    # Relationships
    user = db.relationship('User', back_populates='streak')

    @property
    def has_baseline(self):
        return bool(self.admin_baseline_streak) and self.admin_baseline_date is not None

    def __repr__(self):
        return f'<Streak user={self.user_id} current={self.current_streak} longest={self.longest_streak}>'


class TrophyTransaction(db.Model):
    __tablename__ = 'trophy_transactions'
    __table_args__ = (
        db.Index('idx_trophy_tx_user', 'user_id'),
        db.Index('idx_trophy_tx_upload', 'upload_id'),
        db.Index('idx_trophy_tx_challenge_reason', 'challenge_id', 'reason'),
        # At most one weekly bonus per challenge, even across overlapping rollups
        db.Index('uq_trophy_tx_weekly_bonus', 'challenge_id', unique=True,
                 sqlite_where=db.text("reason = 'weekly_bonus'"),
                 postgresql_where=db.text("reason = 'weekly_bonus'")),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    upload_id = db.Column(db.Integer, db.ForeignKey('uploads.id'), nullable=True)
    challenge_id = db.Column(db.Integer, db.ForeignKey('weekly_challenges.id'), nullable=True)
    delta = db.Column(db.Integer, nullable=False)
    reason = db.Column(db.String(32), nullable=False)
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    # Relationships
    user = db.relationship('User', back_populates='trophy_transactions')

    def __repr__(self):
        return f'<TrophyTransaction user={self.user_id} {self.delta:+d} {self.reason}>'


class Notification(db.Model):
    __tablename__ = 'notifications'
    __table_args__ = (
        db.Index('idx_notifications_user_read', 'user_id', 'is_read'),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False)
    type = db.Column(db.String(50), nullable=False)
    title = db.Column(db.String(200), nullable=False)
    message = db.Column(db.Text)
    is_read = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    # Relationships
    user = db.relationship('User', back_populates='notifications')


class AppSetting(db.Model):
    __tablename__ = 'app_settings'

    key = db.Column(db.String(64), primary_key=True)
    value = db.Column(db.String(255))
    updated_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc),
                           onupdate=lambda: datetime.now(timezone.utc))

    def __repr__(self):
        return f'<AppSetting {self.key}={self.value}>'


def get_setting(key, default=None):
    setting = db.session.get(AppSetting, key)
    return setting.value if setting else default


def set_setting(key, value):
    """Stage a key/value write; the caller commits."""
    setting = db.session.get(AppSetting, key)
    if setting:
        setting.value = value
    else:
        db.session.add(AppSetting(key=key, value=value))
