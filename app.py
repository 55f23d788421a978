"""
Streak Ledger - daily proof-of-activity accounting service
Thin Flask request handlers over the streak / weekly challenge / trophy core
"""

from flask import Flask, request, session, jsonify
from flask_wtf.csrf import CSRFProtect, generate_csrf
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_migrate import Migrate
from functools import wraps
import hmac
import os
import logging
from dotenv import load_dotenv

from models import db
from errors import DomainError, ValidationFailure
from clock import app_today, validate_timezone, DEFAULT_TIMEZONE
from uploads import create_upload, get_upload, pending_uploads
from challenges import get_or_create_active_challenge, use_rest_day
from verification import on_upload_verified
from admin import apply_admin_override
from dashboard import get_user_dashboard_summary
from rollup import run_nightly_rollup
from notifications import register_notification_handlers
from cloudinary_helper import init_cloudinary, upload_proof_photo, delete_image

load_dotenv()

# --- Logging Setup ---
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
    handlers=[logging.StreamHandler()],
)
logger = logging.getLogger('streak_ledger')

app = Flask(__name__)

# SECRET_KEY must be set via environment variable in production
_secret_key = os.environ.get('SECRET_KEY')
if not _secret_key:
    if os.environ.get('FLASK_ENV') == 'development' or os.environ.get('FLASK_DEBUG') == '1':
        _secret_key = 'dev-only-insecure-key-do-not-use-in-prod'
        logger.warning('SECRET_KEY not set - using insecure dev key. Set SECRET_KEY for production.')
    else:
        raise RuntimeError('SECRET_KEY environment variable is required. Set it before starting the app.')
app.secret_key = _secret_key

# --- Database Configuration ---
# Support DATABASE_URL (Postgres on Render/Heroku) or fall back to SQLite for local dev
database_url = os.environ.get('DATABASE_URL')
if database_url:
    # Render/Heroku use postgres:// but SQLAlchemy needs postgresql://
    if database_url.startswith('postgres://'):
        database_url = database_url.replace('postgres://', 'postgresql://', 1)
    app.config['SQLALCHEMY_DATABASE_URI'] = database_url
else:
    # Local SQLite fallback
    DATA_DIR = os.environ.get('DATA_DIR', os.path.dirname(os.path.abspath(__file__)))
    app.config['SQLALCHEMY_DATABASE_URI'] = f'sqlite:///{os.path.join(DATA_DIR, "streak_ledger.db")}'

app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
app.config['SQLALCHEMY_ENGINE_OPTIONS'] = {
    'pool_pre_ping': True,  # Test connections before using them
}

# --- Accounting Configuration ---
app.config['APP_TIMEZONE'] = validate_timezone(os.environ.get('APP_TIMEZONE', DEFAULT_TIMEZONE))
app.config['CRON_SECRET'] = os.environ.get('CRON_SECRET')
app.config['ADMIN_USERNAMES'] = [
    u.strip().lower() for u in os.environ.get('ADMIN_USERNAMES', '').split(',') if u.strip()
]
app.config['RATELIMIT_ENABLED'] = os.environ.get('RATELIMIT_ENABLED', '1') != '0'

# Initialize extensions
db.init_app(app)
migrate = Migrate(app, db)
csrf = CSRFProtect(app)

# Initialize Cloudinary
cloudinary_configured = init_cloudinary()
if not cloudinary_configured:
    logger.warning('Cloudinary not configured - uploads must carry a photo_reference')

limiter = Limiter(
    get_remote_address,
    app=app,
    default_limits=[],
    storage_uri="memory://",
)

register_notification_handlers()


# --- Security Headers ---
@app.after_request
def set_security_headers(response):
    response.headers['X-Content-Type-Options'] = 'nosniff'
    response.headers['X-Frame-Options'] = 'SAMEORIGIN'
    response.headers['Referrer-Policy'] = 'strict-origin-when-cross-origin'
    response.headers['Cache-Control'] = 'no-store'
    return response


# --- Image validation ---
IMAGE_SIGNATURES = {
    b'\x89PNG\r\n\x1a\n': 'png',
    b'\xff\xd8\xff': 'jpg',
    b'GIF87a': 'gif',
    b'GIF89a': 'gif',
    b'RIFF': 'webp',
}

ALLOWED_EXTENSIONS = {'png', 'jpg', 'jpeg', 'gif', 'webp'}
MAX_CONTENT_LENGTH = 5 * 1024 * 1024  # 5MB
app.config['MAX_CONTENT_LENGTH'] = MAX_CONTENT_LENGTH


def allowed_file(filename):
    return '.' in filename and filename.rsplit('.', 1)[1].lower() in ALLOWED_EXTENSIONS


def validate_image_file(file_storage):
    """Read magic bytes to verify the file is actually an image."""
    header = file_storage.read(12)
    file_storage.seek(0)
    if not header:
        return False
    for signature, fmt in IMAGE_SIGNATURES.items():
        if header.startswith(signature):
            if fmt == 'webp':
                return header[8:12] == b'WEBP'
            return True
    return False


# --- Helper Functions ---

def request_data():
    """JSON body or form fields, whichever the client sent."""
    if request.is_json:
        return request.get_json(silent=True) or {}
    return request.form


def is_admin():
    """Check if current user is an admin. Set ADMIN_USERNAMES env var (comma-separated)."""
    return session.get('username', '').lower() in app.config['ADMIN_USERNAMES']


def login_required(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if 'user_id' not in session:
            return jsonify({'error': 'Please log in to continue.'}), 401
        return f(*args, **kwargs)
    return decorated_function


def admin_required(f):
    @wraps(f)
    @login_required
    def decorated_function(*args, **kwargs):
        if not is_admin():
            return jsonify({'error': 'Unauthorized.'}), 403
        return f(*args, **kwargs)
    return decorated_function


def cron_authorized():
    secret = app.config.get('CRON_SECRET')
    if not secret:
        logger.error('CRON_SECRET not set - refusing nightly rollup trigger')
        return False
    header = request.headers.get('Authorization', '')
    bearer = header[7:] if header.lower().startswith('bearer ') else ''
    supplied = bearer or request.headers.get('X-Cron-Secret', '')
    return hmac.compare_digest(supplied.encode(), secret.encode())


# --- Routes ---

@app.route('/api/csrf-token')
def csrf_token():
    return jsonify({'csrf_token': generate_csrf()})


@app.route('/api/dashboard')
@login_required
def dashboard():
    user_id = session['user_id']
    get_or_create_active_challenge(user_id)
    return jsonify(get_user_dashboard_summary(user_id))


@app.route('/api/uploads', methods=['POST'])
@limiter.limit("10 per minute")
@login_required
def upload_proof():
    user_id = session['user_id']
    today = app_today()
    challenge = get_or_create_active_challenge(user_id, today)

    photo_reference = request_data().get('photo_reference')
    stored = None

    if 'photo' in request.files:
        photo = request.files['photo']
        if not photo or not photo.filename or not allowed_file(photo.filename):
            raise ValidationFailure('Photo must be a png, jpg, gif or webp image.')
        if not validate_image_file(photo):
            raise ValidationFailure('Uploaded file is not a valid image.')
        if not cloudinary_configured:
            return jsonify({'error': 'Photo storage is not available.'}), 503
        stored = upload_proof_photo(photo, user_id, today.isoformat())
        if not stored:
            logger.warning(f'Failed to store proof photo for user {user_id}')
            return jsonify({'error': 'Could not store the photo. Please try again.'}), 502
        photo_reference = stored['url']

    try:
        upload = create_upload(user_id, challenge.id, today, photo_reference)
    except DomainError:
        if stored:
            delete_image(stored['public_id'])
        raise

    return jsonify({
        'success': True,
        'upload': {
            'id': upload.id,
            'challenge_id': upload.challenge_id,
            'upload_date': upload.upload_date.isoformat(),
            'verification_status': upload.verification_status,
        },
    }), 201


@app.route('/api/rest-day', methods=['POST'])
@limiter.limit("10 per minute")
@login_required
def rest_day():
    user_id = session['user_id']
    today = app_today()
    challenge = get_or_create_active_challenge(user_id, today)
    use_rest_day(user_id, challenge.id, today, today)
    return jsonify({
        'success': True,
        'message': 'Rest day used.',
        'rest_days_available': challenge.rest_days_available,
    })


# --- Admin ---

@app.route('/api/uploads/pending')
@admin_required
def admin_pending_uploads():
    return jsonify([
        {
            'id': u.id,
            'user_id': u.user_id,
            'username': u.user.username,
            'challenge_id': u.challenge_id,
            'upload_date': u.upload_date.isoformat(),
            'photo_reference': u.photo_reference,
        }
        for u in pending_uploads()
    ])


@app.route('/admin/uploads/<int:upload_id>/verify', methods=['POST'])
@admin_required
def admin_verify_upload(upload_id):
    decision = request_data().get('decision') or request_data().get('status')
    upload = get_upload(upload_id)
    outcome = on_upload_verified(
        upload_id, upload.user_id, upload.challenge_id, decision,
        verifier_id=session['user_id'], actor=f'admin {session["username"]}',
    )
    logger.info(f'ADMIN: User {session["username"]} marked upload {upload_id} {decision}')
    return jsonify({'success': True, 'result': outcome.to_dict()})


@app.route('/admin/uploads/<int:upload_id>/reverse', methods=['POST'])
@admin_required
def admin_reverse_upload(upload_id):
    upload = get_upload(upload_id)
    outcome = on_upload_verified(
        upload_id, upload.user_id, upload.challenge_id, 'rejected',
        verifier_id=session['user_id'], allow_reversal=True, actor=f'admin {session["username"]}',
    )
    logger.info(f'ADMIN: User {session["username"]} reversed approval of upload {upload_id}')
    return jsonify({'success': True, 'result': outcome.to_dict()})


@app.route('/admin/users/<int:user_id>/override', methods=['POST'])
@admin_required
def admin_override_user(user_id):
    data = request_data()
    result = apply_admin_override(
        user_id,
        trophies=data.get('trophies'),
        current_streak=data.get('current_streak'),
        longest_streak=data.get('longest_streak'),
        baseline_date=data.get('baseline_date'),
        admin_username=session.get('username'),
    )
    return jsonify({'success': True, 'user': result})


# --- Cron ---

@app.route('/cron/nightly-rollup', methods=['GET', 'POST'])
@csrf.exempt
def cron_nightly_rollup():
    if not cron_authorized():
        return jsonify({'error': 'Unauthorized'}), 403
    result = run_nightly_rollup()
    return jsonify({'success': True, **result.to_dict()})


@app.cli.command('nightly-rollup')
def nightly_rollup_command():
    """Run the once-per-day streak / challenge / bonus rollup."""
    result = run_nightly_rollup()
    if result.skipped:
        print(f'Rollup already ran for {result.today}.')
        return
    print(f'Rollup for {result.today}: {result.users_processed} users, '
          f'{result.auto_approved} auto-approved, {len(result.errors)} errors.')
    for error in result.errors:
        print(f"  user {error['user_id']} ({error['step']}): {error['error']}")


# --- Error Handlers ---

@app.errorhandler(DomainError)
def domain_error(e):
    return jsonify(e.to_dict()), e.status_code


@app.errorhandler(404)
def page_not_found(e):
    return jsonify({'error': 'Not found'}), 404


@app.errorhandler(500)
def internal_server_error(e):
    logger.error(f'Internal server error: {e}')
    return jsonify({'error': 'Internal server error'}), 500


@app.errorhandler(429)
def rate_limit_exceeded(e):
    return jsonify({'error': 'Too many requests. Please slow down.'}), 429


# --- Database Initialization ---

def init_app():
    """Create tables for local development."""
    with app.app_context():
        db.create_all()


# Auto-create tables only in local dev (FLASK_DEBUG=1)
# In production, use Flask-Migrate: flask db upgrade
if os.environ.get('FLASK_DEBUG') == '1':
    init_app()


if __name__ == '__main__':
    app.run(debug=True, port=5000)
