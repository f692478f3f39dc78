"""Input normalization shared by the booking, checkout and waitlist paths."""
import re

from pickup_api.errors import ValidationError
from pickup_api.models import CASH_PAYMENT_METHODS

_EMAIL_RE = re.compile(r'^[^\s@]+@[^\s@]+\.[^\s@]+$')
_MAX_NAME_LENGTH = 100
_MAX_EMAIL_LENGTH = 254
_MAX_PHONE_LENGTH = 30
_MAX_GAME_ID_LENGTH = 40

SUPPORTED_LANGUAGES = ('en', 'es')


def sanitize_text(value, max_length=_MAX_NAME_LENGTH):
    if value is None:
        return ''
    return str(value).strip()[:max_length]


def normalize_email(raw_email, field='email'):
    email = str(raw_email or '').strip().lower()[:_MAX_EMAIL_LENGTH]
    if not email:
        raise ValidationError('Email is required', field=field)
    if not _EMAIL_RE.match(email):
        raise ValidationError('Invalid email format', field=field)
    return email


def normalize_game_id(raw_game_id):
    game_id = sanitize_text(raw_game_id, _MAX_GAME_ID_LENGTH)
    if not game_id:
        raise ValidationError('Game ID is required', field='game_id')
    return game_id


def normalize_language(raw_language):
    language = str(raw_language or 'en').strip().lower()[:2]
    return language if language in SUPPORTED_LANGUAGES else 'en'


def parse_guests(raw_guests, max_guests):
    if raw_guests in (None, ''):
        return []
    if not isinstance(raw_guests, list):
        raise ValidationError('Guests must be a list', field='guests')
    if len(raw_guests) > max_guests:
        raise ValidationError(f'Maximum {max_guests} guests allowed', field='guests')

    guests = []
    for raw in raw_guests:
        if not isinstance(raw, dict):
            raise ValidationError('Each guest needs a first and last name', field='guests')
        first_name = sanitize_text(raw.get('first_name'))
        last_name = sanitize_text(raw.get('last_name'))
        if not first_name:
            raise ValidationError('Each guest needs a first name', field='guests')
        guests.append({'first_name': first_name, 'last_name': last_name})
    return guests


def parse_booking_request(data, max_guests, ip_address=''):
    """Validate a reserve/checkout payload and return its normalized fields."""
    if not isinstance(data, dict):
        raise ValidationError('Invalid JSON payload')

    game_id = sanitize_text(data.get('game_id'), _MAX_GAME_ID_LENGTH)
    first_name = sanitize_text(data.get('first_name'))
    last_name = sanitize_text(data.get('last_name'))
    raw_email = data.get('email')
    if not game_id or not first_name or not last_name or not raw_email:
        raise ValidationError('Missing required fields')
    if data.get('waiver_accepted') is not True:
        raise ValidationError('You must accept the waiver to play', field='waiver_accepted')

    return {
        'game_id': game_id,
        'first_name': first_name,
        'last_name': last_name,
        'email': normalize_email(raw_email),
        'phone': sanitize_text(data.get('phone'), _MAX_PHONE_LENGTH),
        'guests': parse_guests(data.get('guests'), max_guests),
        'language': normalize_language(data.get('language')),
        'ip_address': sanitize_text(ip_address, 64),
    }


def parse_cash_payment_method(raw_method):
    method = str(raw_method or 'cashapp').strip().lower()
    if method not in CASH_PAYMENT_METHODS:
        raise ValidationError('Payment method must be cash or cashapp', field='payment_method')
    return method


def request_ip(flask_request):
    forwarded = str(flask_request.headers.get('X-Forwarded-For') or '').strip()
    if forwarded:
        return forwarded.split(',')[0].strip()
    return flask_request.remote_addr or ''
