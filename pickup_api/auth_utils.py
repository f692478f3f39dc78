import hashlib
import hmac
from datetime import datetime, timedelta, timezone
from functools import wraps
from flask import request, jsonify, current_app
import jwt


def admin_key_matches(candidate):
    """Constant-time check of a presented admin key against configuration."""
    expected = str(current_app.config.get('ADMIN_SECRET_KEY') or '')
    provided = str(candidate or '')
    if not expected or not provided:
        return False
    return hmac.compare_digest(expected.encode('utf-8'), provided.encode('utf-8'))


def generate_admin_token():
    """Generate a JWT granting the admin role."""
    payload = {
        'role': 'admin',
        'exp': datetime.now(timezone.utc) + timedelta(
            hours=current_app.config.get('ADMIN_TOKEN_EXPIRATION_HOURS', 12)
        ),
    }
    return jwt.encode(payload, current_app.config['SECRET_KEY'], algorithm='HS256')


def _normalize_bearer_token(raw_token):
    token = str(raw_token or '').strip()
    if token.startswith('Bearer '):
        token = token.split(' ', 1)[1].strip()
    return token


def _decode_admin_claims(token):
    normalized = _normalize_bearer_token(token)
    if not normalized:
        return None, ('Authentication required', 401)
    try:
        payload = jwt.decode(
            normalized, current_app.config['SECRET_KEY'], algorithms=['HS256']
        )
    except jwt.ExpiredSignatureError:
        return None, ('Token expired', 401)
    except jwt.InvalidTokenError:
        return None, ('Invalid token', 401)
    if payload.get('role') != 'admin':
        return None, ('Admin access required', 403)
    return payload, None


def csrf_token_for_bearer(token):
    """Build deterministic CSRF token tied to bearer token."""
    normalized = _normalize_bearer_token(token)
    if not normalized:
        return ''
    secret = str(current_app.config.get('SECRET_KEY') or '')
    if not secret:
        return ''
    return hmac.new(
        secret.encode('utf-8'),
        normalized.encode('utf-8'),
        hashlib.sha256,
    ).hexdigest()


def csrf_token_matches(token, candidate):
    expected = csrf_token_for_bearer(token)
    provided = str(candidate or '').strip()
    if not expected or not provided:
        return False
    return hmac.compare_digest(expected, provided)


def admin_required(f):
    """Decorator to require an admin bearer token on a route."""
    @wraps(f)
    def decorated(*args, **kwargs):
        claims, error = _decode_admin_claims(request.headers.get('Authorization', ''))
        if error:
            message, status = error
            return jsonify({'error': message}), status
        request.admin_claims = claims
        return f(*args, **kwargs)
    return decorated
