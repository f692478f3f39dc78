import os

basedir = os.path.abspath(os.path.dirname(__file__))


def _env_bool(name, default=False):
    raw = os.environ.get(name)
    if raw is None:
        return default
    return str(raw).strip().lower() in {'1', 'true', 'yes', 'on'}


def _env_int(name, default):
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        return default


def _normalize_database_url(raw_url):
    if not raw_url:
        return raw_url
    if raw_url.startswith('postgres://'):
        return raw_url.replace('postgres://', 'postgresql://', 1)
    return raw_url


class BaseConfig:
    SECRET_KEY = os.environ.get('SECRET_KEY', 'dev-secret-key-change-in-prod')
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    CORS_ALLOWED_ORIGINS = os.environ.get('CORS_ALLOWED_ORIGINS', '*')
    SOCKETIO_ASYNC_MODE = os.environ.get('SOCKETIO_ASYNC_MODE', 'threading')
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')
    FRONTEND_URL = os.environ.get('FRONTEND_URL', 'http://localhost:5001')

    # Booking rules
    CONFIRMATION_CODE_PREFIX = os.environ.get('CONFIRMATION_CODE_PREFIX', 'LP')
    CONFIRMATION_CODE_LENGTH = _env_int('CONFIRMATION_CODE_LENGTH', 12)
    MAX_GUESTS = _env_int('MAX_GUESTS', 4)
    REFUND_WINDOW_HOURS = _env_int('REFUND_WINDOW_HOURS', 24)
    DEFAULT_GAME_PRICE_CENTS = _env_int('DEFAULT_GAME_PRICE_CENTS', 599)
    DEFAULT_GAME_CAPACITY = _env_int('DEFAULT_GAME_CAPACITY', 24)
    BOOKING_MAX_ATTEMPTS = _env_int('BOOKING_MAX_ATTEMPTS', 3)
    CURRENCY = os.environ.get('CURRENCY', 'usd')

    # Payments
    STRIPE_SECRET_KEY = os.environ.get('STRIPE_SECRET_KEY', '')
    STRIPE_WEBHOOK_SECRET = os.environ.get('STRIPE_WEBHOOK_SECRET', '')
    STRIPE_PRODUCT_ID = os.environ.get('STRIPE_PRODUCT_ID', '')

    # Notifications
    RESEND_API_KEY = os.environ.get('RESEND_API_KEY', '')
    EMAIL_FROM = os.environ.get('EMAIL_FROM', 'LaPista.ATX <noreply@lapista.atx>')
    OPERATOR_EMAIL = os.environ.get('OPERATOR_EMAIL', '')
    NOTIFICATIONS_ASYNC = _env_bool('NOTIFICATIONS_ASYNC', True)

    # Admin
    ADMIN_SECRET_KEY = os.environ.get('ADMIN_SECRET_KEY', '')
    ADMIN_TOKEN_EXPIRATION_HOURS = _env_int('ADMIN_TOKEN_EXPIRATION_HOURS', 12)


class DevelopmentConfig(BaseConfig):
    DEBUG = True
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'DEBUG')
    SQLALCHEMY_DATABASE_URI = _normalize_database_url(
        os.environ.get(
            'DATABASE_URL',
            'sqlite:///' + os.path.join(basedir, '..', 'pickup_dev.db')
        )
    )


class TestingConfig(BaseConfig):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    NOTIFICATIONS_ASYNC = False
    ADMIN_SECRET_KEY = 'test-admin-key'
    OPERATOR_EMAIL = 'ops@example.com'
    FRONTEND_URL = 'http://testserver'


class ProductionConfig(BaseConfig):
    DEBUG = False
    SQLALCHEMY_DATABASE_URI = _normalize_database_url(os.environ.get('DATABASE_URL'))


config = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
}
