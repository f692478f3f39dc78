import logging
from flask import Flask, request, jsonify
from flask_sqlalchemy import SQLAlchemy
from flask_socketio import SocketIO
from flask_cors import CORS
from pickup_api.config import config

db = SQLAlchemy()
socketio = SocketIO()

logger = logging.getLogger(__name__)


def _parse_allowed_origins(raw_origins):
    if not raw_origins:
        return '*'

    if isinstance(raw_origins, (list, tuple, set)):
        cleaned = [origin for origin in raw_origins if origin]
        return cleaned or '*'

    raw_text = str(raw_origins).strip()
    if not raw_text or raw_text == '*':
        return '*'

    origins = [origin.strip() for origin in raw_text.split(',') if origin.strip()]
    return origins or '*'


def _configure_logging(app):
    level_name = str(app.config.get('LOG_LEVEL') or 'INFO').upper()
    level = getattr(logging, level_name, logging.INFO)
    package_logger = logging.getLogger('pickup_api')
    package_logger.setLevel(level)
    if not logging.getLogger().handlers and not package_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(
            '%(asctime)s %(levelname)s [%(name)s] %(message)s'
        ))
        package_logger.addHandler(handler)


def _register_error_handlers(app):
    from sqlalchemy.exc import SQLAlchemyError
    from pickup_api.errors import BookingError, InternalError

    @app.errorhandler(BookingError)
    def _handle_booking_error(exc):
        if exc.status_code >= 500:
            logger.exception('Booking error: %s', exc.message)
        return jsonify(exc.to_dict()), exc.status_code

    @app.errorhandler(SQLAlchemyError)
    def _handle_database_error(exc):
        db.session.rollback()
        logger.exception('Unhandled database error')
        error = InternalError()
        return jsonify(error.to_dict()), error.status_code


def _install_collaborators(app):
    """Attach the payment gateway and notification sink unless a caller already did."""
    from pickup_api.services.notifications import build_notification_sink
    from pickup_api.services.payments import build_payment_gateway

    app.extensions.setdefault('payment_gateway', build_payment_gateway(app.config))
    app.extensions.setdefault('notification_sink', build_notification_sink(app.config))


def create_app(config_name='development', config_overrides=None):
    app = Flask(__name__)
    app.config.from_object(config[config_name])
    if config_overrides:
        app.config.update(config_overrides)

    _configure_logging(app)

    allowed_origins = _parse_allowed_origins(app.config.get('CORS_ALLOWED_ORIGINS', '*'))
    if str(config_name).strip().lower() == 'production':
        secret_key = str(app.config.get('SECRET_KEY') or '').strip()
        if not secret_key or secret_key == 'dev-secret-key-change-in-prod':
            raise RuntimeError('SECRET_KEY must be set to a non-default value in production')
        if allowed_origins == '*':
            raise RuntimeError('CORS_ALLOWED_ORIGINS must be explicitly set in production')
        if not str(app.config.get('STRIPE_WEBHOOK_SECRET') or '').strip():
            logger.warning('STRIPE_WEBHOOK_SECRET not configured - online payments disabled')

    db.init_app(app)
    socketio.init_app(
        app,
        cors_allowed_origins=allowed_origins,
        async_mode=app.config.get('SOCKETIO_ASYNC_MODE', 'threading'),
    )
    CORS(app, resources={r'/api/*': {'origins': allowed_origins}})

    @app.before_request
    def _enforce_origin_for_mutating_api_requests():
        if request.method in {'GET', 'HEAD', 'OPTIONS'}:
            return None
        if not request.path.startswith('/api/'):
            return None
        # Provider callbacks are authenticated by signature, not origin.
        if request.path.startswith('/api/webhook'):
            return None

        origin = str(request.headers.get('Origin') or '').strip()
        if not origin:
            return None

        configured_origins = _parse_allowed_origins(
            app.config.get('CORS_ALLOWED_ORIGINS', '*')
        )
        if configured_origins != '*' and origin not in configured_origins:
            return jsonify({'error': 'Invalid request origin'}), 403

        auth_header = str(request.headers.get('Authorization') or '').strip()
        if not auth_header:
            return None

        csrf_header = request.headers.get('X-CSRF-Token')
        from pickup_api.auth_utils import csrf_token_matches
        if not csrf_token_matches(auth_header, csrf_header):
            return jsonify({'error': 'Invalid CSRF token'}), 403
        return None

    _register_error_handlers(app)
    _install_collaborators(app)

    from pickup_api.routes.games import games_bp
    from pickup_api.routes.reservations import reservations_bp
    from pickup_api.routes.waitlist import waitlist_bp
    from pickup_api.routes.webhooks import webhooks_bp
    from pickup_api.routes.admin import admin_bp
    from pickup_api.routes.stats import stats_bp
    from pickup_api.routes import realtime  # noqa: F401

    app.register_blueprint(games_bp, url_prefix='/api/games')
    app.register_blueprint(reservations_bp, url_prefix='/api/rsvp')
    app.register_blueprint(waitlist_bp, url_prefix='/api/waitlist')
    app.register_blueprint(webhooks_bp, url_prefix='/api/webhook')
    app.register_blueprint(admin_bp, url_prefix='/api/admin')
    app.register_blueprint(stats_bp, url_prefix='/api/stats')

    @app.route('/api/health')
    def health():
        from pickup_api.time_utils import utcnow_naive
        return jsonify({'status': 'ok', 'timestamp': utcnow_naive().isoformat()})

    with app.app_context():
        from pickup_api import models  # noqa: F401
        db.create_all()

    return app
