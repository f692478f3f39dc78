"""Outbound notifications: booking confirmations, cancellations, waitlist and operator alerts.

Delivery is fire-and-forget relative to the booking transaction. Callers
dispatch only after commit, and a failing sink is logged, never raised.
"""
import logging

import requests
from flask import current_app

from pickup_api.app import socketio

logger = logging.getLogger(__name__)

RESERVATION_CONFIRMED = 'reservation-confirmed'
RESERVATION_CANCELLED = 'reservation-cancelled'
WAITLIST_SPOT_OPENED = 'waitlist-spot-opened'
OPERATOR_REFUND_ALERT = 'operator-refund-alert'

NOTIFICATION_KINDS = (
    RESERVATION_CONFIRMED,
    RESERVATION_CANCELLED,
    WAITLIST_SPOT_OPENED,
    OPERATOR_REFUND_ALERT,
)

_SUBJECTS = {
    'en': {
        RESERVATION_CONFIRMED: "You're in! {title} - {date_label}",
        RESERVATION_CANCELLED: 'Booking cancelled - {confirmation_code}',
        WAITLIST_SPOT_OPENED: 'Spot available! {title}',
        OPERATOR_REFUND_ALERT: '[Refund review] {confirmation_code} ({reason})',
    },
    'es': {
        RESERVATION_CONFIRMED: '¡Estás dentro! {title} - {date_label}',
        RESERVATION_CANCELLED: 'Reserva cancelada - {confirmation_code}',
        WAITLIST_SPOT_OPENED: '¡Hay un lugar disponible! {title}',
        OPERATOR_REFUND_ALERT: '[Revisión de reembolso] {confirmation_code} ({reason})',
    },
}


class _TemplateValues(dict):
    def __missing__(self, key):
        return ''


def render_subject(kind, template_data, language='en'):
    subjects = _SUBJECTS.get(language) or _SUBJECTS['en']
    template = subjects.get(kind)
    if template is None:
        raise ValueError(f'Unknown notification kind: {kind}')
    return template.format_map(_TemplateValues(template_data or {}))


def render_text(kind, template_data):
    """Plain-text body listing the template fields; markup lives with the mail provider."""
    lines = [f'{key}: {value}' for key, value in sorted((template_data or {}).items())
             if value not in (None, '')]
    return '\n'.join([kind, ''] + lines)


class LogNotificationSink:
    """Used when no mail provider is configured."""

    def send(self, kind, recipient_email, template_data, language='en'):
        logger.info(
            'Notification %s for %s (%s): %s',
            kind, recipient_email, language, render_subject(kind, template_data, language),
        )


class ResendEmailSink:
    """Delivers notifications through the Resend HTTP API."""

    API_URL = 'https://api.resend.com/emails'

    def __init__(self, api_key, sender, timeout=10):
        self.api_key = api_key
        self.sender = sender
        self.timeout = timeout

    def send(self, kind, recipient_email, template_data, language='en'):
        response = requests.post(
            self.API_URL,
            json={
                'from': self.sender,
                'to': [recipient_email],
                'subject': render_subject(kind, template_data, language),
                'text': render_text(kind, template_data),
                'tags': [{'name': 'kind', 'value': kind.replace('-', '_')}],
            },
            headers={'Authorization': f'Bearer {self.api_key}'},
            timeout=self.timeout,
        )
        response.raise_for_status()
        logger.info('Sent %s notification to %s', kind, recipient_email)


def build_notification_sink(app_config):
    api_key = str(app_config.get('RESEND_API_KEY') or '').strip()
    if not api_key:
        logger.warning('RESEND_API_KEY not configured - notifications will only be logged')
        return LogNotificationSink()
    return ResendEmailSink(api_key, app_config.get('EMAIL_FROM'))


def _deliver(sink, kind, recipient_email, template_data, language):
    try:
        sink.send(kind, recipient_email, template_data, language)
    except Exception:
        logger.exception('Failed to send %s notification to %s', kind, recipient_email)


def dispatch_notification(kind, recipient_email, template_data, language='en'):
    """Hand a notification to the sink without letting it affect the caller."""
    if kind not in NOTIFICATION_KINDS:
        raise ValueError(f'Unknown notification kind: {kind}')
    if not recipient_email:
        logger.warning('Skipping %s notification: no recipient', kind)
        return

    app = current_app._get_current_object()
    sink = app.extensions['notification_sink']
    payload = dict(template_data or {})
    if app.config.get('NOTIFICATIONS_ASYNC', True):
        socketio.start_background_task(_deliver, sink, kind, recipient_email, payload, language)
    else:
        _deliver(sink, kind, recipient_email, payload, language)


def notify_operator(template_data):
    recipient = str(current_app.config.get('OPERATOR_EMAIL') or '').strip()
    if not recipient:
        logger.warning(
            'OPERATOR_EMAIL not configured - refund alert for %s only logged',
            (template_data or {}).get('confirmation_code'),
        )
        return
    dispatch_notification(OPERATOR_REFUND_ALERT, recipient, template_data, 'en')


def game_template_data(game):
    return {
        'game_id': game.game_id,
        'title': game.title,
        'date': game.date.isoformat() if game.date else '',
        'date_label': game.date.strftime('%A, %B %d') if game.date else '',
        'time': game.time,
        'venue_name': game.venue_name,
        'venue_address': game.venue_address,
        'maps_url': game.maps_url,
        'game_url': f"{current_app.config.get('FRONTEND_URL', '')}/game-details.html?gameId={game.game_id}",
    }


def reservation_template_data(reservation, game):
    data = game_template_data(game) if game is not None else {'game_id': reservation.game_id}
    data.update({
        'confirmation_code': reservation.confirmation_code,
        'first_name': reservation.first_name,
        'total_players': reservation.total_players,
        'total_amount': f'{reservation.total_amount_cents / 100:.2f}',
        'payment_method': reservation.payment_method,
        'payment_status': reservation.payment_status,
        'cancel_url': (
            f"{current_app.config.get('FRONTEND_URL', '')}/cancel.html"
            f'?code={reservation.confirmation_code}'
        ),
    })
    return data
