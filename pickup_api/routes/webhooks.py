import logging
from flask import Blueprint, request, jsonify, current_app
from pickup_api.errors import SignatureError
from pickup_api.services import booking_engine

logger = logging.getLogger(__name__)

webhooks_bp = Blueprint('webhooks', __name__)


@webhooks_bp.route('', methods=['POST'])
def payment_webhook():
    """Payment provider callback. Anything unsigned is refused before touching state."""
    gateway = current_app.extensions['payment_gateway']
    try:
        event = gateway.verify_and_parse_webhook(
            request.get_data(),
            request.headers.get('Stripe-Signature', ''),
        )
    except SignatureError as exc:
        logger.warning('Rejected webhook from %s: %s', request.remote_addr, exc.message)
        raise

    result = booking_engine.finalize_online_reservation(event)
    logger.info('Webhook %s (%s): %s', event.get('id'), event.get('type'), result['outcome'])
    return jsonify(dict(result, received=True))
