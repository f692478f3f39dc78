"""Payment provider adapter.

The booking engine only talks to the three-call contract below; the Stripe
implementation is the production one and tests install a fake with the
same methods.

    create_session(unit_price_cents, quantity, success_url, cancel_url,
                   metadata, customer_email) -> {'session_id', 'url'}
    verify_and_parse_webhook(raw_body, signature_header) -> event dict
    issue_refund(payment_reference) -> refund id
"""
import json
import logging

import stripe

from pickup_api.errors import PaymentGatewayError, SignatureError

logger = logging.getLogger(__name__)

PAYMENT_COMPLETED_EVENTS = (
    'checkout.session.completed',
    'checkout.session.async_payment_succeeded',
)


def normalize_webhook_event(raw_event):
    """Flatten a provider event into the fields the booking engine needs."""
    if not isinstance(raw_event, dict):
        raise SignatureError('Webhook payload is not an event object')
    data_object = (raw_event.get('data') or {}).get('object') or {}
    metadata = data_object.get('metadata') or {}
    return {
        'id': raw_event.get('id'),
        'type': raw_event.get('type') or '',
        'session_id': data_object.get('id'),
        'payment_reference': data_object.get('payment_intent'),
        'payment_status': data_object.get('payment_status'),
        'amount_total_cents': data_object.get('amount_total'),
        'metadata': {str(k): '' if v is None else str(v) for k, v in metadata.items()},
    }


class StripePaymentGateway:
    def __init__(self, secret_key, webhook_secret, currency='usd', product_id=''):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.currency = currency
        self.product_id = product_id

    def create_session(self, unit_price_cents, quantity, success_url, cancel_url,
                       metadata, customer_email=None):
        price_data = {'currency': self.currency, 'unit_amount': int(unit_price_cents)}
        if self.product_id:
            price_data['product'] = self.product_id
        else:
            price_data['product_data'] = {'name': 'Pickup game spot'}

        try:
            session = stripe.checkout.Session.create(
                api_key=self.secret_key,
                mode='payment',
                payment_method_types=['card'],
                line_items=[{'price_data': price_data, 'quantity': int(quantity)}],
                success_url=success_url,
                cancel_url=cancel_url,
                customer_email=customer_email,
                client_reference_id=metadata.get('confirmation_code'),
                metadata=metadata,
                idempotency_key=f"checkout-{metadata.get('confirmation_code')}",
            )
        except stripe.StripeError as exc:
            logger.error('Stripe checkout session creation failed: %s', exc)
            raise PaymentGatewayError('Failed to create checkout session') from exc
        return {'session_id': session.id, 'url': session.url}

    def verify_and_parse_webhook(self, raw_body, signature_header):
        if not self.webhook_secret:
            raise SignatureError('Webhook secret not configured')
        payload = raw_body.decode('utf-8') if isinstance(raw_body, bytes) else str(raw_body or '')
        try:
            stripe.WebhookSignature.verify_header(
                payload, signature_header or '', self.webhook_secret,
            )
            raw_event = json.loads(payload)
        except stripe.SignatureVerificationError as exc:
            raise SignatureError() from exc
        except ValueError as exc:
            raise SignatureError('Invalid webhook payload') from exc
        return normalize_webhook_event(raw_event)

    def issue_refund(self, payment_reference):
        try:
            refund = stripe.Refund.create(
                api_key=self.secret_key,
                payment_intent=payment_reference,
                reason='requested_by_customer',
                idempotency_key=f'refund-{payment_reference}',
            )
        except stripe.StripeError as exc:
            logger.error('Stripe refund failed for %s: %s', payment_reference, exc)
            raise PaymentGatewayError('Refund failed at the payment provider') from exc
        return refund.id


class DisabledPaymentGateway:
    """Stands in when no provider key is configured; every call fails closed."""

    def create_session(self, *args, **kwargs):
        raise PaymentGatewayError('Online payments are not configured', status_code=503)

    def verify_and_parse_webhook(self, raw_body, signature_header):
        raise SignatureError('Online payments are not configured')

    def issue_refund(self, payment_reference):
        raise PaymentGatewayError('Online payments are not configured', status_code=503)


def build_payment_gateway(app_config):
    secret_key = str(app_config.get('STRIPE_SECRET_KEY') or '').strip()
    if not secret_key:
        logger.warning('STRIPE_SECRET_KEY not configured - online payments disabled')
        return DisabledPaymentGateway()
    return StripePaymentGateway(
        secret_key,
        str(app_config.get('STRIPE_WEBHOOK_SECRET') or '').strip(),
        currency=app_config.get('CURRENCY', 'usd'),
        product_id=app_config.get('STRIPE_PRODUCT_ID', ''),
    )
