import json
from datetime import timedelta

import pytest
from pickup_api.app import create_app, db
from pickup_api.errors import SignatureError
from pickup_api.models import Game
from pickup_api.services.payments import normalize_webhook_event
from pickup_api.time_utils import utcnow_naive

VALID_SIGNATURE = 't=1,v1=valid'


class FakePaymentGateway:
    """Records sessions and refunds; accepts only ``VALID_SIGNATURE``."""

    def __init__(self):
        self.sessions = []
        self.refunds = []

    def create_session(self, unit_price_cents, quantity, success_url, cancel_url,
                       metadata, customer_email=None):
        session_id = f'cs_test_{len(self.sessions) + 1}'
        self.sessions.append({
            'session_id': session_id,
            'unit_price_cents': unit_price_cents,
            'quantity': quantity,
            'success_url': success_url,
            'cancel_url': cancel_url,
            'metadata': dict(metadata),
            'customer_email': customer_email,
        })
        return {'session_id': session_id, 'url': f'https://pay.test/{session_id}'}

    def completed_event(self, session_id, event_id=None, event_type='checkout.session.completed'):
        session = next(s for s in self.sessions if s['session_id'] == session_id)
        return {
            'id': event_id or f'evt_{session_id}',
            'type': event_type,
            'data': {'object': {
                'id': session_id,
                'payment_intent': f'pi_{session_id}',
                'payment_status': 'paid',
                'amount_total': session['unit_price_cents'] * session['quantity'],
                'metadata': session['metadata'],
            }},
        }

    def verify_and_parse_webhook(self, raw_body, signature_header):
        if signature_header != VALID_SIGNATURE:
            raise SignatureError()
        return normalize_webhook_event(json.loads(raw_body))

    def issue_refund(self, payment_reference):
        self.refunds.append(payment_reference)
        return f're_{len(self.refunds)}'


class RecordingSink:
    def __init__(self):
        self.sent = []

    def send(self, kind, recipient_email, template_data, language='en'):
        self.sent.append({
            'kind': kind,
            'to': recipient_email,
            'data': dict(template_data),
            'language': language,
        })

    def of_kind(self, kind):
        return [n for n in self.sent if n['kind'] == kind]


@pytest.fixture
def payment_gateway():
    return FakePaymentGateway()


@pytest.fixture
def notification_sink():
    return RecordingSink()


@pytest.fixture
def app(payment_gateway, notification_sink):
    app = create_app('testing')
    app.extensions['payment_gateway'] = payment_gateway
    app.extensions['notification_sink'] = notification_sink
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def admin_headers(client):
    """Exchange the test admin key for bearer headers."""
    res = client.post('/api/admin/token', json={'admin_key': 'test-admin-key'})
    token = res.get_json()['token']
    return {'Authorization': f'Bearer {token}', 'Content-Type': 'application/json'}


@pytest.fixture
def make_game(app):
    def _make(game_id='G-TEST-1', capacity=10, spots_remaining=None,
              starts_in=timedelta(days=3), status='open', price_cents=599, **extra):
        remaining = capacity if spots_remaining is None else spots_remaining
        start = utcnow_naive() + starts_in
        game = Game(
            game_id=game_id,
            title=extra.pop('title', 'Thursday Night 7v7'),
            venue_name=extra.pop('venue_name', 'Central Park Field 2'),
            venue_address=extra.pop('venue_address', '100 Park Ave'),
            day_of_week=start.strftime('%A'),
            time=extra.pop('time', '8:30 PM'),
            date=start,
            price_cents=price_cents,
            capacity=capacity,
            spots_remaining=remaining,
            status='full' if remaining == 0 and status == 'open' else status,
            **extra,
        )
        db.session.add(game)
        db.session.commit()
        return game
    return _make


@pytest.fixture
def sample_game(make_game):
    return make_game()


@pytest.fixture
def booking_payload():
    def _payload(game_id='G-TEST-1', email='player@example.com', guests=0, **overrides):
        data = {
            'game_id': game_id,
            'first_name': 'Alex',
            'last_name': 'Morgan',
            'email': email,
            'phone': '555-0100',
            'guests': [
                {'first_name': f'Guest{i}', 'last_name': 'Friend'} for i in range(guests)
            ],
            'waiver_accepted': True,
        }
        data.update(overrides)
        return data
    return _payload


def post_webhook(client, event, signature=VALID_SIGNATURE):
    return client.post(
        '/api/webhook',
        data=json.dumps(event),
        headers={'Stripe-Signature': signature},
        content_type='application/json',
    )


@pytest.fixture
def webhook(client):
    def _send(event, signature=VALID_SIGNATURE):
        return post_webhook(client, event, signature)
    return _send
