"""Tests for online checkout and payment webhook finalization."""
import json

from pickup_api.models import Game, Reservation
from pickup_api.services.notifications import OPERATOR_REFUND_ALERT, RESERVATION_CONFIRMED


def _game(game_id='G-TEST-1'):
    return Game.query.filter_by(game_id=game_id).first()


def _checkout(client, payload):
    res = client.post('/api/rsvp/checkout', json=payload)
    assert res.status_code == 200, res.data
    return json.loads(res.data)


def test_checkout_opens_session_without_holding_capacity(client, sample_game, booking_payload,
                                                          payment_gateway):
    data = _checkout(client, booking_payload(guests=1, language='es'))
    assert data['session_id'] == 'cs_test_1'
    assert data['url'] == 'https://pay.test/cs_test_1'
    assert data['confirmation_code'].startswith('LP-')

    session = payment_gateway.sessions[0]
    assert session['unit_price_cents'] == 599
    assert session['quantity'] == 2
    assert session['customer_email'] == 'player@example.com'
    assert session['success_url'] == (
        f"http://testserver/confirmation-page.html?code={data['confirmation_code']}"
    )
    metadata = session['metadata']
    assert metadata['confirmation_code'] == data['confirmation_code']
    assert metadata['game_id'] == 'G-TEST-1'
    assert metadata['total_players'] == '2'
    assert metadata['language'] == 'es'
    assert json.loads(metadata['guests']) == [{'first_name': 'Guest0', 'last_name': 'Friend'}]

    assert _game().spots_remaining == 10
    assert Reservation.query.count() == 0


def test_checkout_prechecks(client, make_game, booking_payload):
    make_game(capacity=2, spots_remaining=1)
    res = client.post('/api/rsvp/checkout', json=booking_payload(guests=1))
    assert res.status_code == 409
    assert json.loads(res.data)['code'] == 'CAPACITY_EXCEEDED'

    client.post('/api/rsvp', json=booking_payload())
    res = client.post('/api/rsvp/checkout', json=booking_payload())
    assert json.loads(res.data)['code'] == 'DUPLICATE_BOOKING'

    res = client.post('/api/rsvp/checkout', json=booking_payload(game_id='missing'))
    assert res.status_code == 404


def test_webhook_creates_paid_reservation(client, sample_game, booking_payload, payment_gateway,
                                          webhook, notification_sink):
    data = _checkout(client, booking_payload(guests=2))
    res = webhook(payment_gateway.completed_event(data['session_id']))
    assert res.status_code == 200
    body = json.loads(res.data)
    assert body['received'] is True
    assert body['outcome'] == 'created'
    assert body['confirmation_code'] == data['confirmation_code']

    reservation = Reservation.query.filter_by(confirmation_code=data['confirmation_code']).first()
    assert reservation.payment_method == 'online'
    assert reservation.payment_status == 'paid'
    assert reservation.status == 'confirmed'
    assert reservation.payment_session_id == data['session_id']
    assert reservation.payment_reference == f"pi_{data['session_id']}"
    assert reservation.total_players == 3
    assert reservation.total_amount_cents == 3 * 599
    assert _game().spots_remaining == 7
    assert len(notification_sink.of_kind(RESERVATION_CONFIRMED)) == 1


def test_webhook_redelivery_is_idempotent(client, sample_game, booking_payload, payment_gateway,
                                          webhook, notification_sink):
    data = _checkout(client, booking_payload())
    event = payment_gateway.completed_event(data['session_id'])

    assert json.loads(webhook(event).data)['outcome'] == 'created'
    for _ in range(3):
        res = webhook(event)
        assert res.status_code == 200
        assert json.loads(res.data)['outcome'] == 'duplicate'

    assert Reservation.query.count() == 1
    assert _game().spots_remaining == 9
    assert len(notification_sink.of_kind(RESERVATION_CONFIRMED)) == 1


def test_webhook_async_success_event_is_handled(client, sample_game, booking_payload,
                                                payment_gateway, webhook):
    data = _checkout(client, booking_payload())
    event = payment_gateway.completed_event(
        data['session_id'], event_type='checkout.session.async_payment_succeeded',
    )
    assert json.loads(webhook(event).data)['outcome'] == 'created'


def test_webhook_bad_signature_changes_nothing(client, sample_game, booking_payload,
                                               payment_gateway, webhook):
    data = _checkout(client, booking_payload())
    res = webhook(payment_gateway.completed_event(data['session_id']), signature='t=1,v1=forged')
    assert res.status_code == 400
    assert json.loads(res.data)['code'] == 'SIGNATURE_ERROR'
    assert Reservation.query.count() == 0
    assert _game().spots_remaining == 10


def test_webhook_ignores_unrelated_events(client, sample_game, webhook):
    res = webhook({'id': 'evt_x', 'type': 'payment_intent.created', 'data': {'object': {}}})
    assert res.status_code == 200
    assert json.loads(res.data)['outcome'] == 'ignored'


def test_webhook_ignores_unpaid_completion(client, sample_game, booking_payload,
                                           payment_gateway, webhook):
    data = _checkout(client, booking_payload())
    event = payment_gateway.completed_event(data['session_id'])
    event['data']['object']['payment_status'] = 'unpaid'
    assert json.loads(webhook(event).data)['outcome'] == 'ignored'
    assert Reservation.query.count() == 0


def test_webhook_with_malformed_metadata_is_rejected(client, sample_game, webhook,
                                                     notification_sink):
    event = {
        'id': 'evt_bad',
        'type': 'checkout.session.completed',
        'data': {'object': {
            'id': 'cs_bad', 'payment_status': 'paid', 'metadata': {'game_id': 'G-TEST-1'},
        }},
    }
    res = webhook(event)
    assert res.status_code == 200
    assert json.loads(res.data)['outcome'] == 'rejected'
    assert Reservation.query.count() == 0
    assert len(notification_sink.of_kind(OPERATOR_REFUND_ALERT)) == 1


def test_last_spot_paid_twice_only_first_is_fulfilled(client, make_game, booking_payload,
                                                      payment_gateway, webhook,
                                                      notification_sink):
    make_game(capacity=10, spots_remaining=1)
    first = _checkout(client, booking_payload(email='first@example.com'))
    second = _checkout(client, booking_payload(email='second@example.com'))

    assert json.loads(webhook(payment_gateway.completed_event(first['session_id'])).data)['outcome'] == 'created'
    res = webhook(payment_gateway.completed_event(second['session_id']))
    assert res.status_code == 200
    body = json.loads(res.data)
    assert body['outcome'] == 'rejected'
    assert body['reason'] == 'capacity'

    game = _game()
    assert game.spots_remaining == 0
    assert game.status == 'full'
    assert Reservation.query.count() == 1

    alerts = notification_sink.of_kind(OPERATOR_REFUND_ALERT)
    assert len(alerts) == 1
    assert alerts[0]['to'] == 'ops@example.com'
    assert alerts[0]['data']['session_id'] == second['session_id']


def test_webhook_for_vanished_game_is_acknowledged(client, sample_game, booking_payload,
                                                   payment_gateway, webhook):
    from pickup_api.app import db
    data = _checkout(client, booking_payload())
    db.session.delete(_game())
    db.session.commit()

    res = webhook(payment_gateway.completed_event(data['session_id']))
    assert res.status_code == 200
    assert json.loads(res.data) == {
        'received': True, 'outcome': 'rejected', 'reason': 'game_not_found',
    }


def test_webhook_persistence_failure_returns_500(client, sample_game, booking_payload,
                                                 payment_gateway, webhook, monkeypatch):
    from sqlalchemy.exc import SQLAlchemyError
    from pickup_api.services import booking_engine

    def _boom(*args, **kwargs):
        raise SQLAlchemyError('connection reset')

    data = _checkout(client, booking_payload())
    monkeypatch.setattr(booking_engine, '_finalize_once', _boom)
    res = webhook(payment_gateway.completed_event(data['session_id']))
    assert res.status_code == 500
    assert Reservation.query.count() == 0


def test_webhook_for_started_game_is_rejected(client, sample_game, booking_payload,
                                              payment_gateway, webhook, notification_sink):
    from datetime import timedelta
    from pickup_api.app import db
    from pickup_api.time_utils import utcnow_naive

    data = _checkout(client, booking_payload())
    game = _game()
    game.date = utcnow_naive() - timedelta(hours=1)
    db.session.commit()

    res = webhook(payment_gateway.completed_event(data['session_id']))
    assert res.status_code == 200
    body = json.loads(res.data)
    assert body['outcome'] == 'rejected'
    assert body['reason'] == 'game_closed'
    assert Reservation.query.count() == 0
    assert _game().spots_remaining == 10

    alerts = notification_sink.of_kind(OPERATOR_REFUND_ALERT)
    assert len(alerts) == 1
    assert alerts[0]['data']['reason'] == 'game_closed'


def test_webhook_without_payment_status_is_ignored(client, sample_game, booking_payload,
                                                   payment_gateway, webhook):
    data = _checkout(client, booking_payload())
    event = payment_gateway.completed_event(data['session_id'])
    del event['data']['object']['payment_status']
    assert json.loads(webhook(event).data)['outcome'] == 'ignored'
    assert Reservation.query.count() == 0
