"""Tests for self-service cancellation, refund eligibility and capacity restore."""
import json
from datetime import timedelta

from pickup_api.app import db
from pickup_api.models import Game, Reservation, WaitlistEntry
from pickup_api.services import game_catalog
from pickup_api.services.notifications import (
    OPERATOR_REFUND_ALERT, RESERVATION_CANCELLED, WAITLIST_SPOT_OPENED,
)
from pickup_api.time_utils import utcnow_naive


def _game(game_id='G-TEST-1'):
    return Game.query.filter_by(game_id=game_id).first()


def _reserve(client, payload):
    res = client.post('/api/rsvp', json=payload)
    assert res.status_code == 201, res.data
    return json.loads(res.data)['confirmation_code']


def _book_online(client, payload, payment_gateway, webhook):
    data = json.loads(client.post('/api/rsvp/checkout', json=payload).data)
    webhook(payment_gateway.completed_event(data['session_id']))
    return data['confirmation_code']


def _cancel(client, code, email='player@example.com'):
    return client.post(f'/api/rsvp/{code}/cancel', json={'email': email})


def test_cancel_restores_capacity_and_reopens_full_game(client, make_game, booking_payload,
                                                        notification_sink):
    make_game(capacity=3)
    code = _reserve(client, booking_payload(guests=2))
    assert _game().status == 'full'

    res = _cancel(client, code, email='Player@Example.COM')
    assert res.status_code == 200
    data = json.loads(res.data)
    assert data['success'] is True
    assert data['refund_eligible'] is None

    game = _game()
    assert game.spots_remaining == 3
    assert game.status == 'open'

    reservation = Reservation.query.filter_by(confirmation_code=code).first()
    assert reservation.status == 'cancelled'
    assert reservation.payment_status == 'cancelled'
    assert reservation.cancelled_at is not None
    assert len(notification_sink.of_kind(RESERVATION_CANCELLED)) == 1


def test_cancel_accepts_code_without_prefix(client, sample_game, booking_payload):
    code = _reserve(client, booking_payload())
    res = _cancel(client, code.split('-', 1)[1].lower())
    assert res.status_code == 200


def test_cancel_failures_are_indistinguishable(client, sample_game, booking_payload):
    code = _reserve(client, booking_payload())

    wrong_email = _cancel(client, code, email='intruder@example.com')
    unknown_code = _cancel(client, 'LP-ABCDEFGHJKMN', email='player@example.com')

    assert wrong_email.status_code == unknown_code.status_code == 404
    assert wrong_email.data == unknown_code.data
    assert json.loads(wrong_email.data)['error'] == 'Booking not found or email does not match'
    assert Reservation.query.filter_by(confirmation_code=code).first().status == 'confirmed'


def test_cancel_requires_email(client, sample_game, booking_payload):
    code = _reserve(client, booking_payload())
    res = client.post(f'/api/rsvp/{code}/cancel', json={})
    assert res.status_code == 400


def test_double_cancel_does_not_release_twice(client, sample_game, booking_payload):
    code = _reserve(client, booking_payload(guests=1))
    assert _cancel(client, code).status_code == 200

    res = _cancel(client, code)
    assert res.status_code == 409
    assert json.loads(res.data)['code'] == 'ALREADY_CANCELLED'
    assert _game().spots_remaining == 10


def test_cannot_cancel_after_kickoff(client, sample_game, booking_payload):
    code = _reserve(client, booking_payload())
    game = _game()
    game.date = utcnow_naive() - timedelta(hours=1)
    db.session.commit()

    res = _cancel(client, code)
    assert res.status_code == 400
    assert json.loads(res.data)['code'] == 'PAST_GAME'
    assert Reservation.query.filter_by(confirmation_code=code).first().status == 'confirmed'


def test_online_cancel_outside_window_is_refund_eligible(client, make_game, booking_payload,
                                                         payment_gateway, webhook,
                                                         notification_sink):
    make_game(starts_in=timedelta(hours=48))
    code = _book_online(client, booking_payload(), payment_gateway, webhook)

    res = _cancel(client, code)
    assert json.loads(res.data)['refund_eligible'] is True

    reservation = Reservation.query.filter_by(confirmation_code=code).first()
    assert reservation.refund_eligible is True
    assert reservation.payment_status == 'paid'
    assert payment_gateway.refunds == []

    alerts = notification_sink.of_kind(OPERATOR_REFUND_ALERT)
    assert len(alerts) == 1
    assert alerts[0]['data']['confirmation_code'] == code
    assert alerts[0]['data']['reason'] == 'refund_eligible'


def test_online_cancel_inside_window_is_not_refund_eligible(client, make_game, booking_payload,
                                                            payment_gateway, webhook,
                                                            notification_sink):
    make_game(starts_in=timedelta(hours=10))
    code = _book_online(client, booking_payload(), payment_gateway, webhook)

    res = _cancel(client, code)
    assert res.status_code == 200
    assert json.loads(res.data)['refund_eligible'] is False
    assert notification_sink.of_kind(OPERATOR_REFUND_ALERT) == []


def test_refund_eligibility_is_frozen_at_cancellation(client, make_game, booking_payload,
                                                      payment_gateway, webhook):
    make_game(starts_in=timedelta(hours=30))
    code = _book_online(client, booking_payload(), payment_gateway, webhook)
    _cancel(client, code)

    game = _game()
    game.date = utcnow_naive() + timedelta(hours=2)
    db.session.commit()

    assert _cancel(client, code).status_code == 409
    reservation = Reservation.query.filter_by(confirmation_code=code).first()
    assert reservation.refund_eligible is True


def test_cancel_promotes_one_waitlist_entry(client, make_game, booking_payload, notification_sink):
    make_game(capacity=1)
    code = _reserve(client, booking_payload())
    for name in ('first', 'second'):
        client.post('/api/waitlist', json={
            'game_id': 'G-TEST-1', 'name': name, 'email': f'{name}@example.com',
        })

    _cancel(client, code)

    opened = notification_sink.of_kind(WAITLIST_SPOT_OPENED)
    assert [n['to'] for n in opened] == ['first@example.com']
    first = WaitlistEntry.query.filter_by(email='first@example.com').first()
    second = WaitlistEntry.query.filter_by(email='second@example.com').first()
    assert first.notified is True
    assert second.notified is False
    assert json.loads(client.get('/api/waitlist/G-TEST-1').data)['count'] == 1


def test_release_is_clamped_to_capacity(app, make_game):
    make_game(capacity=5, spots_remaining=4)
    game_catalog.release_spots('G-TEST-1', 3)
    db.session.commit()
    game = _game()
    assert game.spots_remaining == 5
    assert game.capacity == 5


def test_malformed_code_fails_like_unknown_code(client, sample_game, booking_payload):
    _reserve(client, booking_payload())
    too_long = _cancel(client, 'X' * 40)
    unknown = _cancel(client, 'LP-ABCDEFGHJKMN')
    assert too_long.status_code == unknown.status_code == 404
    assert too_long.data == unknown.data

    lookup = client.get(f"/api/rsvp/{'X' * 40}?email=player@example.com")
    assert lookup.status_code == 404
    assert lookup.data == unknown.data
