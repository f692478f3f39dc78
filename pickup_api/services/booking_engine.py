"""Reservation lifecycle: reserve, online checkout and finalization, cancellation.

Invariants kept here:

* a game never has ``spots_remaining`` outside ``[0, capacity]``, and the
  players on its live reservations always add up to ``capacity - spots_remaining``;
* at most one live reservation per (game, holder email);
* a redelivered payment webhook never creates a second reservation.

Each mutating operation runs as one transaction: the conditional capacity
UPDATE goes first, so the duplicate and idempotency checks that follow run
while the game row is write-locked. Unique indexes are the backstop; when one
fires the whole transaction is rolled back and re-run, and the re-run sees
the winner's row.
"""
import hmac
import json
import logging
import time
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError

from pickup_api.app import db
from pickup_api.errors import (
    AlreadyCancelled, BookingError, CapacityExceeded, DuplicateBooking, GameClosed,
    InternalError, NotFound, PastGame, ValidationError,
)
from pickup_api.models import CLOSED_GAME_STATUSES, Reservation
from pickup_api.services import game_catalog, waitlist
from pickup_api.services.confirmation_codes import candidate_codes, generate_confirmation_code
from pickup_api.services.notifications import (
    RESERVATION_CANCELLED, RESERVATION_CONFIRMED, dispatch_notification, notify_operator,
    reservation_template_data,
)
from pickup_api.services.payments import PAYMENT_COMPLETED_EVENTS
from pickup_api.services.validation import (
    parse_booking_request, parse_cash_payment_method, sanitize_text,
)
from pickup_api.time_utils import to_utc_naive, utcnow_naive

logger = logging.getLogger(__name__)

# Same message for "no such code" and "wrong email" so neither can be probed.
UNIFORM_LOOKUP_FAILURE = 'Booking not found or email does not match'

_reservations = Reservation.__table__
_CODE_ALLOCATION_ATTEMPTS = 10
# Compared against when no reservation matched, keeping both failure paths alike.
_NO_MATCH_EMAIL = 'no-reservation@invalid'


def _config(key, default=None):
    return current_app.config.get(key, default)


def _code_prefix():
    return _config('CONFIRMATION_CODE_PREFIX', 'LP')


def _run_atomically(label, operation, *args):
    """Run ``operation`` in its own transaction, re-running it on write conflicts."""
    attempts = max(1, int(_config('BOOKING_MAX_ATTEMPTS', 3)))
    for attempt in range(1, attempts + 1):
        try:
            result = operation(*args)
            db.session.commit()
            return result
        except BookingError:
            db.session.rollback()
            raise
        except (IntegrityError, OperationalError) as exc:
            db.session.rollback()
            if attempt == attempts:
                logger.exception('%s failed after %d attempts', label, attempts)
                raise InternalError() from exc
            logger.warning('%s hit a write conflict (attempt %d/%d): %s',
                           label, attempt, attempts, exc.__class__.__name__)
            time.sleep(min(0.01 * attempt, 0.2))
        except SQLAlchemyError as exc:
            db.session.rollback()
            logger.exception('%s failed with a database error', label)
            raise InternalError() from exc
    raise InternalError()


def _unique_confirmation_code():
    length = int(_config('CONFIRMATION_CODE_LENGTH', 12))
    for _ in range(_CODE_ALLOCATION_ATTEMPTS):
        code = generate_confirmation_code(_code_prefix(), length)
        if not Reservation.query.filter_by(confirmation_code=code).first():
            return code
    raise InternalError('Could not allocate a confirmation code')


def active_reservation(game_id, email):
    return Reservation.query.filter(
        Reservation.game_id == game_id,
        Reservation.email == email,
        Reservation.status != 'cancelled',
    ).first()


def _ensure_bookable(game, now):
    if game.status in CLOSED_GAME_STATUSES or game_catalog.has_started(game, now):
        raise GameClosed()


def compute_refund_eligibility(game_start, now, window_hours):
    """Refundable when cancelled at least ``window_hours`` before kick-off."""
    if game_start is None:
        return False
    return (game_start - now) >= timedelta(hours=window_hours)


def _after_booking_committed(reservation):
    game = game_catalog.find_game(reservation.game_id)
    if game is not None:
        game_catalog.broadcast_game_update(game)
    dispatch_notification(
        RESERVATION_CONFIRMED,
        reservation.email,
        reservation_template_data(reservation, game),
        reservation.language or 'en',
    )


# ── Reserve (cash / deferred payment) ─────────────────────────────────

def _reserve_once(booking, payment_method):
    game = game_catalog.get_game(booking['game_id'])
    now = utcnow_naive()
    _ensure_bookable(game, now)

    total_players = 1 + len(booking['guests'])
    unit_price_cents = game.price_cents

    claimed = game_catalog.claim_spots(game.game_id, total_players)
    if active_reservation(game.game_id, booking['email']):
        raise DuplicateBooking()
    if not claimed:
        raise CapacityExceeded()

    reservation = Reservation(
        confirmation_code=_unique_confirmation_code(),
        game_id=game.game_id,
        first_name=booking['first_name'],
        last_name=booking['last_name'],
        email=booking['email'],
        phone=booking['phone'],
        total_players=total_players,
        unit_price_cents=unit_price_cents,
        total_amount_cents=total_players * unit_price_cents,
        payment_method=payment_method,
        payment_status='pending',
        status='confirmed',
        waiver_accepted=True,
        waiver_accepted_at=now,
        waiver_accepted_ip=booking['ip_address'],
        language=booking['language'],
    )
    reservation.guests = booking['guests']
    db.session.add(reservation)
    waitlist.remove_holder_entry(game.game_id, booking['email'])
    db.session.flush()
    return reservation


def reserve(data, ip_address=''):
    """Book spots for a holder who will pay out of band."""
    booking = parse_booking_request(data, int(_config('MAX_GUESTS', 4)), ip_address)
    payment_method = parse_cash_payment_method((data or {}).get('payment_method'))

    reservation = _run_atomically('reserve', _reserve_once, booking, payment_method)
    logger.info('Reservation %s created for game %s (%d players, %s)',
                reservation.confirmation_code, reservation.game_id,
                reservation.total_players, payment_method)
    _after_booking_committed(reservation)
    return {
        'success': True,
        'confirmation_code': reservation.confirmation_code,
        'message': 'RSVP confirmed! Check your email.',
    }


# ── Online payment: checkout + webhook ────────────────────────────────

def build_checkout_metadata(booking, confirmation_code, total_players, unit_price_cents, accepted_at):
    """Everything needed to rebuild the reservation when the payment completes."""
    return {
        'game_id': booking['game_id'],
        'confirmation_code': confirmation_code,
        'first_name': booking['first_name'],
        'last_name': booking['last_name'],
        'email': booking['email'],
        'phone': booking['phone'],
        'guests': json.dumps(booking['guests']),
        'total_players': str(total_players),
        'unit_price_cents': str(unit_price_cents),
        'waiver_accepted': 'true',
        'waiver_accepted_at': accepted_at.isoformat(),
        'waiver_accepted_ip': booking['ip_address'],
        'language': booking['language'],
    }


def initiate_checkout(data, ip_address=''):
    """Validate and open a payment session. Capacity is not held meanwhile."""
    booking = parse_booking_request(data, int(_config('MAX_GUESTS', 4)), ip_address)
    game = game_catalog.get_game(booking['game_id'])
    now = utcnow_naive()
    _ensure_bookable(game, now)

    if active_reservation(game.game_id, booking['email']):
        raise DuplicateBooking()
    total_players = 1 + len(booking['guests'])
    # Advisory only; finalization re-checks capacity atomically.
    if total_players > game.spots_remaining:
        raise CapacityExceeded()

    confirmation_code = _unique_confirmation_code()
    metadata = build_checkout_metadata(booking, confirmation_code, total_players,
                                       game.price_cents, now)
    frontend = str(_config('FRONTEND_URL', '')).rstrip('/')
    gateway = current_app.extensions['payment_gateway']
    session = gateway.create_session(
        game.price_cents,
        total_players,
        f'{frontend}/confirmation-page.html?code={confirmation_code}',
        f'{frontend}/game-details.html?gameId={game.game_id}&cancelled=true',
        metadata,
        customer_email=booking['email'],
    )
    logger.info('Checkout session %s opened for game %s (%s)',
                session['session_id'], game.game_id, confirmation_code)
    return {
        'session_id': session['session_id'],
        'url': session['url'],
        'confirmation_code': confirmation_code,
    }


def _booking_from_event(event):
    metadata = event.get('metadata') or {}
    max_guests = int(_config('MAX_GUESTS', 4))
    try:
        guests = json.loads(metadata.get('guests') or '[]')
        total_players = int(metadata.get('total_players') or 0)
        unit_price_cents = int(metadata.get('unit_price_cents') or 0)
    except (TypeError, ValueError):
        raise ValidationError('Malformed checkout metadata')

    booking = parse_booking_request({
        'game_id': metadata.get('game_id'),
        'first_name': metadata.get('first_name'),
        'last_name': metadata.get('last_name'),
        'email': metadata.get('email'),
        'phone': metadata.get('phone'),
        'guests': guests,
        'waiver_accepted': metadata.get('waiver_accepted') == 'true',
        'language': metadata.get('language'),
    }, max_guests, metadata.get('waiver_accepted_ip') or 'unknown')

    code = str(metadata.get('confirmation_code') or '').strip().upper()
    if not code:
        raise ValidationError('Checkout metadata has no confirmation code')
    if total_players != 1 + len(booking['guests']):
        raise ValidationError('Checkout metadata player count does not match guests')
    if not event.get('session_id'):
        raise ValidationError('Payment event has no session id')

    try:
        accepted_at = to_utc_naive(datetime.fromisoformat(metadata.get('waiver_accepted_at') or ''))
    except ValueError:
        accepted_at = utcnow_naive()

    amount = event.get('amount_total_cents')
    booking.update({
        'waiver_accepted_at': accepted_at,
        'confirmation_code': code,
        'total_players': total_players,
        'unit_price_cents': unit_price_cents,
        'total_amount_cents': amount if isinstance(amount, int) else total_players * unit_price_cents,
        'session_id': event['session_id'],
        'payment_reference': event.get('payment_reference'),
    })
    return booking


def _finalize_once(booking):
    claimed = game_catalog.claim_spots(booking['game_id'], booking['total_players'])

    existing = Reservation.query.filter(or_(
        Reservation.payment_session_id == booking['session_id'],
        Reservation.confirmation_code == booking['confirmation_code'],
    )).first()
    if existing is not None:
        db.session.rollback()
        return 'duplicate', None

    game = game_catalog.get_game(booking['game_id'])
    if game.is_closed or game_catalog.has_started(game):
        db.session.rollback()
        return 'rejected', 'game_closed'
    if not claimed:
        db.session.rollback()
        return 'rejected', 'capacity'
    if active_reservation(booking['game_id'], booking['email']):
        db.session.rollback()
        return 'rejected', 'holder_already_booked'

    reservation = Reservation(
        confirmation_code=booking['confirmation_code'],
        game_id=booking['game_id'],
        first_name=booking['first_name'],
        last_name=booking['last_name'],
        email=booking['email'],
        phone=booking['phone'],
        total_players=booking['total_players'],
        unit_price_cents=booking['unit_price_cents'],
        total_amount_cents=booking['total_amount_cents'],
        payment_method='online',
        payment_status='paid',
        status='confirmed',
        waiver_accepted=True,
        waiver_accepted_at=booking['waiver_accepted_at'],
        waiver_accepted_ip=booking['ip_address'],
        payment_session_id=booking['session_id'],
        payment_reference=booking['payment_reference'],
        language=booking['language'],
    )
    reservation.guests = booking['guests']
    db.session.add(reservation)
    waitlist.remove_holder_entry(booking['game_id'], booking['email'])
    db.session.flush()
    return 'created', reservation


def _alert_unfulfilled_payment(event, booking, reason):
    metadata = event.get('metadata') or {}
    notify_operator({
        'confirmation_code': metadata.get('confirmation_code') or (booking or {}).get('confirmation_code'),
        'reason': reason,
        'game_id': metadata.get('game_id'),
        'email': metadata.get('email'),
        'session_id': event.get('session_id'),
        'payment_reference': event.get('payment_reference'),
        'total_amount_cents': event.get('amount_total_cents'),
    })


def finalize_online_reservation(event):
    """Turn a verified payment-completed event into a reservation, exactly once.

    Returns ``{'outcome': ...}`` with outcome one of created, duplicate,
    rejected or ignored. Persistence failures raise ``InternalError`` so the
    provider redelivers.
    """
    if event.get('type') not in PAYMENT_COMPLETED_EVENTS:
        return {'outcome': 'ignored'}
    if event.get('payment_status') not in ('paid', 'no_payment_required'):
        logger.info('Ignoring %s for session %s with payment status %s',
                    event.get('type'), event.get('session_id'), event.get('payment_status'))
        return {'outcome': 'ignored'}

    try:
        booking = _booking_from_event(event)
    except ValidationError as exc:
        logger.error('Rejecting payment event %s: %s', event.get('id'), exc.message)
        _alert_unfulfilled_payment(event, None, 'invalid_metadata')
        return {'outcome': 'rejected', 'reason': 'invalid_metadata'}

    if game_catalog.find_game(booking['game_id']) is None:
        logger.error('Game %s not found for paid session %s',
                     booking['game_id'], booking['session_id'])
        _alert_unfulfilled_payment(event, booking, 'game_not_found')
        return {'outcome': 'rejected', 'reason': 'game_not_found'}

    outcome, detail = _run_atomically('finalize_online_reservation', _finalize_once, booking)
    if outcome == 'duplicate':
        logger.info('Duplicate delivery for session %s ignored', booking['session_id'])
        return {'outcome': 'duplicate', 'confirmation_code': booking['confirmation_code']}
    if outcome == 'rejected':
        logger.error('Paid session %s for game %s could not be fulfilled: %s',
                     booking['session_id'], booking['game_id'], detail)
        _alert_unfulfilled_payment(event, booking, detail)
        return {'outcome': 'rejected', 'reason': detail}

    logger.info('Payment processed: %s (session %s)',
                detail.confirmation_code, booking['session_id'])
    _after_booking_committed(detail)
    return {'outcome': 'created', 'confirmation_code': detail.confirmation_code}


# ── Lookup and cancellation ───────────────────────────────────────────

def _find_by_code(raw_code):
    candidates = candidate_codes(raw_code, _code_prefix())
    if not candidates:
        return None
    # One query for both the literal and the prefixed form.
    matches = {
        r.confirmation_code: r
        for r in Reservation.query.filter(Reservation.confirmation_code.in_(candidates)).all()
    }
    for code in candidates:
        if code in matches:
            return matches[code]
    return None


def _holder_matches(reservation, claimed_email):
    stored = reservation.email if reservation is not None else _NO_MATCH_EMAIL
    matched = hmac.compare_digest(
        stored.strip().lower().encode('utf-8'),
        claimed_email.encode('utf-8'),
    )
    return reservation is not None and matched


def _resolve_owned_reservation(raw_code, raw_email):
    claimed_email = str(raw_email or '').strip().lower()
    if not claimed_email:
        raise ValidationError('Email is required', field='email')
    reservation = _find_by_code(raw_code)
    if not _holder_matches(reservation, claimed_email):
        raise NotFound(UNIFORM_LOOKUP_FAILURE)
    return reservation


def lookup_reservation(raw_code, raw_email):
    reservation = _resolve_owned_reservation(raw_code, raw_email)
    game = game_catalog.find_game(reservation.game_id)
    return {
        'rsvp': reservation.to_dict(),
        'game': game.to_dict() if game else None,
    }


def _cancel_once(reservation_id):
    reservation = db.session.get(Reservation, reservation_id)
    if reservation.status == 'cancelled':
        raise AlreadyCancelled()

    game = game_catalog.find_game(reservation.game_id)
    now = utcnow_naive()
    if game is not None and game_catalog.has_started(game, now):
        raise PastGame()

    refund_eligible = None
    if reservation.is_online:
        refund_eligible = compute_refund_eligibility(
            game.date if game else None, now, int(_config('REFUND_WINDOW_HOURS', 24)),
        )

    # Online payments stay 'paid' until an operator executes the refund.
    payment_status = reservation.payment_status if reservation.is_online else 'cancelled'
    cancelled = db.session.execute(
        update(_reservations)
        .where(_reservations.c.id == reservation_id, _reservations.c.status != 'cancelled')
        .values(
            status='cancelled',
            cancelled_at=now,
            refund_eligible=refund_eligible,
            payment_status=payment_status,
            updated_at=now,
        )
    ).rowcount == 1
    if not cancelled:
        raise AlreadyCancelled()

    promoted = None
    if game is not None:
        game_catalog.release_spots(game.game_id, reservation.total_players)
        promoted = waitlist.promote_next(game.game_id)
    db.session.expire_all()
    return refund_eligible, promoted


def cancel(raw_code, raw_email):
    """Self-service cancellation by confirmation code + holder email."""
    reservation = _resolve_owned_reservation(raw_code, raw_email)
    refund_eligible, promoted = _run_atomically('cancel', _cancel_once, reservation.id)

    reservation = db.session.get(Reservation, reservation.id)
    game = game_catalog.find_game(reservation.game_id)
    logger.info('Reservation %s cancelled (%d players returned, refund_eligible=%s)',
                reservation.confirmation_code, reservation.total_players, refund_eligible)

    if game is not None:
        game_catalog.broadcast_game_update(game)
    if promoted is not None and game is not None:
        waitlist.notify_promoted(promoted, game)

    template_data = reservation_template_data(reservation, game)
    template_data['refund_eligible'] = refund_eligible
    if reservation.is_online and refund_eligible:
        notify_operator(dict(template_data, reason='refund_eligible',
                             email=reservation.email,
                             payment_reference=reservation.payment_reference))
    dispatch_notification(RESERVATION_CANCELLED, reservation.email, template_data,
                          reservation.language or 'en')

    return {
        'success': True,
        'message': 'Booking cancelled successfully',
        'refund_eligible': refund_eligible,
    }


# ── Queries ───────────────────────────────────────────────────────────

def reservations_for_email(raw_email):
    email = str(raw_email or '').strip().lower()
    if not email:
        raise ValidationError('Email required', field='email')
    reservations = Reservation.query.filter(
        Reservation.email == email,
        Reservation.status.in_(('confirmed', 'pending')),
    ).order_by(Reservation.created_at.desc()).all()

    results = []
    for reservation in reservations:
        game = game_catalog.find_game(reservation.game_id)
        if game is None:
            continue
        data = reservation.to_dict()
        data['game'] = game.to_dict()
        results.append(data)
    return results


def squad_list(game_id):
    game_catalog.get_game(game_id)
    reservations = Reservation.query.filter(
        Reservation.game_id == game_id,
        Reservation.status.in_(('confirmed', 'pending')),
    ).order_by(Reservation.created_at.asc()).all()
    return [r.public_dict() for r in reservations]


# ── Admin roster operations ───────────────────────────────────────────

def roster(game_id):
    game = game_catalog.get_game(game_id)
    reservations = Reservation.query.filter_by(game_id=game_id).order_by(
        Reservation.created_at.asc(),
    ).all()
    live = [r for r in reservations if r.status != 'cancelled']
    return {
        'game': game.to_dict(),
        'reservations': [r.admin_dict() for r in reservations],
        'booked_players': sum(r.total_players for r in live),
        'checked_in_players': sum(r.total_players for r in live if r.checked_in),
        'waitlist_count': waitlist.waitlist_count(game_id),
    }


def _get_by_exact_code(raw_code):
    reservation = _find_by_code(raw_code)
    if reservation is None:
        raise NotFound('Reservation not found')
    return reservation


def set_checked_in(raw_code, checked_in=True):
    reservation = _get_by_exact_code(raw_code)
    if reservation.status == 'cancelled':
        raise AlreadyCancelled()
    reservation.checked_in = bool(checked_in)
    db.session.commit()
    return reservation


def mark_no_show(raw_code):
    reservation = _get_by_exact_code(raw_code)
    if reservation.status == 'cancelled':
        raise AlreadyCancelled()
    reservation.status = 'no-show'
    reservation.checked_in = False
    db.session.commit()
    logger.info('Reservation %s marked no-show', reservation.confirmation_code)
    return reservation


def execute_refund(raw_code, override=False):
    """Operator-initiated refund of a cancelled online booking."""
    reservation = _get_by_exact_code(raw_code)
    if not reservation.is_online or not reservation.payment_reference:
        raise ValidationError('Only online payments can be refunded through the provider')
    if reservation.status != 'cancelled':
        raise ValidationError('Cancel the booking before refunding it')
    if reservation.payment_status != 'paid':
        raise ValidationError(f'Payment is already {reservation.payment_status}')
    if not reservation.refund_eligible and not override:
        raise ValidationError('Booking was cancelled inside the refund window; pass override to refund anyway')

    gateway = current_app.extensions['payment_gateway']
    refund_reference = gateway.issue_refund(reservation.payment_reference)

    updated = db.session.execute(
        update(_reservations)
        .where(_reservations.c.id == reservation.id, _reservations.c.payment_status == 'paid')
        .values(payment_status='refunded',
                refund_reference=sanitize_text(refund_reference, 255),
                updated_at=utcnow_naive())
    ).rowcount == 1
    db.session.commit()
    db.session.expire_all()
    if not updated:
        logger.warning('Refund %s issued but reservation %s was already updated',
                       refund_reference, reservation.confirmation_code)
    logger.info('Refund %s executed for %s', refund_reference, reservation.confirmation_code)
    return db.session.get(Reservation, reservation.id)


def _resize_and_promote(game_id, raw_capacity):
    """Resize capacity and claim one waitlist entry per added spot. Does not commit."""
    game = game_catalog.get_game(game_id)
    new_capacity = game_catalog.parse_capacity(raw_capacity)

    old_capacity = game.capacity
    booked = game.capacity - game.spots_remaining
    if not game_catalog.resize_capacity(game_id, new_capacity):
        raise ValidationError(
            f'Capacity cannot be lower than the {booked} players already booked',
            field='capacity',
        )

    promoted = []
    game = game_catalog.get_game(game_id)
    opened = new_capacity - old_capacity
    if opened > 0 and not game.is_closed:
        for _ in range(min(opened, game.spots_remaining)):
            entry = waitlist.promote_next(game_id)
            if entry is None:
                break
            promoted.append(entry)
    logger.info('Game %s capacity %d -> %d, %d waitlist entries claimed',
                game_id, old_capacity, new_capacity, len(promoted))
    return promoted


def _after_game_committed(game_id, promoted):
    game = game_catalog.get_game(game_id)
    game_catalog.broadcast_game_update(game)
    for entry in promoted:
        waitlist.notify_promoted(entry, game)
    return game


def change_capacity(game_id, raw_capacity):
    """Admin capacity edit; extra spots each promote one waitlist entry."""
    try:
        promoted = _resize_and_promote(game_id, raw_capacity)
    except BookingError:
        db.session.rollback()
        raise
    db.session.commit()
    return _after_game_committed(game_id, promoted), promoted


def update_game(game_id, data):
    """Apply an admin edit of details, capacity and status as one transaction."""
    if not isinstance(data, dict):
        raise ValidationError('Invalid JSON payload')
    promoted = []
    try:
        game_catalog.apply_game_details(game_catalog.get_game(game_id), data)
        if 'capacity' in data:
            promoted = _resize_and_promote(game_id, data.get('capacity'))
        if 'status' in data:
            game_catalog.apply_game_status(game_catalog.get_game(game_id), data.get('status'))
    except BookingError:
        db.session.rollback()
        raise
    db.session.commit()
    logger.info('Game %s updated (%s)', game_id, ', '.join(sorted(data)))
    return _after_game_committed(game_id, promoted)
