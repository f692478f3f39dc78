"""Per-game FIFO waitlist.

Promotion is advisory: the promoted entry is told a spot opened up, but the
spot is not held for them and normal first-come booking still applies.
"""
import logging

from sqlalchemy import and_, or_, update
from sqlalchemy.exc import IntegrityError

from pickup_api.app import db
from pickup_api.errors import AlreadyReserved, AlreadyWaitlisted, ValidationError
from pickup_api.models import Reservation, WaitlistEntry
from pickup_api.services import game_catalog
from pickup_api.services.notifications import (
    WAITLIST_SPOT_OPENED, dispatch_notification, game_template_data,
)
from pickup_api.services.validation import (
    normalize_email, normalize_game_id, normalize_language, sanitize_text,
)
from pickup_api.time_utils import utcnow_naive

logger = logging.getLogger(__name__)

_entries = WaitlistEntry.__table__
_MAX_PROMOTION_ATTEMPTS = 5


def has_active_reservation(game_id, email):
    return Reservation.query.filter(
        Reservation.game_id == game_id,
        Reservation.email == email,
        Reservation.status != 'cancelled',
    ).first() is not None


def waitlist_position(entry):
    """1-based FIFO position: entries created at or before this one."""
    return WaitlistEntry.query.filter(
        WaitlistEntry.game_id == entry.game_id,
        or_(
            WaitlistEntry.created_at < entry.created_at,
            and_(WaitlistEntry.created_at == entry.created_at, WaitlistEntry.id <= entry.id),
        ),
    ).count()


def waitlist_count(game_id):
    return WaitlistEntry.query.filter_by(game_id=game_id, notified=False).count()


def join_waitlist(data):
    if not isinstance(data, dict):
        raise ValidationError('Invalid JSON payload')

    game_id = normalize_game_id(data.get('game_id'))
    name = sanitize_text(data.get('name'))
    if not name:
        raise ValidationError('Game ID, name, and email are required', field='name')
    email = normalize_email(data.get('email'))

    game_catalog.get_game(game_id)

    if WaitlistEntry.query.filter_by(game_id=game_id, email=email).first():
        raise AlreadyWaitlisted()
    if has_active_reservation(game_id, email):
        raise AlreadyReserved()

    entry = WaitlistEntry(
        game_id=game_id,
        email=email,
        name=name,
        phone=sanitize_text(data.get('phone'), 30),
        language=normalize_language(data.get('language')),
    )
    db.session.add(entry)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise AlreadyWaitlisted()

    position = waitlist_position(entry)
    logger.info('Waitlist join for game %s at position %d', game_id, position)
    return entry, position


def promote_next(game_id):
    """Claim the earliest un-notified entry for ``game_id`` and mark it notified.

    The claim is a conditional UPDATE so two cancellations racing for the same
    entry cannot both consume it. Does not commit; returns the entry or None.
    """
    for _ in range(_MAX_PROMOTION_ATTEMPTS):
        candidate = WaitlistEntry.query.filter_by(
            game_id=game_id, notified=False,
        ).order_by(WaitlistEntry.created_at.asc(), WaitlistEntry.id.asc()).first()
        if candidate is None:
            return None

        claimed = db.session.execute(
            update(_entries)
            .where(_entries.c.id == candidate.id, _entries.c.notified.is_(False))
            .values(notified=True, notified_at=utcnow_naive())
        ).rowcount == 1
        db.session.expire(candidate)
        if claimed:
            return candidate
    logger.warning('Gave up promoting waitlist for game %s after repeated contention', game_id)
    return None


def notify_promoted(entry, game):
    data = game_template_data(game)
    data['name'] = entry.name
    dispatch_notification(WAITLIST_SPOT_OPENED, entry.email, data, entry.language or 'en')


def remove_holder_entry(game_id, email):
    """Drop the holder's own entry once they hold a reservation. Does not commit."""
    WaitlistEntry.query.filter_by(game_id=game_id, email=email).delete(
        synchronize_session=False,
    )
