"""Game records and the atomic capacity counter.

``spots_remaining`` is only ever changed through the conditional UPDATE
statements in this module, never by read-modify-write on a loaded model,
so concurrent requests for the last spot cannot overbook a game.
"""
import logging
import re
from datetime import datetime, timedelta

from sqlalchemy import and_, case, update

from pickup_api.app import db, socketio
from pickup_api.errors import BookingError, NotFound, ValidationError
from pickup_api.models import (
    CLOSED_GAME_STATUSES, DAYS_OF_WEEK, GAME_STATUSES, Game, GameTemplate, derive_status,
)
from pickup_api.services.validation import normalize_game_id, sanitize_text
from pickup_api.time_utils import to_utc_naive, utcnow_naive

logger = logging.getLogger(__name__)

LISTED_STATUSES = ('scheduled', 'open', 'full')
_MAX_CAPACITY = 200
_GAME_ID_RE = re.compile(r'^[A-Za-z0-9][A-Za-z0-9_-]*$')

_games = Game.__table__


def find_game(game_id):
    return Game.query.filter_by(game_id=game_id).first()


def get_game(game_id):
    game = find_game(game_id)
    if not game:
        raise NotFound('Game not found')
    return game


def has_started(game, now=None):
    return game.date is not None and game.date <= (now or utcnow_naive())


def list_upcoming_games(now=None):
    return Game.query.filter(
        Game.status.in_(LISTED_STATUSES),
        Game.date >= (now or utcnow_naive()),
    ).order_by(Game.date.asc()).all()


# ── Atomic capacity updates ───────────────────────────────────────────

def claim_spots(game_id, count):
    """Decrement remaining capacity by ``count`` if, and only if, it fits.

    Runs inside the caller's transaction and does not commit. Returns True
    when the spots were claimed.
    """
    remaining = _games.c.spots_remaining - count
    stmt = (
        update(_games)
        .where(
            _games.c.game_id == game_id,
            _games.c.spots_remaining >= count,
            _games.c.status.notin_(CLOSED_GAME_STATUSES),
        )
        .values(
            spots_remaining=remaining,
            status=case((remaining <= 0, 'full'), else_=_games.c.status),
            updated_at=utcnow_naive(),
        )
    )
    claimed = db.session.execute(stmt).rowcount == 1
    db.session.expire_all()
    return claimed


def release_spots(game_id, count):
    """Return ``count`` spots, clamped to ``[0, capacity]``; full games reopen."""
    restored = _games.c.spots_remaining + count
    clamped = case(
        (restored > _games.c.capacity, _games.c.capacity),
        (restored < 0, 0),
        else_=restored,
    )
    stmt = (
        update(_games)
        .where(_games.c.game_id == game_id)
        .values(
            spots_remaining=clamped,
            status=case(
                (and_(_games.c.status == 'full', clamped > 0), 'open'),
                else_=_games.c.status,
            ),
            updated_at=utcnow_naive(),
        )
    )
    released = db.session.execute(stmt).rowcount == 1
    db.session.expire_all()
    return released


def resize_capacity(game_id, new_capacity):
    """Set a new capacity while keeping the booked player count fixed.

    Refused (returns False) when fewer spots than are already booked.
    """
    booked = _games.c.capacity - _games.c.spots_remaining
    remaining = new_capacity - booked
    stmt = (
        update(_games)
        .where(_games.c.game_id == game_id, booked <= new_capacity)
        .values(
            capacity=new_capacity,
            spots_remaining=remaining,
            status=case(
                (_games.c.status.in_(CLOSED_GAME_STATUSES), _games.c.status),
                (remaining <= 0, 'full'),
                (_games.c.status == 'full', 'open'),
                else_=_games.c.status,
            ),
            updated_at=utcnow_naive(),
        )
    )
    resized = db.session.execute(stmt).rowcount == 1
    db.session.expire_all()
    return resized


def game_payload(game):
    return {
        'game_id': game.game_id,
        'spots_remaining': game.spots_remaining,
        'capacity': game.capacity,
        'status': game.status,
    }


def broadcast_game_update(game):
    socketio.emit('game_update', game_payload(game), room=f'game_{game.game_id}')


# ── Admin game management ─────────────────────────────────────────────

def _parse_datetime(raw_value, field):
    raw = str(raw_value or '').strip()
    if not raw:
        raise ValidationError(f'{field} is required', field=field)
    try:
        return to_utc_naive(datetime.fromisoformat(raw))
    except ValueError:
        raise ValidationError(f'{field} must be a valid ISO datetime', field=field)


def _parse_price_cents(data, default_cents):
    if 'price_cents' in data:
        raw, scale = data.get('price_cents'), 1
    elif 'price' in data:
        raw, scale = data.get('price'), 100
    else:
        return default_cents
    try:
        cents = int(round(float(raw) * scale))
    except (TypeError, ValueError):
        raise ValidationError('Price must be a number', field='price')
    if cents < 0:
        raise ValidationError('Price cannot be negative', field='price')
    return cents


def parse_capacity(raw_value):
    try:
        capacity = int(raw_value)
    except (TypeError, ValueError):
        raise ValidationError('Capacity must be a number', field='capacity')
    if capacity < 1 or capacity > _MAX_CAPACITY:
        raise ValidationError(f'Capacity must be between 1 and {_MAX_CAPACITY}', field='capacity')
    return capacity


def _parse_day_of_week(raw_value, fallback_date=None):
    day = str(raw_value or '').strip().capitalize()
    if not day and fallback_date is not None:
        return DAYS_OF_WEEK[fallback_date.weekday()]
    if day not in DAYS_OF_WEEK:
        raise ValidationError('Invalid day of week', field='day_of_week')
    return day


def create_game(data, defaults):
    if not isinstance(data, dict):
        raise ValidationError('Invalid JSON payload')

    game_id = normalize_game_id(data.get('game_id'))
    if not _GAME_ID_RE.match(game_id):
        raise ValidationError('Game ID may only contain letters, digits, - and _', field='game_id')
    if find_game(game_id):
        raise BookingError('A game with this ID already exists', code='GAME_EXISTS', status_code=409)

    title = sanitize_text(data.get('title'), 200)
    venue = data.get('venue') if isinstance(data.get('venue'), dict) else {}
    venue_name = sanitize_text(venue.get('name') or data.get('venue_name'), 200)
    venue_address = sanitize_text(venue.get('address') or data.get('venue_address'), 500)
    time_label = sanitize_text(data.get('time'), 20)
    if not title or not venue_name or not venue_address or not time_label:
        raise ValidationError('Title, venue name, venue address and time are required')

    start = _parse_datetime(data.get('date'), 'date')
    capacity = parse_capacity(data.get('capacity', defaults['capacity']))
    status = str(data.get('status') or 'open').strip().lower()
    if status not in ('open', 'scheduled'):
        raise ValidationError('New games must be open or scheduled', field='status')

    game = Game(
        game_id=game_id,
        title=title,
        venue_name=venue_name,
        venue_address=venue_address,
        maps_url=sanitize_text(venue.get('maps_url') or data.get('maps_url'), 500),
        day_of_week=_parse_day_of_week(data.get('day_of_week'), start),
        time=time_label,
        date=start,
        price_cents=_parse_price_cents(data, defaults['price_cents']),
        capacity=capacity,
        spots_remaining=capacity,
        status=status,
        format=sanitize_text(data.get('format'), 40),
        skill_level=sanitize_text(data.get('skill_level') or 'all', 40),
        description=sanitize_text(data.get('description'), 2000),
    )
    db.session.add(game)
    db.session.commit()
    logger.info('Created game %s (%s) capacity=%s', game.game_id, game.title, game.capacity)
    return game


def apply_game_details(game, data):
    """Stage edits to descriptive fields; the caller commits.

    Capacity and status have their own operations.
    """
    if not isinstance(data, dict):
        raise ValidationError('Invalid JSON payload')

    for field, limit in (('title', 200), ('time', 20), ('format', 40),
                         ('skill_level', 40), ('description', 2000)):
        if field in data:
            value = sanitize_text(data.get(field), limit)
            if field in ('title', 'time') and not value:
                raise ValidationError(f'{field} cannot be empty', field=field)
            setattr(game, field, value)

    venue = data.get('venue') if isinstance(data.get('venue'), dict) else {}
    for field, key, limit in (('venue_name', 'name', 200),
                              ('venue_address', 'address', 500),
                              ('maps_url', 'maps_url', 500)):
        if key in venue or field in data:
            value = sanitize_text(venue.get(key, data.get(field)), limit)
            if field != 'maps_url' and not value:
                raise ValidationError(f'{field} cannot be empty', field=field)
            setattr(game, field, value)

    if 'date' in data:
        game.date = _parse_datetime(data.get('date'), 'date')
        game.day_of_week = _parse_day_of_week(data.get('day_of_week'), game.date)
    elif 'day_of_week' in data:
        game.day_of_week = _parse_day_of_week(data.get('day_of_week'))

    if 'price' in data or 'price_cents' in data:
        # Existing reservations keep the price captured at booking time.
        game.price_cents = _parse_price_cents(data, game.price_cents)

    # Capacity UPDATEs expire the session, which would drop unflushed edits.
    db.session.flush()
    return game


def apply_game_status(game, status):
    """Stage a status change; the caller commits."""
    status = str(status or '').strip().lower()
    if status not in GAME_STATUSES:
        raise ValidationError('Invalid game status', field='status')
    if status == 'full' and game.spots_remaining > 0:
        raise ValidationError('A game with open spots cannot be marked full', field='status')

    if status in CLOSED_GAME_STATUSES:
        game.status = status
    else:
        game.status = derive_status(status, game.spots_remaining)
    db.session.flush()
    return game


def set_game_status(game, status):
    try:
        apply_game_status(game, status)
    except BookingError:
        db.session.rollback()
        raise
    db.session.commit()
    logger.info('Game %s status set to %s', game.game_id, game.status)
    broadcast_game_update(game)
    return game


# ── Templates ─────────────────────────────────────────────────────────

def list_templates():
    return GameTemplate.query.filter_by(is_active=True).order_by(GameTemplate.id.asc()).all()


def create_template(data, defaults):
    if not isinstance(data, dict):
        raise ValidationError('Invalid JSON payload')

    name = sanitize_text(data.get('name'), 200)
    venue = data.get('venue') if isinstance(data.get('venue'), dict) else {}
    venue_name = sanitize_text(venue.get('name') or data.get('venue_name'), 200)
    venue_address = sanitize_text(venue.get('address') or data.get('venue_address'), 500)
    time_label = sanitize_text(data.get('time'), 20)
    if not name or not venue_name or not venue_address or not time_label:
        raise ValidationError('Name, venue name, venue address and time are required')

    try:
        start_hour = int(data.get('start_hour', 19))
        start_minute = int(data.get('start_minute', 0))
    except (TypeError, ValueError):
        raise ValidationError('Start hour and minute must be numbers')
    if not (0 <= start_hour <= 23 and 0 <= start_minute <= 59):
        raise ValidationError('Start hour or minute out of range')

    template = GameTemplate(
        name=name,
        day_of_week=_parse_day_of_week(data.get('day_of_week')),
        time=time_label,
        start_hour=start_hour,
        start_minute=start_minute,
        venue_name=venue_name,
        venue_address=venue_address,
        maps_url=sanitize_text(venue.get('maps_url') or data.get('maps_url'), 500),
        price_cents=_parse_price_cents(data, defaults['price_cents']),
        capacity=parse_capacity(data.get('capacity', defaults['capacity'])),
        is_active=bool(data.get('is_active', True)),
    )
    db.session.add(template)
    db.session.commit()
    return template


def next_occurrence(day_of_week, today):
    """Next date strictly after ``today`` falling on ``day_of_week``."""
    days_until = DAYS_OF_WEEK.index(day_of_week) - today.weekday()
    if days_until <= 0:
        days_until += 7
    return today + timedelta(days=days_until)


def generate_week(now=None):
    """Create next week's games from active templates, skipping existing ones."""
    templates = list_templates()
    if not templates:
        raise ValidationError('No active templates found')

    today = (now or utcnow_naive()).date()
    created = []
    for template in templates:
        game_day = next_occurrence(template.day_of_week, today)
        day_start = datetime(game_day.year, game_day.month, game_day.day)
        existing = Game.query.filter(
            Game.venue_name == template.venue_name,
            Game.date >= day_start,
            Game.date < day_start + timedelta(days=1),
        ).first()
        if existing:
            continue

        game = Game(
            game_id=f'G-{game_day:%Y%m%d}-{template.id}',
            title=template.name,
            venue_name=template.venue_name,
            venue_address=template.venue_address,
            maps_url=template.maps_url,
            day_of_week=template.day_of_week,
            time=template.time,
            date=day_start.replace(hour=template.start_hour, minute=template.start_minute),
            price_cents=template.price_cents,
            capacity=template.capacity,
            spots_remaining=template.capacity,
            status='open',
        )
        db.session.add(game)
        created.append(game)

    db.session.commit()
    logger.info('Generated %d games from %d templates', len(created), len(templates))
    return created
