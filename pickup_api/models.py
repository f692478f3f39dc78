import json
from pickup_api.app import db
from pickup_api.time_utils import utcnow_naive

GAME_STATUSES = ('scheduled', 'open', 'full', 'in-progress', 'completed', 'cancelled')
# Statuses an admin or the clock sets explicitly; capacity changes never override them.
CLOSED_GAME_STATUSES = ('in-progress', 'completed', 'cancelled')

RESERVATION_STATUSES = ('confirmed', 'pending', 'cancelled', 'no-show')
PAYMENT_STATUSES = ('pending', 'paid', 'refunded', 'cancelled')
PAYMENT_METHODS = ('online', 'cash', 'cashapp')
CASH_PAYMENT_METHODS = ('cash', 'cashapp')

DAYS_OF_WEEK = ('Monday', 'Tuesday', 'Wednesday', 'Thursday', 'Friday', 'Saturday', 'Sunday')


def _safe_json(raw_value, fallback=None):
    if fallback is None:
        fallback = {}
    if not raw_value:
        return fallback
    try:
        return json.loads(raw_value)
    except (TypeError, ValueError):
        return fallback


def _cents_to_amount(cents):
    return round((cents or 0) / 100, 2)


def derive_status(current_status, spots_remaining):
    """Return the game status implied by remaining capacity.

    Closed statuses are sticky. Otherwise a game with no spots left is full,
    and a full game that regains spots goes back to open.
    """
    if current_status in CLOSED_GAME_STATUSES:
        return current_status
    if spots_remaining <= 0:
        return 'full'
    if current_status == 'full':
        return 'open'
    return current_status or 'open'


class Game(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    game_id = db.Column(db.String(40), unique=True, nullable=False)
    title = db.Column(db.String(200), nullable=False)
    venue_name = db.Column(db.String(200), nullable=False)
    venue_address = db.Column(db.String(500), nullable=False)
    maps_url = db.Column(db.String(500), default='')
    day_of_week = db.Column(db.String(10), nullable=False)
    time = db.Column(db.String(20), nullable=False)  # display label, e.g. '8:30 PM'
    date = db.Column(db.DateTime, nullable=False)  # game start, naive UTC
    price_cents = db.Column(db.Integer, nullable=False, default=599)
    capacity = db.Column(db.Integer, nullable=False, default=24)
    spots_remaining = db.Column(db.Integer, nullable=False, default=24)
    status = db.Column(db.String(20), nullable=False, default='open')
    format = db.Column(db.String(40), default='')
    skill_level = db.Column(db.String(40), default='all')
    description = db.Column(db.Text, default='')
    created_at = db.Column(db.DateTime, default=lambda: utcnow_naive())
    updated_at = db.Column(db.DateTime, default=lambda: utcnow_naive(),
                           onupdate=lambda: utcnow_naive())

    __table_args__ = (
        db.CheckConstraint('spots_remaining >= 0', name='ck_game_spots_non_negative'),
        db.CheckConstraint('spots_remaining <= capacity', name='ck_game_spots_within_capacity'),
        db.Index('ix_game_status_date', 'status', 'date'),
    )

    @property
    def is_closed(self):
        return self.status in CLOSED_GAME_STATUSES

    def to_dict(self):
        return {
            'game_id': self.game_id, 'title': self.title,
            'venue': {
                'name': self.venue_name,
                'address': self.venue_address,
                'maps_url': self.maps_url,
            },
            'day_of_week': self.day_of_week, 'time': self.time,
            'date': self.date.isoformat() if self.date else None,
            'price': _cents_to_amount(self.price_cents),
            'price_cents': self.price_cents,
            'capacity': self.capacity,
            'spots_remaining': self.spots_remaining,
            'status': self.status,
            'format': self.format, 'skill_level': self.skill_level,
            'description': self.description,
        }


class Reservation(db.Model):
    """A claim on one or more spots in a game (the holder plus guests)."""
    id = db.Column(db.Integer, primary_key=True)
    confirmation_code = db.Column(db.String(32), unique=True, nullable=False)
    # Loose reference by identifier; games and reservations have independent lifecycles.
    game_id = db.Column(db.String(40), nullable=False, index=True)
    first_name = db.Column(db.String(100), nullable=False)
    last_name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(254), nullable=False)
    phone = db.Column(db.String(30), default='')
    guests_json = db.Column(db.Text, default='[]')
    total_players = db.Column(db.Integer, nullable=False, default=1)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    total_amount_cents = db.Column(db.Integer, nullable=False)
    payment_method = db.Column(db.String(20), nullable=False)
    payment_status = db.Column(db.String(20), nullable=False, default='pending')
    status = db.Column(db.String(20), nullable=False, default='pending')
    waiver_accepted = db.Column(db.Boolean, nullable=False, default=False)
    waiver_accepted_at = db.Column(db.DateTime, nullable=True)
    waiver_accepted_ip = db.Column(db.String(64), default='')
    payment_session_id = db.Column(db.String(255), unique=True, nullable=True)
    payment_reference = db.Column(db.String(255), nullable=True)
    refund_reference = db.Column(db.String(255), nullable=True)
    refund_eligible = db.Column(db.Boolean, nullable=True)  # frozen at cancellation
    cancelled_at = db.Column(db.DateTime, nullable=True)
    checked_in = db.Column(db.Boolean, default=False, nullable=False)
    language = db.Column(db.String(5), default='en')
    created_at = db.Column(db.DateTime, default=lambda: utcnow_naive())
    updated_at = db.Column(db.DateTime, default=lambda: utcnow_naive(),
                           onupdate=lambda: utcnow_naive())

    __table_args__ = (
        # At most one live booking per holder per game.
        db.Index(
            'ix_reservation_active_holder', 'game_id', 'email', unique=True,
            sqlite_where=db.text("status != 'cancelled'"),
            postgresql_where=db.text("status != 'cancelled'"),
        ),
        db.Index('ix_reservation_game_email', 'game_id', 'email'),
    )

    @property
    def guests(self):
        return _safe_json(self.guests_json, fallback=[])

    @guests.setter
    def guests(self, value):
        self.guests_json = json.dumps(list(value or []))

    @property
    def is_online(self):
        return self.payment_method == 'online'

    def public_dict(self):
        """Squad-list view: names only."""
        return {
            'first_name': self.first_name,
            'last_initial': (self.last_name or '')[:1],
            'total_players': self.total_players,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }

    def to_dict(self):
        return {
            'confirmation_code': self.confirmation_code,
            'game_id': self.game_id,
            'player': {
                'first_name': self.first_name, 'last_name': self.last_name,
                'email': self.email, 'phone': self.phone,
            },
            'guests': self.guests,
            'total_players': self.total_players,
            'total_amount': _cents_to_amount(self.total_amount_cents),
            'total_amount_cents': self.total_amount_cents,
            'payment_method': self.payment_method,
            'payment_status': self.payment_status,
            'status': self.status,
            'refund_eligible': self.refund_eligible,
            'checked_in': self.checked_in,
            'waiver_accepted_at': self.waiver_accepted_at.isoformat() if self.waiver_accepted_at else None,
            'cancelled_at': self.cancelled_at.isoformat() if self.cancelled_at else None,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }

    def admin_dict(self):
        data = self.to_dict()
        data.update({
            'waiver_accepted_ip': self.waiver_accepted_ip,
            'payment_session_id': self.payment_session_id,
            'payment_reference': self.payment_reference,
            'refund_reference': self.refund_reference,
            'language': self.language,
        })
        return data


class WaitlistEntry(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    game_id = db.Column(db.String(40), nullable=False)
    email = db.Column(db.String(254), nullable=False)
    name = db.Column(db.String(100), nullable=False)
    phone = db.Column(db.String(30), default='')
    language = db.Column(db.String(5), default='en')
    notified = db.Column(db.Boolean, default=False, nullable=False)
    notified_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=lambda: utcnow_naive())

    __table_args__ = (
        db.UniqueConstraint('game_id', 'email', name='uq_waitlist_game_email'),
        db.Index('ix_waitlist_game_notified_created', 'game_id', 'notified', 'created_at'),
    )

    def to_dict(self):
        return {
            'game_id': self.game_id, 'name': self.name,
            'email': self.email, 'phone': self.phone,
            'notified': self.notified,
            'notified_at': self.notified_at.isoformat() if self.notified_at else None,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }


class GameTemplate(db.Model):
    """Weekly recurring game definition used to generate upcoming games."""
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    day_of_week = db.Column(db.String(10), nullable=False)
    time = db.Column(db.String(20), nullable=False)
    start_hour = db.Column(db.Integer, nullable=False, default=19)  # UTC
    start_minute = db.Column(db.Integer, nullable=False, default=0)
    venue_name = db.Column(db.String(200), nullable=False)
    venue_address = db.Column(db.String(500), nullable=False)
    maps_url = db.Column(db.String(500), default='')
    price_cents = db.Column(db.Integer, nullable=False, default=599)
    capacity = db.Column(db.Integer, nullable=False, default=24)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=lambda: utcnow_naive())

    def to_dict(self):
        return {
            'id': self.id, 'name': self.name,
            'day_of_week': self.day_of_week, 'time': self.time,
            'start_hour': self.start_hour, 'start_minute': self.start_minute,
            'venue': {
                'name': self.venue_name,
                'address': self.venue_address,
                'maps_url': self.maps_url,
            },
            'price': _cents_to_amount(self.price_cents),
            'capacity': self.capacity,
            'is_active': self.is_active,
        }
