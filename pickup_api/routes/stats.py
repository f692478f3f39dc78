from flask import Blueprint, jsonify
from sqlalchemy import func
from pickup_api.app import db
from pickup_api.models import Game, Reservation

stats_bp = Blueprint('stats', __name__)

_LIVE_STATUSES = ('confirmed', 'pending')


@stats_bp.route('/platform', methods=['GET'])
def get_platform_stats():
    """Aggregate counts for the landing page."""
    live = Reservation.query.filter(Reservation.status.in_(_LIVE_STATUSES))
    unique_players = db.session.query(func.count(func.distinct(Reservation.email))).filter(
        Reservation.status.in_(_LIVE_STATUSES),
    ).scalar() or 0
    total_participants = db.session.query(func.sum(Reservation.total_players)).filter(
        Reservation.status.in_(_LIVE_STATUSES),
    ).scalar() or 0
    total_rsvps = live.count()

    return jsonify({
        'unique_players': unique_players,
        'total_guests': total_participants - total_rsvps,
        'total_participants': total_participants,
        'total_rsvps': total_rsvps,
        'total_games': Game.query.count(),
    })
