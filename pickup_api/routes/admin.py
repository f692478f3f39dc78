import logging
from flask import Blueprint, request, jsonify, current_app
from pickup_api.auth_utils import admin_key_matches, admin_required, generate_admin_token
from pickup_api.services import booking_engine, game_catalog

logger = logging.getLogger(__name__)

admin_bp = Blueprint('admin', __name__)


def _game_defaults():
    return {
        'capacity': current_app.config.get('DEFAULT_GAME_CAPACITY', 24),
        'price_cents': current_app.config.get('DEFAULT_GAME_PRICE_CENTS', 599),
    }


@admin_bp.route('/token', methods=['POST'])
def issue_token():
    """Exchange the shared admin key for a short-lived bearer token."""
    data = request.get_json(silent=True) or {}
    if not admin_key_matches(data.get('admin_key')):
        logger.warning('Invalid admin key presented from %s', request.remote_addr)
        return jsonify({'error': 'Invalid admin key'}), 401
    return jsonify({'token': generate_admin_token()})


# ── Games ─────────────────────────────────────────────────────────────

@admin_bp.route('/games', methods=['POST'])
@admin_required
def create_game():
    game = game_catalog.create_game(request.get_json(silent=True), _game_defaults())
    return jsonify({'game': game.to_dict()}), 201


@admin_bp.route('/games/<game_id>', methods=['PATCH'])
@admin_required
def update_game(game_id):
    game = booking_engine.update_game(game_id, request.get_json(silent=True) or {})
    return jsonify({'game': game.to_dict()})


@admin_bp.route('/games/<game_id>/capacity', methods=['PUT'])
@admin_required
def update_capacity(game_id):
    data = request.get_json(silent=True) or {}
    game, promoted = booking_engine.change_capacity(game_id, data.get('capacity'))
    return jsonify({'game': game.to_dict(), 'waitlist_notified': len(promoted)})


@admin_bp.route('/games/<game_id>/status', methods=['PUT'])
@admin_required
def update_status(game_id):
    data = request.get_json(silent=True) or {}
    game = game_catalog.set_game_status(game_catalog.get_game(game_id), data.get('status'))
    return jsonify({'game': game.to_dict()})


@admin_bp.route('/games/<game_id>/roster', methods=['GET'])
@admin_required
def get_roster(game_id):
    return jsonify(booking_engine.roster(game_id))


# ── Reservations ──────────────────────────────────────────────────────

@admin_bp.route('/rsvps/<code>/checkin', methods=['POST'])
@admin_required
def check_in(code):
    data = request.get_json(silent=True) or {}
    reservation = booking_engine.set_checked_in(code, data.get('checked_in', True))
    return jsonify({'rsvp': reservation.admin_dict()})


@admin_bp.route('/rsvps/<code>/no-show', methods=['POST'])
@admin_required
def no_show(code):
    reservation = booking_engine.mark_no_show(code)
    return jsonify({'rsvp': reservation.admin_dict()})


@admin_bp.route('/rsvps/<code>/refund', methods=['POST'])
@admin_required
def refund(code):
    data = request.get_json(silent=True) or {}
    reservation = booking_engine.execute_refund(code, override=data.get('override') is True)
    return jsonify({'rsvp': reservation.admin_dict()})


# ── Templates ─────────────────────────────────────────────────────────

@admin_bp.route('/templates', methods=['GET'])
@admin_required
def get_templates():
    return jsonify({'templates': [t.to_dict() for t in game_catalog.list_templates()]})


@admin_bp.route('/templates', methods=['POST'])
@admin_required
def create_template():
    template = game_catalog.create_template(request.get_json(silent=True), _game_defaults())
    return jsonify({'template': template.to_dict()}), 201


@admin_bp.route('/generate-week', methods=['POST'])
@admin_required
def generate_week():
    created = game_catalog.generate_week()
    return jsonify({
        'created': len(created),
        'games': [g.to_dict() for g in created],
    })
