from flask import Blueprint, request, jsonify
from pickup_api.services import game_catalog, waitlist

waitlist_bp = Blueprint('waitlist', __name__)


@waitlist_bp.route('', methods=['POST'])
def join_waitlist():
    entry, position = waitlist.join_waitlist(request.get_json(silent=True))
    return jsonify({
        'success': True,
        'position': position,
        'message': f"You're #{position} on the waitlist",
        'game_id': entry.game_id,
    }), 201


@waitlist_bp.route('/<game_id>', methods=['GET'])
def get_waitlist_count(game_id):
    game_catalog.get_game(game_id)
    return jsonify({'game_id': game_id, 'count': waitlist.waitlist_count(game_id)})
