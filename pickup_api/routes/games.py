from flask import Blueprint, request, jsonify
from pickup_api.services import booking_engine, game_catalog

games_bp = Blueprint('games', __name__)


@games_bp.route('', methods=['GET'])
def get_games():
    """List upcoming bookable games, soonest first."""
    skill = request.args.get('skill_level', '')
    open_only = request.args.get('open_only', 'false')

    games = game_catalog.list_upcoming_games()
    if skill and skill != 'all':
        games = [g for g in games if g.skill_level == skill]
    if open_only == 'true':
        games = [g for g in games if g.spots_remaining > 0]
    return jsonify({'games': [g.to_dict() for g in games]})


@games_bp.route('/<game_id>', methods=['GET'])
def get_game(game_id):
    game = game_catalog.find_game(game_id)
    if not game:
        return jsonify({'error': 'Game not found'}), 404
    return jsonify({'game': game.to_dict()})


@games_bp.route('/<game_id>/rsvps', methods=['GET'])
def get_squad(game_id):
    """Public squad list: first names and party sizes only."""
    squad = booking_engine.squad_list(game_id)
    return jsonify({
        'rsvps': squad,
        'total_players': sum(r['total_players'] for r in squad),
    })
