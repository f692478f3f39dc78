"""Socket rooms for live capacity updates (``game_<game_id>``)."""
from flask_socketio import emit, join_room, leave_room
from pickup_api.app import socketio


def _game_room(data):
    payload = data if isinstance(data, dict) else {}
    game_id = str(payload.get('game_id') or '').strip()
    return f'game_{game_id}' if game_id else ''


@socketio.on('join')
def on_join(data):
    room = _game_room(data)
    if not room:
        emit('status', {'error': 'game_id is required'})
        return
    join_room(room)
    emit('status', {'message': f'Joined {room}'})


@socketio.on('leave')
def on_leave(data):
    room = _game_room(data)
    if room:
        leave_room(room)
