from flask_socketio import join_room, leave_room, emit
from flask import current_app
from lyricbattle import socketio

LOBBY_ROOM = 'lobby'


def match_room(match_id) -> str:
    return f"match:{match_id}"


def broadcast_match_update(match_id, status) -> None:
    """Push a refresh hint for a match to its room and to the lobby.

    Clients re-fetch the match on receipt; delivery is best-effort and
    never part of a state transition.
    """
    payload = {'match_id': match_id, 'status': status}
    try:
        socketio.emit('match_update', payload, to=match_room(match_id), namespace='/ws')
        socketio.emit('match_update', payload, to=LOBBY_ROOM, namespace='/ws')
    except Exception:
        current_app.logger.exception(f"[feed-error] match={match_id} status={status}")


def handle_connect():
    emit('connected', {'message': 'Connected to /ws'})


def handle_join_match(data):
    match_id = (data or {}).get('match_id')
    if not match_id:
        emit('error', {'message': 'match_id is required'})
        return
    room = match_room(match_id)
    join_room(room)
    emit('joined', {'room': room})


def handle_leave_match(data):
    match_id = (data or {}).get('match_id')
    if not match_id:
        emit('error', {'message': 'match_id is required'})
        return
    room = match_room(match_id)
    leave_room(room)
    emit('left', {'room': room})


def handle_join_lobby(data=None):
    join_room(LOBBY_ROOM)
    emit('joined', {'room': LOBBY_ROOM})


def handle_ping(data):
    emit('pong', data or {})


def register_socketio_handlers(testing: bool = False) -> None:
    """Register Socket.IO event handlers.

    Always register on namespace '/ws'. When testing is True, also mirror
    handlers on the default namespace '/' to accommodate the test harness.
    """
    namespaces = ['/ws', '/'] if testing else ['/ws']
    for ns in namespaces:
        socketio.on_event('connect', handle_connect, namespace=ns)
        socketio.on_event('join_match', handle_join_match, namespace=ns)
        socketio.on_event('leave_match', handle_leave_match, namespace=ns)
        socketio.on_event('join_lobby', handle_join_lobby, namespace=ns)
        socketio.on_event('ping', handle_ping, namespace=ns)
