from flask_socketio import join_room, leave_room, emit
from flask import request
from quizmaster import socketio
from quizmaster.models import isoformat, utcnow
from quizmaster.services.games.errors import GameError
from quizmaster.services.games.fanout import session_topic
from quizmaster.services.games.runtime import get_runtime
from typing import Dict


# Session room each connection has joined
_sid_to_session: Dict[str, int] = {}


def _get_sid() -> str:
    # type: ignore: request.sid exists in Socket.IO context
    return request.sid  # type: ignore


def handle_connect():
    emit('connected', {'message': 'Connected to /ws', 'server_time': isoformat(utcnow())})


def handle_disconnect(*args):
    # Connections are transport only; leaving a session is an explicit command
    _sid_to_session.pop(_get_sid(), None)


def handle_join_session(data):
    session_id = (data or {}).get('session_id')
    if session_id is None:
        emit('error', {'error': 'invalid_input', 'message': 'session_id is required'})
        return
    try:
        snapshot = get_runtime().engine.snapshot(int(session_id))
    except (TypeError, ValueError):
        emit('error', {'error': 'invalid_input', 'message': 'session_id must be an integer'})
        return
    except GameError as exc:
        emit('error', exc.to_dict())
        return
    room = session_topic(snapshot['id'])
    join_room(room)
    _sid_to_session[_get_sid()] = snapshot['id']
    emit('joined', {'room': room, 'session': snapshot, 'server_time': isoformat(utcnow())})


def handle_leave_session(data):
    joined = _sid_to_session.pop(_get_sid(), None)
    session_id = (data or {}).get('session_id') or joined
    if session_id is None:
        emit('error', {'error': 'invalid_input', 'message': 'session_id is required'})
        return
    room = session_topic(session_id)
    leave_room(room)
    emit('left', {'room': room})
    # A player id means the player quits the game, not just the room
    player_id = (data or {}).get('player_id')
    if player_id is not None:
        try:
            get_runtime().engine.leave(int(session_id), int(player_id))
        except (TypeError, ValueError):
            emit('error', {'error': 'invalid_input', 'message': 'player_id must be an integer'})
        except GameError as exc:
            emit('error', exc.to_dict())


def handle_ping(data):
    payload = dict(data or {})
    payload['server_time'] = isoformat(utcnow())
    emit('pong', payload)


def register_socketio_handlers(testing: bool = False) -> None:
    """Register Socket.IO event handlers.

    Always register on namespace '/ws'. When testing is True, also mirror
    handlers on the default namespace '/' to accommodate the test harness.
    """
    # Primary namespace
    socketio.on_event('connect', handle_connect, namespace='/ws')
    socketio.on_event('disconnect', handle_disconnect, namespace='/ws')
    socketio.on_event('join_session', handle_join_session, namespace='/ws')
    socketio.on_event('leave_session', handle_leave_session, namespace='/ws')
    socketio.on_event('ping', handle_ping, namespace='/ws')

    if testing:
        # Test-only mirror on default namespace
        socketio.on_event('connect', handle_connect, namespace='/')
        socketio.on_event('disconnect', handle_disconnect, namespace='/')
        socketio.on_event('join_session', handle_join_session, namespace='/')
        socketio.on_event('leave_session', handle_leave_session, namespace='/')
        socketio.on_event('ping', handle_ping, namespace='/')
