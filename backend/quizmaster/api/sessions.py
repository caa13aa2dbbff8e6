from flask import Blueprint, jsonify, request, current_app
from quizmaster.services.games.errors import GameError, InvalidInput, STORAGE
from quizmaster.services.games.runtime import get_runtime


sessions = Blueprint('sessions', __name__)
players = Blueprint('players', __name__)


def _handle_game_error(exc: GameError):
    if exc.category == STORAGE:
        return jsonify({'error': exc.code, 'message': 'internal error'}), exc.status
    return jsonify(exc.to_dict()), exc.status

sessions.register_error_handler(GameError, _handle_game_error)
players.register_error_handler(GameError, _handle_game_error)


def _require_int(data, field, required=True):
    value = data.get(field)
    if value is None:
        if required:
            raise InvalidInput(f'{field} is required')
        return None
    if isinstance(value, bool):
        raise InvalidInput(f'{field} must be an integer')
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InvalidInput(f'{field} must be an integer')


@sessions.route('', methods=['POST'])
def create_session():
    game = get_runtime().lobby.create_session()
    return jsonify(game), 201


@sessions.route('/<int:session_id>', methods=['GET'])
def get_session(session_id):
    return jsonify(get_runtime().lobby.get_session(session_id))


@sessions.route('/code/<string:code>', methods=['GET'])
def get_session_by_code(code):
    return jsonify(get_runtime().lobby.find_session_by_code(code))


@sessions.route('/<int:session_id>/players', methods=['GET'])
def list_players(session_id):
    return jsonify(get_runtime().lobby.list_players(session_id))


@sessions.route('/<int:session_id>/players', methods=['POST'])
def join_session(session_id):
    data = request.get_json(silent=True) or {}
    player = get_runtime().lobby.join(session_id, data.get('username'))
    return jsonify(player), 201


@sessions.route('/<int:session_id>/start_round', methods=['POST'])
def start_round(session_id):
    """
    Starts a round. Only the game master may call this, from 'waiting',
    with enough active players (the master counts).
    """
    data = request.get_json(silent=True) or {}
    player_id = _require_int(data, 'player_id')
    game = get_runtime().engine.start_round(
        session_id,
        player_id,
        data.get('question'),
        data.get('answer'),
        data.get('duration_seconds'),
    )
    return jsonify(game)


@sessions.route('/<int:session_id>/guess', methods=['POST'])
def submit_guess(session_id):
    data = request.get_json(silent=True) or {}
    player_id = _require_int(data, 'player_id')
    result = get_runtime().engine.submit_guess(session_id, player_id, data.get('guess'))
    return jsonify(result)


@sessions.route('/<int:session_id>/end_round', methods=['POST'])
def end_round(session_id):
    """
    Manual override: ends the active round, optionally crediting a winner.
    """
    data = request.get_json(silent=True) or {}
    winner_id = _require_int(data, 'winner_id', required=False)
    game = get_runtime().engine.end_round(session_id, winner_id)
    return jsonify(game)


@sessions.route('/<int:session_id>/leave', methods=['POST'])
def leave_session(session_id):
    """
    Removes a player from the session. If the last active player leaves,
    the session and all related data is deleted.
    """
    data = request.get_json(silent=True) or {}
    player_id = _require_int(data, 'player_id')
    game = get_runtime().engine.leave(session_id, player_id)
    current_app.logger.info(f"[leave] session={session_id} player={player_id} deleted={game is None}")
    return jsonify({'ok': True, 'session': game})


@sessions.route('/<int:session_id>/attempts/<int:player_id>', methods=['GET'])
def list_attempts(session_id, player_id):
    return jsonify(get_runtime().lobby.list_attempts(session_id, player_id))


@players.route('/<int:player_id>/heartbeat', methods=['POST'])
def heartbeat(player_id):
    return jsonify(get_runtime().lobby.heartbeat(player_id))


@players.route('/<int:player_id>/score', methods=['POST'])
def adjust_score(player_id):
    data = request.get_json(silent=True) or {}
    session_id = _require_int(data, 'session_id')
    delta = _require_int(data, 'delta')
    return jsonify(get_runtime().lobby.adjust_score(session_id, player_id, delta))
