from flask import current_app
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from quizmaster import db
from quizmaster.models import GameSession, Player
from . import scoring, store
from .errors import InvalidInput, NotFound, StorageError, UsernameTaken
from .fanout import session_topic
from .rules import clean_username


class LobbyService:
    """Session membership: create, join, heartbeats and score adjustments."""

    def __init__(self, engine):
        self.engine = engine

    def create_session(self):
        length = int(current_app.config.get('JOIN_CODE_LENGTH', 6))
        for _ in range(5):
            game = GameSession(code=store.generate_join_code(length), status='waiting')
            db.session.add(game)
            try:
                db.session.commit()
            except IntegrityError:
                # Code taken by a concurrent create; try another
                db.session.rollback()
                continue
            except SQLAlchemyError as exc:
                db.session.rollback()
                current_app.logger.exception("[create_session] insert failed")
                raise StorageError('internal error') from exc
            current_app.logger.info(f"[create_session] session={game.id} code={game.code}")
            return game.to_dict()
        raise StorageError('Could not allocate a join code')

    def get_session(self, session_id):
        return self.engine.snapshot(session_id)

    def find_session_by_code(self, code):
        game = store.get_session_by_code(code)
        if game is None:
            raise NotFound('Session not found')
        return game.to_dict()

    def join(self, session_id, username):
        name = clean_username(username)
        with self.engine.transaction(session_id, 'join') as (game, outbox):
            players = store.session_players(game.id)
            if any(p.username.lower() == name.lower() for p in players):
                raise UsernameTaken('Username already taken in this session')
            player = Player(session_id=game.id, username=name, joined_at=self.engine.clock())
            db.session.add(player)
            try:
                db.session.flush()
            except IntegrityError:
                raise UsernameTaken('Username already taken in this session')
            master = next((p for p in players if p.id == game.game_master_id), None)
            if master is None or not master.is_active:
                game.game_master_id = player.id
            outbox.add('player_join', player)
            outbox.add('session_update', game)
        return player.to_dict()

    def list_players(self, session_id):
        if store.get_session(session_id) is None:
            raise NotFound('Session not found')
        return [p.to_dict() for p in store.list_active_players(session_id)]

    def list_attempts(self, session_id, player_id):
        """The player's attempts on the session's active round."""
        game = store.get_session(session_id)
        if game is None:
            raise NotFound('Session not found')
        if game.current_round_id is None:
            return []
        return [a.to_dict() for a in store.attempts_for(game.current_round_id, player_id)]

    def heartbeat(self, player_id):
        """Mark a player as seen. Locks only the player row."""
        try:
            player = store.lock_player(player_id)
            if player is None:
                db.session.rollback()
                raise NotFound('Player not found')
            player.last_seen_at = self.engine.clock()
            db.session.commit()
        except SQLAlchemyError as exc:
            db.session.rollback()
            current_app.logger.exception(f"[heartbeat] player={player_id} failed")
            raise StorageError('internal error') from exc
        payload = player.to_dict()
        self.engine.broker.publish(session_topic(player.session_id), 'player_update', payload)
        return payload

    def adjust_score(self, session_id, player_id, delta):
        if isinstance(delta, bool) or not isinstance(delta, int):
            raise InvalidInput('delta must be an integer')
        with self.engine.transaction(session_id, 'adjust_score') as (game, outbox):
            player = store.lock_player(player_id)
            if player is None or player.session_id != game.id:
                raise NotFound('Player is not a member of this session')
            applied = scoring.apply_adjustment(player, delta)
            outbox.add('player_update', player)
        current_app.logger.info(f"[adjust_score] session={session_id} player={player_id} applied={applied}")
        return player.to_dict()
