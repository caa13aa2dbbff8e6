"""Store access for the session aggregate (session, players, rounds, attempts).

All mutating game commands for one session run inside :func:`session_guard`.
The guard takes an in-process lock for the session and the caller then re-reads
the rows with ``SELECT ... FOR UPDATE`` (a no-op on SQLite), so commands on the
same session are linearised both across threads and across processes sharing
a PostgreSQL database. Different sessions never share a lock.
"""

import random
import string
import threading
import weakref
from contextlib import contextmanager

from sqlalchemy import func

from quizmaster import db
from quizmaster.models import Attempt, GameSession, Player, Round


class _SessionLock:
    __slots__ = ('mutex', '__weakref__')

    def __init__(self):
        self.mutex = threading.Lock()


_registry_lock = threading.Lock()
_session_locks = weakref.WeakValueDictionary()


def _lock_for(session_id: int) -> _SessionLock:
    with _registry_lock:
        lock = _session_locks.get(session_id)
        if lock is None:
            lock = _SessionLock()
            _session_locks[session_id] = lock
        return lock


@contextmanager
def session_guard(session_id: int):
    """Exclusive access to one session's aggregate for the enclosed block."""
    lock = _lock_for(int(session_id))
    with lock.mutex:
        yield


# ---- Locked reads (use inside session_guard) ----

def lock_session(session_id):
    return (GameSession.query
            .filter_by(id=session_id)
            .with_for_update()
            .populate_existing()
            .first())


def lock_round(round_id):
    if round_id is None:
        return None
    return (Round.query
            .filter_by(id=round_id)
            .with_for_update()
            .populate_existing()
            .first())


def lock_player(player_id):
    return (Player.query
            .filter_by(id=player_id)
            .with_for_update()
            .populate_existing()
            .first())


def session_players(session_id):
    """All players of a session in join order, refreshed from the database."""
    return (Player.query
            .filter_by(session_id=session_id)
            .order_by(Player.joined_at, Player.id)
            .populate_existing()
            .all())


# ---- Plain reads ----

def get_session(session_id):
    return db.session.get(GameSession, session_id)


def get_session_by_code(code):
    if not code:
        return None
    return GameSession.query.filter_by(code=str(code).strip().upper()).first()


def list_active_players(session_id):
    return (Player.query
            .filter_by(session_id=session_id, is_active=True)
            .order_by(Player.joined_at, Player.id)
            .all())


def attempts_for(round_id, player_id):
    return (Attempt.query
            .filter_by(round_id=round_id, player_id=player_id)
            .order_by(Attempt.attempt_number)
            .all())


def count_attempts(round_id, player_id) -> int:
    return Attempt.query.filter_by(round_id=round_id, player_id=player_id).count()


def attempt_counts(round_id) -> dict:
    rows = (db.session.query(Attempt.player_id, func.count(Attempt.id))
            .filter(Attempt.round_id == round_id)
            .group_by(Attempt.player_id)
            .all())
    return {player_id: count for player_id, count in rows}


def sessions_with_pending_rounds():
    """Sessions a restarted process has to re-arm or resolve."""
    return (GameSession.query
            .filter(GameSession.status.in_(('in_progress', 'ended')))
            .order_by(GameSession.id)
            .all())


# ---- Writes ----

def generate_join_code(length=6):
    """Generate a unique, short join code."""
    while True:
        code = ''.join(random.choices(string.ascii_uppercase + string.digits, k=length))
        if not GameSession.query.filter_by(code=code).first():
            return code


def insert_attempt(rnd, player, guess, guess_normalized, is_correct, attempt_number, now):
    attempt = Attempt(
        round_id=rnd.id,
        session_id=rnd.session_id,
        player_id=player.id,
        guess=guess,
        guess_normalized=guess_normalized,
        is_correct=is_correct,
        attempt_number=attempt_number,
        created_at=now,
    )
    db.session.add(attempt)
    db.session.flush()
    return attempt


def delete_attempts_for_session(session_id):
    Attempt.query.filter_by(session_id=session_id).delete(synchronize_session=False)


def delete_session_tree(game: GameSession):
    """Delete a session with its rounds, attempts and players."""
    # Break the FKs from session to round/player before deleting them
    game.current_round = None
    game.game_master_id = None
    db.session.add(game)
    db.session.flush()
    Attempt.query.filter_by(session_id=game.id).delete(synchronize_session=False)
    Round.query.filter_by(session_id=game.id).update({Round.winner_player_id: None}, synchronize_session=False)
    Round.query.filter_by(session_id=game.id).delete(synchronize_session=False)
    Player.query.filter_by(session_id=game.id).delete(synchronize_session=False)
    GameSession.query.filter_by(id=game.id).delete(synchronize_session=False)
    db.session.expunge(game)
