"""Round resolution engine: the session/round state machine.

Session states: ``waiting`` (no round), ``in_progress`` (one round running,
master barred from guessing) and, when a reveal hold is configured, ``ended``
(round resolved, answer visible) before returning to ``waiting``.

Every command runs through :meth:`ResolutionEngine.transaction`, which holds the
session's exclusive lock from the first read to the commit, then runs the
post-commit hooks (timer arming) and publishes the collected events. Rejected
commands roll back, so the stored state is unchanged and retries are safe.
"""

from contextlib import contextmanager
from datetime import timedelta

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from quizmaster import db
from quizmaster.models import Round, utcnow
from . import scoring, store
from .errors import (
    CONFLICT,
    GameError,
    InsufficientPlayers,
    InvalidInput,
    InvalidRoundState,
    IsMaster,
    NoActiveRound,
    NoAttemptsRemaining,
    NotFound,
    NotMaster,
    StorageError,
)
from .fanout import session_topic
from .rules import clean_answer, clean_guess, clean_question, normalize_answer, parse_duration


def next_master_id(players, current_id):
    """Next active player in join order after ``current_id``, wrapping.

    ``players`` is every player of the session (inactive ones included) in join
    order, so a master who just left still marks the rotation position. With no
    current master the first active player is chosen.
    """
    if not players:
        return None
    ids = [p.id for p in players]
    start = ids.index(current_id) + 1 if current_id in ids else 0
    for offset in range(len(players)):
        candidate = players[(start + offset) % len(players)]
        if candidate.is_active:
            return candidate.id
    return None


class Outbox:
    """Events and hooks collected during a transaction, released after commit."""

    def __init__(self, session_id):
        self.session_id = session_id
        self.events = []
        self.hooks = []

    def add(self, event_type, subject):
        self.events.append((event_type, subject))

    def on_commit(self, hook):
        self.hooks.append(hook)


class ResolutionEngine:
    def __init__(self, broker, timers, clock=utcnow):
        self.broker = broker
        self.timers = timers
        self.clock = clock
        timers.bind(self)

    # ---- Settings ----

    @property
    def max_attempts(self) -> int:
        return int(current_app.config.get('MAX_ATTEMPTS_PER_ROUND', 3))

    @property
    def points_per_win(self) -> int:
        return int(current_app.config.get('POINTS_PER_WIN', 10))

    @property
    def min_players(self) -> int:
        return int(current_app.config.get('MIN_PLAYERS', 3))

    @property
    def reveal_seconds(self) -> float:
        return float(current_app.config.get('REVEAL_DURATION_SEC', 0) or 0)

    # ---- Transaction boundary ----

    @contextmanager
    def transaction(self, session_id, command):
        """Lock the session, yield ``(game, outbox)``, commit, then publish."""
        outbox = Outbox(session_id)
        with store.session_guard(session_id):
            try:
                game = store.lock_session(session_id)
                if game is None:
                    raise NotFound('Session not found')
                yield game, outbox
                db.session.commit()
            except GameError as exc:
                db.session.rollback()
                self._log_rejection(command, session_id, exc)
                raise
            except SQLAlchemyError as exc:
                db.session.rollback()
                current_app.logger.exception(f"[{command}] session={session_id} transaction failed")
                self._restore_timer(session_id)
                raise StorageError('internal error') from exc
            self._after_commit(command, outbox)

    def _after_commit(self, command, outbox):
        for hook in outbox.hooks:
            try:
                hook()
            except Exception:
                current_app.logger.exception(f"[{command}] session={outbox.session_id} post-commit hook failed")
        topic = session_topic(outbox.session_id)
        for event_type, subject in outbox.events:
            try:
                payload = subject if isinstance(subject, dict) else subject.to_dict()
            except Exception:
                current_app.logger.exception(f"[{command}] session={outbox.session_id} could not build {event_type}")
                continue
            self.broker.publish(topic, event_type, payload)

    def _log_rejection(self, command, session_id, exc):
        message = f"[{command}] session={session_id} rejected: {exc.code}"
        if exc.category == CONFLICT:
            current_app.logger.info(message)
        else:
            current_app.logger.debug(message)

    def _restore_timer(self, session_id):
        # A rolled-back transaction may have cancelled the round timer
        try:
            game = store.lock_session(session_id)
            rnd = game.current_round if game is not None else None
            if rnd is not None and game.status == 'in_progress' and self.timers.deadline(session_id) is None:
                self.timers.arm_round(session_id, rnd.id, rnd.ends_at)
            db.session.rollback()
        except SQLAlchemyError:
            db.session.rollback()
            current_app.logger.exception(f"[timer-restore] session={session_id} failed")

    # ---- Commands ----

    def start_round(self, session_id, player_id, question, answer, duration_seconds=None):
        question = clean_question(question)
        answer_normalized = clean_answer(answer)
        duration = parse_duration(
            duration_seconds,
            current_app.config.get('DEFAULT_ROUND_DURATION_SEC', 60),
            current_app.config.get('MAX_ROUND_DURATION_SEC', 3600),
        )
        with self.transaction(session_id, 'start_round') as (game, outbox):
            if game.status != 'waiting':
                raise InvalidRoundState(f'Cannot start a round while the session is {game.status}')
            if game.game_master_id is None or game.game_master_id != player_id:
                raise NotMaster('Only the game master can start a round')
            players = store.session_players(game.id)
            active = [p for p in players if p.is_active]
            if len(active) < self.min_players:
                raise InsufficientPlayers(
                    f'At least {self.min_players} active players are required',
                    required=self.min_players,
                    present=len(active),
                )

            now = self.clock()
            store.delete_attempts_for_session(game.id)
            rnd = Round(
                session_id=game.id,
                question=question,
                answer_normalized=answer_normalized,
                started_at=now,
                ends_at=now + timedelta(seconds=duration),
            )
            db.session.add(rnd)
            db.session.flush()
            game.status = 'in_progress'
            game.current_round = rnd

            sid, rid, ends_at = game.id, rnd.id, rnd.ends_at
            outbox.on_commit(lambda: self.timers.arm_round(sid, rid, ends_at))
            outbox.add('session_update', game)
        current_app.logger.info(f"[round-start] session={session_id} round={rid} duration={duration}s")

        snapshot = game.to_dict()
        snapshot['current_answer'] = answer_normalized
        return snapshot

    def submit_guess(self, session_id, player_id, guess):
        raw = clean_guess(guess)
        normalized = normalize_answer(raw)
        cap = self.max_attempts
        with self.transaction(session_id, 'submit_guess') as (game, outbox):
            players = store.session_players(game.id)
            player = next((p for p in players if p.id == player_id), None)
            if player is None or not player.is_active:
                raise NotFound('Player is not an active member of this session')
            # Round state before role: a guess that lost the round reads no_active_round
            if game.status != 'in_progress' or game.current_round_id is None:
                raise NoActiveRound('No active round')
            rnd = store.lock_round(game.current_round_id)
            now = self.clock()
            if rnd is None or rnd.is_resolved:
                raise NoActiveRound('No active round')
            if rnd.ends_at is not None and rnd.ends_at <= now:
                # Past the deadline the timeout owns the round, fired or not
                raise NoActiveRound('Round time has expired')
            if game.game_master_id == player.id:
                raise IsMaster('The game master cannot submit guesses')

            used = store.count_attempts(rnd.id, player.id)
            if used >= cap:
                raise NoAttemptsRemaining('No attempts remaining', attempt_number=used)

            is_correct = normalized == rnd.answer_normalized
            attempt = store.insert_attempt(rnd, player, raw, normalized, is_correct, used + 1, now)
            outbox.add('attempt_insert', attempt)

            game_over = False
            if is_correct:
                self.timers.cancel(game.id)
                scoring.award_round_win(rnd, player, self.points_per_win, now)
                outbox.add('player_update', player)
                self._close_round(game, outbox, player.id, now)
                game_over = True
            elif self._exhausted(game, rnd, players):
                self.timers.cancel(game.id)
                scoring.close_round_without_winner(rnd, now, 'all attempts used')
                self._close_round(game, outbox, next_master_id(players, game.game_master_id), now)
                game_over = True
            attempt_number = attempt.attempt_number

        current_app.logger.info(
            f"[guess] session={session_id} player={player_id} attempt={attempt_number} correct={is_correct} game_over={game_over}"
        )
        return {
            'is_correct': is_correct,
            'attempt_number': attempt_number,
            'attempts_remaining': max(0, cap - attempt_number),
            'game_over': game_over,
            'winner_id': player_id if is_correct else None,
            'attempt': attempt.to_dict(),
        }

    def end_round_no_winner(self, session_id, reason='time expired', round_id=None):
        """Force the active round to end without a winner. No-op without an active round.

        With ``round_id`` only that round is ended, so a stale timer never ends
        a newer round.
        """
        with self.transaction(session_id, 'end_round') as (game, outbox):
            ended = self._end_without_winner(game, outbox, reason, round_id=round_id)
        return game.to_dict() if ended else None

    def end_round(self, session_id, winner_id=None):
        """Manual override: end the active round, optionally naming a winner."""
        if winner_id is None:
            self.end_round_no_winner(session_id, reason='ended by request')
            return self.snapshot(session_id)
        with self.transaction(session_id, 'end_round') as (game, outbox):
            if game.current_round_id is not None:
                players = store.session_players(game.id)
                winner = next((p for p in players if p.id == winner_id), None)
                if winner is None or not winner.is_active:
                    raise InvalidInput('Winner must be an active player of this session')
                if winner.id == game.game_master_id:
                    raise IsMaster('The game master cannot win their own round')
                rnd = store.lock_round(game.current_round_id)
                now = self.clock()
                self.timers.cancel(game.id)
                if rnd is not None and not rnd.is_resolved:
                    scoring.award_round_win(rnd, winner, self.points_per_win, now, reason='awarded by request')
                outbox.add('player_update', winner)
                self._close_round(game, outbox, winner.id, now)
        return game.to_dict()

    def leave(self, session_id, player_id):
        """Deactivate a player; rotate or delete the session as needed.

        Returns the session snapshot, or None when the session was deleted.
        """
        deleted = False
        with self.transaction(session_id, 'leave') as (game, outbox):
            players = store.session_players(game.id)
            player = next((p for p in players if p.id == player_id), None)
            if player is None:
                raise NotFound('Player is not a member of this session')
            if player.is_active:
                player.is_active = False
                db.session.flush()
                leaver = player.to_dict()
                outbox.add('player_update', leaver)
                outbox.add('player_leave', leaver)

                if not any(p.is_active for p in players):
                    self.timers.cancel(game.id)
                    gone = {'id': game.id, 'code': game.code}
                    store.delete_session_tree(game)
                    outbox.add('session_deleted', gone)
                    deleted = True
                elif player.id == game.game_master_id:
                    if game.current_round_id is not None:
                        self._end_without_winner(game, outbox, 'game master left', players=players)
                    else:
                        game.game_master_id = next_master_id(players, player.id)
                        outbox.add('session_update', game)
                else:
                    rnd = store.lock_round(game.current_round_id)
                    if rnd is not None and not rnd.is_resolved and self._exhausted(game, rnd, players):
                        now = self.clock()
                        self.timers.cancel(game.id)
                        scoring.close_round_without_winner(rnd, now, 'all attempts used')
                        self._close_round(game, outbox, next_master_id(players, game.game_master_id), now)
                    else:
                        outbox.add('session_update', game)
        if deleted:
            current_app.logger.info(f"[leave] session={session_id} player={player_id} last player left; session deleted")
            return None
        return game.to_dict()

    def finish_reveal(self, session_id):
        """Move an ``ended`` session back to ``waiting``."""
        with self.transaction(session_id, 'finish_reveal') as (game, outbox):
            if game.status == 'ended':
                game.status = 'waiting'
                outbox.add('session_update', game)
        return game.to_dict()

    # ---- Queries ----

    def snapshot(self, session_id):
        game = store.get_session(session_id)
        if game is None:
            raise NotFound('Session not found')
        return game.to_dict()

    # ---- Helpers (caller holds the session lock) ----

    def _exhausted(self, game, rnd, players) -> bool:
        """True when no active non-master player has an attempt left."""
        cap = self.max_attempts
        counts = store.attempt_counts(rnd.id)
        guessers = [p for p in players if p.is_active and p.id != game.game_master_id]
        return all(counts.get(p.id, 0) >= cap for p in guessers)

    def _end_without_winner(self, game, outbox, reason, round_id=None, players=None) -> bool:
        if game.current_round_id is None:
            if game.status == 'in_progress':
                current_app.logger.warning(f"[round-end] session={game.id} in_progress without a round; resetting")
                game.status = 'waiting'
                outbox.add('session_update', game)
            return False
        if round_id is not None and game.current_round_id != round_id:
            return False
        rnd = store.lock_round(game.current_round_id)
        now = self.clock()
        self.timers.cancel(game.id)
        if rnd is not None and not rnd.is_resolved:
            scoring.close_round_without_winner(rnd, now, reason)
        if players is None:
            players = store.session_players(game.id)
        self._close_round(game, outbox, next_master_id(players, game.game_master_id), now)
        current_app.logger.info(f"[round-end] session={game.id} round={rnd.id if rnd else None} reason={reason}")
        return True

    def _close_round(self, game, outbox, master_id, now):
        game.current_round = None
        game.game_master_id = master_id
        reveal = self.reveal_seconds
        if reveal > 0:
            game.status = 'ended'
            sid, until = game.id, now + timedelta(seconds=reveal)
            outbox.on_commit(lambda: self.timers.arm_reveal(sid, until))
        else:
            game.status = 'waiting'
        outbox.add('session_update', game)
