from quizmaster import db
from quizmaster.models import Player, Round


def award_round_win(rnd: Round, winner: Player, points: int, now, reason: str = 'correct guess') -> None:
    """Record the winner of a round and credit the points.

    The round's end fields are written once; callers hold the session lock and
    have already checked that the round is unresolved.
    """
    winner.score = int(winner.score or 0) + int(points)
    rnd.winner_player_id = winner.id
    rnd.ended_at = now
    rnd.end_reason = reason
    db.session.add(winner)
    db.session.add(rnd)


def close_round_without_winner(rnd: Round, now, reason: str) -> None:
    rnd.ended_at = now
    rnd.end_reason = reason
    db.session.add(rnd)


def apply_adjustment(player: Player, delta: int) -> int:
    """Explicit score adjustment, floored at zero. Returns the applied delta."""
    before = int(player.score or 0)
    player.score = max(0, before + int(delta))
    db.session.add(player)
    return player.score - before
