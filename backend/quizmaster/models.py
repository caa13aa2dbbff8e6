from datetime import datetime, timezone

from quizmaster import db


def utcnow():
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def isoformat(value):
    return value.isoformat() + 'Z' if value else None


class GameSession(db.Model):
    __tablename__ = 'game_session'
    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(16), unique=True, nullable=False, index=True)
    status = db.Column(db.String(32), nullable=False, default='waiting')  # waiting, in_progress, ended
    game_master_id = db.Column(db.Integer, db.ForeignKey('player.id', name='fk_session_game_master_id', use_alter=True), nullable=True)
    current_round_id = db.Column(db.Integer, db.ForeignKey('game_round.id', name='fk_session_current_round_id', use_alter=True), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    players = db.relationship('Player', foreign_keys='Player.session_id', back_populates='session',
                              order_by=lambda: (Player.joined_at, Player.id))
    current_round = db.relationship('Round', foreign_keys=[current_round_id], post_update=True)

    @property
    def active_players(self):
        return [p for p in self.players if p.is_active]

    @property
    def last_round(self):
        return (Round.query
                .filter(Round.session_id == self.id, Round.ended_at.isnot(None))
                .order_by(Round.ended_at.desc(), Round.id.desc())
                .first())

    def to_dict(self, include_players=True):
        data = {
            'id': self.id,
            'code': self.code,
            'status': self.status,
            'game_master_id': self.game_master_id,
            'current_round_id': self.current_round_id,
            'current_question': None,
            'game_started_at': None,
            'game_ends_at': None,
            'last_round': None,
            'created_at': isoformat(self.created_at),
            'updated_at': isoformat(self.updated_at),
        }
        rnd = self.current_round
        if rnd is not None:
            data['current_question'] = rnd.question
            data['game_started_at'] = isoformat(rnd.started_at)
            data['game_ends_at'] = isoformat(rnd.ends_at)
        else:
            last = self.last_round
            if last is not None:
                data['last_round'] = last.to_dict(reveal=True)
        if include_players:
            data['players'] = [p.to_dict() for p in self.active_players]
        return data


class Player(db.Model):
    __tablename__ = 'player'
    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(db.Integer, db.ForeignKey('game_session.id'), nullable=False, index=True)
    username = db.Column(db.String(64), nullable=False)
    score = db.Column(db.Integer, nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    joined_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    last_seen_at = db.Column(db.DateTime, nullable=True)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    session = db.relationship('GameSession', foreign_keys=[session_id], back_populates='players')

    __table_args__ = (
        db.Index('uq_player_session_username_lower', 'session_id', db.func.lower(username), unique=True),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'session_id': self.session_id,
            'username': self.username,
            'score': self.score,
            'is_active': self.is_active,
            'joined_at': isoformat(self.joined_at),
            'last_seen_at': isoformat(self.last_seen_at),
        }


class Round(db.Model):
    __tablename__ = 'game_round'
    id = db.Column(db.Integer, primary_key=True)
    session_id = db.Column(db.Integer, db.ForeignKey('game_session.id'), nullable=False, index=True)
    question = db.Column(db.Text, nullable=False)
    answer_normalized = db.Column(db.Text, nullable=False)
    started_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    ends_at = db.Column(db.DateTime, nullable=True)
    winner_player_id = db.Column(db.Integer, db.ForeignKey('player.id'), nullable=True)
    ended_at = db.Column(db.DateTime, nullable=True)
    end_reason = db.Column(db.String(64), nullable=True)

    winner = db.relationship('Player', foreign_keys=[winner_player_id])

    @property
    def is_resolved(self):
        return self.ended_at is not None

    def to_dict(self, reveal=False):
        data = {
            'id': self.id,
            'session_id': self.session_id,
            'question': self.question,
            'started_at': isoformat(self.started_at),
            'ends_at': isoformat(self.ends_at),
            'ended_at': isoformat(self.ended_at),
            'winner_id': self.winner_player_id,
            'end_reason': self.end_reason,
        }
        if reveal:
            data['answer'] = self.answer_normalized
        return data


class Attempt(db.Model):
    __tablename__ = 'attempt'
    id = db.Column(db.Integer, primary_key=True)
    round_id = db.Column(db.Integer, db.ForeignKey('game_round.id'), nullable=False, index=True)
    session_id = db.Column(db.Integer, db.ForeignKey('game_session.id'), nullable=False, index=True)
    player_id = db.Column(db.Integer, db.ForeignKey('player.id'), nullable=False)
    guess = db.Column(db.Text, nullable=False)
    guess_normalized = db.Column(db.Text, nullable=False)
    is_correct = db.Column(db.Boolean, nullable=False, default=False)
    attempt_number = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        db.UniqueConstraint('round_id', 'player_id', 'attempt_number', name='uq_attempt_round_player_number'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'round_id': self.round_id,
            'session_id': self.session_id,
            'player_id': self.player_id,
            'guess': self.guess,
            'is_correct': self.is_correct,
            'attempt_number': self.attempt_number,
            'created_at': isoformat(self.created_at),
        }
