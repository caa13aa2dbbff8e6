"""Error taxonomy for game commands.

Every rejected command raises a :class:`GameError`. The category decides how
the gateway logs it: validation and conflict errors are ordinary outcomes of
play, storage errors are real failures.
"""

VALIDATION = 'validation'
CONFLICT = 'conflict'
STORAGE = 'storage'


class GameError(Exception):
    code = 'invalid_input'
    status = 400
    category = VALIDATION

    def __init__(self, message=None, code=None, status=None, **extra):
        super().__init__(message or code or self.code)
        self.message = message or (code or self.code).replace('_', ' ')
        if code:
            self.code = code
        if status:
            self.status = status
        self.extra = extra

    def to_dict(self):
        payload = {'error': self.code, 'message': self.message}
        payload.update(self.extra)
        return payload


class InvalidInput(GameError):
    code = 'invalid_input'


class NotFound(GameError):
    code = 'not_found'
    status = 404


class NotMaster(GameError):
    code = 'not_master'
    status = 403


class IsMaster(GameError):
    code = 'is_master'
    status = 403


class InsufficientPlayers(GameError):
    code = 'insufficient_players'


class UsernameTaken(GameError):
    code = 'username_taken'


class InvalidRoundState(GameError):
    code = 'invalid_round_state'
    status = 409
    category = CONFLICT


class NoActiveRound(GameError):
    code = 'no_active_round'
    status = 409
    category = CONFLICT


class NoAttemptsRemaining(GameError):
    code = 'no_attempts_remaining'
    status = 409
    category = CONFLICT


class StorageError(GameError):
    code = 'internal_error'
    status = 500
    category = STORAGE
