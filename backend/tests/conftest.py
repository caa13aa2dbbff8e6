import os
import sys
import pytest

# Ensure the backend root (containing the `quizmaster` package) is on sys.path
CURRENT_DIR = os.path.dirname(__file__)
BACKEND_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, '..'))
if BACKEND_ROOT not in sys.path:
    sys.path.insert(0, BACKEND_ROOT)

from quizmaster import create_app, db, socketio
from quizmaster.models import GameSession, Round


class TestConfig:
    TESTING = True
    SECRET_KEY = os.environ.get('SECRET_KEY', 'test-secret')
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    MAX_ATTEMPTS_PER_ROUND = 3
    POINTS_PER_WIN = 10
    MIN_PLAYERS = 3
    DEFAULT_ROUND_DURATION_SEC = 60
    MAX_ROUND_DURATION_SEC = 3600
    REVEAL_DURATION_SEC = 0
    JOIN_CODE_LENGTH = 6
    FANOUT_QUEUE_SIZE = 100
    SSE_KEEPALIVE_SEC = 1
    TIMER_HEARTBEAT_SEC = 0
    RECOVER_TIMERS_ON_START = False


@pytest.fixture()
def app_config(tmp_path):
    # A file database gives every thread its own connection
    class _Config(TestConfig):
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'quizmaster.db'}"
    return _Config


@pytest.fixture()
def flask_app(app_config):
    application = create_app(app_config)
    with application.app_context():
        # Ensure models are imported so tables are created
        import quizmaster.models  # noqa: F401
        db.create_all()
        yield application
        application.extensions['quizmaster'].timers.reset()
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def runtime(flask_app):
    return flask_app.extensions['quizmaster']


@pytest.fixture()
def engine(runtime):
    return runtime.engine


@pytest.fixture()
def lobby(runtime):
    return runtime.lobby


@pytest.fixture()
def timers(runtime):
    return runtime.timers


@pytest.fixture()
def broker(runtime):
    return runtime.broker


@pytest.fixture()
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture()
def sio_client(flask_app):
    test_client = socketio.test_client(
        flask_app,
        flask_test_client=flask_app.test_client(),
        namespace='/ws'
    )
    yield test_client
    try:
        test_client.disconnect(namespace='/ws')
    except Exception:
        pass


@pytest.fixture()
def new_game(lobby):
    """Create a session whose first player is master, followed by guessers."""
    def _make(names=('Gina', 'Xavier', 'Yara', 'Zeke')):
        session = lobby.create_session()
        players = [lobby.join(session['id'], name) for name in names]
        return session['id'], [p['id'] for p in players]
    return _make


def assert_round_invariant(session_id):
    db.session.expire_all()
    game = db.session.get(GameSession, session_id)
    assert (game.status == 'in_progress') == (game.current_round_id is not None)
    if game.current_round_id is not None:
        assert db.session.get(Round, game.current_round_id).ended_at is None
