from flask import current_app

from .engine import ResolutionEngine
from .fanout import SocketIORelay, TopicBroker
from .lobby import LobbyService
from .scheduler import RoundTimers

EXTENSION_KEY = 'quizmaster'


class GameRuntime:
    """Process-owned game services, built once per app and torn down on restart."""

    def __init__(self, app, socketio):
        self.app = app
        self.broker = TopicBroker(
            queue_size=int(app.config.get('FANOUT_QUEUE_SIZE', 100)),
            logger=app.logger,
        )
        self.timers = RoundTimers(app, spawn=socketio.start_background_task, sleep=socketio.sleep)
        self.broker.add_relay(SocketIORelay(socketio, namespace='/ws'))
        self.engine = ResolutionEngine(self.broker, self.timers)
        self.lobby = LobbyService(self.engine)
        app.extensions[EXTENSION_KEY] = self

    def recover(self):
        with self.app.app_context():
            return self.timers.recover()


def get_runtime(app=None) -> GameRuntime:
    return (app or current_app).extensions[EXTENSION_KEY]
