from flask import Flask
from flask_sqlalchemy import SQLAlchemy
from flask_cors import CORS
from flask_migrate import Migrate
from flask_socketio import SocketIO
from sqlalchemy.exc import SQLAlchemyError
import click
from config import Config

db = SQLAlchemy()
migrate = Migrate()
allowed_origins = [
    "http://localhost:5173",
    "http://127.0.0.1:5173",
    "http://localhost:5174",
    "http://127.0.0.1:5174",
]
socketio = SocketIO(cors_allowed_origins=allowed_origins, async_mode=None)

def create_app(config_class=Config):
    flask_app = Flask(__name__)
    flask_app.config.from_object(config_class)

    db.init_app(flask_app)
    migrate.init_app(flask_app, db)
    CORS(flask_app, origins=allowed_origins, expose_headers=['X-Server-Now'])

    # Initialize Socket.IO after app is created
    socketio.init_app(flask_app, cors_allowed_origins=allowed_origins)

    # Game services (timers, fan-out, engine) are owned by the app
    from quizmaster.services.games.runtime import GameRuntime
    runtime = GameRuntime(flask_app, socketio=socketio)

    from quizmaster.main import main
    flask_app.register_blueprint(main)

    from quizmaster.api.sessions import sessions, players
    flask_app.register_blueprint(sessions, url_prefix='/api/sessions')
    flask_app.register_blueprint(players, url_prefix='/api/players')

    from quizmaster.api.stream import stream
    flask_app.register_blueprint(stream, url_prefix='/sse')

    # Register Socket.IO event handlers
    from quizmaster.socketio_events import register_socketio_handlers
    register_socketio_handlers(testing=flask_app.config.get('TESTING', False))

    @flask_app.after_request
    def stamp_server_time(response):
        # Lets clients correct for clock skew when rendering countdowns
        from quizmaster.models import isoformat, utcnow
        response.headers['X-Server-Now'] = isoformat(utcnow())
        return response

    @click.command('db-reset')
    def db_reset_command():
        """Drops and recreates the database tables."""
        with flask_app.app_context():
            db.drop_all()
            db.create_all()
            runtime.timers.reset()
            print('Database has been reset!')

    @click.command('recover-timers')
    def recover_timers_command():
        """Rebuilds round timers from stored deadlines."""
        outcome = runtime.recover()
        print(f"Recovered timers: {', '.join(f'{k}={len(v)}' for k, v in outcome.items())}")

    flask_app.cli.add_command(db_reset_command)
    flask_app.cli.add_command(recover_timers_command)

    if flask_app.config.get('RECOVER_TIMERS_ON_START') and not flask_app.config.get('TESTING'):
        try:
            runtime.recover()
        except SQLAlchemyError as exc:
            # Tables may not exist yet (before the first migration)
            flask_app.logger.warning(f"Round timers not recovered: {exc}")

    return flask_app
