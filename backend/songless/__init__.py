from flask import Flask
from flask_sqlalchemy import SQLAlchemy
from flask_bcrypt import Bcrypt
from flask_login import LoginManager
from flask_cors import CORS
from flask_migrate import Migrate
from flask_socketio import SocketIO
import click
from config import Config

db = SQLAlchemy()
bcrypt = Bcrypt()
login_manager = LoginManager()
migrate = Migrate()
socketio = SocketIO(async_mode=None)


def _allowed_origins(config):
    raw = config.get('CORS_ORIGINS') or ''
    return [o.strip() for o in raw.split(',') if o.strip()]


def create_app(config_class=Config, track_provider=None):
    flask_app = Flask(__name__)
    flask_app.config.from_object(config_class)
    allowed_origins = _allowed_origins(flask_app.config)

    db.init_app(flask_app)
    bcrypt.init_app(flask_app)
    login_manager.init_app(flask_app)
    migrate.init_app(flask_app, db)
    CORS(flask_app, supports_credentials=True, origins=allowed_origins)
    socketio.init_app(flask_app, cors_allowed_origins=allowed_origins)

    # Per-app collaborators; tests swap the track provider for a fake
    from songless.services.tracks import DeezerTrackProvider
    from songless.services.rooms.presence import PresenceService
    from songless.services.rooms.fanout import RoomFanout
    presence = PresenceService()
    flask_app.extensions['track_provider'] = track_provider or DeezerTrackProvider.from_config(flask_app.config)
    flask_app.extensions['room_presence'] = presence
    flask_app.extensions['room_fanout'] = RoomFanout(socketio, presence)

    from songless.main import main
    flask_app.register_blueprint(main, url_prefix='/auth')

    from songless.api.rooms import rooms
    flask_app.register_blueprint(rooms, url_prefix='/rooms')

    from songless.socketio_events import register_socketio_handlers
    register_socketio_handlers()

    from songless.models import User

    @login_manager.user_loader
    def load_user(user_id):
        return db.session.get(User, int(user_id))

    @login_manager.unauthorized_handler
    def unauthorized():
        return {'error': 'Authentication required'}, 401

    @click.command('db-reset')
    def db_reset_command():
        """Drops, recreates, and seeds the database."""
        with flask_app.app_context():
            db.drop_all()
            db.create_all()

            # Seed users
            for username in ['testuser1', 'testuser2', 'testuser3']:
                user = User(username=username, display_name=username)
                user.set_password('password')
                db.session.add(user)

            db.session.commit()
            click.echo('Database has been reset and seeded!')

    flask_app.cli.add_command(db_reset_command)

    return flask_app
