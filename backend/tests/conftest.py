import os
import sys
import pytest

# Ensure the backend root (containing the `songless` package) is on sys.path
CURRENT_DIR = os.path.dirname(__file__)
BACKEND_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, '..'))
if BACKEND_ROOT not in sys.path:
    sys.path.insert(0, BACKEND_ROOT)

from config import Config
from songless import create_app, db, socketio
from songless.services.rooms.errors import TrackProviderUnavailable
from songless.services.tracks import Track


class TestConfig(Config):
    TESTING = True
    SECRET_KEY = os.environ.get('SECRET_KEY', 'test-secret')
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    BCRYPT_LOG_ROUNDS = 4


TRACKS = [
    Track(id='3135556', title='Bohemian Rhapsody', artist='Queen',
          preview_url='https://cdns-preview.example/3135556.mp3', duration_ms=354000),
    Track(id='1109731', title='Café del Mar', artist='Energy 52',
          preview_url='https://cdns-preview.example/1109731.mp3', duration_ms=441000),
    Track(id='116348', title='Hey Jude', artist='The Beatles',
          preview_url='https://cdns-preview.example/116348.mp3', duration_ms=431000),
]


class FakeTrackProvider:
    """Deterministic provider: hands out TRACKS in order, or fails on demand."""

    def __init__(self, tracks=None):
        self.tracks = list(tracks or TRACKS)
        self.calls = 0
        self.fail = False

    def get_random_playable_track(self):
        if self.fail:
            raise TrackProviderUnavailable()
        track = self.tracks[self.calls % len(self.tracks)]
        self.calls += 1
        return track


@pytest.fixture()
def track_provider():
    return FakeTrackProvider()


@pytest.fixture()
def flask_app(track_provider):
    application = create_app(TestConfig, track_provider=track_provider)
    # Requests push their own app context so each test client keeps its own login
    with application.app_context():
        import songless.models  # noqa: F401
        db.create_all()
    yield application
    with application.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture()
def make_player(flask_app):
    """Register a user and return a test client logged in as them."""

    def _make(username, display_name=None, avatar_key=None):
        player_client = flask_app.test_client()
        res = player_client.post('/auth/register', json={
            'username': username,
            'password': 'password',
            'displayName': display_name or username.title(),
            'avatarKey': avatar_key,
        })
        assert res.status_code == 201
        player_client.player_id = res.get_json()['user']['id']
        return player_client

    return _make


@pytest.fixture()
def host(make_player):
    return make_player('alice')


@pytest.fixture()
def guest(make_player):
    return make_player('bob')


@pytest.fixture()
def sio_factory(flask_app):
    """Socket.IO test clients on /ws sharing a player's login cookies."""
    clients = []

    def _connect(player_client=None):
        test_client = socketio.test_client(
            flask_app,
            flask_test_client=player_client,
            namespace='/ws'
        )
        clients.append(test_client)
        return test_client

    yield _connect
    for test_client in clients:
        if test_client.is_connected('/ws'):
            test_client.disconnect(namespace='/ws')
