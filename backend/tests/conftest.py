import os
import sys
from datetime import datetime
import pytest

# Ensure the backend root (containing the `lyricbattle` package) is on sys.path
CURRENT_DIR = os.path.dirname(__file__)
BACKEND_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, '..'))
if BACKEND_ROOT not in sys.path:
    sys.path.insert(0, BACKEND_ROOT)

from config import Config
from lyricbattle import create_app, db, socketio


T0 = datetime(2026, 1, 1, 12, 0, 0)


class TestConfig(Config):
    TESTING = True
    SECRET_KEY = os.environ.get('SECRET_KEY', 'test-secret')
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    WTF_CSRF_ENABLED = False
    BCRYPT_LOG_ROUNDS = 4
    MATCH_DURATION_SEC = 30.0
    RAKE_PERCENT = 10.0
    MIN_STAKE = 10
    MAX_STAKE = 10000
    REFUND_ON_NO_WINNER = False
    WAITING_EXPIRY_SEC = 600.0
    SETTLEMENT_LEASE_SEC = 30.0
    STARTING_CREDITS = 250
    FREE_CREDITS_AMOUNT = 250
    FREE_CREDITS_INTERVAL_HOURS = 24.0
    ELO_K_FACTOR = 32


def _fresh_login_per_request(application):
    """The fixtures hold one app context open, so `g` outlives a request; drop Flask-Login's cached user."""
    from flask import g

    @application.before_request
    def _drop_cached_login_user():
        g.pop('_login_user', None)


def _seed_prompt():
    from lyricbattle.models import Prompt
    prompt = Prompt(
        title='Walking on Sunshine',
        artist='Katrina and the Waves',
        lyrics_snippet="I'm walking on ____, whoa-oh",
        answer='Sunshine',
    )
    db.session.add(prompt)
    db.session.commit()
    return prompt


@pytest.fixture()
def flask_app():
    application = create_app(TestConfig)
    _fresh_login_per_request(application)
    with application.app_context():
        # Ensure models are imported so tables are created
        import lyricbattle.models  # noqa: F401
        db.create_all()
        _seed_prompt()
        yield application
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def file_app(tmp_path):
    """App backed by an on-disk SQLite file so threads get their own connections."""

    class FileConfig(TestConfig):
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'battle.db'}"
        SQLALCHEMY_ENGINE_OPTIONS = {'connect_args': {'timeout': 30}}

    application = create_app(FileConfig)
    _fresh_login_per_request(application)
    with application.app_context():
        import lyricbattle.models  # noqa: F401
        db.create_all()
        _seed_prompt()
        yield application
        db.session.remove()
        db.drop_all()


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
def make_account():
    """Open an account with the given credits and return its id."""
    from lyricbattle.services import ledger

    counter = {'n': 0}

    def _make(username=None, credits=250):
        counter['n'] += 1
        name = username or f'player{counter["n"]}'
        return ledger.open_account(name, 'password', credits).id

    return _make


@pytest.fixture()
def started_match(flask_app, make_account):
    """Two players with 250 credits each in a 100-credit match that started at T0."""
    from lyricbattle.services import registry

    alice = make_account('alice')
    bob = make_account('bob')
    match = registry.create_match(alice, 100, now=T0)
    registry.join_match(match.id, bob, now=T0)
    return {'match_id': match.id, 'alice': alice, 'bob': bob}
