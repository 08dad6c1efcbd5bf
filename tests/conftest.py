"""Shared test fixtures."""

import time

import pytest
from werkzeug.security import generate_password_hash

from wya import create_app
from wya.extensions import db, socketio
from wya.identity import Identity
from wya.models import Member, Room, User
from wya.realtime import realtime

PASSWORD = 'Secret123'


class RelayTestConfig:
    TESTING = True
    SECRET_KEY = 'test-secret'
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SOCKETIO_ASYNC_MODE = 'threading'
    LOG_LEVEL = 'WARNING'
    SEND_BACKOFF_SECONDS = 0


# App Fixtures

@pytest.fixture
def app_config():
    """Config object for the app fixture; modules override it to change the database."""
    return RelayTestConfig


@pytest.fixture
def app(app_config):
    """Fresh app with an empty database (in memory unless app_config says otherwise)."""
    flask_app = create_app(app_config)
    yield flask_app
    realtime.registry.close_all()
    with flask_app.app_context():
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


@pytest.fixture
def ctx(app):
    """App context for tests that drive the realtime core directly."""
    with app.app_context():
        yield app


@pytest.fixture
def client(app):
    return app.test_client()


# Data Fixtures

@pytest.fixture
def make_user(app):
    """Create a user; returns an Identity."""
    def _make(username, hide_status=False):
        with app.app_context():
            user = User(
                username=username,
                password=generate_password_hash(PASSWORD, method='scrypt'),
                hide_status=hide_status,
            )
            db.session.add(user)
            db.session.commit()
            return Identity(user.id, user.username)
    return _make


@pytest.fixture
def make_room(app):
    """Create a room owned by owner; extra members join as 'member'."""
    def _make(owner, members=(), room_id=None, is_public=True, max_participants=50, name='lobby'):
        with app.app_context():
            room = Room(id=room_id, name=name, is_public=is_public,
                        owner_id=owner.user_id, max_participants=max_participants)
            db.session.add(room)
            db.session.flush()
            db.session.add(Member(user_id=owner.user_id, room_id=room.id, role='owner'))
            for member in members:
                db.session.add(Member(user_id=member.user_id, room_id=room.id, role='member'))
            db.session.commit()
            return room.id
    return _make


@pytest.fixture
def api_token(app):
    def _token(identity):
        with app.app_context():
            return db.session.get(User, identity.user_id).api_token
    return _token


@pytest.fixture
def auth_headers(api_token):
    def _headers(identity):
        return {'Authorization': f'Bearer {api_token(identity)}'}
    return _headers


# Socket Fixtures

class Inbox:
    """Collects events received by a Socket.IO test client.

    Events are pushed by per-session writer threads, so reads poll until the
    expected events have arrived.
    """

    def __init__(self, client):
        self.client = client
        self.events = []

    def collect(self):
        if not self.client.is_connected():
            return self.events
        for packet in self.client.get_received():
            self.events.append((packet['name'], packet['args'][0] if packet['args'] else None))
        return self.events

    def named(self, name):
        self.collect()
        return [payload for event, payload in self.events if event == name]

    def wait(self, name, count=1, timeout=3.0):
        deadline = time.monotonic() + timeout
        while True:
            found = self.named(name)
            if len(found) >= count:
                return found
            if time.monotonic() >= deadline:
                raise AssertionError(f'expected {count} {name!r} event(s), got {self.events!r}')
            time.sleep(0.01)

    def settle(self, delay=0.2):
        # Give writer threads time to flush, then collect everything
        time.sleep(delay)
        return self.collect()


@pytest.fixture
def connect(app, api_token):
    """Open a Socket.IO test client for a user; returns (client, inbox)."""
    opened = []

    def _connect(identity, **query):
        if identity is not None:
            query.setdefault('token', api_token(identity))
        query_string = '&'.join(f'{key}={value}' for key, value in query.items())
        sio = socketio.test_client(app, query_string=query_string)
        opened.append(sio)
        return sio, Inbox(sio)

    yield _connect
    for sio in opened:
        if sio.is_connected():
            sio.disconnect()
