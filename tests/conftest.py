from pathlib import Path

import pytest

from walkmap import create_app
from walkmap.api_client import ListensApi
from walkmap.channel import BroadcastChannel
from walkmap.locks import SaveLockStore
from walkmap.models import ListenRecord
from walkmap.storage import DB


class FakeWeather:
    def __init__(self, snapshot=None):
        self.snapshot = snapshot
        self.calls = 0

    def current(self, lat, lng):
        self.calls += 1
        return self.snapshot


class FlaskClientSession:
    """Adapts a Flask test client to the ``requests.Session.request`` call ListensApi makes."""

    class _Response:
        def __init__(self, resp):
            self.status_code = resp.status_code
            self.ok = resp.status_code < 400
            self._body = resp.get_json(silent=True)

        def json(self):
            if self._body is None:
                raise ValueError("no json")
            return self._body

    def __init__(self, client):
        self.client = client

    def request(self, method, url, json=None, timeout=None):
        path = url[len('http://walkmap.test'):]
        return self._Response(self.client.open(path, method=method, json=json))


class FakeApi:
    """In-memory listens server for session tests."""

    def __init__(self, records=None):
        self.records = list(records or [])
        self.saved = []
        self.playing = None
        self.recent = []
        self.fail = None
        self.fetches = 0
        self.polls = 0

    def fetch_listens(self):
        self.fetches += 1
        return list(self.records)

    def save_listen(self, payload):
        if self.fail:
            raise self.fail
        self.saved.append(payload)
        rec = ListenRecord(
            id=f"listen-{len(self.saved)}",
            spotify_track_id=payload['spotify_track_id'],
            played_at=payload['played_at'],
            spotify_played_at=payload.get('spotify_played_at'),
        )
        self.records.append(rec)
        return {'ok': True, 'id': rec.id}

    def update_mood(self, listen_id, mood, mood_note=None):
        return {'ok': True, 'id': listen_id}

    def currently_playing(self):
        self.polls += 1
        return self.playing

    def recently_played(self):
        return list(self.recent)


@pytest.fixture
def fake_weather():
    return FakeWeather({'weather_main': 'Clear', 'weather_description': 'clear sky', 'weather_temp_c': 21.5})


@pytest.fixture
def app(tmp_path: Path, fake_weather):
    return create_app(db_path=str(tmp_path / 'server.db'), weather_client=fake_weather)


@pytest.fixture
def state_db(tmp_path: Path):
    return DB(tmp_path / 'state.db')


@pytest.fixture
def lock_store(state_db):
    return SaveLockStore(state_db)


@pytest.fixture
def channel():
    return BroadcastChannel('listens-updated')


@pytest.fixture
def make_api():
    """Build a real ListensApi talking to a Flask app through its own test client."""
    def build(app):
        return ListensApi('http://walkmap.test', session=FlaskClientSession(app.test_client()))
    return build


@pytest.fixture
def fake_api():
    return FakeApi()


@pytest.fixture
def listen_body():
    def build(**overrides):
        body = {
            'spotify_track_id': 'abc123',
            'title': 'Song',
            'artist': 'Artist',
            'album_image_url': 'https://i.scdn.co/image/x',
            'played_at': '2024-01-01T12:00:00.400Z',
            'spotify_played_at': '2024-01-01T12:00:00.400Z',
            'duration_ms': 200000,
            'lat': 35.0,
            'lng': 139.0,
        }
        body.update(overrides)
        return body
    return build
