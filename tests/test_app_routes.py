from pathlib import Path

import requests

from walkmap import create_app
from walkmap.errors import UpstreamAuthError


class DummySpotify:
    def __init__(self, playing=None, error=None):
        self.playing = playing
        self.error = error
        self.logged_out = False

    def currently_playing(self):
        if self.error:
            raise self.error
        return self.playing

    def recently_played(self, limit=50):
        if self.error:
            raise self.error
        return [{'spotify_track_id': 't1', 'title': 'A', 'artist': 'B', 'album_image_url': None,
                 'played_at': '2024-01-01T00:00:00.123Z', 'duration_ms': 1000}]

    def is_authenticated(self):
        return self.error is None

    def logout(self):
        self.logged_out = True


def _app(tmp_path: Path, sp):
    return create_app(db_path=str(tmp_path / 'app.db'), spotify_client=sp)


def test_currently_playing_null_when_idle(tmp_path: Path):
    client = _app(tmp_path, DummySpotify()).test_client()
    r = client.get('/currently-playing')
    assert r.status_code == 200
    assert r.get_json() is None


def test_currently_playing_item(tmp_path: Path):
    item = {'trackId': 't1', 'title': 'A', 'artist': 'B', 'albumImageUrl': None,
            'isPlaying': True, 'progressMs': 5000, 'durationMs': 200000}
    client = _app(tmp_path, DummySpotify(playing=item)).test_client()
    assert client.get('/currently-playing').get_json() == item


def test_currently_playing_auth_errors(tmp_path: Path):
    client = _app(tmp_path, DummySpotify(error=UpstreamAuthError('not_authenticated'))).test_client()
    r = client.get('/currently-playing')
    assert r.status_code == 401
    assert r.get_json()['error'] == 'Not authenticated'

    client = _app(tmp_path, DummySpotify(error=UpstreamAuthError('refresh_token_revoked'))).test_client()
    r = client.get('/currently-playing')
    assert r.status_code == 401
    assert r.get_json()['error'] == 'relogin required'


def test_currently_playing_rate_limit_and_upstream_failure(tmp_path: Path):
    client = _app(tmp_path, DummySpotify(error=RuntimeError('rate_limited:30'))).test_client()
    r = client.get('/currently-playing')
    assert r.status_code == 429
    assert r.get_json()['retry_after'] == 30

    client = _app(tmp_path, DummySpotify(error=requests.ConnectionError('down'))).test_client()
    assert client.get('/currently-playing').status_code == 502


def test_recent_route(tmp_path: Path):
    client = _app(tmp_path, DummySpotify()).test_client()
    items = client.get('/recent').get_json()['items']
    assert items[0]['spotify_track_id'] == 't1'


def test_auth_status_and_logout(tmp_path: Path):
    sp = DummySpotify()
    client = _app(tmp_path, sp).test_client()
    assert client.get('/auth/status').get_json() == {'authenticated': True}
    r = client.post('/auth/logout')
    assert r.status_code == 200
    assert sp.logged_out is True


def test_config_roundtrip(tmp_path: Path, monkeypatch):
    monkeypatch.delenv('OPENWEATHER_API_KEY', raising=False)
    monkeypatch.delenv('WALKMAP_LAT', raising=False)
    monkeypatch.delenv('WALKMAP_LNG', raising=False)
    client = _app(tmp_path, DummySpotify()).test_client()
    data = client.get('/config').get_json()
    assert data['poll_interval'] == 15
    assert data['geolocation_timeout'] == 12
    assert data['openweather_api_key'] is False
    assert data['default_lat'] is None

    r = client.post('/config', json={
        'poll_interval': 30,
        'geolocation_timeout': 5,
        'openweather_api_key': 'secret',
        'default_lat': '35.5',
        'default_lng': 139.25,
    })
    assert r.status_code == 200
    assert r.get_json()['saved'] is True

    data = client.get('/config').get_json()
    assert data['poll_interval'] == 30
    assert data['geolocation_timeout'] == 5
    # the key itself is never echoed
    assert data['openweather_api_key'] is True
    assert data['default_lat'] == 35.5
    assert data['default_lng'] == 139.25


def test_config_validation(tmp_path: Path):
    client = _app(tmp_path, DummySpotify()).test_client()
    assert client.post('/config', json={'poll_interval': 1}).status_code == 400
    assert client.post('/config', json={'poll_interval': 'often'}).status_code == 400
    assert client.post('/config', json={'geolocation_timeout': 60}).status_code == 400
    assert client.post('/config', json={'default_lat': 'here'}).status_code == 400


def test_auth_login_redirects_to_spotify(tmp_path: Path):
    from walkmap.spotify_client import SpotifyClient
    from walkmap.storage import DB

    db_path = tmp_path / 'auth.db'
    sp = SpotifyClient(DB(db_path))
    app = create_app(db_path=str(db_path), spotify_client=sp)
    app.db.set_setting('spotify_client_id', 'CLIENT')
    r = app.test_client().get('/auth/login')
    assert r.status_code == 302
    assert r.headers['Location'].startswith('https://accounts.spotify.com/authorize?')


def test_auth_callback_bad_state_redirects_with_flag(tmp_path: Path):
    from walkmap.spotify_client import SpotifyClient
    from walkmap.storage import DB

    db_path = tmp_path / 'auth.db'
    app = create_app(db_path=str(db_path), spotify_client=SpotifyClient(DB(db_path)))
    r = app.test_client().get('/auth/callback?code=abc&state=wrong')
    assert r.status_code == 302
    assert r.headers['Location'].endswith('/?auth_error=1')


def test_auth_callback_declined_consent(tmp_path: Path):
    client = _app(tmp_path, DummySpotify()).test_client()
    r = client.get('/auth/callback?error=access_denied&state=x')
    assert r.status_code == 302
    assert r.headers['Location'].endswith('/?auth_error=1')
