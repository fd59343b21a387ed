import pytest
import requests

from walkmap.api_client import ListensApi
from walkmap.errors import NetworkFailure, UpstreamAuthError, ValidationError


class StubSession:
    def __init__(self, status_code=200, body=None, error=None):
        self.status_code = status_code
        self.body = body
        self.error = error
        self.calls = []

    def request(self, method, url, json=None, timeout=None):
        self.calls.append((method, url, json, timeout))
        if self.error:
            raise self.error
        stub = self

        class R:
            status_code = stub.status_code
            ok = stub.status_code < 400

            def json(self):
                if stub.body is None:
                    raise ValueError('empty')
                return stub.body
        return R()


def test_save_listen_posts_payload():
    s = StubSession(body={'ok': True, 'id': 'x1'})
    api = ListensApi('https://walkmap.local/', session=s)
    assert api.save_listen({'spotify_track_id': 't1'}) == {'ok': True, 'id': 'x1'}
    assert s.calls == [('POST', 'https://walkmap.local/listens', {'spotify_track_id': 't1'}, 15)]


def test_error_statuses_map_to_taxonomy():
    with pytest.raises(ValidationError) as exc:
        ListensApi('http://h', session=StubSession(400, {'error': 'Missing field: lat'})).save_listen({})
    assert str(exc.value) == 'Missing field: lat'
    with pytest.raises(UpstreamAuthError):
        ListensApi('http://h', session=StubSession(401, {'error': 'Not authenticated'})).currently_playing()
    with pytest.raises(NetworkFailure) as exc:
        ListensApi('http://h', session=StubSession(503)).fetch_listens()
    assert exc.value.status == 503
    with pytest.raises(NetworkFailure):
        ListensApi('http://h', session=StubSession(error=requests.ConnectionError('refused'))).fetch_listens()


def test_unexpected_save_body_is_a_failure():
    with pytest.raises(NetworkFailure):
        ListensApi('http://h', session=StubSession(body={'ok': False})).save_listen({})


def test_fetch_listens_builds_records():
    body = {'items': [{'id': 'a', 'spotify_track_id': 't1', 'played_at': '2024-01-01T00:00:00Z',
                       'spotify_played_at': None, 'lat': 1.0, 'lng': 2.0, 'duration_ms': 5}]}
    records = ListensApi('http://h', session=StubSession(body=body)).fetch_listens()
    assert records[0].id == 'a'
    assert records[0].reconcile_at == '2024-01-01T00:00:00Z'


def test_currently_playing_null_body():
    assert ListensApi('http://h', session=StubSession(body=None)).currently_playing() is None


def test_rate_limit_is_retryable_failure():
    with pytest.raises(NetworkFailure) as exc:
        ListensApi('http://h', session=StubSession(429, {'error': 'Spotify rate limited', 'retry_after': 30})).currently_playing()
    assert exc.value.status == 429


def test_recently_played_unwraps_items():
    item = {'spotify_track_id': 't1', 'played_at': '2024-01-01T00:00:00Z'}
    s = StubSession(body={'items': [item]})
    assert ListensApi('http://h', session=s).recently_played() == [item]
    assert s.calls[0][:2] == ('GET', 'http://h/recent')
