from typing import Dict, List, Optional

import requests

from .errors import NetworkFailure, UpstreamAuthError, ValidationError
from .models import ListenRecord


class ListensApi:
    """HTTP client a listen session uses to reach the walkmap server."""

    def __init__(self, base_url: str, session=None, timeout: float = 15):
        self.base_url = base_url.rstrip('/')
        self.session = session or requests.Session()
        self.timeout = timeout

    def _request(self, method: str, path: str, payload: Optional[Dict] = None):
        try:
            r = self.session.request(method, f"{self.base_url}{path}", json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            raise NetworkFailure(str(e) or 'request failed')
        try:
            body = r.json()
        except ValueError:
            body = None
        message = body.get('error') if isinstance(body, dict) else None
        if r.status_code == 401:
            raise UpstreamAuthError(message or 'relogin required')
        if r.status_code == 429:
            # upstream rate limit; the next tick retries
            raise NetworkFailure(message or 'rate limited', status=429)
        if 400 <= r.status_code < 500:
            raise ValidationError(message or f"HTTP {r.status_code}")
        if not r.ok:
            raise NetworkFailure(message or f"HTTP {r.status_code}", status=r.status_code)
        return body

    def fetch_listens(self) -> List[ListenRecord]:
        body = self._request('GET', '/listens') or {}
        return [ListenRecord.from_dict(it) for it in body.get('items', [])]

    def save_listen(self, payload: Dict) -> Dict:
        body = self._request('POST', '/listens', payload)
        if not isinstance(body, dict) or not body.get('ok') or not body.get('id'):
            raise NetworkFailure('unexpected save response')
        return body

    def update_mood(self, listen_id: str, mood: str, mood_note: Optional[str] = None) -> Dict:
        return self._request('PATCH', '/listens', {'id': listen_id, 'mood': mood, 'mood_note': mood_note})

    def currently_playing(self) -> Optional[Dict]:
        return self._request('GET', '/currently-playing')

    def recently_played(self) -> List[Dict]:
        body = self._request('GET', '/recent') or {}
        return body.get('items', [])
