import base64
import hashlib
import os
import secrets
import threading
import time
from typing import Dict, List, Optional
from urllib.parse import urlencode

import requests

from .errors import UpstreamAuthError
from .logging import get_logger, with_context
from .storage import DB, TokenStore


AUTH_URL = "https://accounts.spotify.com/authorize"
TOKEN_URL = "https://accounts.spotify.com/api/token"
API_BASE = "https://api.spotify.com/v1"
SCOPE = "user-read-currently-playing user-read-recently-played"
PKCE_VERIFIER_KEY = 'spotify_pkce_verifier'
PKCE_STATE_KEY = 'spotify_pkce_state'
# concurrent 401s within this many seconds share one refresh
REFRESH_REUSE_SECONDS = 5


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode('ascii').rstrip('=')


class SpotifyClient:
    """PKCE-authorized access to the playback endpoints a listen session polls."""

    def __init__(self, db: DB):
        self.db = db
        self.token_store = TokenStore(db)
        self.logger = get_logger(__name__)
        self._refresh_lock = threading.Lock()
        self._refreshed_at = 0.0

    def _client_id(self) -> str:
        return self.db.get_setting('spotify_client_id') or os.environ.get('SPOTIFY_CLIENT_ID', '')

    def _post_token(self, form: Dict[str, str]) -> requests.Response:
        return requests.post(
            TOKEN_URL,
            data=form,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            timeout=15,
        )

    def begin_pkce(self) -> Dict[str, str]:
        verifier = _b64url(os.urandom(64))
        pair = {
            "verifier": verifier,
            "challenge": _b64url(hashlib.sha256(verifier.encode('ascii')).digest()),
            "state": secrets.token_urlsafe(16),
        }
        self.db.set_setting(PKCE_VERIFIER_KEY, pair["verifier"])
        self.db.set_setting(PKCE_STATE_KEY, pair["state"])
        return pair

    def get_auth_url(self, redirect_uri: str, client_id: Optional[str] = None) -> str:
        pkce = self.begin_pkce()
        query = urlencode({
            "client_id": client_id or self._client_id(),
            "response_type": "code",
            "redirect_uri": redirect_uri,
            "scope": SCOPE,
            "code_challenge_method": "S256",
            "code_challenge": pkce["challenge"],
            "state": pkce["state"],
            "show_dialog": "false",
        })
        return f"{AUTH_URL}?{query}"

    def handle_callback(self, code: str, state: str, redirect_uri: str, client_id: Optional[str] = None):
        """Exchange the authorization code; the PKCE pair is single-use."""
        expected = self.db.get_setting(PKCE_STATE_KEY) or ''
        if not expected or state != expected:
            raise ValueError("invalid_state")
        verifier = self.db.get_setting(PKCE_VERIFIER_KEY) or ''
        if not verifier:
            raise ValueError("missing_verifier")

        log, _ = with_context(self.logger, attempt=1)
        resp = self._post_token({
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "client_id": client_id or self._client_id(),
            "code_verifier": verifier,
        })
        if not resp.ok:
            # body names the cause, e.g. redirect_uri_mismatch
            log.error("spotify code exchange failed: status=%s body=%s", resp.status_code, resp.text)
            resp.raise_for_status()
        tokens = resp.json()
        if not tokens.get("access_token") or not tokens.get("refresh_token"):
            raise ValueError("token_exchange_failed")
        self.token_store.save(tokens["access_token"], tokens["refresh_token"])
        self.db.set_setting(PKCE_VERIFIER_KEY, '')
        self.db.set_setting(PKCE_STATE_KEY, '')

    def logout(self):
        self.token_store.clear()

    def is_authenticated(self) -> bool:
        at, rt = self.token_store.load()
        return bool(at and rt)

    def refresh_access_token(self, client_id: Optional[str] = None) -> str:
        with self._refresh_lock:
            now = time.time()
            if now - self._refreshed_at < REFRESH_REUSE_SECONDS:
                at, _ = self.token_store.load()
                if at:
                    return at

            _, rt = self.token_store.load()
            if not rt:
                raise UpstreamAuthError("not_authenticated")
            log, _ = with_context(self.logger, attempt=1)
            resp = self._post_token({
                "grant_type": "refresh_token",
                "refresh_token": rt,
                "client_id": client_id or self._client_id(),
            })
            if not resp.ok:
                log.error("spotify refresh failed: HTTP %s", resp.status_code)
                try:
                    reason = (resp.json() or {}).get("error")
                except ValueError:
                    reason = None
                if resp.status_code == 400 and reason == "invalid_grant":
                    log.info("refresh token revoked; stored tokens cleared")
                    self.token_store.clear()
                    raise UpstreamAuthError("refresh_token_revoked")
                raise UpstreamAuthError(f"spotify_refresh_failed_http_{resp.status_code}")
            tokens = resp.json()
            access_token = tokens.get("access_token")
            if not access_token:
                raise UpstreamAuthError("refresh_failed")
            self.token_store.save(access_token, tokens.get("refresh_token", rt))
            self._refreshed_at = now
            return access_token

    def _get(self, url: str) -> requests.Response:
        """GET with the stored token; one transparent refresh-and-retry on 401."""
        at, _ = self.token_store.load()
        if not at:
            raise UpstreamAuthError("not_authenticated")
        try:
            r = requests.get(url, headers={"Authorization": f"Bearer {at}"}, timeout=15)
        except requests.RequestException as e:
            with_context(self.logger, attempt=1)[0].error("spotify request error: %s", e)
            raise
        if r.status_code == 401:
            at = self.refresh_access_token()
            r = requests.get(url, headers={"Authorization": f"Bearer {at}"}, timeout=15)
            if r.status_code == 401:
                raise UpstreamAuthError("relogin_required")
        if r.status_code == 429:
            retry_after = int(r.headers.get('Retry-After', 60))
            with_context(self.logger, attempt=1)[0].warning("Spotify rate limited, retry in %s seconds", retry_after)
            raise RuntimeError(f"rate_limited:{retry_after}")
        return r

    def currently_playing(self) -> Optional[Dict]:
        """Return the loaded track (``isPlaying`` False while paused), or None when there is none."""
        r = self._get(f"{API_BASE}/me/player/currently-playing")
        if r.status_code == 204:
            return None
        r.raise_for_status()
        data = r.json() or {}
        item = data.get("item")
        if not item:
            return None
        images = (item.get("album") or {}).get("images") or []
        return {
            "trackId": item.get("id"),
            "title": item.get("name", ""),
            "artist": ", ".join(a.get("name", "") for a in (item.get("artists") or [])),
            "albumImageUrl": images[0].get("url") if images else None,
            "isPlaying": bool(data.get("is_playing")),
            "progressMs": int(data.get("progress_ms") or 0),
            "durationMs": int(item.get("duration_ms") or 0),
        }

    def recently_played(self, limit: int = 50) -> List[Dict]:
        r = self._get(f"{API_BASE}/me/player/recently-played?limit={int(limit)}")
        r.raise_for_status()
        items: List[Dict] = []
        for it in (r.json() or {}).get("items", []):
            tr = (it or {}).get("track") or {}
            if not tr.get("id"):
                continue
            images = (tr.get("album") or {}).get("images") or []
            items.append({
                "spotify_track_id": tr.get("id"),
                "title": tr.get("name", ""),
                "artist": ", ".join(a.get("name", "") for a in (tr.get("artists") or [])),
                "album_image_url": images[0].get("url") if images else None,
                "played_at": it.get("played_at"),
                "duration_ms": int(tr.get("duration_ms") or 0),
            })
        return items
