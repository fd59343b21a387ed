import os
from pathlib import Path
from typing import Optional

import requests
from flask import Flask, jsonify, request

from .config import (
    VALID_GEOLOCATION_TIMEOUTS,
    VALID_POLL_INTERVALS,
    load_config,
    save_config,
)
from .errors import UpstreamAuthError, ValidationError
from .listens import ListenService
from .logging import get_logger, with_context
from .spotify_client import SpotifyClient
from .stats import mood_weather_stats
from .storage import DB
from .weather_client import WeatherClient


def _default_db_path() -> str:
    return os.environ.get('WALKMAP_DB', str(Path.cwd() / 'walkmap.db'))


def create_app(db_path: Optional[str] = None, spotify_client=None, weather_client=None):
    app = Flask(__name__)

    # Spotify requires HTTPS redirect URIs
    app.config['PREFERRED_URL_SCHEME'] = 'https'

    db = DB(Path(db_path or _default_db_path()))
    cfg = load_config(db)
    sp = spotify_client or SpotifyClient(db)
    if weather_client is None:
        weather_client = WeatherClient(api_key=cfg.get('openweather_api_key') or '')
    listens = ListenService(db, weather_client=weather_client)
    logger = get_logger(__name__)

    def _error(message: str, status: int):
        return jsonify({"error": message}), status

    @app.get('/listens')
    def list_listens():
        return jsonify({"items": listens.list_recent()}), 200

    @app.post('/listens')
    def save_listen():
        body = request.get_json(force=True, silent=True)
        if body is None:
            return _error("Invalid JSON", 400)
        try:
            result = listens.save(body)
        except ValidationError as e:
            return _error(str(e), 400)
        except Exception as e:
            with_context(logger)[0].exception("listen save failed")
            return _error(f"listens insert failed: {e}", 500)
        return jsonify(result), 200

    @app.patch('/listens')
    def update_listen_mood():
        body = request.get_json(force=True, silent=True)
        if body is None:
            return _error("Invalid JSON", 400)
        try:
            result = listens.update_mood(body)
        except ValidationError as e:
            return _error(str(e), 400)
        except LookupError as e:
            return _error(str(e.args[0]) if e.args else "Listen not found", 404)
        return jsonify(result), 200

    @app.get('/currently-playing')
    def currently_playing():
        try:
            item = sp.currently_playing()
        except UpstreamAuthError as e:
            code = str(e)
            if code == 'not_authenticated':
                return _error("Not authenticated", 401)
            return _error("relogin required", 401)
        except RuntimeError as e:
            msg = str(e)
            if msg.startswith('rate_limited:'):
                return jsonify({"error": "Spotify rate limited", "retry_after": int(msg.split(':', 1)[1] or 60)}), 429
            return _error(msg or 'error', 500)
        except requests.RequestException as e:
            return _error(str(e) or 'upstream error', 502)
        return jsonify(item), 200

    @app.get('/recent')
    def recent():
        try:
            items = sp.recently_played()
        except UpstreamAuthError:
            return _error("Not authenticated", 401)
        except RuntimeError as e:
            return _error(str(e) or 'error', 500)
        except requests.RequestException as e:
            return _error(str(e) or 'upstream error', 502)
        return jsonify({"items": items}), 200

    @app.get('/stats')
    def stats():
        return jsonify(mood_weather_stats(db.fetch_mood_weather_rows())), 200

    @app.get('/config')
    def get_config():
        current = load_config(db)
        # never echo the weather key back
        current['openweather_api_key'] = bool(current.get('openweather_api_key'))
        return jsonify(current), 200

    @app.post('/config')
    def set_config():
        data = request.get_json(force=True, silent=True) or {}
        current = load_config(db)
        try:
            poll_interval = int(data.get('poll_interval', current['poll_interval']))
            geo_timeout = int(data.get('geolocation_timeout', current['geolocation_timeout']))
        except (TypeError, ValueError):
            return _error("invalid number", 400)
        if poll_interval not in VALID_POLL_INTERVALS:
            return _error("invalid poll_interval", 400)
        if geo_timeout not in VALID_GEOLOCATION_TIMEOUTS:
            return _error("invalid geolocation_timeout", 400)
        new_cfg = {
            'poll_interval': poll_interval,
            'geolocation_timeout': geo_timeout,
        }
        for key in ('spotify_client_id', 'openweather_api_key'):
            if key in data:
                new_cfg[key] = (data.get(key) or '').strip()
        for key in ('default_lat', 'default_lng'):
            if key in data:
                value = data.get(key)
                if value is not None:
                    try:
                        value = float(value)
                    except (TypeError, ValueError):
                        return _error(f"invalid {key}", 400)
                new_cfg[key] = value
        save_config(db, new_cfg)
        if 'openweather_api_key' in new_cfg and isinstance(weather_client, WeatherClient):
            weather_client.api_key = new_cfg['openweather_api_key']
        return jsonify({"saved": True}), 200

    from .web import init_web  # lazy import
    init_web(app, db, sp)

    app.listen_service = listens
    app.db = db
    return app
