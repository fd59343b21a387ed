import os
from typing import Dict, Optional

DEFAULT_POLL_INTERVAL = 15
DEFAULT_GEOLOCATION_TIMEOUT = 12
VALID_POLL_INTERVALS = range(5, 301)
VALID_GEOLOCATION_TIMEOUTS = range(1, 16)


def _float_or_none(raw: Optional[str]) -> Optional[float]:
    if raw is None or str(raw).strip() == '':
        return None
    try:
        return float(raw)
    except (TypeError, ValueError):
        return None


def load_config(db) -> Dict:
    return {
        'spotify_client_id': db.get_setting('spotify_client_id') or os.environ.get('SPOTIFY_CLIENT_ID', ''),
        'openweather_api_key': db.get_setting('openweather_api_key') or os.environ.get('OPENWEATHER_API_KEY', ''),
        'poll_interval': int(db.get_setting('poll_interval') or DEFAULT_POLL_INTERVAL),
        'geolocation_timeout': int(db.get_setting('geolocation_timeout') or DEFAULT_GEOLOCATION_TIMEOUT),
        'default_lat': _float_or_none(db.get_setting('default_lat') or os.environ.get('WALKMAP_LAT')),
        'default_lng': _float_or_none(db.get_setting('default_lng') or os.environ.get('WALKMAP_LNG')),
    }


def save_config(db, cfg: Dict):
    db.set_setting('poll_interval', str(int(cfg.get('poll_interval', DEFAULT_POLL_INTERVAL))))
    db.set_setting('geolocation_timeout', str(int(cfg.get('geolocation_timeout', DEFAULT_GEOLOCATION_TIMEOUT))))
    if 'spotify_client_id' in cfg:
        db.set_setting('spotify_client_id', cfg.get('spotify_client_id') or '')
    if 'openweather_api_key' in cfg:
        db.set_setting('openweather_api_key', cfg.get('openweather_api_key') or '')
    if 'default_lat' in cfg:
        lat = cfg.get('default_lat')
        db.set_setting('default_lat', '' if lat is None else str(float(lat)))
    if 'default_lng' in cfg:
        lng = cfg.get('default_lng')
        db.set_setting('default_lng', '' if lng is None else str(float(lng)))
