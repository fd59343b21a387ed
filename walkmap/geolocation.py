from typing import Dict, Tuple

import requests

from .errors import GeolocationUnavailable

IP_LOOKUP_URL = "https://ipapi.co/json/"


class StaticGeolocator:
    """Fixed coordinates from configuration."""

    def __init__(self, lat: float, lng: float):
        self.lat = float(lat)
        self.lng = float(lng)

    def __call__(self, timeout: float) -> Tuple[float, float]:
        return self.lat, self.lng


class IpGeolocator:
    """Approximate location from an IP lookup; fails fast after ``timeout`` seconds."""

    def __init__(self, url: str = IP_LOOKUP_URL, session=None):
        self.url = url
        self.session = session or requests.Session()

    def __call__(self, timeout: float) -> Tuple[float, float]:
        try:
            r = self.session.get(self.url, timeout=timeout)
        except requests.RequestException as e:
            raise GeolocationUnavailable(f"location lookup failed: {e}")
        if not r.ok:
            raise GeolocationUnavailable(f"location lookup failed: HTTP {r.status_code}")
        try:
            data = r.json() or {}
            return float(data['latitude']), float(data['longitude'])
        except (ValueError, KeyError, TypeError):
            raise GeolocationUnavailable("location lookup returned no coordinates")


def build_geolocator(cfg: Dict):
    lat, lng = cfg.get('default_lat'), cfg.get('default_lng')
    if lat is not None and lng is not None:
        return StaticGeolocator(lat, lng)
    return IpGeolocator()
