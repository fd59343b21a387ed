from typing import Dict, Optional

import requests

from .logging import get_logger, with_context

WEATHER_URL = "https://api.openweathermap.org/data/2.5/weather"


class WeatherClient:
    """Current-conditions snapshot from OpenWeatherMap, attached to new listens."""

    def __init__(self, api_key: str = '', lang: str = 'en'):
        self.api_key = api_key
        self.lang = lang
        self.logger = get_logger(__name__)

    def current(self, lat: float, lng: float) -> Optional[Dict]:
        if not self.api_key:
            return None
        params = {
            "lat": lat,
            "lon": lng,
            "appid": self.api_key,
            "units": "metric",
            "lang": self.lang,
        }
        log, _ = with_context(self.logger, attempt=1)
        try:
            r = requests.get(WEATHER_URL, params=params, timeout=10)
        except requests.RequestException as e:
            log.warning("weather lookup failed: %s", e)
            return None
        if not r.ok:
            log.warning("weather lookup failed: HTTP %s", r.status_code)
            return None
        try:
            data = r.json() or {}
        except ValueError:
            log.warning("weather lookup returned invalid JSON")
            return None
        weather = (data.get("weather") or [{}])[0]
        temp = (data.get("main") or {}).get("temp")
        return {
            "weather_main": weather.get("main"),
            "weather_description": weather.get("description"),
            "weather_temp_c": temp if isinstance(temp, (int, float)) else None,
        }
