from datetime import tzinfo
from typing import Dict, Iterable, Optional

from .keys import parse_timestamp


def time_slot(played_at: Optional[str], tz: Optional[tzinfo] = None) -> Optional[str]:
    """Bucket a timestamp into night/morning/day/evening by local hour."""
    dt = parse_timestamp(played_at)
    if dt is None:
        return None
    hour = dt.astimezone(tz).hour
    if hour < 5:
        return "night"
    if hour < 10:
        return "morning"
    if hour < 17:
        return "day"
    return "evening"


def mood_weather_stats(rows: Iterable[Dict], tz: Optional[tzinfo] = None) -> Dict:
    """Count listens per (weather, mood) and per (weather, mood, time slot).

    Rows without both a mood and a weather snapshot are ignored.
    """
    by_pair: Dict[tuple, int] = {}
    by_slot: Dict[tuple, int] = {}
    for row in rows:
        mood = row.get("mood")
        weather = row.get("weather_main")
        if not mood or not weather:
            continue
        by_pair[(weather, mood)] = by_pair.get((weather, mood), 0) + 1
        slot = time_slot(row.get("played_at"), tz)
        if slot:
            key = (weather, mood, slot)
            by_slot[key] = by_slot.get(key, 0) + 1
    return {
        "moodWeather": [
            {"weather_main": w, "mood": m, "count": c}
            for (w, m), c in by_pair.items()
        ],
        "moodWeatherByTime": [
            {"weather_main": w, "mood": m, "time_slot": s, "count": c}
            for (w, m, s), c in by_slot.items()
        ],
    }
