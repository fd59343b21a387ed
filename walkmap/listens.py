"""Server-side reconciliation of listen saves.

Every save request walks the same path: validate, upsert the track, look for
a near-duplicate listen, then either return the existing id or insert. The
near-duplicate check is the authoritative dedup gate; client-side cooldowns
and locks only spare it work.
"""
import math
import threading
from typing import Dict, List, Optional

from .errors import ValidationError
from .keys import normalize_timestamp
from .logging import get_logger, with_context
from .models import VALID_MOODS
from .storage import DB
from .utils.text import clean_text, clean_url

# Flat per-axis tolerance, roughly 11 m at the equator. Not geodesic.
GEO_EPSILON_DEG = 1e-4
LISTENS_PAGE_SIZE = 200
# largest value an sqlite INTEGER column holds
MAX_DURATION_MS = 2 ** 63 - 1

REQUIRED_FIELDS = (
    "spotify_track_id",
    "title",
    "artist",
    "played_at",
    "duration_ms",
    "lat",
    "lng",
)


def _is_blank(value) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == '')


def _finite_number(body: Dict, field: str) -> float:
    value = body.get(field)
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a finite number", field=field)
    try:
        num = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a finite number", field=field)
    if not math.isfinite(num):
        raise ValidationError(f"{field} must be a finite number", field=field)
    return num


def _clean_mood(value) -> Optional[str]:
    if not isinstance(value, str):
        return None
    mood = clean_text(value).lower()
    if not mood:
        return None
    if mood not in VALID_MOODS:
        raise ValidationError("invalid mood", field="mood")
    return mood


def validate_save_request(body: Dict) -> Dict:
    """Check required fields and coerce a POST body into a listen row draft."""
    if not isinstance(body, dict):
        raise ValidationError("Invalid JSON")
    for field in REQUIRED_FIELDS:
        if _is_blank(body.get(field)):
            raise ValidationError.missing(field)

    lat = _finite_number(body, "lat")
    lng = _finite_number(body, "lng")
    duration = _finite_number(body, "duration_ms")
    if duration < 0:
        raise ValidationError("duration_ms must be a non-negative number", field="duration_ms")
    if duration > MAX_DURATION_MS:
        raise ValidationError("duration_ms is out of range", field="duration_ms")

    track_id = clean_text(body.get("spotify_track_id"))
    title = clean_text(body.get("title"))
    artist = clean_text(body.get("artist"))
    for field, value in (("spotify_track_id", track_id), ("title", title), ("artist", artist)):
        if not value:
            raise ValidationError.missing(field)

    played_at = clean_text(body.get("played_at"))
    spotify_played_at = clean_text(body.get("spotify_played_at")) or None
    mood = _clean_mood(body.get("mood"))
    note = body.get("mood_note")
    mood_note = (clean_text(note) or None) if isinstance(note, str) and mood == "other" else None

    return {
        "track": {
            "spotify_track_id": track_id,
            "title": title,
            "artist": artist,
            "album_image_url": clean_url(body.get("album_image_url")),
        },
        "played_at": played_at,
        "spotify_played_at": spotify_played_at,
        "reconcile_at": normalize_timestamp(spotify_played_at or played_at),
        "duration_ms": int(duration),
        "lat": lat,
        "lng": lng,
        "mood": mood,
        "mood_note": mood_note,
    }


class ListenService:
    def __init__(self, db: DB, weather_client=None, epsilon: float = GEO_EPSILON_DEG):
        self.db = db
        self.weather_client = weather_client
        self.epsilon = epsilon
        self.logger = get_logger(__name__)
        self._write_lock = threading.Lock()

    def list_recent(self, limit: int = LISTENS_PAGE_SIZE) -> List[Dict]:
        return self.db.fetch_listens(limit=min(int(limit), LISTENS_PAGE_SIZE))

    def save(self, body: Dict) -> Dict:
        """Persist a listen unless a near-duplicate exists.

        Returns ``{"ok": True, "id": ...}`` with ``"duplicated": True`` when an
        existing row was matched. Raises ValidationError for bad input.
        """
        log, _ = with_context(self.logger)
        draft = validate_save_request(body)
        track_row_id = self.db.upsert_track(draft["track"])

        existing = self.db.find_duplicate_listen(
            track_row_id, draft["reconcile_at"], draft["lat"], draft["lng"], self.epsilon,
        )
        if existing:
            log.info("duplicate listen %s for track %s at %s", existing,
                     draft["track"]["spotify_track_id"], draft["reconcile_at"])
            return {"ok": True, "id": existing, "duplicated": True}

        weather = None
        if self.weather_client is not None:
            weather = self.weather_client.current(draft["lat"], draft["lng"])

        row = {
            "track_id": track_row_id,
            "played_at": draft["played_at"],
            "spotify_played_at": draft["spotify_played_at"],
            "reconcile_at": draft["reconcile_at"],
            "duration_ms": draft["duration_ms"],
            "lat": draft["lat"],
            "lng": draft["lng"],
            "mood": draft["mood"],
            "mood_note": draft["mood_note"],
        }
        if weather:
            row.update(weather)

        # Re-checked inside the insert transaction; a concurrent request may
        # have landed while the weather lookup was running.
        with self._write_lock:
            listen_id, duplicated = self.db.insert_listen(row, self.epsilon)
        if duplicated:
            log.info("duplicate listen %s detected at insert", listen_id)
            return {"ok": True, "id": listen_id, "duplicated": True}
        log.info("inserted listen %s for track %s at %s", listen_id,
                 draft["track"]["spotify_track_id"], draft["reconcile_at"])
        return {"ok": True, "id": listen_id}

    def update_mood(self, body: Dict) -> Dict:
        """Set mood (and note for "other") on an existing listen. Nothing else changes."""
        if not isinstance(body, dict):
            raise ValidationError("Invalid JSON")
        listen_id = clean_text(body.get("id"))
        if not listen_id:
            raise ValidationError.missing("id")
        raw_mood = body.get("mood")
        if not isinstance(raw_mood, str) or not clean_text(raw_mood):
            raise ValidationError.missing("mood")
        mood = _clean_mood(raw_mood)
        note = body.get("mood_note")
        mood_note = (clean_text(note) or None) if isinstance(note, str) and mood == "other" else None
        if not self.db.update_listen_mood(listen_id, mood, mood_note):
            raise LookupError("Listen not found")
        return {"ok": True, "id": listen_id}
