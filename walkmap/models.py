from dataclasses import dataclass, field
from typing import Dict, Optional, Union

VALID_MOODS = {"happy", "soso", "sad", "other"}


@dataclass
class CandidateEvent:
    """An observation that a track might have started playing."""
    track_id: str
    title: str
    artist: str
    started_at: str
    duration_ms: int = 0
    album_image_url: Optional[str] = None
    progress_ms: Optional[int] = None
    is_playing: Optional[bool] = None
    mood: Optional[str] = None
    mood_note: Optional[str] = None

    @classmethod
    def from_currently_playing(cls, item: Dict, started_at: str) -> 'CandidateEvent':
        return cls(
            track_id=item.get('trackId') or '',
            title=item.get('title') or '',
            artist=item.get('artist') or '',
            album_image_url=item.get('albumImageUrl'),
            started_at=started_at,
            duration_ms=int(item.get('durationMs') or 0),
            progress_ms=int(item.get('progressMs') or 0),
            is_playing=bool(item.get('isPlaying')),
        )

    @classmethod
    def from_recent(cls, item: Dict, mood: Optional[str] = None, mood_note: Optional[str] = None) -> 'CandidateEvent':
        return cls(
            track_id=item.get('spotify_track_id') or '',
            title=item.get('title') or '',
            artist=item.get('artist') or '',
            album_image_url=item.get('album_image_url'),
            started_at=item.get('played_at') or '',
            duration_ms=int(item.get('duration_ms') or 0),
            mood=mood,
            mood_note=mood_note if mood == 'other' else None,
        )


@dataclass
class ListenRecord:
    """A persisted listen as returned by ``GET /listens``."""
    id: str
    spotify_track_id: str
    played_at: Optional[str]
    spotify_played_at: Optional[str] = None
    title: str = ''
    artist: str = ''
    album_image_url: Optional[str] = None
    duration_ms: int = 0
    lat: Optional[float] = None
    lng: Optional[float] = None
    mood: Optional[str] = None
    mood_note: Optional[str] = None
    weather_main: Optional[str] = None
    weather_description: Optional[str] = None
    weather_temp_c: Optional[float] = None
    created_at: Optional[str] = None

    @property
    def reconcile_at(self) -> Optional[str]:
        return self.spotify_played_at or self.played_at

    @classmethod
    def from_dict(cls, data: Dict) -> 'ListenRecord':
        return cls(
            id=str(data.get('id') or ''),
            spotify_track_id=str(data.get('spotify_track_id') or ''),
            played_at=data.get('played_at'),
            spotify_played_at=data.get('spotify_played_at'),
            title=data.get('title') or '',
            artist=data.get('artist') or '',
            album_image_url=data.get('album_image_url'),
            duration_ms=int(data.get('duration_ms') or 0),
            lat=data.get('lat'),
            lng=data.get('lng'),
            mood=data.get('mood'),
            mood_note=data.get('mood_note'),
            weather_main=data.get('weather_main'),
            weather_description=data.get('weather_description'),
            weather_temp_c=data.get('weather_temp_c'),
            created_at=data.get('created_at'),
        )


@dataclass(frozen=True)
class Saved:
    listen_id: str
    duplicated: bool = False


@dataclass(frozen=True)
class Suppressed:
    reason: str


@dataclass(frozen=True)
class Failed:
    error: Exception = field(compare=False)


SaveOutcome = Union[Saved, Suppressed, Failed]
