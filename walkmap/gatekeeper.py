"""Client-side save decisions for candidate listen events.

Candidates arrive far more often than real listens start: every poll tick
re-observes the playing track, several sessions poll at once, and the user
can pin manually. The gatekeeper drops the repeats with cheap local checks
before anything user-visible (a location lookup) or remote (a save request)
happens. These checks are advisory; the server's near-duplicate check is
what actually guarantees one row per listen.
"""
from typing import Dict, Optional

from .errors import GeolocationUnavailable, NetworkFailure, UpstreamAuthError, ValidationError
from .keys import normalize_key, to_epoch_ms
from .logging import get_logger, with_context
from .models import CandidateEvent, Failed, SaveOutcome, Saved, Suppressed

COOLDOWN_GRACE_MS = 30_000
CROSS_TAB_MIN_WINDOW_MS = 120_000

COOLDOWN = 'cooldown'
CROSS_TAB_LOCK = 'cross_tab_lock'
IN_FLIGHT = 'in_flight'
ALREADY_RECORDED = 'already_recorded'
NEARBY_RECORDED = 'nearby_recorded'
GEOLOCATION_UNAVAILABLE = 'geolocation_unavailable'
INVALID_EVENT = 'invalid_event'


class SaveGatekeeper:
    def __init__(self, session):
        self.session = session
        self.logger = get_logger(__name__)

    def try_save(self, event: CandidateEvent) -> SaveOutcome:
        s = self.session
        log, _ = with_context(self.logger)
        track_id = (event.track_id or '').strip()
        if not track_id:
            return Suppressed(INVALID_EVENT)
        key = normalize_key(track_id, event.started_at)
        event_ms = to_epoch_ms(event.started_at)
        if event_ms is None:
            event_ms = s.clock()

        # disk read kept outside the state lock
        shared = s.lock_store.read()
        with s.state_lock:
            reason = self._suppression_reason(event, key, track_id, event_ms, shared)
        if reason:
            log.debug("suppressed %s: %s", key, reason)
            return Suppressed(reason)

        # the in-flight mark for key is held from here on
        try:
            try:
                lat, lng = s.locate(s.geolocation_timeout)
            except GeolocationUnavailable as e:
                s.notify(f"Location unavailable, listen not saved: {e}")
                return Suppressed(GEOLOCATION_UNAVAILABLE)

            try:
                result = s.api.save_listen(self._payload(event, lat, lng))
            except (NetworkFailure, ValidationError, UpstreamAuthError) as e:
                log.warning("save failed for %s: %s", key, e)
                return Failed(e)

            with s.state_lock:
                s.last_saved[track_id] = (event_ms, int(event.duration_ms or 0))
            s.lock_store.write(key, track_id, event_ms)
            log.info("saved %s as %s%s", key, result['id'], " (duplicate)" if result.get('duplicated') else "")
            s.announce_update()
            s.refresh_index()
            return Saved(str(result['id']), bool(result.get('duplicated')))
        finally:
            s.in_flight.release(key)

    def _suppression_reason(self, event: CandidateEvent, key: str, track_id: str, event_ms: int,
                            shared: Optional[Dict]) -> Optional[str]:
        """Run the local checks in order, cheapest first. Caller holds the state lock.

        When every check passes, ``key`` is left marked in flight.
        """
        s = self.session
        duration = int(event.duration_ms or 0)

        previous = s.last_saved.get(track_id)
        track_window = max(duration, previous[1] if previous else 0) + COOLDOWN_GRACE_MS
        if previous and abs(event_ms - previous[0]) < track_window:
            return COOLDOWN

        if shared:
            same = shared.get('key') == key or (shared.get('trackId') or '').strip() == track_id
            ts = shared.get('ts')
            if same and isinstance(ts, (int, float)) and abs(event_ms - ts) < max(track_window, CROSS_TAB_MIN_WINDOW_MS):
                return CROSS_TAB_LOCK

        if not s.in_flight.try_acquire(key):
            return IN_FLIGHT

        if s.index.has_key(key):
            # adopt the server's record as local memory
            s.last_saved[track_id] = (event_ms, duration)
            s.in_flight.release(key)
            return ALREADY_RECORDED

        if s.index.find_nearby(track_id, event.started_at):
            s.in_flight.release(key)
            return NEARBY_RECORDED
        return None

    def _payload(self, event: CandidateEvent, lat: float, lng: float) -> Dict:
        payload = {
            'spotify_track_id': event.track_id.strip(),
            'title': event.title,
            'artist': event.artist,
            'album_image_url': event.album_image_url,
            'played_at': event.started_at,
            'spotify_played_at': event.started_at,
            'duration_ms': int(event.duration_ms or 0),
            'lat': lat,
            'lng': lng,
        }
        if event.mood:
            payload['mood'] = event.mood
            if event.mood == 'other' and event.mood_note:
                payload['mood_note'] = event.mood_note
        return payload
