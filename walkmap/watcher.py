import threading
from typing import Dict, Optional

from .channel import LISTENS_UPDATED
from .errors import NetworkFailure, UpstreamAuthError, ValidationError
from .keys import iso_from_epoch_ms, round_ms_to_second
from .locks import non_blocking
from .logging import get_logger, with_context
from .models import CandidateEvent, SaveOutcome


class PlaybackTracker:
    """Start-time estimate for the playing track: ``Idle -> Tracking(track_id, start)``.

    The first estimate for a track id wins so keys stay put across ticks,
    including across pauses. Only a replay (progress jumped back and the
    estimate moved past the track's length) starts a new estimate.
    """
    IDLE = 'idle'
    TRACKING = 'tracking'

    def __init__(self):
        self.reset()

    def reset(self) -> None:
        self.state = self.IDLE
        self.track_id: Optional[str] = None
        self.estimated_start_ms: Optional[int] = None
        self.last_progress_ms: Optional[int] = None

    def observe(self, item: Optional[Dict], now_ms: int) -> Optional[int]:
        track_id = ((item or {}).get('trackId') or '').strip()
        if not track_id:
            self.reset()
            return None
        progress = max(0, int(item.get('progressMs') or 0))
        estimate = round_ms_to_second(now_ms - progress)
        if self.state == self.TRACKING and self.track_id == track_id:
            duration = int(item.get('durationMs') or 0)
            rewound = progress < (self.last_progress_ms or 0)
            if rewound and duration > 0 and estimate - self.estimated_start_ms > duration:
                self.estimated_start_ms = estimate
            self.last_progress_ms = progress
            return self.estimated_start_ms
        self.state = self.TRACKING
        self.track_id = track_id
        self.estimated_start_ms = estimate
        self.last_progress_ms = progress
        return estimate


class PlaybackWatcher:
    """Triggers for a session: currently-playing poll, focus refresh, broadcast refresh.

    No dedup happens here; every candidate goes through the session gatekeeper.
    """

    def __init__(self, session, interval_seconds: float = 15):
        self.session = session
        self.interval_seconds = interval_seconds
        self.tracker = PlaybackTracker()
        self.logger = get_logger(__name__)
        self._poll_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def poll_once(self) -> Optional[SaveOutcome]:
        with non_blocking(self._poll_lock) as acquired:
            if not acquired:
                self.logger.debug("poll already running; tick skipped")
                return None
            s = self.session
            try:
                item = s.api.currently_playing()
            except (NetworkFailure, UpstreamAuthError, ValidationError) as e:
                with_context(self.logger)[0].warning("currently-playing poll failed: %s", e)
                return None
            if item and not item.get('isPlaying'):
                # paused: tracker untouched so the resumed listen keeps its key
                return None
            started_ms = self.tracker.observe(item, s.clock())
            if started_ms is None:
                return None
            event = CandidateEvent.from_currently_playing(item, iso_from_epoch_ms(started_ms))
            return s.gatekeeper.try_save(event)

    def _loop(self) -> None:
        while True:
            try:
                self.poll_once()
            except Exception as e:
                self.logger.warning("poll tick failed: %s", e)
            if self._stop.wait(timeout=self.interval_seconds):
                break

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="walkmap-poll", daemon=True)
        self._thread.start()
        self.logger.info("playback poll started (interval %.1fs)", self.interval_seconds)

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=timeout)
        self._thread = None
        self.tracker.reset()

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def on_focus(self) -> bool:
        return self.session.refresh_index()

    def on_broadcast(self, message: Dict) -> None:
        if (message or {}).get('type') == LISTENS_UPDATED:
            self.session.refresh_index()
