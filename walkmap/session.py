import threading
import time
from typing import Callable, Dict, List, Optional, Tuple

from .channel import LISTENS_UPDATED, BroadcastChannel
from .config import DEFAULT_GEOLOCATION_TIMEOUT, DEFAULT_POLL_INTERVAL
from .errors import NetworkFailure, UpstreamAuthError, ValidationError
from .gatekeeper import SaveGatekeeper
from .listen_index import ListenIndex
from .locks import InFlightKeys, SaveLockStore
from .logging import get_logger
from .models import CandidateEvent, SaveOutcome
from .watcher import PlaybackWatcher

logger = get_logger(__name__)


def _now_ms() -> int:
    return int(time.time() * 1000)


class ListenSession:
    """One running client: its own index, cooldown memory and in-flight keys.

    Sessions on the same host share the save lock store and the broadcast
    channel; nothing else is shared between them.
    """

    def __init__(self, api, lock_store: SaveLockStore, locate: Callable[[float], Tuple[float, float]],
                 channel: Optional[BroadcastChannel] = None,
                 geolocation_timeout: float = DEFAULT_GEOLOCATION_TIMEOUT,
                 poll_interval: float = DEFAULT_POLL_INTERVAL,
                 notify: Optional[Callable[[str], None]] = None,
                 clock: Optional[Callable[[], int]] = None):
        self.api = api
        self.lock_store = lock_store
        self.locate = locate
        self.channel = channel
        self.geolocation_timeout = geolocation_timeout
        self.clock = clock or _now_ms
        self._notify = notify

        self.index = ListenIndex()
        self.in_flight = InFlightKeys()
        # track id -> (started epoch ms, duration ms) of the last save seen here
        self.last_saved: Dict[str, Tuple[int, int]] = {}
        self.state_lock = threading.Lock()

        self.gatekeeper = SaveGatekeeper(self)
        self.watcher = PlaybackWatcher(self, interval_seconds=poll_interval)
        self._unsubscribe = channel.subscribe(self.watcher.on_broadcast) if channel is not None else None

    def notify(self, message: str) -> None:
        if self._notify:
            self._notify(message)
        else:
            logger.warning(message)

    def refresh_index(self) -> bool:
        """Reload the listen index from the server. Failures keep the old snapshot."""
        try:
            records = self.api.fetch_listens()
        except (NetworkFailure, UpstreamAuthError, ValidationError) as e:
            logger.warning("listen index refresh failed: %s", e)
            return False
        self.index.rebuild(records)
        return True

    def announce_update(self) -> None:
        if self.channel is not None:
            self.channel.publish({'type': LISTENS_UPDATED})

    def try_save(self, event: CandidateEvent) -> SaveOutcome:
        return self.gatekeeper.try_save(event)

    def recent(self) -> List[Dict]:
        """Recently played items, each marked with the newest saved listen of its track."""
        items = self.api.recently_played()
        out = []
        for item in items:
            listen = self.index.latest_for_track(item.get('spotify_track_id') or '')
            out.append(dict(
                item,
                pinned=listen is not None,
                listen_id=listen.id if listen else None,
                mood=listen.mood if listen else None,
                mood_note=listen.mood_note if listen else None,
            ))
        return out

    def pin(self, recent_item: Dict, mood: Optional[str] = None, mood_note: Optional[str] = None) -> SaveOutcome:
        """Save a recently-played entry chosen by the user, optionally with a mood."""
        return self.gatekeeper.try_save(CandidateEvent.from_recent(recent_item, mood, mood_note))

    def update_mood(self, listen_id: str, mood: str, mood_note: Optional[str] = None) -> Dict:
        body = self.api.update_mood(listen_id, mood, mood_note if mood == 'other' else None)
        self.refresh_index()
        self.announce_update()
        return body

    def start(self) -> None:
        self.refresh_index()
        self.watcher.start()

    def close(self) -> None:
        self.watcher.stop()
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
