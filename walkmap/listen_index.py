import threading
from typing import Dict, Iterable, List, Optional

from .keys import normalize_key, to_epoch_ms
from .models import ListenRecord

DEFAULT_NEARBY_TOLERANCE_MS = 60_000


class ListenIndex:
    """Client-side cache of persisted listens keyed by normalized identity.

    Rebuilt wholesale from the server list on every refresh. The new mapping
    is assembled off to the side and swapped in under the lock, so readers see
    either the old or the new snapshot, never a mix.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._by_key: Dict[str, ListenRecord] = {}
        self._flat: List[ListenRecord] = []

    def rebuild(self, records: Iterable[ListenRecord]) -> None:
        by_key: Dict[str, ListenRecord] = {}
        flat: List[ListenRecord] = []
        for rec in records:
            track_id = (rec.spotify_track_id or '').strip()
            ts = rec.reconcile_at
            if not track_id or not ts:
                continue
            by_key[normalize_key(track_id, ts)] = rec
            flat.append(rec)
        with self._lock:
            self._by_key = by_key
            self._flat = flat

    def has_key(self, key: str) -> bool:
        with self._lock:
            return key in self._by_key

    def get(self, key: str) -> Optional[ListenRecord]:
        with self._lock:
            return self._by_key.get(key)

    def records(self) -> List[ListenRecord]:
        with self._lock:
            return list(self._flat)

    def __len__(self) -> int:
        with self._lock:
            return len(self._flat)

    def find_nearby(self, track_id: str, timestamp_iso: str, tolerance_ms: int = DEFAULT_NEARBY_TOLERANCE_MS) -> bool:
        target = to_epoch_ms(timestamp_iso)
        if target is None:
            return False
        wanted = (track_id or '').strip()
        for rec in self.records():
            if rec.spotify_track_id.strip() != wanted:
                continue
            ms = to_epoch_ms(rec.reconcile_at)
            if ms is not None and abs(ms - target) <= tolerance_ms:
                return True
        return False

    def latest_for_track(self, track_id: str) -> Optional[ListenRecord]:
        """Newest record for a track by reconciliation time."""
        wanted = (track_id or '').strip()
        best: Optional[ListenRecord] = None
        best_ms = None
        for rec in self.records():
            if rec.spotify_track_id.strip() != wanted:
                continue
            ms = to_epoch_ms(rec.reconcile_at)
            if best is None or (ms is not None and (best_ms is None or ms > best_ms)):
                best, best_ms = rec, ms
        return best
