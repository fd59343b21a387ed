import json
import threading
from contextlib import contextmanager
from typing import Dict, Optional, Set

from .storage import DB

SAVE_LOCK_KEY = 'listen_save_lock'


@contextmanager
def non_blocking(lock: threading.Lock):
    """Try to take ``lock`` without waiting; yields whether it was acquired."""
    acquired = lock.acquire(blocking=False)
    try:
        yield acquired
    finally:
        if acquired:
            lock.release()


class InFlightKeys:
    """Keys whose save request is currently running in this session."""

    def __init__(self):
        self._lock = threading.Lock()
        self._keys: Set[str] = set()

    def try_acquire(self, key: str) -> bool:
        with self._lock:
            if key in self._keys:
                return False
            self._keys.add(key)
            return True

    def release(self, key: str) -> None:
        with self._lock:
            self._keys.discard(key)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._keys


class SaveLockStore:
    """Last-save record shared by every session on this host.

    Backed by the key/value table of a host-local database. Last writer wins;
    two sessions racing on it can both pass, which the server check covers.
    """

    def __init__(self, db: DB, key: str = SAVE_LOCK_KEY):
        self.db = db
        self.key = key

    def read(self) -> Optional[Dict]:
        raw = self.db.get_kv(self.key) or ''
        if not raw:
            return None
        try:
            data = json.loads(raw)
        except ValueError:
            return None
        return data if isinstance(data, dict) else None

    def write(self, key: str, track_id: str, ts: int) -> None:
        self.db.set_kv(self.key, json.dumps({'key': key, 'trackId': track_id, 'ts': int(ts)}))

    def clear(self) -> None:
        self.db.set_kv(self.key, '')
