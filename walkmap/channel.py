import threading
from typing import Callable, Dict, List

from .logging import get_logger

LISTENS_UPDATED = "listens-updated"

_lock = threading.Lock()
_channels: Dict[str, 'BroadcastChannel'] = {}


class BroadcastChannel:
    """Named in-process pub/sub; every subscriber, the sender included, gets each message."""

    def __init__(self, name: str):
        self.name = name
        self._lock = threading.Lock()
        self._handlers: List[Callable[[Dict], None]] = []
        self.logger = get_logger(__name__)

    def subscribe(self, handler: Callable[[Dict], None]) -> Callable[[], None]:
        with self._lock:
            self._handlers.append(handler)

        def unsubscribe():
            with self._lock:
                if handler in self._handlers:
                    self._handlers.remove(handler)
        return unsubscribe

    def publish(self, message: Dict) -> None:
        with self._lock:
            handlers = list(self._handlers)
        for handler in handlers:
            try:
                handler(message)
            except Exception as e:
                self.logger.warning("%s handler failed: %s", self.name, e)

    def __len__(self) -> int:
        with self._lock:
            return len(self._handlers)


def get_channel(name: str = LISTENS_UPDATED) -> BroadcastChannel:
    with _lock:
        ch = _channels.get(name)
        if ch is None:
            ch = BroadcastChannel(name)
            _channels[name] = ch
        return ch
