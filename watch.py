"""Run a listen session against a walkmap server until interrupted."""
import os
import signal
import threading
from pathlib import Path

from walkmap.api_client import ListensApi
from walkmap.channel import get_channel
from walkmap.config import load_config
from walkmap.errors import NetworkFailure, UpstreamAuthError, ValidationError
from walkmap.geolocation import build_geolocator
from walkmap.locks import SaveLockStore
from walkmap.logging import get_logger
from walkmap.session import ListenSession
from walkmap.storage import DB

logger = get_logger('walkmap.watch')


def build_session() -> ListenSession:
    server = os.environ.get('WALKMAP_SERVER', 'https://localhost:9191')
    state_db = DB(Path(os.environ.get('WALKMAP_STATE_DB', str(Path.cwd() / 'walkmap-state.db'))))
    cfg = load_config(state_db)
    api = ListensApi(server)
    if server.startswith('https://localhost') or server.startswith('https://127.0.0.1'):
        # the dev server runs with a self-signed certificate
        api.session.verify = False
    return ListenSession(
        api,
        SaveLockStore(state_db),
        build_geolocator(cfg),
        channel=get_channel(),
        geolocation_timeout=cfg['geolocation_timeout'],
        poll_interval=cfg['poll_interval'],
    )


def main():
    session = build_session()
    done = threading.Event()
    signal.signal(signal.SIGINT, lambda *_: done.set())
    signal.signal(signal.SIGTERM, lambda *_: done.set())
    session.start()
    try:
        recent = session.recent()
    except (NetworkFailure, UpstreamAuthError, ValidationError) as e:
        logger.warning("recently played unavailable: %s", e)
    else:
        unpinned = sum(1 for it in recent if not it['pinned'])
        logger.info("%d of %d recently played tracks have no saved listen", unpinned, len(recent))
    logger.info("watching playback; Ctrl-C to stop")
    done.wait()
    session.close()


if __name__ == '__main__':
    main()
