import threading

import pytest

from walkmap.errors import NetworkFailure
from walkmap.keys import to_epoch_ms
from walkmap.models import Saved, Suppressed
from walkmap.session import ListenSession
from walkmap.watcher import PlaybackTracker

NOW = to_epoch_ms('2024-01-01T12:00:00Z')


def _item(track='t1', progress=30000, duration=200000, playing=True):
    return {'trackId': track, 'title': 'Song', 'artist': 'A', 'albumImageUrl': None,
            'isPlaying': playing, 'progressMs': progress, 'durationMs': duration}


def test_tracker_keeps_first_estimate():
    tr = PlaybackTracker()
    start = tr.observe(_item(progress=30000), NOW)
    assert start == NOW - 30000
    # 15s later progress drifted by 400ms
    assert tr.observe(_item(progress=45400), NOW + 15000) == start
    assert tr.state == PlaybackTracker.TRACKING


def test_tracker_switches_and_resets():
    tr = PlaybackTracker()
    tr.observe(_item('t1'), NOW)
    assert tr.observe(_item('t2', progress=1000), NOW + 5000) == NOW + 4000
    assert tr.track_id == 't2'
    assert tr.observe(None, NOW + 6000) is None
    assert tr.state == PlaybackTracker.IDLE


def test_tracker_detects_replay():
    tr = PlaybackTracker()
    first = tr.observe(_item(progress=55000, duration=60000), NOW)
    replay = tr.observe(_item(progress=2000, duration=60000), NOW + 10000)
    assert replay == NOW + 8000
    assert replay != first


def test_tracker_keeps_estimate_across_long_pause():
    tr = PlaybackTracker()
    start = tr.observe(_item(progress=30000), NOW)
    # resumed five minutes later, progress still moving forward
    assert tr.observe(_item(progress=45000), NOW + 300000) == start


def test_tracker_rounds_to_whole_seconds():
    tr = PlaybackTracker()
    assert tr.observe(_item(progress=1499), NOW) == NOW - 1000


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return Clock(NOW)


@pytest.fixture
def session(fake_api, lock_store, channel, clock):
    s = ListenSession(fake_api, lock_store, lambda timeout: (1.0, 2.0), channel=channel,
                      poll_interval=0.05, clock=clock)
    yield s
    s.close()


def test_poll_saves_once_per_listen(session, fake_api, clock):
    fake_api.playing = _item(progress=30000)
    first = session.watcher.poll_once()
    assert isinstance(first, Saved)
    assert fake_api.saved[0]['played_at'] == '2024-01-01T11:59:30.000Z'

    clock.now += 15000
    fake_api.playing = _item(progress=45300)
    assert session.watcher.poll_once() == Suppressed('cooldown')
    assert len(fake_api.saved) == 1


def test_poll_ignores_idle_and_paused(session, fake_api):
    assert session.watcher.poll_once() is None
    fake_api.playing = _item(playing=False)
    assert session.watcher.poll_once() is None
    assert session.watcher.tracker.state == PlaybackTracker.IDLE
    assert fake_api.saved == []


def test_poll_survives_server_errors(session, fake_api):
    def boom():
        raise NetworkFailure('down')
    fake_api.currently_playing = boom
    assert session.watcher.poll_once() is None


def test_overlapping_poll_is_skipped(session, fake_api):
    w = session.watcher
    w._poll_lock.acquire()
    try:
        fake_api.playing = _item()
        assert w.poll_once() is None
        assert fake_api.polls == 0
    finally:
        w._poll_lock.release()


def test_focus_and_broadcast_refresh_index(session, fake_api, channel):
    before = fake_api.fetches
    assert session.watcher.on_focus() is True
    channel.publish({'type': 'listens-updated'})
    channel.publish({'type': 'something-else'})
    assert fake_api.fetches == before + 2


def test_start_and_stop_loop(session, fake_api):
    polled = threading.Event()
    original = fake_api.currently_playing

    def tracked():
        polled.set()
        return original()

    fake_api.currently_playing = tracked
    session.start()
    assert polled.wait(timeout=5)
    assert session.watcher.running
    session.close()
    assert not session.watcher.running
    assert session.watcher.tracker.state == PlaybackTracker.IDLE


def test_close_unsubscribes_from_channel(fake_api, lock_store, channel):
    s = ListenSession(fake_api, lock_store, lambda timeout: (1.0, 2.0), channel=channel)
    assert len(channel) == 1
    s.close()
    assert len(channel) == 0


def test_pause_and_resume_is_one_listen(session, fake_api, clock):
    fake_api.playing = _item(progress=30000)
    assert isinstance(session.watcher.poll_once(), Saved)

    clock.now += 15000
    fake_api.playing = _item(progress=31000, playing=False)
    assert session.watcher.poll_once() is None
    assert session.watcher.tracker.state == PlaybackTracker.TRACKING

    clock.now += 300000
    fake_api.playing = _item(progress=45000)
    assert session.watcher.poll_once() == Suppressed('cooldown')
    assert len(fake_api.saved) == 1
