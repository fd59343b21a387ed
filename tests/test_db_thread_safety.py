import threading
from pathlib import Path

from walkmap.storage import DB


def test_db_allows_cross_thread_access(tmp_path: Path):
    db = DB(tmp_path / 't.db')
    errors = []

    def writer(i):
        try:
            db.set_setting(f'k{i}', f'v{i}')
        except Exception as e:
            errors.append(e)

    ts = [threading.Thread(target=writer, args=(i,)) for i in range(10)]
    for t in ts: t.start()
    for t in ts: t.join()

    assert not errors
    assert db.get_setting('k5') == 'v5'


def test_concurrent_inserts_of_same_listen_keep_one_row(tmp_path: Path):
    db = DB(tmp_path / 't.db')
    tid = db.upsert_track({'spotify_track_id': 't1', 'title': 'T', 'artist': 'A'})
    row = {
        'track_id': tid,
        'played_at': '2024-01-01T00:00:00Z',
        'reconcile_at': '2024-01-01T00:00:00.000Z',
        'duration_ms': 1000,
        'lat': 1.0,
        'lng': 2.0,
    }
    barrier = threading.Barrier(8)
    results, errors = [], []

    def writer():
        try:
            barrier.wait(timeout=5)
            results.append(db.insert_listen(dict(row), epsilon=1e-4))
        except Exception as e:
            errors.append(e)

    ts = [threading.Thread(target=writer) for _ in range(8)]
    for t in ts: t.start()
    for t in ts: t.join()

    assert not errors
    assert db.count_listens() == 1
    assert len({lid for lid, _ in results}) == 1
    assert sum(1 for _, dup in results if not dup) == 1
