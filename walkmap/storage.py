import logging
import sqlite3
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)

LISTEN_COLUMNS = (
    "l.id, l.played_at, l.spotify_played_at, l.lat, l.lng, l.duration_ms, l.mood, l.mood_note, "
    "l.weather_main, l.weather_description, l.weather_temp_c, l.created_at, "
    "t.spotify_track_id, t.title, t.artist, t.album_image_url"
)


def _listen_row_to_dict(row) -> Dict:
    (lid, played_at, spotify_played_at, lat, lng, duration_ms, mood, mood_note,
     weather_main, weather_description, weather_temp_c, created_at,
     spotify_track_id, title, artist, album_image_url) = row
    return {
        'id': lid,
        'played_at': played_at,
        'spotify_played_at': spotify_played_at,
        'lat': lat,
        'lng': lng,
        'duration_ms': duration_ms,
        'mood': mood,
        'mood_note': mood_note,
        'weather_main': weather_main,
        'weather_description': weather_description,
        'weather_temp_c': weather_temp_c,
        'created_at': created_at,
        'title': title or '',
        'artist': artist or '',
        'album_image_url': album_image_url,
        'spotify_track_id': spotify_track_id or '',
    }


class DB:
    def __init__(self, path: Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        # Use thread-local connections to prevent deadlocks
        self._local = threading.local()
        self._global_lock = threading.Lock()
        # Initialize the primary connection for migration
        with self._global_lock:
            conn = sqlite3.connect(str(self.path))
            conn.execute("PRAGMA journal_mode=WAL;")
            self._migrate(conn)
            conn.close()

    def _get_connection(self):
        """Get thread-local database connection"""
        if not hasattr(self._local, 'conn') or self._local.conn is None:
            self._local.conn = sqlite3.connect(str(self.path), timeout=10)
            self._local.conn.execute("PRAGMA journal_mode=WAL;")
        return self._local.conn

    def _ensure_column(self, conn: sqlite3.Connection, table: str, column: str, definition: str):
        cur = conn.execute(f"PRAGMA table_info({table})")
        existing = {row[1] for row in cur.fetchall()}
        if column not in existing:
            conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")

    def _migrate(self, conn):
        cur = conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS settings (
                key TEXT PRIMARY KEY,
                value TEXT
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS kvstore (
                key TEXT PRIMARY KEY,
                value TEXT
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS tracks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                spotify_track_id TEXT NOT NULL UNIQUE,
                title TEXT NOT NULL,
                artist TEXT NOT NULL,
                album_image_url TEXT
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS listens (
                id TEXT PRIMARY KEY,
                track_id INTEGER NOT NULL REFERENCES tracks(id),
                played_at TEXT NOT NULL,
                spotify_played_at TEXT,
                reconcile_at TEXT NOT NULL,
                duration_ms INTEGER NOT NULL,
                lat REAL NOT NULL,
                lng REAL NOT NULL,
                created_at TEXT NOT NULL
            );
            """
        )
        # Columns added after the first release
        self._ensure_column(conn, 'listens', 'mood', 'TEXT')
        self._ensure_column(conn, 'listens', 'mood_note', 'TEXT')
        self._ensure_column(conn, 'listens', 'weather_main', 'TEXT')
        self._ensure_column(conn, 'listens', 'weather_description', 'TEXT')
        self._ensure_column(conn, 'listens', 'weather_temp_c', 'REAL')
        conn.execute("CREATE INDEX IF NOT EXISTS idx_listens_reconcile ON listens(track_id, reconcile_at)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_listens_created ON listens(created_at)")
        conn.commit()

    def set_setting(self, key: str, value: str):
        conn = self._get_connection()
        conn.execute(
            "INSERT INTO settings(key,value) VALUES(?,?) ON CONFLICT(key) DO UPDATE SET value=excluded.value",
            (key, value),
        )
        conn.commit()

    def get_setting(self, key: str) -> Optional[str]:
        conn = self._get_connection()
        cur = conn.execute("SELECT value FROM settings WHERE key=?", (key,))
        row = cur.fetchone()
        return row[0] if row else None

    def set_kv(self, key: str, value: str):
        conn = self._get_connection()
        conn.execute(
            "INSERT INTO kvstore(key,value) VALUES(?,?) ON CONFLICT(key) DO UPDATE SET value=excluded.value",
            (key, value),
        )
        conn.commit()

    def get_kv(self, key: str) -> Optional[str]:
        conn = self._get_connection()
        cur = conn.execute("SELECT value FROM kvstore WHERE key=?", (key,))
        row = cur.fetchone()
        return row[0] if row else None

    # Listen persistence helpers
    def upsert_track(self, track: Dict) -> int:
        """Upsert track metadata keyed by the service track id; returns the row id."""
        conn = self._get_connection()
        conn.execute(
            """
            INSERT INTO tracks (spotify_track_id, title, artist, album_image_url)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(spotify_track_id) DO UPDATE SET
                title=excluded.title,
                artist=excluded.artist,
                album_image_url=excluded.album_image_url
            """,
            (track['spotify_track_id'], track['title'], track['artist'], track.get('album_image_url')),
        )
        conn.commit()
        row = conn.execute(
            "SELECT id FROM tracks WHERE spotify_track_id=?",
            (track['spotify_track_id'],),
        ).fetchone()
        return int(row[0])

    def find_duplicate_listen(self, track_id: int, reconcile_at: str, lat: float, lng: float,
                              epsilon: float, conn: Optional[sqlite3.Connection] = None) -> Optional[str]:
        """Return the id of a listen for the same track and second within epsilon degrees."""
        conn = conn or self._get_connection()
        rows = conn.execute(
            "SELECT id, lat, lng FROM listens WHERE track_id=? AND reconcile_at=? ORDER BY created_at ASC",
            (track_id, reconcile_at),
        ).fetchall()
        for lid, dlat, dlng in rows:
            if abs(dlat - lat) < epsilon and abs(dlng - lng) < epsilon:
                return lid
        return None

    def insert_listen(self, row: Dict, epsilon: float) -> Tuple[str, bool]:
        """Insert a listen unless a near-duplicate exists; returns (id, duplicated).

        The duplicate check and the insert share one immediate transaction so
        concurrent writers, in this process or another, are serialized.
        """
        conn = self._get_connection()
        if conn.in_transaction:
            conn.commit()
        conn.execute("BEGIN IMMEDIATE")
        try:
            existing = self.find_duplicate_listen(
                row['track_id'], row['reconcile_at'], row['lat'], row['lng'], epsilon, conn=conn,
            )
            if existing:
                conn.commit()
                return existing, True
            listen_id = str(uuid.uuid4())
            created_at = datetime.now(timezone.utc).isoformat()
            conn.execute(
                """
                INSERT INTO listens (id, track_id, played_at, spotify_played_at, reconcile_at, duration_ms,
                                     lat, lng, mood, mood_note, weather_main, weather_description,
                                     weather_temp_c, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    listen_id,
                    row['track_id'],
                    row['played_at'],
                    row.get('spotify_played_at'),
                    row['reconcile_at'],
                    int(row['duration_ms']),
                    float(row['lat']),
                    float(row['lng']),
                    row.get('mood'),
                    row.get('mood_note'),
                    row.get('weather_main'),
                    row.get('weather_description'),
                    row.get('weather_temp_c'),
                    created_at,
                ),
            )
            conn.commit()
            return listen_id, False
        except Exception as e:
            conn.rollback()
            logger.warning("listen insert rolled back: %s", e)
            raise

    def update_listen_mood(self, listen_id: str, mood: str, mood_note: Optional[str]) -> bool:
        conn = self._get_connection()
        cur = conn.execute(
            "UPDATE listens SET mood=?, mood_note=? WHERE id=?",
            (mood, mood_note, listen_id),
        )
        conn.commit()
        return cur.rowcount > 0

    def get_listen(self, listen_id: str) -> Optional[Dict]:
        conn = self._get_connection()
        row = conn.execute(
            f"SELECT {LISTEN_COLUMNS} FROM listens l JOIN tracks t ON t.id = l.track_id WHERE l.id=?",
            (listen_id,),
        ).fetchone()
        return _listen_row_to_dict(row) if row else None

    def fetch_listens(self, limit: int = 200) -> List[Dict]:
        conn = self._get_connection()
        cur = conn.execute(
            f"""
            SELECT {LISTEN_COLUMNS}
            FROM listens l JOIN tracks t ON t.id = l.track_id
            ORDER BY l.created_at DESC, l.rowid DESC
            LIMIT ?
            """,
            (int(limit),),
        )
        return [_listen_row_to_dict(row) for row in cur.fetchall()]

    def fetch_mood_weather_rows(self) -> List[Dict]:
        conn = self._get_connection()
        cur = conn.execute("SELECT mood, weather_main, played_at FROM listens")
        return [
            {'mood': mood, 'weather_main': weather_main, 'played_at': played_at}
            for mood, weather_main, played_at in cur.fetchall()
        ]

    def count_listens(self) -> int:
        conn = self._get_connection()
        return conn.execute("SELECT COUNT(*) FROM listens").fetchone()[0] or 0


class TokenStore:
    def __init__(self, db: DB):
        self.db = db

    def save(self, access_token: str, refresh_token: str):
        # Do not log tokens
        self.db.set_setting("spotify_access_token", access_token)
        self.db.set_setting("spotify_refresh_token", refresh_token)

    def load(self):
        return (
            self.db.get_setting("spotify_access_token"),
            self.db.get_setting("spotify_refresh_token"),
        )

    def clear(self):
        self.db.set_setting("spotify_access_token", "")
        self.db.set_setting("spotify_refresh_token", "")
