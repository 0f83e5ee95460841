import sqlite3
import logging
import threading
import time
from contextlib import contextmanager
from datetime import datetime
from .config import DB_PATH, STORE_BUSY_TIMEOUT_MS
from .utils import to_db_timestamp, utcnow

logger = logging.getLogger(__name__)


class ConnectionPool:
    """
    One SQLite connection per thread.

    Connections are re-checked with SELECT 1 once they have been idle longer
    than health_check_interval, and connections of finished threads are closed
    on the next access after cleanup_interval. The pool also tracks how deeply
    each thread has nested get_db() so only the outermost block commits.
    """

    def __init__(self, db_path, max_size: int = 50, health_check_interval: int = 300,
                 cleanup_interval: int = 60):
        self._db_path = db_path
        self._max_size = max_size
        self._health_check_interval = health_check_interval
        self._cleanup_interval = cleanup_interval

        self._lock = threading.Lock()
        self._connections: dict[int, sqlite3.Connection] = {}
        self._checked_at: dict[int, float] = {}
        self._depth: dict[int, int] = {}
        self._last_cleanup = time.time()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute(f"PRAGMA busy_timeout = {STORE_BUSY_TIMEOUT_MS}")
        conn.execute("PRAGMA journal_mode = WAL")  # readers don't block the importer
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    def _discard(self, thread_id: int) -> None:
        conn = self._connections.pop(thread_id, None)
        self._checked_at.pop(thread_id, None)
        self._depth.pop(thread_id, None)
        if conn is None:
            return
        try:
            conn.close()
        except sqlite3.Error as e:
            logger.warning(f"Error closing connection for thread {thread_id}: {e}")

    def _reap_dead_threads(self, force: bool = False) -> None:
        now = time.time()
        if not force and now - self._last_cleanup < self._cleanup_interval:
            return
        self._last_cleanup = now

        dead = set(self._connections) - {t.ident for t in threading.enumerate()}
        for thread_id in dead:
            self._discard(thread_id)
        if dead:
            logger.debug(f"Closed {len(dead)} connections of finished threads, {len(self._connections)} open")

    def _is_healthy(self, thread_id: int, now: float) -> bool:
        if now - self._checked_at.get(thread_id, 0) <= self._health_check_interval:
            return True
        try:
            self._connections[thread_id].execute("SELECT 1").fetchone()
        except sqlite3.Error:
            logger.warning(f"Connection for thread {thread_id} failed health check, replacing")
            return False
        self._checked_at[thread_id] = now
        return True

    def get_connection(self) -> sqlite3.Connection:
        """Connection owned by the calling thread, opened on first use."""
        thread_id = threading.get_ident()
        now = time.time()

        with self._lock:
            self._reap_dead_threads()
            if thread_id in self._connections:
                if self._is_healthy(thread_id, now):
                    return self._connections[thread_id]
                self._discard(thread_id)

            if len(self._connections) >= self._max_size:
                self._reap_dead_threads(force=True)
                if len(self._connections) >= self._max_size:
                    raise RuntimeError(f"Connection pool exhausted ({self._max_size} connections)")

            conn = self._connect()
            self._connections[thread_id] = conn
            self._checked_at[thread_id] = now
            self._depth[thread_id] = 0
            logger.debug(f"Opened connection for thread {thread_id} ({len(self._connections)} open)")
            return conn

    def get_transaction_depth(self) -> int:
        return self._depth.get(threading.get_ident(), 0)

    def increment_transaction_depth(self):
        thread_id = threading.get_ident()
        with self._lock:
            self._depth[thread_id] = self._depth.get(thread_id, 0) + 1

    def decrement_transaction_depth(self):
        thread_id = threading.get_ident()
        with self._lock:
            self._depth[thread_id] = max(0, self._depth.get(thread_id, 1) - 1)

    def close_all(self):
        """Close every connection. Called on shutdown."""
        with self._lock:
            for thread_id in list(self._connections):
                self._discard(thread_id)
            logger.info("Connection pool closed")


# Global pool instance
_pool: ConnectionPool | None = None
_pool_lock = threading.Lock()


def init_db() -> None:
    DB_PATH.parent.mkdir(exist_ok=True, parents=True)
    with get_db() as conn:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS users (
                id TEXT PRIMARY KEY,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS videos (
                id INTEGER PRIMARY KEY,
                title TEXT,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS video_metadata (
                video_id INTEGER PRIMARY KEY REFERENCES videos(id) ON DELETE CASCADE,
                language TEXT,
                category TEXT
            );

            CREATE TABLE IF NOT EXISTS video_likes (
                user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                video_id INTEGER NOT NULL REFERENCES videos(id) ON DELETE CASCADE,
                timestamp TEXT NOT NULL,  -- naive UTC ISO-8601, fixed microseconds
                PRIMARY KEY (user_id, video_id)
            );

            -- How often a user liked videos of a language/category
            CREATE TABLE IF NOT EXISTS user_languages (
                user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                language TEXT NOT NULL,
                repeats INTEGER NOT NULL DEFAULT 0,
                PRIMARY KEY (user_id, language)
            );

            CREATE TABLE IF NOT EXISTS user_categories (
                user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                category TEXT NOT NULL,
                repeats INTEGER NOT NULL DEFAULT 0,
                PRIMARY KEY (user_id, category)
            );

            CREATE INDEX IF NOT EXISTS idx_likes_video_ts ON video_likes(video_id, timestamp);
            CREATE INDEX IF NOT EXISTS idx_likes_ts ON video_likes(timestamp);
            CREATE INDEX IF NOT EXISTS idx_meta_language ON video_metadata(language);
            CREATE INDEX IF NOT EXISTS idx_meta_lang_cat ON video_metadata(language, category);
        """)


def _get_pool() -> ConnectionPool:
    """Get or create the global connection pool."""
    global _pool
    if _pool is None:
        with _pool_lock:
            if _pool is None:
                DB_PATH.parent.mkdir(exist_ok=True, parents=True)
                _pool = ConnectionPool(DB_PATH)
    return _pool


@contextmanager
def get_db(read_only: bool = False):
    """
    Get database connection with proper transaction handling.

    Args:
        read_only: If True, skip commit on exit

    Only the outermost context commits or rolls back; nested contexts are
    no-ops for transaction control.
    """
    pool = _get_pool()
    conn = pool.get_connection()

    is_outermost = pool.get_transaction_depth() == 0
    pool.increment_transaction_depth()

    try:
        yield conn
        if is_outermost and not read_only:
            conn.commit()
    except Exception:
        if is_outermost:
            conn.rollback()
        raise
    finally:
        pool.decrement_transaction_depth()


def close_pool():
    """Close the connection pool. Call on application shutdown."""
    global _pool
    if _pool is not None:
        _pool.close_all()
        _pool = None


def add_user(user_id: str, created_at: datetime | None = None) -> bool:
    """Insert a user. Returns False if the id already exists."""
    with get_db() as conn:
        cursor = conn.execute(
            "INSERT OR IGNORE INTO users (id, created_at) VALUES (?, ?)",
            (user_id, to_db_timestamp(created_at or utcnow()))
        )
        return cursor.rowcount > 0


def add_video(
    video_id: int,
    language: str | None = None,
    category: str | None = None,
    title: str | None = None,
    created_at: datetime | None = None,
) -> None:
    """
    Insert a video with its metadata row, or update both if it exists.

    Upserts rather than INSERT OR REPLACE so existing likes are not
    cascade-deleted.
    """
    with get_db() as conn:
        conn.execute("""
            INSERT INTO videos (id, title, created_at) VALUES (?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET title = excluded.title
        """, (video_id, title, to_db_timestamp(created_at or utcnow())))
        conn.execute("""
            INSERT INTO video_metadata (video_id, language, category) VALUES (?, ?, ?)
            ON CONFLICT(video_id) DO UPDATE SET language = excluded.language, category = excluded.category
        """, (video_id, language, category))


def record_like(user_id: str, video_id: int, timestamp: datetime | None = None) -> bool:
    """
    Record that a user liked a video and bump the user's affinities.

    The liking user's language and category repeat counters grow by one for
    the video's language/category. Liking the same video twice is a no-op.

    Returns:
        True if a new like was stored

    Raises:
        ValueError: if the video does not exist
    """
    with get_db() as conn:
        meta = conn.execute(
            "SELECT language, category FROM video_metadata WHERE video_id = ?",
            (video_id,)
        ).fetchone()
        if meta is None:
            raise ValueError(f"Unknown video id {video_id}")

        cursor = conn.execute(
            "INSERT OR IGNORE INTO video_likes (user_id, video_id, timestamp) VALUES (?, ?, ?)",
            (user_id, video_id, to_db_timestamp(timestamp or utcnow()))
        )
        if cursor.rowcount == 0:
            return False

        if meta['language']:
            conn.execute("""
                INSERT INTO user_languages (user_id, language, repeats) VALUES (?, ?, 1)
                ON CONFLICT(user_id, language) DO UPDATE SET repeats = repeats + 1
            """, (user_id, meta['language']))
        if meta['category']:
            conn.execute("""
                INSERT INTO user_categories (user_id, category, repeats) VALUES (?, ?, 1)
                ON CONFLICT(user_id, category) DO UPDATE SET repeats = repeats + 1
            """, (user_id, meta['category']))
        return True


def get_stats() -> dict:
    """Row counts plus the most liked languages."""
    with get_db(read_only=True) as conn:
        stats = {
            table: conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
            for table in ("users", "videos", "video_likes")
        }
        rows = conn.execute("""
            SELECT vm.language, COUNT(*) AS likes
            FROM video_likes l
            JOIN video_metadata vm ON vm.video_id = l.video_id
            WHERE vm.language IS NOT NULL
            GROUP BY vm.language
            ORDER BY likes DESC
            LIMIT 5
        """).fetchall()
        stats['top_languages'] = [(row['language'], row['likes']) for row in rows]
        return stats
