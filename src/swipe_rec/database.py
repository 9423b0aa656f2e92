"""
SQLite adapters for the record store: taste profiles and swipe aggregates.

Profiles are stored normalized (counters row, affinity rows, ring-buffer
rows) so every delta lands as atomic increments inside one write
transaction instead of a read-modify-write of the whole document.
"""
import json
import logging
import sqlite3
import threading
import time
from contextlib import contextmanager
from functools import wraps
from datetime import datetime
from pathlib import Path

from .aggregates import AggregateStore, ContentPopularity, GenreFanStats, SwipeEvent
from .config import (
    COLLAB_MIN_FAN_LIKES,
    DB_PATH,
    PROFILE_SCHEMA_VERSION,
    RECENT_GENRES_CAPACITY,
    RECENT_IDS_CAPACITY,
)
from .errors import ProfileStoreError
from .profile import AffinityScore, BehaviorStats, ContentPreferences, ProfileDelta, UserTasteProfile
from .repository import ProfileRepository
from .signals import ContentRef

logger = logging.getLogger(__name__)

RECENT_LIKED = "liked"
RECENT_DISLIKED = "disliked"
RECENT_LIKED_GENRE = "liked_genre"


def parse_timestamp_naive(timestamp_str: str | None) -> datetime | None:
    """Parse a stored ISO timestamp, always returning a naive datetime."""
    if not timestamp_str:
        return None
    dt = datetime.fromisoformat(timestamp_str)
    return dt.replace(tzinfo=None) if dt.tzinfo else dt


def _ts(dt: datetime) -> str:
    # Fixed width so string comparison in SQL orders correctly
    return dt.isoformat(timespec="microseconds")


def load_json(val):
    """Safely load a JSON list from a db field."""
    if not val:
        return []
    if isinstance(val, list):
        return val
    try:
        return json.loads(val)
    except (json.JSONDecodeError, TypeError) as e:
        logger.warning(f"Failed to parse JSON '{str(val)[:50]}...': {e}")
        return []


class ConnectionPool:
    """
    Thread-safe SQLite connection pool, one connection per thread.

    Store writes run on worker threads (asyncio.to_thread), so connections
    belonging to threads that have exited are closed periodically.
    """

    def __init__(self, db_path, max_size: int = 50, health_check_interval: int = 300):
        self.db_path = db_path
        self._max_size = max_size
        self._health_check_interval = health_check_interval

        self._lock = threading.Lock()
        self._connections: dict[int, sqlite3.Connection] = {}
        self._last_health_check: dict[int, float] = {}
        self._depth: dict[int, int] = {}
        self._last_cleanup = time.time()
        self._cleanup_interval = 60

    def _create_connection(self) -> sqlite3.Connection:
        # Autocommit mode; transaction() issues BEGIN IMMEDIATE itself
        conn = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA busy_timeout = 5000")
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")
        return conn

    def _is_healthy(self, conn: sqlite3.Connection) -> bool:
        try:
            conn.execute("SELECT 1").fetchone()
            return True
        except sqlite3.Error:
            return False

    def _drop(self, thread_id: int) -> None:
        conn = self._connections.pop(thread_id, None)
        self._last_health_check.pop(thread_id, None)
        self._depth.pop(thread_id, None)
        if conn is not None:
            try:
                conn.close()
            except sqlite3.Error as e:
                logger.warning(f"Error closing connection for thread {thread_id}: {e}")

    def _maybe_cleanup(self, force: bool = False) -> None:
        now = time.time()
        if not force and now - self._last_cleanup < self._cleanup_interval:
            return
        self._last_cleanup = now
        alive = {t.ident for t in threading.enumerate()}
        dead = [tid for tid in self._connections if tid not in alive]
        for thread_id in dead:
            self._drop(thread_id)
        if dead:
            logger.debug(f"Connection pool cleanup: removed {len(dead)} dead connections")

    def get_connection(self) -> sqlite3.Connection:
        thread_id = threading.get_ident()
        now = time.time()

        with self._lock:
            self._maybe_cleanup()
            conn = self._connections.get(thread_id)

            if conn is not None and now - self._last_health_check.get(thread_id, 0) > self._health_check_interval:
                if self._is_healthy(conn):
                    self._last_health_check[thread_id] = now
                else:
                    logger.warning(f"Connection for thread {thread_id} failed health check, replacing")
                    self._drop(thread_id)
                    conn = None

            if conn is None:
                if len(self._connections) >= self._max_size:
                    self._maybe_cleanup(force=True)
                    if len(self._connections) >= self._max_size:
                        raise ProfileStoreError(
                            f"Connection pool exhausted ({self._max_size} connections)"
                        )
                conn = self._create_connection()
                self._connections[thread_id] = conn
                self._last_health_check[thread_id] = now
                self._depth[thread_id] = 0
                logger.debug(f"Created connection for thread {thread_id} (pool size: {len(self._connections)})")

            return conn

    @contextmanager
    def transaction(self, read_only: bool = False):
        """
        Yield this thread's connection inside a transaction.

        Only the outermost context begins and commits or rolls back.
        Writers take the database write lock up front (BEGIN IMMEDIATE) so
        concurrent deltas serialize instead of failing on lock upgrade.
        """
        conn = self.get_connection()
        thread_id = threading.get_ident()
        outermost = self._depth.get(thread_id, 0) == 0
        self._depth[thread_id] = self._depth.get(thread_id, 0) + 1

        try:
            if outermost and not read_only:
                conn.execute("BEGIN IMMEDIATE")
            yield conn
            if outermost and not read_only:
                conn.execute("COMMIT")
        except Exception:
            if outermost and not read_only and conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            self._depth[thread_id] = max(0, self._depth.get(thread_id, 1) - 1)

    def close_all(self) -> None:
        with self._lock:
            for thread_id in list(self._connections):
                self._drop(thread_id)
        logger.debug(f"Connection pool for {self.db_path} closed")


_SCHEMA = """
    CREATE TABLE IF NOT EXISTS taste_profiles (
        user_id TEXT PRIMARY KEY,
        total_swipes INTEGER NOT NULL DEFAULT 0,
        total_likes INTEGER NOT NULL DEFAULT 0,
        total_dislikes INTEGER NOT NULL DEFAULT 0,
        quick_decisions INTEGER NOT NULL DEFAULT 0,
        current_streak INTEGER NOT NULL DEFAULT 0,
        longest_streak INTEGER NOT NULL DEFAULT 0,
        last_swipe_at TEXT,
        rating_sum_liked REAL NOT NULL DEFAULT 0,
        rating_count_liked INTEGER NOT NULL DEFAULT 0,
        runtime_sum_liked INTEGER NOT NULL DEFAULT 0,
        runtime_count_liked INTEGER NOT NULL DEFAULT 0,
        updated_at TEXT,
        schema_version INTEGER DEFAULT 0
    );

    CREATE TABLE IF NOT EXISTS affinities (
        user_id TEXT NOT NULL,
        dimension TEXT NOT NULL,   -- genre / actor / director
        entity_id INTEGER NOT NULL,
        name TEXT NOT NULL DEFAULT '',
        like_count INTEGER NOT NULL DEFAULT 0,
        total_count INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (user_id, dimension, entity_id)
    );

    CREATE TABLE IF NOT EXISTS decade_likes (
        user_id TEXT NOT NULL,
        decade INTEGER NOT NULL,
        like_count INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (user_id, decade)
    );

    -- Ring buffers, newest row has the highest id
    CREATE TABLE IF NOT EXISTS recent_items (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        kind TEXT NOT NULL,        -- liked / disliked / liked_genre
        item_id INTEGER NOT NULL,
        content_type TEXT NOT NULL DEFAULT 'movie'
    );

    CREATE INDEX IF NOT EXISTS idx_recent_user_kind ON recent_items(user_id, kind, id);

    CREATE TABLE IF NOT EXISTS swipe_events (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id TEXT NOT NULL,
        content_id INTEGER NOT NULL,
        content_type TEXT NOT NULL,
        liked INTEGER NOT NULL,
        genre_ids TEXT,            -- JSON list
        title TEXT,
        poster_path TEXT,
        vote_average REAL,
        release_year INTEGER,
        occurred_at TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_events_user ON swipe_events(user_id);

    CREATE TABLE IF NOT EXISTS content_popularity (
        content_id INTEGER NOT NULL,
        content_type TEXT NOT NULL,
        title TEXT,
        poster_path TEXT,
        vote_average REAL,
        release_year INTEGER,
        genre_ids TEXT,            -- JSON list
        total_likes INTEGER NOT NULL DEFAULT 0,
        total_dislikes INTEGER NOT NULL DEFAULT 0,
        recent_likes INTEGER NOT NULL DEFAULT 0,
        PRIMARY KEY (content_id, content_type)
    );

    CREATE TABLE IF NOT EXISTS genre_fan_likes (
        genre_id INTEGER NOT NULL,
        content_id INTEGER NOT NULL,
        content_type TEXT NOT NULL,
        fan_likes INTEGER NOT NULL,
        fan_total INTEGER NOT NULL,
        PRIMARY KEY (genre_id, content_id, content_type)
    );

    CREATE INDEX IF NOT EXISTS idx_fans_genre ON genre_fan_likes(genre_id, fan_likes);
"""


def init_schema(pool: ConnectionPool) -> None:
    with pool.transaction(read_only=True) as conn:
        conn.executescript(_SCHEMA)


_pool: ConnectionPool | None = None
_pool_lock = threading.Lock()


def _get_pool() -> ConnectionPool:
    """Get or create the pool for the configured DB_PATH."""
    global _pool
    if _pool is None:
        with _pool_lock:
            if _pool is None:
                Path(DB_PATH).parent.mkdir(exist_ok=True, parents=True)
                _pool = ConnectionPool(DB_PATH)
                init_schema(_pool)
    return _pool


@contextmanager
def get_db(read_only: bool = False):
    with _get_pool().transaction(read_only=read_only) as conn:
        yield conn


def close_pool():
    """Close the default connection pool. Call on application shutdown."""
    global _pool
    if _pool is not None:
        _pool.close_all()
        _pool = None


def _day_gap(column: str) -> str:
    return f"(julianday(date(:at)) - julianday(date({column})))"


# Evaluated against the row as it was before the UPDATE
_NEXT_STREAK = f"""
    CASE
        WHEN last_swipe_at IS NULL THEN 1
        WHEN {_day_gap('last_swipe_at')} = 1 THEN current_streak + 1
        WHEN {_day_gap('last_swipe_at')} <= 0 THEN MAX(current_streak, 1)
        ELSE 1
    END
"""


class SQLiteProfileRepository(ProfileRepository):

    def __init__(self, pool: ConnectionPool | None = None, recent_capacity: int = RECENT_IDS_CAPACITY):
        if pool is None:
            pool = _get_pool()
        else:
            init_schema(pool)
        self._pool = pool
        self._recent_capacity = recent_capacity

    def load(self, user_id: str) -> UserTasteProfile | None:
        try:
            with self._pool.transaction(read_only=True) as conn:
                row = conn.execute(
                    "SELECT * FROM taste_profiles WHERE user_id = ?", (user_id,)
                ).fetchone()
                if row is None:
                    return None
                affinity_rows = conn.execute(
                    "SELECT dimension, entity_id, name, like_count, total_count FROM affinities WHERE user_id = ?",
                    (user_id,),
                ).fetchall()
                decade_rows = conn.execute(
                    "SELECT decade, like_count FROM decade_likes WHERE user_id = ?", (user_id,)
                ).fetchall()
                recent_rows = conn.execute(
                    "SELECT kind, item_id, content_type FROM recent_items WHERE user_id = ? ORDER BY id DESC",
                    (user_id,),
                ).fetchall()
        except sqlite3.Error as e:
            raise ProfileStoreError(f"Failed to load profile for {user_id}: {e}") from e

        if row['schema_version'] != PROFILE_SCHEMA_VERSION:
            logger.debug(
                f"Profile for {user_id} stored with schema version {row['schema_version']} "
                f"(current {PROFILE_SCHEMA_VERSION})"
            )

        prefs = ContentPreferences(
            rating_sum_liked=row['rating_sum_liked'],
            rating_count_liked=row['rating_count_liked'],
            runtime_sum_liked=row['runtime_sum_liked'],
            runtime_count_liked=row['runtime_count_liked'],
        )
        for a in affinity_rows:
            prefs.affinities(a['dimension'])[a['entity_id']] = AffinityScore(
                id=a['entity_id'], name=a['name'], like_count=a['like_count'], total_count=a['total_count']
            )
        prefs.decade_likes = {d['decade']: d['like_count'] for d in decade_rows}

        profile = UserTasteProfile(
            user_id=user_id,
            behavior=BehaviorStats(
                total_swipes=row['total_swipes'],
                total_likes=row['total_likes'],
                total_dislikes=row['total_dislikes'],
                quick_decisions=row['quick_decisions'],
                current_streak=row['current_streak'],
                longest_streak=row['longest_streak'],
                last_swipe_at=parse_timestamp_naive(row['last_swipe_at']),
            ),
            preferences=prefs,
            updated_at=parse_timestamp_naive(row['updated_at']),
        )
        for r in recent_rows:
            if r['kind'] == RECENT_LIKED:
                profile.recent_liked.append(ContentRef(r['item_id'], r['content_type']))
            elif r['kind'] == RECENT_DISLIKED:
                profile.recent_disliked.append(ContentRef(r['item_id'], r['content_type']))
            elif r['kind'] == RECENT_LIKED_GENRE:
                profile.recent_liked_genres.append(r['item_id'])
        return profile

    def apply_delta(self, delta: ProfileDelta) -> bool:
        try:
            with self._pool.transaction() as conn:
                return self._apply(conn, delta)
        except sqlite3.Error as e:
            raise ProfileStoreError(f"Failed to persist delta for {delta.user_id}: {e}") from e

    def _apply(self, conn: sqlite3.Connection, delta: ProfileDelta) -> bool:
        user_id = delta.user_id
        if delta.seed:
            exists = conn.execute(
                "SELECT 1 FROM recent_items WHERE user_id = ? AND kind = ? AND item_id = ?",
                (user_id, RECENT_LIKED, delta.content.content_id),
            ).fetchone()
            if exists:
                return False

        conn.execute(
            "INSERT INTO taste_profiles (user_id, schema_version) VALUES (?, ?) ON CONFLICT(user_id) DO NOTHING",
            (user_id, PROFILE_SCHEMA_VERSION),
        )
        at = _ts(delta.occurred_at)
        conn.execute(f"""
            UPDATE taste_profiles SET
                total_swipes = total_swipes + 1,
                total_likes = total_likes + :likes,
                total_dislikes = total_dislikes + :dislikes,
                quick_decisions = quick_decisions + :quick,
                current_streak = {_NEXT_STREAK},
                longest_streak = MAX(longest_streak, {_NEXT_STREAK}),
                last_swipe_at = CASE WHEN last_swipe_at IS NULL OR :at > last_swipe_at THEN :at ELSE last_swipe_at END,
                rating_sum_liked = rating_sum_liked + :rating,
                rating_count_liked = rating_count_liked + :rating_n,
                runtime_sum_liked = runtime_sum_liked + :runtime,
                runtime_count_liked = runtime_count_liked + :runtime_n,
                updated_at = CASE WHEN updated_at IS NULL OR :at > updated_at THEN :at ELSE updated_at END,
                schema_version = :version
            WHERE user_id = :user_id
        """, {
            'likes': 1 if delta.liked else 0,
            'dislikes': 0 if delta.liked else 1,
            'quick': 1 if delta.quick_decision else 0,
            'at': at,
            'rating': delta.rating_liked or 0.0,
            'rating_n': 1 if delta.rating_liked is not None else 0,
            'runtime': delta.runtime_liked or 0,
            'runtime_n': 1 if delta.runtime_liked is not None else 0,
            'version': PROFILE_SCHEMA_VERSION,
            'user_id': user_id,
        })

        if delta.affinity_increments:
            conn.executemany("""
                INSERT INTO affinities (user_id, dimension, entity_id, name, like_count, total_count)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, dimension, entity_id) DO UPDATE SET
                    like_count = like_count + excluded.like_count,
                    total_count = total_count + excluded.total_count,
                    name = CASE WHEN name = '' THEN excluded.name ELSE name END
            """, [
                (user_id, inc.dimension, inc.entity_id, inc.name, inc.like_inc, inc.total_inc)
                for inc in delta.affinity_increments
            ])

        if delta.decade is not None:
            conn.execute("""
                INSERT INTO decade_likes (user_id, decade, like_count) VALUES (?, ?, 1)
                ON CONFLICT(user_id, decade) DO UPDATE SET like_count = like_count + 1
            """, (user_id, delta.decade))

        kind = RECENT_LIKED if delta.liked else RECENT_DISLIKED
        self._push_recent(conn, user_id, kind, delta.content.content_id, delta.content.content_type,
                          self._recent_capacity, dedupe=True)
        if delta.liked and delta.primary_genre is not None:
            self._push_recent(conn, user_id, RECENT_LIKED_GENRE, delta.primary_genre, "",
                              RECENT_GENRES_CAPACITY, dedupe=False)
        return True

    def _push_recent(self, conn, user_id: str, kind: str, item_id: int, content_type: str,
                     capacity: int, dedupe: bool) -> None:
        if dedupe:
            conn.execute(
                "DELETE FROM recent_items WHERE user_id = ? AND kind = ? AND item_id = ? AND content_type = ?",
                (user_id, kind, item_id, content_type),
            )
        conn.execute(
            "INSERT INTO recent_items (user_id, kind, item_id, content_type) VALUES (?, ?, ?, ?)",
            (user_id, kind, item_id, content_type),
        )
        conn.execute("""
            DELETE FROM recent_items
            WHERE user_id = ? AND kind = ? AND id NOT IN (
                SELECT id FROM recent_items WHERE user_id = ? AND kind = ? ORDER BY id DESC LIMIT ?
            )
        """, (user_id, kind, user_id, kind, capacity))

    def delete(self, user_id: str) -> bool:
        try:
            with self._pool.transaction() as conn:
                deleted = conn.execute("DELETE FROM taste_profiles WHERE user_id = ?", (user_id,)).rowcount
                for table in ("affinities", "decade_likes", "recent_items"):
                    conn.execute(f"DELETE FROM {table} WHERE user_id = ?", (user_id,))
        except sqlite3.Error as e:
            raise ProfileStoreError(f"Failed to delete profile for {user_id}: {e}") from e
        return deleted > 0

    def close(self) -> None:
        self._pool.close_all()


def _store_errors(method):
    """Surface sqlite failures as ProfileStoreError so callers need not know the backend."""
    @wraps(method)
    def wrapper(self, *args, **kwargs):
        try:
            return method(self, *args, **kwargs)
        except sqlite3.Error as e:
            raise ProfileStoreError(f"{method.__name__} failed: {e}") from e
    return wrapper


def _popularity_from_row(row) -> ContentPopularity:
    return ContentPopularity(
        content=ContentRef(row['content_id'], row['content_type']),
        title=row['title'] or "",
        poster_path=row['poster_path'] or "",
        vote_average=row['vote_average'] or 0.0,
        release_year=row['release_year'],
        genre_ids=tuple(load_json(row['genre_ids'])),
        total_likes=row['total_likes'],
        total_dislikes=row['total_dislikes'],
        recent_likes=row['recent_likes'],
    )


class SQLiteAggregateStore(AggregateStore):

    def __init__(self, pool: ConnectionPool | None = None):
        if pool is None:
            pool = _get_pool()
        else:
            init_schema(pool)
        self._pool = pool

    @_store_errors
    def record_event(self, event: SwipeEvent) -> None:
        with self._pool.transaction() as conn:
            conn.execute("""
                INSERT INTO swipe_events
                    (user_id, content_id, content_type, liked, genre_ids, title, poster_path,
                     vote_average, release_year, occurred_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                event.user_id, event.content_id, event.content_type, 1 if event.liked else 0,
                json.dumps(list(event.genre_ids)), event.title, event.poster_path,
                event.vote_average, event.release_year, _ts(event.occurred_at),
            ))

    @_store_errors
    def load_events(self) -> list[SwipeEvent]:
        with self._pool.transaction(read_only=True) as conn:
            rows = conn.execute("SELECT * FROM swipe_events ORDER BY id").fetchall()
        return [
            SwipeEvent(
                user_id=r['user_id'],
                content_id=r['content_id'],
                content_type=r['content_type'],
                liked=bool(r['liked']),
                genre_ids=tuple(load_json(r['genre_ids'])),
                title=r['title'] or "",
                poster_path=r['poster_path'] or "",
                vote_average=r['vote_average'] or 0.0,
                release_year=r['release_year'],
                occurred_at=parse_timestamp_naive(r['occurred_at']),
            )
            for r in rows
        ]

    @_store_errors
    def replace_aggregates(self, popularity: list[ContentPopularity], fans: list[GenreFanStats]) -> None:
        with self._pool.transaction() as conn:
            conn.execute("DELETE FROM content_popularity")
            conn.execute("DELETE FROM genre_fan_likes")
            conn.executemany("""
                INSERT INTO content_popularity
                    (content_id, content_type, title, poster_path, vote_average, release_year,
                     genre_ids, total_likes, total_dislikes, recent_likes)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, [
                (p.content.content_id, p.content.content_type, p.title, p.poster_path, p.vote_average,
                 p.release_year, json.dumps(list(p.genre_ids)), p.total_likes, p.total_dislikes, p.recent_likes)
                for p in popularity
            ])
            conn.executemany("""
                INSERT INTO genre_fan_likes (genre_id, content_id, content_type, fan_likes, fan_total)
                VALUES (?, ?, ?, ?, ?)
            """, [
                (f.genre_id, f.popularity.content.content_id, f.popularity.content.content_type,
                 f.fan_likes, f.fan_total)
                for f in fans
            ])

    @_store_errors
    def top_for_genre(self, genre_id: int, n: int, min_fan_likes: int = COLLAB_MIN_FAN_LIKES) -> list[GenreFanStats]:
        with self._pool.transaction(read_only=True) as conn:
            rows = conn.execute("""
                SELECT f.genre_id, f.fan_likes, f.fan_total, p.*
                FROM genre_fan_likes f
                JOIN content_popularity p
                  ON p.content_id = f.content_id AND p.content_type = f.content_type
                WHERE f.genre_id = ? AND f.fan_likes >= ?
                ORDER BY (f.fan_likes + 1.0) / (f.fan_total + 2) DESC, f.fan_likes DESC, f.content_id ASC
                LIMIT ?
            """, (genre_id, min_fan_likes, n)).fetchall()
        return [
            GenreFanStats(
                genre_id=r['genre_id'],
                popularity=_popularity_from_row(r),
                fan_likes=r['fan_likes'],
                fan_total=r['fan_total'],
            )
            for r in rows
        ]

    @_store_errors
    def most_liked(self, n: int) -> list[ContentPopularity]:
        with self._pool.transaction(read_only=True) as conn:
            rows = conn.execute("""
                SELECT * FROM content_popularity
                WHERE total_likes > 0
                ORDER BY total_likes DESC,
                         (total_likes + 1.0) / (total_likes + total_dislikes + 2) DESC,
                         content_id ASC
                LIMIT ?
            """, (n,)).fetchall()
        return [_popularity_from_row(r) for r in rows]

    @_store_errors
    def recently_liked(self, n: int) -> list[ContentPopularity]:
        with self._pool.transaction(read_only=True) as conn:
            rows = conn.execute("""
                SELECT * FROM content_popularity
                WHERE recent_likes > 0
                ORDER BY recent_likes DESC, total_likes DESC, content_id ASC
                LIMIT ?
            """, (n,)).fetchall()
        return [_popularity_from_row(r) for r in rows]

    @_store_errors
    def delete_user_events(self, user_id: str) -> int:
        with self._pool.transaction() as conn:
            return conn.execute("DELETE FROM swipe_events WHERE user_id = ?", (user_id,)).rowcount
