"""
Population-level aggregates behind the collaborative recommender.

Swipes are appended to an event log; rebuild_aggregates() periodically
turns the log into per-content popularity and per-genre "fan" tables.
The collaborative recommender only ever reads the precomputed tables.
"""
import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta

import numpy as np
from scipy import sparse

from .config import COLLAB_MIN_FAN_LIKES, FAN_BUCKET_TOP_GENRES, TRENDING_WINDOW_DAYS
from .signals import ContentRef, SwipeSignal, _utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SwipeEvent:
    """Append-only log row; the subset of a signal the aggregates need."""
    user_id: str
    content_id: int
    content_type: str
    liked: bool
    genre_ids: tuple[int, ...]
    title: str
    poster_path: str
    vote_average: float
    release_year: int | None
    occurred_at: datetime

    @classmethod
    def from_signal(cls, signal: SwipeSignal) -> "SwipeEvent":
        snapshot = signal.content_snapshot
        return cls(
            user_id=signal.user_id,
            content_id=signal.content_id,
            content_type=signal.content_type,
            liked=signal.is_like,
            genre_ids=signal.features.genre_ids,
            title=snapshot.title,
            poster_path=snapshot.poster_path,
            vote_average=snapshot.vote_average,
            release_year=snapshot.release_year,
            occurred_at=signal.occurred_at,
        )


@dataclass(frozen=True)
class ContentPopularity:
    content: ContentRef
    title: str = ""
    poster_path: str = ""
    vote_average: float = 0.0
    release_year: int | None = None
    genre_ids: tuple[int, ...] = ()
    total_likes: int = 0
    total_dislikes: int = 0
    recent_likes: int = 0

    @property
    def like_ratio(self) -> float:
        return (self.total_likes + 1) / (self.total_likes + self.total_dislikes + 2)


@dataclass(frozen=True)
class GenreFanStats:
    """How users whose top genres include genre_id reacted to one piece of content."""
    genre_id: int
    popularity: ContentPopularity
    fan_likes: int
    fan_total: int

    @property
    def fan_like_ratio(self) -> float:
        return (self.fan_likes + 1) / (self.fan_total + 2)


class AggregateStore(ABC):
    """Port for the event log and the precomputed popularity tables."""

    @abstractmethod
    def record_event(self, event: SwipeEvent) -> None: ...

    @abstractmethod
    def load_events(self) -> list[SwipeEvent]: ...

    @abstractmethod
    def replace_aggregates(self, popularity: list[ContentPopularity], fans: list[GenreFanStats]) -> None: ...

    @abstractmethod
    def top_for_genre(self, genre_id: int, n: int, min_fan_likes: int = COLLAB_MIN_FAN_LIKES) -> list[GenreFanStats]:
        """Highest fan like-ratio first, ties by fan likes then content id."""

    @abstractmethod
    def most_liked(self, n: int) -> list[ContentPopularity]: ...

    @abstractmethod
    def recently_liked(self, n: int) -> list[ContentPopularity]: ...

    def delete_user_events(self, user_id: str) -> int:
        return 0


def _fan_sort_key(stats: GenreFanStats):
    return (-stats.fan_like_ratio, -stats.fan_likes, stats.popularity.content.content_id)


class InMemoryAggregateStore(AggregateStore):

    def __init__(self):
        self._lock = threading.Lock()
        self._events: list[SwipeEvent] = []
        self._popularity: dict[ContentRef, ContentPopularity] = {}
        self._fans: dict[int, list[GenreFanStats]] = {}

    def record_event(self, event: SwipeEvent) -> None:
        with self._lock:
            self._events.append(event)

    def load_events(self) -> list[SwipeEvent]:
        with self._lock:
            return list(self._events)

    def replace_aggregates(self, popularity: list[ContentPopularity], fans: list[GenreFanStats]) -> None:
        by_genre: dict[int, list[GenreFanStats]] = {}
        for stats in fans:
            by_genre.setdefault(stats.genre_id, []).append(stats)
        for rows in by_genre.values():
            rows.sort(key=_fan_sort_key)
        with self._lock:
            self._popularity = {p.content: p for p in popularity}
            self._fans = by_genre

    def top_for_genre(self, genre_id: int, n: int, min_fan_likes: int = COLLAB_MIN_FAN_LIKES) -> list[GenreFanStats]:
        with self._lock:
            rows = self._fans.get(genre_id, [])
            return [r for r in rows if r.fan_likes >= min_fan_likes][:n]

    def most_liked(self, n: int) -> list[ContentPopularity]:
        with self._lock:
            rows = [p for p in self._popularity.values() if p.total_likes > 0]
        rows.sort(key=lambda p: (-p.total_likes, -p.like_ratio, p.content.content_id))
        return rows[:n]

    def recently_liked(self, n: int) -> list[ContentPopularity]:
        with self._lock:
            rows = [p for p in self._popularity.values() if p.recent_likes > 0]
        rows.sort(key=lambda p: (-p.recent_likes, -p.total_likes, p.content.content_id))
        return rows[:n]

    def delete_user_events(self, user_id: str) -> int:
        with self._lock:
            before = len(self._events)
            self._events = [e for e in self._events if e.user_id != user_id]
            return before - len(self._events)


def compute_aggregates(
    events: Iterable[SwipeEvent],
    now: datetime | None = None,
    window_days: int = TRENDING_WINDOW_DAYS,
    top_genres_per_user: int = FAN_BUCKET_TOP_GENRES,
    progress: Callable[[Iterable], Iterable] | None = None,
) -> tuple[list[ContentPopularity], list[GenreFanStats]]:
    """
    Build popularity and genre-fan tables from the event log.

    Users are bucketed as fans of their top liked genres; for every genre
    bucket we sum likes and totals per content item with sparse products:
    fan_likes = B @ L and fan_total = B @ T, where B is the genre x user
    membership matrix and L/T are user x content like/total counts.
    """
    events = list(events)
    if not events:
        return [], []

    now = now or _utcnow()
    cutoff = now - timedelta(days=window_days)
    iterator = progress(events) if progress else events

    user_index: dict[str, int] = {}
    content_index: dict[ContentRef, int] = {}
    genre_index: dict[int, int] = {}
    snapshots: dict[ContentRef, SwipeEvent] = {}

    rows, cols, liked, recent = [], [], [], []
    ug_rows, ug_cols = [], []

    for event in iterator:
        ref = ContentRef(event.content_id, event.content_type)
        u = user_index.setdefault(event.user_id, len(user_index))
        c = content_index.setdefault(ref, len(content_index))
        rows.append(u)
        cols.append(c)
        liked.append(1 if event.liked else 0)
        recent.append(1 if event.liked and event.occurred_at >= cutoff else 0)

        latest = snapshots.get(ref)
        if latest is None or event.occurred_at >= latest.occurred_at:
            snapshots[ref] = event

        if event.liked:
            for genre_id in event.genre_ids:
                ug_rows.append(u)
                ug_cols.append(genre_index.setdefault(genre_id, len(genre_index)))

    n_users, n_contents = len(user_index), len(content_index)
    shape = (n_users, n_contents)
    ones = np.ones(len(rows), dtype=np.int64)
    totals = sparse.coo_matrix((ones, (rows, cols)), shape=shape).tocsr()
    likes = sparse.coo_matrix((np.asarray(liked, dtype=np.int64), (rows, cols)), shape=shape).tocsr()

    total_per_content = np.asarray(totals.sum(axis=0)).ravel()
    likes_per_content = np.asarray(likes.sum(axis=0)).ravel()
    recent_per_content = np.bincount(
        np.asarray(cols, dtype=np.int64), weights=np.asarray(recent, dtype=np.float64), minlength=n_contents
    ).astype(np.int64)

    refs = sorted(content_index, key=content_index.get)
    popularity = []
    for ref in refs:
        c = content_index[ref]
        snap = snapshots[ref]
        popularity.append(ContentPopularity(
            content=ref,
            title=snap.title,
            poster_path=snap.poster_path,
            vote_average=snap.vote_average,
            release_year=snap.release_year,
            genre_ids=snap.genre_ids,
            total_likes=int(likes_per_content[c]),
            total_dislikes=int(total_per_content[c] - likes_per_content[c]),
            recent_likes=int(recent_per_content[c]),
        ))

    if not genre_index:
        return popularity, []

    genre_ids = sorted(genre_index, key=genre_index.get)
    user_genre = sparse.coo_matrix(
        (np.ones(len(ug_rows), dtype=np.int64), (ug_rows, ug_cols)),
        shape=(n_users, len(genre_index)),
    ).toarray()

    # Top-N liked genres per user; ties resolved toward the lower genre id
    membership_rows, membership_cols = [], []
    for u in range(n_users):
        counts = user_genre[u]
        order = sorted(
            (g for g in range(len(genre_ids)) if counts[g] > 0),
            key=lambda g: (-counts[g], genre_ids[g]),
        )
        for g in order[:top_genres_per_user]:
            membership_rows.append(g)
            membership_cols.append(u)

    membership = sparse.coo_matrix(
        (np.ones(len(membership_rows), dtype=np.int64), (membership_rows, membership_cols)),
        shape=(len(genre_ids), n_users),
    ).tocsr()
    fan_likes = (membership @ likes).tocoo()
    fan_totals = (membership @ totals).tocsr()

    fans = []
    for g, c, value in zip(fan_likes.row, fan_likes.col, fan_likes.data):
        if value <= 0:
            continue
        fans.append(GenreFanStats(
            genre_id=genre_ids[g],
            popularity=popularity[c],
            fan_likes=int(value),
            fan_total=int(fan_totals[g, c]),
        ))
    fans.sort(key=lambda s: (s.genre_id,) + _fan_sort_key(s))
    return popularity, fans


def rebuild_aggregates(
    store: AggregateStore,
    now: datetime | None = None,
    progress: Callable[[Iterable], Iterable] | None = None,
) -> tuple[int, int]:
    """Recompute the popularity tables from the event log. Returns (contents, fan rows)."""
    events = store.load_events()
    popularity, fans = compute_aggregates(events, now=now, progress=progress)
    store.replace_aggregates(popularity, fans)
    logger.info(f"Rebuilt aggregates from {len(events)} events: {len(popularity)} titles, {len(fans)} fan rows")
    return len(popularity), len(fans)
