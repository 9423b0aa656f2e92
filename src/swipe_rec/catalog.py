"""
Content metadata provider port and adapters.

The engine only sees ContentCatalog. TMDBCatalog talks to the TMDB v3
API over httpx; StaticCatalog serves a fixed list of items (tests and
offline CLI use); BoundedCatalog wraps either one to enforce the
per-request concurrency limit and per-call timeout.
"""
import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

import httpx

from .config import (
    CATALOG_CALL_TIMEOUT,
    DEFAULT_RETRY_AFTER,
    HTTP_TIMEOUT,
    MAX_CAST_CONSIDERED,
    MAX_CONCURRENT_CATALOG_CALLS,
    MAX_HTTP_RETRIES,
    TMDB_API_KEY,
    TMDB_BASE_URL,
    TMDB_IMAGE_LANGUAGE,
)
from .errors import CatalogError
from .signals import CONTENT_TYPE_ALIASES, ContentRef, ContentSnapshot, Person, SignalFeatures
from .utils import async_retry_with_backoff

logger = logging.getLogger(__name__)

SORT_POPULARITY = "popularity"
SORT_VOTE_AVERAGE = "vote_average"


@dataclass(frozen=True)
class CatalogItem:
    content_id: int
    content_type: str = "movie"
    title: str = ""
    poster_path: str = ""
    vote_average: float = 0.0
    vote_count: int = 0
    popularity: float = 0.0
    release_year: int | None = None
    genre_ids: tuple[int, ...] = ()
    cast: tuple[Person, ...] = ()
    director: Person | None = None
    runtime: int | None = None

    @property
    def ref(self) -> ContentRef:
        return ContentRef(self.content_id, self.content_type)

    @property
    def primary_genre(self) -> int | None:
        return self.genre_ids[0] if self.genre_ids else None

    def to_features(self) -> SignalFeatures:
        return SignalFeatures(
            genre_ids=self.genre_ids,
            primary_genre=self.primary_genre,
            actors=self.cast[:MAX_CAST_CONSIDERED],
            director=self.director,
            runtime=self.runtime,
        )

    def to_snapshot(self) -> ContentSnapshot:
        return ContentSnapshot(
            vote_average=self.vote_average,
            release_year=self.release_year,
            popularity_score=self.popularity,
            title=self.title,
            poster_path=self.poster_path,
        )


@dataclass(frozen=True)
class DiscoverQuery:
    """Discovery-style query; unset fields do not filter."""
    content_type: str = "movie"
    genre_ids: tuple[int, ...] = ()
    match_all_genres: bool = False
    cast_id: int | None = None
    crew_id: int | None = None
    min_vote_average: float | None = None
    min_vote_count: int | None = None
    max_vote_count: int | None = None
    sort_by: str = SORT_POPULARITY
    limit: int = 20


class ContentCatalog(ABC):
    """Read-only content metadata provider."""

    @abstractmethod
    async def discover(self, query: DiscoverQuery) -> list[CatalogItem]: ...

    @abstractmethod
    async def details(self, content_id: int, content_type: str = "movie") -> CatalogItem | None: ...

    @abstractmethod
    async def similar(self, content_id: int, content_type: str = "movie", limit: int = 20) -> list[CatalogItem]:
        """Items related to one anchor title, best match first."""

    @abstractmethod
    async def trending(self, content_type: str = "movie", window: str = "week", limit: int = 20) -> list[CatalogItem]: ...

    async def close(self) -> None:
        pass


def _year(date: str | None) -> int | None:
    if isinstance(date, str) and len(date) >= 4 and date[:4].isdigit():
        return int(date[:4])
    return None


def item_from_payload(payload: dict, content_type: str | None = None) -> CatalogItem:
    """
    Map a TMDB movie/tv payload (list or detail shape) into a CatalogItem.

    Also accepts the snake_case field names CatalogItem uses, so static
    catalogs can be written either way.
    """
    raw_type = content_type or payload.get('content_type') or payload.get('media_type') or "movie"
    ctype = CONTENT_TYPE_ALIASES.get(str(raw_type).lower(), "movie")

    if 'genre_ids' in payload:
        genre_ids = tuple(int(g) for g in payload.get('genre_ids') or [])
    else:
        genre_ids = tuple(int(g['id']) for g in payload.get('genres') or [] if 'id' in g)

    credits = payload.get('credits') or {}
    cast_rows = payload.get('cast') if 'cast' in payload else credits.get('cast')
    cast = tuple(
        Person(int(c['id']), c.get('name', ""))
        for c in (cast_rows or [])[:MAX_CAST_CONSIDERED]
        if isinstance(c, dict) and 'id' in c
    )

    director = None
    if isinstance(payload.get('director'), dict):
        director = Person(int(payload['director']['id']), payload['director'].get('name', ""))
    else:
        for member in credits.get('crew') or []:
            if member.get('job') == "Director":
                director = Person(int(member['id']), member.get('name', ""))
                break
        if director is None and payload.get('created_by'):
            creator = payload['created_by'][0]
            director = Person(int(creator['id']), creator.get('name', ""))

    runtime = payload.get('runtime')
    if runtime is None and payload.get('episode_run_time'):
        runtime = payload['episode_run_time'][0]

    release_year = payload.get('release_year')
    if release_year is None:
        release_year = _year(payload.get('release_date') or payload.get('first_air_date'))

    return CatalogItem(
        content_id=int(payload.get('content_id') or payload['id']),
        content_type=ctype,
        title=payload.get('title') or payload.get('name') or "",
        poster_path=payload.get('poster_path') or "",
        vote_average=float(payload.get('vote_average') or 0.0),
        vote_count=int(payload.get('vote_count') or 0),
        popularity=float(payload.get('popularity') or 0.0),
        release_year=release_year,
        genre_ids=genre_ids,
        cast=cast,
        director=director,
        runtime=int(runtime) if runtime else None,
    )


def _tmdb_type(content_type: str) -> str:
    return "tv" if content_type == "show" else "movie"


class TMDBCatalog(ContentCatalog):
    """TMDB v3 adapter with coordinated rate limiting."""

    def __init__(
        self,
        api_key: str = TMDB_API_KEY,
        base_url: str = TMDB_BASE_URL,
        max_concurrent: int = MAX_CONCURRENT_CATALOG_CALLS,
        client: httpx.AsyncClient | None = None,
    ):
        if not api_key:
            raise CatalogError("TMDB_API_KEY is not set")
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.semaphore = asyncio.Semaphore(max_concurrent)
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            timeout=HTTP_TIMEOUT,
            headers={"Accept": "application/json", "User-Agent": "swipe-recommender/1.0"},
        )
        # When one call hits 429, every call pauses
        self._rate_limit_event = asyncio.Event()
        self._rate_limit_event.set()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
        return False

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    @async_retry_with_backoff(max_retries=MAX_HTTP_RETRIES, initial_delay=1.0, exceptions=(httpx.TransportError,))
    async def _send(self, path: str, params: dict) -> httpx.Response:
        await self._rate_limit_event.wait()
        return await self.client.get(f"{self.base_url}{path}", params=params)

    async def _get(self, path: str, params: dict | None = None) -> dict | None:
        """GET a TMDB path. None on 404, CatalogError on anything unrecoverable."""
        query = {"api_key": self.api_key, "language": TMDB_IMAGE_LANGUAGE}
        query.update(params or {})

        async with self.semaphore:
            for attempt in range(MAX_HTTP_RETRIES):
                try:
                    resp = await self._send(path, query)
                except httpx.HTTPError as exc:
                    raise CatalogError(f"Request to {path} failed: {type(exc).__name__}: {exc}") from exc

                if resp.status_code == 404:
                    return None

                if resp.status_code == 429:
                    try:
                        retry_after = float(resp.headers.get("Retry-After", DEFAULT_RETRY_AFTER))
                    except ValueError:
                        retry_after = DEFAULT_RETRY_AFTER
                    logger.warning(
                        f"Rate limited on {path}, pausing all catalog calls for {retry_after}s "
                        f"(attempt {attempt + 1}/{MAX_HTTP_RETRIES})"
                    )
                    self._rate_limit_event.clear()
                    await asyncio.sleep(retry_after)
                    self._rate_limit_event.set()
                    continue

                try:
                    resp.raise_for_status()
                except httpx.HTTPStatusError as exc:
                    raise CatalogError(f"HTTP {resp.status_code} on {path}") from exc
                try:
                    return resp.json()
                except ValueError as exc:
                    raise CatalogError(f"Malformed JSON from {path}") from exc

        raise CatalogError(f"Max retries exceeded for {path}")

    async def _results(self, path: str, params: dict, content_type: str, limit: int) -> list[CatalogItem]:
        data = await self._get(path, params)
        if not data:
            return []
        items = []
        for payload in data.get('results') or []:
            try:
                items.append(item_from_payload(payload, content_type))
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                logger.debug(f"Skipping malformed TMDB result on {path}: {e}")
        return items[:limit]

    async def discover(self, query: DiscoverQuery) -> list[CatalogItem]:
        params: dict = {
            "sort_by": f"{query.sort_by}.desc",
            "include_adult": "false",
            "page": 1,
        }
        if query.genre_ids:
            joiner = "," if query.match_all_genres else "|"
            params["with_genres"] = joiner.join(str(g) for g in query.genre_ids)
        if query.cast_id is not None:
            params["with_cast"] = query.cast_id
        if query.crew_id is not None:
            params["with_crew"] = query.crew_id
        if query.min_vote_average is not None:
            params["vote_average.gte"] = query.min_vote_average
        if query.min_vote_count is not None:
            params["vote_count.gte"] = query.min_vote_count
        if query.max_vote_count is not None:
            params["vote_count.lte"] = query.max_vote_count
        return await self._results(
            f"/discover/{_tmdb_type(query.content_type)}", params, query.content_type, query.limit
        )

    async def details(self, content_id: int, content_type: str = "movie") -> CatalogItem | None:
        data = await self._get(f"/{_tmdb_type(content_type)}/{content_id}", {"append_to_response": "credits"})
        if data is None:
            return None
        try:
            return item_from_payload(data, content_type)
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise CatalogError(f"Malformed details for {content_type} {content_id}: {exc}") from exc

    async def similar(self, content_id: int, content_type: str = "movie", limit: int = 20) -> list[CatalogItem]:
        return await self._results(
            f"/{_tmdb_type(content_type)}/{content_id}/recommendations", {"page": 1}, content_type, limit
        )

    async def trending(self, content_type: str = "movie", window: str = "week", limit: int = 20) -> list[CatalogItem]:
        return await self._results(f"/trending/{_tmdb_type(content_type)}/{window}", {}, content_type, limit)


class StaticCatalog(ContentCatalog):
    """In-process catalog over a fixed item list. Ordering is deterministic."""

    def __init__(self, items: list[CatalogItem]):
        self._items = {item.ref: item for item in items}

    @classmethod
    def from_json(cls, path: str | Path) -> "StaticCatalog":
        with open(path, encoding="utf-8") as f:
            data = json.load(f)
        if isinstance(data, dict):
            data = data.get('results') or data.get('items') or []
        return cls([item_from_payload(payload) for payload in data])

    def __len__(self) -> int:
        return len(self._items)

    def _of_type(self, content_type: str) -> list[CatalogItem]:
        return [item for item in self._items.values() if item.content_type == content_type]

    async def discover(self, query: DiscoverQuery) -> list[CatalogItem]:
        wanted = set(query.genre_ids)
        results = []
        for item in self._of_type(query.content_type):
            genres = set(item.genre_ids)
            if wanted and (not wanted <= genres if query.match_all_genres else not wanted & genres):
                continue
            if query.cast_id is not None and query.cast_id not in {p.id for p in item.cast}:
                continue
            if query.crew_id is not None and (item.director is None or item.director.id != query.crew_id):
                continue
            if query.min_vote_average is not None and item.vote_average < query.min_vote_average:
                continue
            if query.min_vote_count is not None and item.vote_count < query.min_vote_count:
                continue
            if query.max_vote_count is not None and item.vote_count > query.max_vote_count:
                continue
            results.append(item)

        if query.sort_by == SORT_VOTE_AVERAGE:
            results.sort(key=lambda i: (-i.vote_average, -i.popularity, i.content_id))
        else:
            results.sort(key=lambda i: (-i.popularity, -i.vote_average, i.content_id))
        return results[:query.limit]

    async def details(self, content_id: int, content_type: str = "movie") -> CatalogItem | None:
        return self._items.get(ContentRef(content_id, content_type))

    async def similar(self, content_id: int, content_type: str = "movie", limit: int = 20) -> list[CatalogItem]:
        anchor = self._items.get(ContentRef(content_id, content_type))
        if anchor is None:
            return []
        anchor_genres = set(anchor.genre_ids)
        anchor_cast = {p.id for p in anchor.cast}
        scored = []
        for item in self._of_type(content_type):
            if item.content_id == content_id:
                continue
            overlap = len(anchor_genres & set(item.genre_ids)) + len(anchor_cast & {p.id for p in item.cast})
            if anchor.director and item.director and anchor.director.id == item.director.id:
                overlap += 1
            if overlap:
                scored.append((overlap, item))
        scored.sort(key=lambda x: (-x[0], -x[1].popularity, x[1].content_id))
        return [item for _, item in scored[:limit]]

    async def trending(self, content_type: str = "movie", window: str = "week", limit: int = 20) -> list[CatalogItem]:
        items = sorted(self._of_type(content_type), key=lambda i: (-i.popularity, i.content_id))
        return items[:limit]


class BoundedCatalog(ContentCatalog):
    """
    Per-request proxy: at most max_concurrent calls in flight, each
    bounded by timeout. A timed-out call raises CatalogError.
    """

    def __init__(
        self,
        inner: ContentCatalog,
        max_concurrent: int = MAX_CONCURRENT_CATALOG_CALLS,
        timeout: float = CATALOG_CALL_TIMEOUT,
    ):
        self.inner = inner
        self.timeout = timeout
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self.calls = 0

    async def _call(self, name: str, make_call):
        async with self._semaphore:
            self.calls += 1
            try:
                return await asyncio.wait_for(make_call(), timeout=self.timeout)
            except asyncio.TimeoutError as exc:
                raise CatalogError(f"Catalog {name} timed out after {self.timeout}s") from exc

    async def discover(self, query: DiscoverQuery) -> list[CatalogItem]:
        return await self._call("discover", lambda: self.inner.discover(query))

    async def details(self, content_id: int, content_type: str = "movie") -> CatalogItem | None:
        return await self._call("details", lambda: self.inner.details(content_id, content_type))

    async def similar(self, content_id: int, content_type: str = "movie", limit: int = 20) -> list[CatalogItem]:
        return await self._call("similar", lambda: self.inner.similar(content_id, content_type, limit))

    async def trending(self, content_type: str = "movie", window: str = "week", limit: int = 20) -> list[CatalogItem]:
        return await self._call("trending", lambda: self.inner.trending(content_type, window, limit))
