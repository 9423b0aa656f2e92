"""
Signal ingestion: normalize raw client interactions into SwipeSignal.

Raw payloads come from the client app in camelCase (snake_case is accepted
too). Only user id, content id and direction are mandatory; every other
field is defaulted when missing or malformed.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, NamedTuple

from .config import DELIBERATE_VIEW_MS, MAX_CAST_CONSIDERED
from .errors import InvalidSignalError

logger = logging.getLogger(__name__)

LIKE = "like"
DISLIKE = "dislike"

DIRECTION_ALIASES = {
    'like': LIKE,
    'right': LIKE,
    'up': LIKE,
    'superlike': LIKE,
    'dislike': DISLIKE,
    'left': DISLIKE,
    'skip': DISLIKE,
    'pass': DISLIKE,
}

CONTENT_TYPE_ALIASES = {
    'movie': 'movie',
    'film': 'movie',
    'show': 'show',
    'tv': 'show',
    'series': 'show',
}

SOURCE_SWIPE = "swipe"
SOURCE_ONBOARDING = "onboarding"


class ContentRef(NamedTuple):
    """A content id together with the catalog type it belongs to."""
    content_id: int
    content_type: str = "movie"


@dataclass(frozen=True)
class Person:
    id: int
    name: str = ""


@dataclass(frozen=True)
class SignalFeatures:
    genre_ids: tuple[int, ...] = ()
    primary_genre: int | None = None
    actors: tuple[Person, ...] = ()
    director: Person | None = None
    runtime: int | None = None

    @property
    def actor_ids(self) -> tuple[int, ...]:
        return tuple(a.id for a in self.actors)

    @property
    def director_id(self) -> int | None:
        return self.director.id if self.director else None


@dataclass(frozen=True)
class ContentSnapshot:
    vote_average: float = 0.0
    release_year: int | None = None
    popularity_score: float = 0.0
    title: str = ""
    poster_path: str = ""


@dataclass(frozen=True)
class Engagement:
    view_duration_ms: int = 0
    swipe_velocity: float | None = None
    swipe_distance: float | None = None
    card_expanded: bool = False
    trailer_watched: bool = False


@dataclass(frozen=True)
class SwipeSignal:
    """Canonical, immutable unit of truth the taste profile is derived from."""
    user_id: str
    content_id: int
    direction: str
    content_type: str = "movie"
    features: SignalFeatures = field(default_factory=SignalFeatures)
    content_snapshot: ContentSnapshot = field(default_factory=ContentSnapshot)
    engagement: Engagement = field(default_factory=Engagement)
    session_position: int = 0
    occurred_at: datetime = field(default_factory=lambda: _utcnow())
    source: str = SOURCE_SWIPE

    @property
    def is_like(self) -> bool:
        return self.direction == LIKE

    @property
    def is_strong(self) -> bool:
        """Expanded cards and long views count as deliberate decisions."""
        return self.engagement.card_expanded or self.engagement.view_duration_ms > DELIBERATE_VIEW_MS

    @property
    def ref(self) -> ContentRef:
        return ContentRef(self.content_id, self.content_type)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _pick(raw: dict, *keys: str, default: Any = None) -> Any:
    for key in keys:
        if key in raw and raw[key] is not None:
            return raw[key]
    return default


def _as_int(val: Any, default: int | None = None) -> int | None:
    if isinstance(val, bool):
        return default
    try:
        return int(val)
    except (TypeError, ValueError):
        return default


def _as_float(val: Any, default: float | None = 0.0) -> float | None:
    if isinstance(val, bool):
        return default
    try:
        return float(val)
    except (TypeError, ValueError):
        return default


def _as_bool(val: Any) -> bool:
    if isinstance(val, str):
        return val.strip().lower() in ("1", "true", "yes", "y")
    return bool(val)


def _as_dict(val: Any) -> dict:
    return val if isinstance(val, dict) else {}


def _int_list(val: Any) -> list[int]:
    if not isinstance(val, (list, tuple)):
        return []
    ids = []
    for item in val:
        parsed = _as_int(item)
        if parsed is not None and parsed not in ids:
            ids.append(parsed)
    return ids


def parse_occurred_at(val: Any) -> datetime:
    """
    Parse a timestamp into a naive UTC datetime.

    Accepts datetimes, ISO strings and epoch numbers (seconds or
    milliseconds). Anything unparseable falls back to now.
    """
    if isinstance(val, datetime):
        if val.tzinfo:
            return val.astimezone(timezone.utc).replace(tzinfo=None)
        return val
    if isinstance(val, (int, float)) and not isinstance(val, bool):
        seconds = val / 1000 if val > 1e11 else val
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)
        except (OverflowError, OSError, ValueError):
            return _utcnow()
    if isinstance(val, str) and val:
        try:
            dt = datetime.fromisoformat(val.replace("Z", "+00:00"))
        except ValueError:
            logger.debug(f"Unparseable occurredAt '{val}', using now")
            return _utcnow()
        return parse_occurred_at(dt)
    return _utcnow()


def _parse_release_year(snapshot: dict) -> int | None:
    year = _as_int(_pick(snapshot, "releaseYear", "release_year"))
    if year is None:
        date = _pick(snapshot, "releaseDate", "release_date", "firstAirDate")
        if isinstance(date, str) and len(date) >= 4:
            year = _as_int(date[:4])
    if year is not None and not (1800 <= year <= 2200):
        return None
    return year


def _parse_actors(features: dict) -> tuple[Person, ...]:
    actors: list[Person] = []
    seen: set[int] = set()

    cast = _pick(features, "cast", default=[])
    if isinstance(cast, list):
        for member in cast:
            if isinstance(member, dict):
                actor_id = _as_int(member.get("id"))
                name = str(member.get("name") or "")
            else:
                actor_id, name = _as_int(member), ""
            if actor_id is not None and actor_id not in seen:
                seen.add(actor_id)
                actors.append(Person(actor_id, name))

    names = _as_dict(_pick(features, "actorNames", "actor_names", default={}))
    for actor_id in _int_list(_pick(features, "actorIds", "actor_ids", "topCastIds", default=[])):
        if actor_id not in seen:
            seen.add(actor_id)
            actors.append(Person(actor_id, str(names.get(str(actor_id)) or names.get(actor_id) or "")))

    return tuple(actors[:MAX_CAST_CONSIDERED])


def _parse_features(raw: dict) -> SignalFeatures:
    features = _as_dict(_pick(raw, "features", default={}))
    genre_ids = _int_list(_pick(features, "genreIds", "genre_ids", default=[]))
    primary = _as_int(_pick(features, "primaryGenre", "primary_genre"))
    if primary is None and genre_ids:
        primary = genre_ids[0]
    elif primary is not None and primary not in genre_ids:
        genre_ids.insert(0, primary)

    director = None
    director_id = _as_int(_pick(features, "directorId", "director_id"))
    if director_id is not None:
        director = Person(director_id, str(_pick(features, "directorName", "director_name", default="")))

    runtime = _as_int(_pick(features, "runtime", "runtimeMinutes"))
    if runtime is not None and runtime <= 0:
        runtime = None

    return SignalFeatures(
        genre_ids=tuple(genre_ids),
        primary_genre=primary,
        actors=_parse_actors(features),
        director=director,
        runtime=runtime,
    )


def _parse_snapshot(raw: dict) -> ContentSnapshot:
    snapshot = _as_dict(_pick(raw, "contentSnapshot", "content_snapshot", default={}))
    vote = _as_float(_pick(snapshot, "voteAverage", "vote_average"), 0.0)
    return ContentSnapshot(
        vote_average=min(max(vote, 0.0), 10.0),
        release_year=_parse_release_year(snapshot),
        popularity_score=max(_as_float(_pick(snapshot, "popularityScore", "popularity", "popularity_score"), 0.0), 0.0),
        title=str(_pick(snapshot, "title", "name", default="")),
        poster_path=str(_pick(snapshot, "posterPath", "poster_path", default="")),
    )


def _parse_engagement(raw: dict) -> Engagement:
    engagement = _as_dict(_pick(raw, "engagement", default={}))
    return Engagement(
        view_duration_ms=max(_as_int(_pick(engagement, "viewDurationMs", "view_duration_ms"), 0), 0),
        swipe_velocity=_as_float(_pick(engagement, "swipeVelocity", "swipe_velocity"), None),
        swipe_distance=_as_float(_pick(engagement, "swipeDistance", "swipe_distance"), None),
        card_expanded=_as_bool(_pick(engagement, "cardExpanded", "card_expanded", default=False)),
        trailer_watched=_as_bool(_pick(engagement, "trailerWatched", "trailer_watched", default=False)),
    )


def ingest(raw: dict) -> SwipeSignal:
    """
    Normalize a raw interaction into a SwipeSignal.

    Pure: no side effects. Raises InvalidSignalError when user id, content
    id or direction are missing or unusable; never fails on optional fields.
    """
    if not isinstance(raw, dict):
        raise InvalidSignalError("Signal payload must be a mapping")

    user_id = _pick(raw, "userId", "user_id")
    if user_id is None or not str(user_id).strip():
        raise InvalidSignalError("Signal is missing userId", field="userId")

    content_id = _as_int(_pick(raw, "contentId", "content_id"))
    if content_id is None or content_id <= 0:
        raise InvalidSignalError("Signal is missing a valid contentId", field="contentId")

    direction_raw = _pick(raw, "direction")
    direction = DIRECTION_ALIASES.get(str(direction_raw).strip().lower()) if direction_raw is not None else None
    if direction is None:
        raise InvalidSignalError(f"Signal has invalid direction {direction_raw!r}", field="direction")

    content_type = CONTENT_TYPE_ALIASES.get(
        str(_pick(raw, "contentType", "content_type", default="movie")).strip().lower(), "movie"
    )
    source = str(_pick(raw, "source", default=SOURCE_SWIPE)).strip().lower()
    if source not in (SOURCE_SWIPE, SOURCE_ONBOARDING):
        source = SOURCE_SWIPE

    return SwipeSignal(
        user_id=str(user_id).strip(),
        content_id=content_id,
        direction=direction,
        content_type=content_type,
        features=_parse_features(raw),
        content_snapshot=_parse_snapshot(raw),
        engagement=_parse_engagement(raw),
        session_position=max(_as_int(_pick(raw, "sessionPosition", "session_position"), 0), 0),
        occurred_at=parse_occurred_at(_pick(raw, "occurredAt", "occurred_at", "createdAt")),
        source=source,
    )
