"""
Content-based recommender: strategies that match catalog items against
one user's own affinities.

Every strategy is an independent coroutine producing ContentCandidates.
Scores are strategy-local and in [0, 1]; the blender applies boosts and
collaborative weights.
"""
import logging
import math
from collections import Counter
from functools import partial

from .candidates import (
    ACTOR_BASED,
    DIRECTOR_BASED,
    EXPLORATION,
    GENRE_BASED,
    HIDDEN_GEM,
    MOOD_BASED,
    MORE_LIKE_THIS,
    POPULAR,
    SIMILAR_TO_LIKED,
    CONTENT_STRATEGIES,
    ContentCandidate,
    clamp,
    gather_entities,
)
from .catalog import SORT_VOTE_AVERAGE, CatalogItem, ContentCatalog, DiscoverQuery
from .confidence import Confidence
from .config import (
    DEFAULT_CONTENT_TYPE,
    EXPLORATION_MAX_OBSERVATIONS,
    EXPLORATION_MIN_RATING,
    GENRE_BASED_PER_GENRE,
    GENRE_NAMES,
    HIDDEN_GEM_MAX_VOTES,
    HIDDEN_GEM_MIN_RATING,
    HIDDEN_GEM_MIN_VOTES,
    LOW_CONFIDENCE_SHARE,
    MOOD_CLUSTERS,
    MOOD_MIN_RATING,
    MOVIE_GENRE_IDS,
    PERSON_BASED_PER_PERSON,
    POPULAR_MIN_VOTES,
    SIMILAR_ANCHORS,
    STRATEGY_MIN_FETCH,
    STRATEGY_OVERFETCH,
    STRATEGY_SHARES,
    TOP_ENTITIES_PER_STRATEGY,
    TV_GENRE_IDS,
)
from .errors import CatalogError
from .profile import ACTOR, DIRECTOR, GENRE, UserTasteProfile
from .signals import ContentRef

logger = logging.getLogger(__name__)

LOW_CONFIDENCE_STRATEGIES = (GENRE_BASED, POPULAR)

# Weights of the similarity components
W_GENRE = 0.35
W_RATING = 0.20
W_QUALITY = 0.15
W_POPULARITY = 0.10
W_DECADE = 0.10
W_MOOD = 0.10


def similarity_score(
    item: CatalogItem,
    profile: UserTasteProfile,
    mood_genres: tuple[int, ...] = (),
    exploration: bool = False,
) -> float:
    """
    How well one catalog item fits a profile, in [0, 1].

    A weighted mean of genre affinity, closeness to the user's average
    liked rating, absolute quality, popularity and decade preference.
    Components that do not apply (no liked genre on the item, no decade
    history) are left out of the mean rather than counted as zero.
    """
    weighted = 0.0
    total = 0.0

    liked_scores = []
    for genre_id in item.genre_ids:
        affinity = profile.preferences.genre_affinities.get(genre_id)
        if affinity is not None and affinity.like_count > 0:
            liked_scores.append(profile.affinity_score(affinity))
    if liked_scores:
        weighted += (sum(liked_scores) / len(liked_scores)) * W_GENRE
        total += W_GENRE

    rating_gap = abs(item.vote_average - profile.preferences.avg_rating_liked)
    weighted += max(0.0, 1 - rating_gap / 4) * W_RATING
    total += W_RATING

    quality = 1.0 if item.vote_average >= 7.5 else item.vote_average / 7.5
    weighted += quality * W_QUALITY
    total += W_QUALITY

    popularity = item.popularity or 50.0
    weighted += (min(popularity / 100, 1.0) * 0.7 + 0.3) * W_POPULARITY
    total += W_POPULARITY

    decades = profile.preferences.preferred_decades
    if item.release_year and decades:
        decade = (item.release_year // 10) * 10
        weighted += (1.0 if decade in decades else 0.6) * W_DECADE
        total += W_DECADE

    if mood_genres and any(g in mood_genres for g in item.genre_ids):
        weighted += W_MOOD
        total += W_MOOD

    score = weighted / total if total else 0.5
    if exploration:
        score *= exploration_multiplier(item, profile)
    return clamp(score)


def exploration_multiplier(item: CatalogItem, profile: UserTasteProfile) -> float:
    """Items mixing familiar and new genres (30-70% familiar) explore best."""
    if not item.genre_ids:
        return 1.0
    affinities = profile.preferences.genre_affinities
    familiar = sum(1 for g in item.genre_ids if g in affinities and affinities[g].like_count > 0)
    ratio = familiar / len(item.genre_ids)
    return 1.2 if 0.3 <= ratio <= 0.7 else 1.0


def fetch_count(strategy: str, limit: int, confidence: Confidence) -> int:
    """How many candidates to ask a strategy for, with headroom for dedup and the diversity cap."""
    share = LOW_CONFIDENCE_SHARE if confidence is Confidence.LOW else STRATEGY_SHARES.get(strategy, 0.1)
    return max(STRATEGY_MIN_FETCH, math.ceil(limit * share * STRATEGY_OVERFETCH))


def preferred_content_type(profile: UserTasteProfile) -> str:
    """Most common type among recent likes; movies on ties or without history."""
    counts = Counter(ref.content_type for ref in profile.recent_liked)
    if not counts:
        return DEFAULT_CONTENT_TYPE
    return sorted(counts.items(), key=lambda x: (-x[1], x[0] != DEFAULT_CONTENT_TYPE, x[0]))[0][0]


def mood_velocity(profile: UserTasteProfile) -> dict[str, float]:
    """
    Recency-weighted like velocity per mood cluster.

    Each recent like contributes 1 / (1 + position) to every cluster its
    primary genre belongs to, so the last few likes dominate.
    """
    velocity = {name: 0.0 for name in MOOD_CLUSTERS}
    for position, genre_id in enumerate(profile.recent_liked_genres):
        weight = 1.0 / (1 + position)
        for name, genres in MOOD_CLUSTERS.items():
            if genre_id in genres:
                velocity[name] += weight
    return velocity


def current_mood(profile: UserTasteProfile) -> str | None:
    velocity = mood_velocity(profile)
    ranked = sorted(velocity.items(), key=lambda x: (-x[1], x[0]))
    if not ranked or ranked[0][1] <= 0:
        return None
    return ranked[0][0]


def underexplored_genres(profile: UserTasteProfile, content_type: str, n: int = 2) -> list[int]:
    """Genres the user has barely seen, least observed first, ties by id."""
    pool = TV_GENRE_IDS if content_type == "show" else MOVIE_GENRE_IDS
    affinities = profile.preferences.genre_affinities
    observed = [(affinities[g].total_count if g in affinities else 0, g) for g in pool]
    candidates = sorted(x for x in observed if x[0] <= EXPLORATION_MAX_OBSERVATIONS)
    return [g for _, g in candidates[:n]]


def _genre_name(genre_id: int | None) -> str:
    return GENRE_NAMES.get(genre_id, "") if genre_id is not None else ""


class ContentBasedRecommender:
    """Runs the content-based strategies against a (request-scoped) catalog."""

    def __init__(self, catalog: ContentCatalog):
        self.catalog = catalog

    @staticmethod
    def strategies_for(confidence: Confidence) -> tuple[str, ...]:
        if confidence is Confidence.LOW:
            return LOW_CONFIDENCE_STRATEGIES
        return CONTENT_STRATEGIES

    def producers(self, profile: UserTasteProfile, confidence: Confidence, limit: int) -> dict:
        """Strategy name -> zero-arg coroutine function, for the strategies this tier runs."""
        content_type = preferred_content_type(profile)
        table = {
            SIMILAR_TO_LIKED: lambda n: self.similar_to_liked(profile, n),
            GENRE_BASED: lambda n: self.genre_based(profile, content_type, n),
            POPULAR: lambda n: self.popular(profile, content_type, n),
            ACTOR_BASED: lambda n: self.actor_based(profile, content_type, n),
            DIRECTOR_BASED: lambda n: self.director_based(profile, content_type, n),
            MOOD_BASED: lambda n: self.mood_based(profile, content_type, n),
            HIDDEN_GEM: lambda n: self.hidden_gem(profile, content_type, n),
            EXPLORATION: lambda n: self.exploration(profile, content_type, n),
        }
        producers = {}
        for name in self.strategies_for(confidence):
            producers[name] = partial(table[name], fetch_count(name, limit, confidence))
        return producers

    async def similar_to_liked(self, profile: UserTasteProfile, n: int) -> list[ContentCandidate]:
        anchors = profile.recent_liked[:SIMILAR_ANCHORS]
        if not anchors:
            return []

        async def for_anchor(index: int, anchor: ContentRef):
            similar = await self.catalog.similar(anchor.content_id, anchor.content_type, limit=n)
            try:
                details = await self.catalog.details(anchor.content_id, anchor.content_type)
            except CatalogError as e:
                logger.debug(f"No details for anchor {anchor.content_id}: {e}")
                details = None
            return index, details.title if details else "", similar

        calls = [lambda i=i, a=a: for_anchor(i, a) for i, a in enumerate(anchors)]
        results = await gather_entities(SIMILAR_TO_LIKED, calls)

        candidates = []
        for index, title, items in results:
            # Older anchors count for less, down to half weight
            temporal = 1 - (index / len(anchors)) * 0.5
            for item in items:
                candidates.append(ContentCandidate(
                    item, SIMILAR_TO_LIKED, clamp(similarity_score(item, profile) * temporal), title
                ))
        return candidates

    async def genre_based(self, profile: UserTasteProfile, content_type: str, n: int) -> list[ContentCandidate]:
        top = profile.top_affinities(GENRE, TOP_ENTITIES_PER_STRATEGY, min_likes=1)
        if not top:
            return []
        per_genre = max(GENRE_BASED_PER_GENRE, math.ceil(n / len(top)))

        async def for_genre(aff, score):
            items = await self.catalog.discover(DiscoverQuery(
                content_type=content_type,
                genre_ids=(aff.id,),
                min_vote_average=6.0,
                min_vote_count=100,
                limit=per_genre,
            ))
            return aff, score, items

        calls = [lambda aff=aff, score=score: for_genre(aff, score) for aff, score in top]
        candidates = []
        for aff, score, items in await gather_entities(GENRE_BASED, calls):
            for item in items:
                candidates.append(ContentCandidate(
                    item, GENRE_BASED, clamp(score * item.vote_average / 10), aff.name or _genre_name(aff.id)
                ))
        return candidates

    async def popular(self, profile: UserTasteProfile, content_type: str, n: int) -> list[ContentCandidate]:
        seeds = [aff.id for aff, _ in profile.top_affinities(GENRE, 2, min_likes=1)]
        items = await self.catalog.discover(DiscoverQuery(
            content_type=content_type,
            genre_ids=tuple(seeds),
            min_vote_count=POPULAR_MIN_VOTES,
            limit=n,
        ))
        candidates = []
        for item in items:
            genre = next((g for g in item.genre_ids if g in seeds), seeds[0] if seeds else None)
            score = similarity_score(item, profile) * 0.9
            candidates.append(ContentCandidate(item, POPULAR, clamp(score), _genre_name(genre)))
        return candidates

    async def _person_based(
        self,
        profile: UserTasteProfile,
        content_type: str,
        n: int,
        dimension: str,
        strategy: str,
        bonus: float,
    ) -> list[ContentCandidate]:
        top = profile.top_affinities(dimension, TOP_ENTITIES_PER_STRATEGY, min_likes=1)
        if not top:
            return []
        min_rating = max(profile.preferences.avg_rating_liked - 1, 5.5)
        per_person = max(PERSON_BASED_PER_PERSON, math.ceil(n / len(top)))

        def query(person_id: int) -> DiscoverQuery:
            if dimension == ACTOR:
                return DiscoverQuery(content_type=content_type, cast_id=person_id,
                                     min_vote_average=min_rating, limit=per_person)
            return DiscoverQuery(content_type=content_type, crew_id=person_id,
                                 min_vote_average=min_rating, limit=per_person)

        async def for_person(aff, score):
            return aff, score, await self.catalog.discover(query(aff.id))

        calls = [lambda aff=aff, score=score: for_person(aff, score) for aff, score in top]
        candidates = []
        for aff, score, items in await gather_entities(strategy, calls):
            for item in items:
                candidates.append(ContentCandidate(
                    item, strategy, clamp(similarity_score(item, profile) * (score + bonus)), aff.name
                ))
        return candidates

    async def actor_based(self, profile: UserTasteProfile, content_type: str, n: int) -> list[ContentCandidate]:
        return await self._person_based(profile, content_type, n, ACTOR, ACTOR_BASED, 0.2)

    async def director_based(self, profile: UserTasteProfile, content_type: str, n: int) -> list[ContentCandidate]:
        return await self._person_based(profile, content_type, n, DIRECTOR, DIRECTOR_BASED, 0.3)

    async def mood_based(self, profile: UserTasteProfile, content_type: str, n: int) -> list[ContentCandidate]:
        mood = current_mood(profile)
        if mood is None:
            return []
        genres = MOOD_CLUSTERS[mood]
        items = await self.catalog.discover(DiscoverQuery(
            content_type=content_type,
            genre_ids=genres,
            min_vote_average=MOOD_MIN_RATING,
            min_vote_count=100,
            limit=n,
        ))
        return [
            ContentCandidate(item, MOOD_BASED, similarity_score(item, profile, mood_genres=genres), mood)
            for item in items
        ]

    async def hidden_gem(self, profile: UserTasteProfile, content_type: str, n: int) -> list[ContentCandidate]:
        top = [aff for aff, _ in profile.top_affinities(GENRE, 2, min_likes=1)]
        items = await self.catalog.discover(DiscoverQuery(
            content_type=content_type,
            genre_ids=tuple(aff.id for aff in top),
            min_vote_average=HIDDEN_GEM_MIN_RATING,
            min_vote_count=HIDDEN_GEM_MIN_VOTES,
            max_vote_count=HIDDEN_GEM_MAX_VOTES,
            sort_by=SORT_VOTE_AVERAGE,
            limit=n,
        ))
        top_ids = [aff.id for aff in top]
        candidates = []
        for item in items:
            genre = next((g for g in item.genre_ids if g in top_ids), None)
            candidates.append(ContentCandidate(item, HIDDEN_GEM, similarity_score(item, profile), _genre_name(genre)))
        return candidates

    async def exploration(self, profile: UserTasteProfile, content_type: str, n: int) -> list[ContentCandidate]:
        fresh = underexplored_genres(profile, content_type)
        if not fresh:
            return []
        top = profile.top_affinities(GENRE, 1, min_likes=1)
        anchor = top[0][0].id if top else None
        per_genre = max(STRATEGY_MIN_FETCH, math.ceil(n / len(fresh)))

        async def for_genre(genre_id: int):
            genre_ids = (genre_id, anchor) if anchor is not None else (genre_id,)
            items = await self.catalog.discover(DiscoverQuery(
                content_type=content_type,
                genre_ids=genre_ids,
                match_all_genres=True,
                min_vote_average=EXPLORATION_MIN_RATING,
                min_vote_count=200,
                limit=per_genre,
            ))
            return genre_id, items

        calls = [lambda g=g: for_genre(g) for g in fresh]
        candidates = []
        for genre_id, items in await gather_entities(EXPLORATION, calls):
            for item in items:
                candidates.append(ContentCandidate(
                    item, EXPLORATION, similarity_score(item, profile, exploration=True), _genre_name(genre_id)
                ))
        return candidates

    async def more_like_this(
        self,
        profile: UserTasteProfile,
        content_id: int,
        content_type: str,
        n: int,
    ) -> list[ContentCandidate]:
        """Items related to one title the user is looking at, scored against their profile."""
        anchor = await self.catalog.details(content_id, content_type)
        items = await self.catalog.similar(content_id, content_type, limit=n)
        title = anchor.title if anchor else ""
        return [
            ContentCandidate(item, MORE_LIKE_THIS, similarity_score(item, profile), title)
            for item in items
            if item.content_id != content_id
        ]
