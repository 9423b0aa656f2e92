"""
Collaborative recommender: candidates from population-level aggregates.

Reads only the precomputed tables in aggregates.py (plus the catalog's
own trending list). The caller's profile is used for nothing but its top
genres, which pick the fan bucket to read from.
"""
import asyncio
import logging

from .aggregates import AggregateStore, ContentPopularity
from .candidates import (
    COLLABORATIVE_STRATEGIES,
    MOST_LIKED,
    POPULAR_AMONG_SIMILAR_FANS,
    TRENDING,
    ContentCandidate,
    clamp,
    gather_entities,
)
from .catalog import CatalogItem, ContentCatalog
from .confidence import Confidence
from .config import COLLAB_MIN_FAN_LIKES, FAN_BUCKET_TOP_GENRES, GENRE_NAMES
from .content_based import fetch_count, preferred_content_type
from .profile import GENRE, UserTasteProfile

logger = logging.getLogger(__name__)


def popularity_item(popularity: ContentPopularity) -> CatalogItem:
    """Catalog view of an aggregate row, from the snapshot stored with the swipes."""
    return CatalogItem(
        content_id=popularity.content.content_id,
        content_type=popularity.content.content_type,
        title=popularity.title,
        poster_path=popularity.poster_path,
        vote_average=popularity.vote_average,
        release_year=popularity.release_year,
        genre_ids=popularity.genre_ids,
    )


class CollaborativeRecommender:

    def __init__(self, aggregates: AggregateStore, catalog: ContentCatalog):
        self.aggregates = aggregates
        self.catalog = catalog

    @staticmethod
    def strategies_for(confidence: Confidence) -> tuple[str, ...]:
        # Too little signal to pick a fan bucket at low confidence
        if confidence is Confidence.LOW:
            return ()
        return COLLABORATIVE_STRATEGIES

    def producers(self, profile: UserTasteProfile, confidence: Confidence, limit: int) -> dict:
        content_type = preferred_content_type(profile)
        producers = {}
        for name in self.strategies_for(confidence):
            n = fetch_count(name, limit, confidence)
            if name == TRENDING:
                producers[name] = lambda n=n: self.trending(content_type, n)
            elif name == POPULAR_AMONG_SIMILAR_FANS:
                producers[name] = lambda n=n: self.popular_among_similar_fans(profile, n)
            elif name == MOST_LIKED:
                producers[name] = lambda n=n: self.most_liked(n)
        return producers

    async def trending(self, content_type: str, n: int) -> list[ContentCandidate]:
        """Catalog-wide trending titles merged with what swipers liked this week."""
        async def from_catalog():
            items = await self.catalog.trending(content_type, "week", limit=n)
            return [
                ContentCandidate(
                    item, TRENDING,
                    clamp(0.5 * (1 - i / len(items)) + 0.5 * item.vote_average / 10),
                )
                for i, item in enumerate(items)
            ]

        async def from_swipes():
            rows = await asyncio.to_thread(self.aggregates.recently_liked, n)
            return [
                ContentCandidate(
                    popularity_item(p), TRENDING,
                    clamp(0.5 * min(p.recent_likes / 10, 1.0) + 0.3 * p.like_ratio + 0.2 * p.vote_average / 10),
                )
                for p in rows
                if p.content.content_type == content_type
            ]

        results = await gather_entities(TRENDING, [from_catalog, from_swipes])
        return [candidate for batch in results for candidate in batch]

    async def popular_among_similar_fans(self, profile: UserTasteProfile, n: int) -> list[ContentCandidate]:
        top = profile.top_affinities(GENRE, FAN_BUCKET_TOP_GENRES, min_likes=1)
        if not top:
            return []

        async def for_genre(aff, score):
            rows = await asyncio.to_thread(self.aggregates.top_for_genre, aff.id, n, COLLAB_MIN_FAN_LIKES)
            return aff, score, rows

        calls = [lambda aff=aff, score=score: for_genre(aff, score) for aff, score in top]
        candidates = []
        for aff, score, rows in await gather_entities(POPULAR_AMONG_SIMILAR_FANS, calls):
            name = aff.name or GENRE_NAMES.get(aff.id, "")
            for stats in rows:
                p = stats.popularity
                value = (
                    0.3 * score
                    + 0.2 * min(p.total_likes / 50, 1.0)
                    + 0.3 * min(stats.fan_likes / 10, 1.0)
                    + 0.2 * p.vote_average / 10
                )
                candidates.append(ContentCandidate(popularity_item(p), POPULAR_AMONG_SIMILAR_FANS, clamp(value), name))
        return candidates

    async def most_liked(self, n: int) -> list[ContentCandidate]:
        rows = await asyncio.to_thread(self.aggregates.most_liked, n)
        return [
            ContentCandidate(
                popularity_item(p), MOST_LIKED,
                clamp(0.5 * p.like_ratio + 0.3 * min(p.total_likes / 50, 1.0) + 0.2 * p.vote_average / 10),
            )
            for p in rows
        ]
