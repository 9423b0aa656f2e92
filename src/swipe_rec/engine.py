"""
RecommendationEngine: the entry points the client application calls.

Wires the taste profile store, both recommenders, the blender and the
cache together. Only this layer turns failures into degraded results;
the components underneath raise.
"""
import asyncio
import logging
import math
from collections.abc import Callable, Iterable
from datetime import datetime

from .aggregates import AggregateStore, InMemoryAggregateStore, SwipeEvent, rebuild_aggregates
from .blender import RecommendationResult, blend, interleave
from .cache import CacheKey, RecommendationCache
from .candidates import GENRE_BASED, MORE_LIKE_THIS, SIMILAR_TO_LIKED, TRENDING, run_strategy
from .catalog import BoundedCatalog, ContentCatalog
from .collaborative import CollaborativeRecommender
from .confidence import Confidence, classify
from .config import (
    CATALOG_CALL_TIMEOUT,
    DEFAULT_CONTENT_TYPE,
    DEFAULT_LIMIT,
    MAX_CONCURRENT_CATALOG_CALLS,
    RECOMMENDATION_MAX_PAGES,
    STRATEGY_OVERFETCH,
    SWIPE_DECK_DISCOVERY_SHARE,
    SWIPE_DECK_MIN_LIKES,
    SWIPE_DECK_SIZE,
    TASTE_SUMMARY_TOP_N,
)
from .content_based import ContentBasedRecommender, preferred_content_type
from .errors import CatalogError, InvalidSignalError, ProfileStoreError
from .profile import (
    ACTOR,
    DIRECTOR,
    GENRE,
    UserTasteProfile,
    affinity_to_dict,
    build_delta,
    create_empty_taste_profile,
    make_seed_signal,
)
from .signals import CONTENT_TYPE_ALIASES, SOURCE_SWIPE, _utcnow, ingest
from .store import TasteProfileStore, UpdateOutcome
from .utils import BackgroundTasks

logger = logging.getLogger(__name__)


class RecommendationEngine:

    def __init__(
        self,
        store: TasteProfileStore,
        catalog: ContentCatalog,
        aggregates: AggregateStore | None = None,
        cache: RecommendationCache | None = None,
        clock: Callable[[], datetime] = _utcnow,
        max_concurrent: int = MAX_CONCURRENT_CATALOG_CALLS,
        call_timeout: float = CATALOG_CALL_TIMEOUT,
    ):
        self.store = store
        self.catalog = catalog
        self.aggregates = aggregates if aggregates is not None else InMemoryAggregateStore()
        self.cache = cache if cache is not None else RecommendationCache()
        self.clock = clock
        self.max_concurrent = max_concurrent
        self.call_timeout = call_timeout
        self.background = BackgroundTasks("swipe-events")
        self.store.add_invalidation_listener(self.cache.invalidate)

    def _bounded(self) -> BoundedCatalog:
        """Fresh per-request catalog view carrying the request's concurrency budget."""
        return BoundedCatalog(self.catalog, self.max_concurrent, self.call_timeout)

    async def _load_profile(self, user_id: str) -> UserTasteProfile:
        try:
            return await self.store.get(user_id)
        except ProfileStoreError as e:
            logger.warning(f"Profile read for {user_id} failed, using an empty profile: {e}")
            return create_empty_taste_profile(user_id)

    async def ingest_swipe(self, user_id: str, raw: dict) -> UpdateOutcome:
        """
        Normalize one raw interaction and fold it into the user's profile.

        Raises InvalidSignalError for malformed input; nothing is applied
        in that case. The swipe is appended to the aggregate event log in
        the background.
        """
        payload = dict(raw) if isinstance(raw, dict) else raw
        if isinstance(payload, dict):
            claimed = payload.get("userId", payload.get("user_id"))
            if claimed is not None and str(claimed).strip() != user_id:
                raise InvalidSignalError("Signal userId does not match the caller", field="userId")
            payload["userId"] = user_id
        signal = ingest(payload)

        outcome = await self.store.update(user_id, lambda profile: build_delta(profile, signal))
        if outcome.applied and signal.source == SOURCE_SWIPE:
            event = SwipeEvent.from_signal(signal)
            self.background.spawn(asyncio.to_thread(self.aggregates.record_event, event), label=f"record {user_id}")
        return outcome

    async def seed_from_onboarding(
        self,
        user_id: str,
        liked_content_ids: Iterable[int],
        content_type: str = DEFAULT_CONTENT_TYPE,
    ) -> list[UpdateOutcome]:
        """
        Apply each onboarding pick once as a high-engagement like.

        Metadata is fetched with the request's concurrency limit; a pick
        whose details cannot be fetched is still seeded, without features.
        Seeding the same ids again changes nothing.
        """
        content_type = CONTENT_TYPE_ALIASES.get(content_type, DEFAULT_CONTENT_TYPE)
        ids = list(dict.fromkeys(int(i) for i in liked_content_ids))
        if not ids:
            return []

        catalog = self._bounded()
        details = await asyncio.gather(
            *(catalog.details(content_id, content_type) for content_id in ids),
            return_exceptions=True,
        )

        outcomes = []
        for content_id, item in zip(ids, details):
            if isinstance(item, CatalogError):
                logger.warning(f"No metadata for onboarding pick {content_id}: {item}")
                item = None
            elif isinstance(item, BaseException):
                raise item
            signal = make_seed_signal(
                user_id,
                content_id,
                content_type,
                features=item.to_features() if item else None,
                snapshot=item.to_snapshot() if item else None,
                occurred_at=self.clock(),
            )
            outcomes.append(await self.store.update(user_id, lambda profile, s=signal: build_delta(profile, s)))

        applied = sum(1 for o in outcomes if o.applied)
        logger.info(f"Seeded {applied}/{len(ids)} onboarding picks for {user_id}")
        return outcomes

    async def get_recommendations(
        self,
        user_id: str,
        limit: int = DEFAULT_LIMIT,
        page: int = 1,
        exclude_ids: Iterable[int] | None = None,
    ) -> RecommendationResult:
        if limit < 1 or page < 1:
            raise ValueError(f"limit and page must be positive (got limit={limit}, page={page})")
        exclude = frozenset(exclude_ids or ())
        key = CacheKey.build(user_id, limit, page, exclude)
        return await self.cache.get_or_compute(key, lambda: self._compute(key, exclude))

    async def _compute(self, key: CacheKey, exclude: frozenset[int]) -> RecommendationResult:
        user_id, limit, page = key.user_id, key.limit, key.page
        profile = await self._load_profile(user_id)
        confidence = classify(profile)
        # Every page of this limit is cut from one ranking: strategies fetch for
        # a fixed number of pages and the genre cap applies per page
        depth = limit * RECOMMENDATION_MAX_PAGES

        catalog = self._bounded()
        content = ContentBasedRecommender(catalog)
        collaborative = CollaborativeRecommender(self.aggregates, catalog)
        producers = {
            **content.producers(profile, confidence, depth),
            **collaborative.producers(profile, confidence, depth),
        }
        excluded = profile.interacted_ids | exclude
        outcomes = await asyncio.gather(
            *(run_strategy(name, produce, excluded) for name, produce in producers.items())
        )

        if outcomes and all(o.failed for o in outcomes):
            logger.warning(f"All {len(outcomes)} strategies failed for {user_id}, serving fallback")
            stale = self.cache.peek_stale(key)
            if stale is not None:
                return stale
            return RecommendationResult((), Confidence.LOW, self.clock(), stale=True)

        failed = [o.name for o in outcomes if o.failed]
        if failed:
            logger.info(f"Strategies failed for {user_id}: {', '.join(failed)}")

        recommendations = blend(
            {o.name: o.candidates for o in outcomes},
            profile,
            confidence,
            limit * page,
            exclude,
            window=limit,
        )
        logger.debug(
            f"Blended {len(recommendations)} recommendations for {user_id} "
            f"(confidence={confidence.value}, calls={catalog.calls})"
        )
        return RecommendationResult(recommendations, confidence, self.clock()).page(limit, page)

    async def more_like_this(
        self,
        user_id: str,
        content_id: int,
        content_type: str = DEFAULT_CONTENT_TYPE,
        limit: int = 10,
    ) -> RecommendationResult:
        """Titles related to one title, ranked against the user's profile. Not cached."""
        profile = await self._load_profile(user_id)
        confidence = classify(profile)
        content = ContentBasedRecommender(self._bounded())
        outcome = await run_strategy(
            MORE_LIKE_THIS,
            lambda: content.more_like_this(profile, content_id, content_type, limit * 2),
            profile.interacted_ids | {content_id},
        )
        recommendations = blend({MORE_LIKE_THIS: outcome.candidates}, profile, confidence, limit)
        return RecommendationResult(recommendations, confidence, self.clock(), stale=outcome.failed)

    async def swipe_deck(
        self,
        user_id: str,
        limit: int = SWIPE_DECK_SIZE,
        exclude_ids: Iterable[int] | None = None,
    ) -> RecommendationResult:
        """
        Cards for the swipe screen.

        Users with a few likes get similar-to-liked and genre-based picks
        with trending titles dealt in at SWIPE_DECK_DISCOVERY_SHARE; newer
        users get trending titles only. Not cached: every swipe changes
        the deck.
        """
        if limit < 1:
            raise ValueError(f"limit must be positive (got {limit})")
        profile = await self._load_profile(user_id)
        confidence = classify(profile)
        excluded = profile.interacted_ids | set(exclude_ids or ())
        content_type = preferred_content_type(profile)

        catalog = self._bounded()
        content = ContentBasedRecommender(catalog)
        collaborative = CollaborativeRecommender(self.aggregates, catalog)

        share = min(SWIPE_DECK_DISCOVERY_SHARE, 1.0)
        if profile.behavior.total_likes < SWIPE_DECK_MIN_LIKES:
            share = 1.0
        personal_n = limit - math.floor(limit * share)
        # Trending is not profile-aware, so ask for enough to survive the exclusions
        discovery_n = math.ceil(max(limit - personal_n, 1) * STRATEGY_OVERFETCH) + len(excluded)

        producers = {TRENDING: lambda: collaborative.trending(content_type, discovery_n)}
        if personal_n:
            per_strategy = math.ceil(personal_n * 0.5 * STRATEGY_OVERFETCH)
            producers[SIMILAR_TO_LIKED] = lambda: content.similar_to_liked(profile, per_strategy)
            producers[GENRE_BASED] = lambda: content.genre_based(profile, content_type, per_strategy)
        outcomes = await asyncio.gather(
            *(run_strategy(name, produce, excluded) for name, produce in producers.items())
        )
        by_name = {o.name: o for o in outcomes}

        personal = [
            c for name in (SIMILAR_TO_LIKED, GENRE_BASED) if name in by_name for c in by_name[name].candidates
        ]
        deck = interleave(personal, by_name[TRENDING].candidates, share, limit)
        stale = all(o.failed for o in outcomes)
        if stale:
            logger.warning(f"Swipe deck for {user_id} has no working source")
        logger.debug(f"Dealt {len(deck)} cards for {user_id} ({len(personal)} personal candidates)")
        return RecommendationResult(deck, confidence, self.clock(), stale=stale)

    async def get_taste_summary(self, user_id: str) -> dict:
        """Live view of the profile; never cached."""
        profile = await self._load_profile(user_id)

        def top(dimension: str) -> list[dict]:
            return [affinity_to_dict(aff, score) for aff, score in profile.top_affinities(dimension, TASTE_SUMMARY_TOP_N)]

        behavior = profile.behavior
        prefs = profile.preferences
        return {
            'user_id': user_id,
            'top_genres': top(GENRE),
            'top_actors': top(ACTOR),
            'top_directors': top(DIRECTOR),
            'confidence': classify(profile).value,
            'total_swipes': behavior.total_swipes,
            'total_likes': behavior.total_likes,
            'total_dislikes': behavior.total_dislikes,
            'quick_decisions': behavior.quick_decisions,
            'current_streak': behavior.current_streak,
            'longest_streak': behavior.longest_streak,
            'avg_rating_liked': round(prefs.avg_rating_liked, 2),
            'preferred_decades': prefs.preferred_decades,
            'preferred_runtime_minutes': prefs.preferred_runtime_minutes,
        }

    def invalidate_cache(self, user_id: str) -> int:
        return self.cache.invalidate(user_id)

    async def reset_profile(self, user_id: str) -> bool:
        """Explicit account data reset: profile, cached lists and logged swipes."""
        deleted = await self.store.reset(user_id)
        removed = await asyncio.to_thread(self.aggregates.delete_user_events, user_id)
        logger.info(f"Removed {removed} logged swipes for {user_id}")
        return deleted

    async def rebuild_aggregates(self, progress=None) -> tuple[int, int]:
        await self.background.drain()
        return await asyncio.to_thread(rebuild_aggregates, self.aggregates, self.clock(), progress)

    async def close(self) -> None:
        await self.background.drain()
        await self.catalog.close()
        self.store.close()
