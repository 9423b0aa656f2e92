"""Candidate types shared by the strategies and the blender, plus the fan-out helpers."""
import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass

from .catalog import CatalogItem
from .errors import CatalogError, ProfileStoreError

logger = logging.getLogger(__name__)

# Failures that make one strategy empty instead of failing the request
STRATEGY_ERRORS = (CatalogError, ProfileStoreError)

# Content-based strategies
SIMILAR_TO_LIKED = "similar_to_liked"
GENRE_BASED = "genre_based"
POPULAR = "popular"
ACTOR_BASED = "actor_based"
DIRECTOR_BASED = "director_based"
MOOD_BASED = "mood_based"
HIDDEN_GEM = "hidden_gem"
EXPLORATION = "exploration"
MORE_LIKE_THIS = "more_like_this"

# Collaborative strategies
TRENDING = "trending"
POPULAR_AMONG_SIMILAR_FANS = "popular_among_similar_fans"
MOST_LIKED = "most_liked"

CONTENT_STRATEGIES = (
    SIMILAR_TO_LIKED,
    GENRE_BASED,
    POPULAR,
    ACTOR_BASED,
    DIRECTOR_BASED,
    MOOD_BASED,
    HIDDEN_GEM,
    EXPLORATION,
)
COLLABORATIVE_STRATEGIES = (TRENDING, POPULAR_AMONG_SIMILAR_FANS, MOST_LIKED)

# Fixed precedence; the blender walks outcomes in this order
STRATEGY_ORDER = CONTENT_STRATEGIES + COLLABORATIVE_STRATEGIES + (MORE_LIKE_THIS,)
COLLABORATIVE = frozenset(COLLABORATIVE_STRATEGIES)


@dataclass(frozen=True)
class ContentCandidate:
    """
    A catalog item proposed by one strategy.

    score is strategy-local in [0, 1]. context names what matched (a
    genre, person, anchor title or mood) and feeds the explanation.
    """
    item: CatalogItem
    strategy: str
    score: float
    context: str = ""

    @property
    def content_id(self) -> int:
        return self.item.content_id


@dataclass(frozen=True)
class StrategyOutcome:
    name: str
    candidates: tuple[ContentCandidate, ...] = ()
    failed: bool = False


def clamp(value: float) -> float:
    return min(1.0, max(0.0, value))


def filter_candidates(candidates: Iterable[ContentCandidate], exclude: set[int]) -> tuple[ContentCandidate, ...]:
    """Drop excluded ids and keep the best-scoring candidate per id, preserving first-seen order."""
    kept: dict[int, ContentCandidate] = {}
    for candidate in candidates:
        if candidate.content_id in exclude:
            continue
        previous = kept.get(candidate.content_id)
        if previous is None or candidate.score > previous.score:
            kept[candidate.content_id] = candidate
    return tuple(kept.values())


async def run_strategy(
    name: str,
    produce: Callable[[], Awaitable[list[ContentCandidate]]],
    exclude: set[int],
) -> StrategyOutcome:
    """Run one strategy. Catalog or aggregate read failures make it an empty, failed outcome."""
    try:
        candidates = await produce()
    except STRATEGY_ERRORS as e:
        logger.warning(f"Strategy {name} failed: {e}")
        return StrategyOutcome(name, failed=True)
    outcome = StrategyOutcome(name, filter_candidates(candidates, exclude))
    logger.debug(f"Strategy {name} produced {len(outcome.candidates)} candidates")
    return outcome


async def gather_entities(label: str, calls: list[Callable[[], Awaitable]]) -> list:
    """
    Run per-entity catalog calls concurrently.

    Individual failures are dropped; if every call failed the whole
    strategy is reported as failed.
    """
    if not calls:
        return []
    results = await asyncio.gather(*(call() for call in calls), return_exceptions=True)
    ok = []
    failures = 0
    for result in results:
        if isinstance(result, STRATEGY_ERRORS):
            failures += 1
            logger.debug(f"{label}: {result}")
        elif isinstance(result, BaseException):
            raise result
        else:
            ok.append(result)
    if failures == len(results):
        raise CatalogError(f"All {failures} catalog calls for {label} failed")
    return ok
