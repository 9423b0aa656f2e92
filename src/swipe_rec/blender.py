"""
Blender/ranker: merge strategy outputs into one ranked, explained list.

blend() is a pure function of its inputs. Identical candidates, profile,
confidence and limit always give the same list in the same order, which
the recommendation cache depends on.
"""
import logging
import math
from collections import defaultdict
from collections.abc import Iterable, Mapping
from dataclasses import asdict, dataclass
from datetime import datetime

from .candidates import (
    ACTOR_BASED,
    COLLABORATIVE,
    DIRECTOR_BASED,
    EXPLORATION,
    GENRE_BASED,
    HIDDEN_GEM,
    MOOD_BASED,
    MORE_LIKE_THIS,
    MOST_LIKED,
    POPULAR,
    POPULAR_AMONG_SIMILAR_FANS,
    SIMILAR_TO_LIKED,
    STRATEGY_ORDER,
    TRENDING,
    ContentCandidate,
    clamp,
)
from .confidence import Confidence
from .config import COLLAB_WEIGHTS, DIVERSITY_CAP_FRACTION, STRATEGY_BOOSTS
from .profile import UserTasteProfile

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Explanation:
    type: str
    text: str


@dataclass(frozen=True)
class Recommendation:
    content_id: int
    content_type: str
    title: str
    poster_path: str
    vote_average: float
    release_year: int | None
    genre_ids: tuple[int, ...]
    score: float
    explanation: Explanation
    strategy: str

    def to_dict(self) -> dict:
        data = asdict(self)
        data['genre_ids'] = list(self.genre_ids)
        return data


@dataclass(frozen=True)
class RecommendationResult:
    recommendations: tuple[Recommendation, ...]
    confidence: Confidence
    generated_at: datetime
    stale: bool = False  # served from an expired entry or an empty fallback

    def page(self, limit: int, page: int) -> "RecommendationResult":
        start = (page - 1) * limit
        return RecommendationResult(
            recommendations=self.recommendations[start:start + limit],
            confidence=self.confidence,
            generated_at=self.generated_at,
            stale=self.stale,
        )

    def to_dict(self) -> dict:
        return {
            'recommendations': [r.to_dict() for r in self.recommendations],
            'confidence': self.confidence.value,
            'generated_at': self.generated_at.isoformat(),
            'stale': self.stale,
        }


# strategy -> (explanation type, template with {context}, text when context is empty)
EXPLANATIONS = {
    SIMILAR_TO_LIKED: ("liked_similar", "Because you liked {context}", "Similar to titles you liked"),
    MORE_LIKE_THIS: ("liked_similar", "Similar to {context}", "Similar titles"),
    GENRE_BASED: ("genre_fans", "Because you like {context}", "Matches genres you like"),
    ACTOR_BASED: ("actor_match", "Because you like {context}", "Stars an actor you like"),
    DIRECTOR_BASED: ("director_match", "Because you like films by {context}", "From a director you like"),
    MOOD_BASED: ("mood_based", "Fits your {context} mood lately", "Fits your recent mood"),
    HIDDEN_GEM: ("hidden_gem", "A hidden gem for {context} fans", "A highly rated hidden gem"),
    EXPLORATION: ("exploration", "Something different: {context}", "Something different for you"),
    TRENDING: ("trending", "Trending now", "Trending now"),
    POPULAR_AMONG_SIMILAR_FANS: (
        "popular_among_similar_fans",
        "Popular with {context} fans like you",
        "Popular with people who share your taste",
    ),
    MOST_LIKED: ("most_liked", "Loved by the community", "Loved by the community"),
}


def explain(candidate: ContentCandidate) -> Explanation:
    if candidate.strategy == POPULAR:
        # Genre-seeded popular picks read as a genre match
        if candidate.context:
            return Explanation("genre_fans", f"Popular with {candidate.context} fans")
        return Explanation("popular", "Popular right now")
    kind, template, fallback = EXPLANATIONS.get(
        candidate.strategy, ("recommended", "Recommended for you", "Recommended for you")
    )
    if candidate.context:
        return Explanation(kind, template.format(context=candidate.context))
    return Explanation(kind, fallback)


def strategy_weight(strategy: str, confidence: Confidence) -> float:
    weight = STRATEGY_BOOSTS.get(strategy, 1.0)
    if strategy in COLLABORATIVE:
        weight *= COLLAB_WEIGHTS.get(confidence.value, 0.0)
    return weight


def _recommendation(score: float, candidate: ContentCandidate) -> Recommendation:
    item = candidate.item
    return Recommendation(
        content_id=item.content_id,
        content_type=item.content_type,
        title=item.title,
        poster_path=item.poster_path,
        vote_average=item.vote_average,
        release_year=item.release_year,
        genre_ids=item.genre_ids,
        score=round(score, 6),
        explanation=explain(candidate),
        strategy=candidate.strategy,
    )


def _strategy_rank(strategy: str) -> tuple[int, str]:
    if strategy in STRATEGY_ORDER:
        return STRATEGY_ORDER.index(strategy), strategy
    return len(STRATEGY_ORDER), strategy


def diversity_cap(limit: int) -> int:
    return max(1, math.ceil(limit * DIVERSITY_CAP_FRACTION))


def _fill_windows(scored: list, window: int, cap: int, limit: int) -> tuple[list, int]:
    """
    Cut score-ordered entries into consecutive windows of `window` items,
    each holding at most `cap` items per primary genre.

    Items over a window's quota roll over to the next window ahead of
    lower-scored items. The ranking ends at the first window that cannot
    be filled, so a longer ranking always starts with the shorter one.
    Returns the ranked entries and how many were left over.
    """
    ranked = []
    pending = scored
    while pending and len(ranked) < limit:
        per_genre: dict[int, int] = defaultdict(int)
        taken = []
        deferred = []
        for entry in pending:
            genre = entry[1].item.primary_genre
            if len(taken) >= window or (genre is not None and per_genre[genre] >= cap):
                deferred.append(entry)
                continue
            if genre is not None:
                per_genre[genre] += 1
            taken.append(entry)
        ranked.extend(taken)
        pending = deferred
        if len(taken) < window:
            break
    return ranked[:limit], len(pending)


def blend(
    candidates_by_strategy: Mapping[str, Iterable[ContentCandidate]],
    profile: UserTasteProfile,
    confidence: Confidence,
    limit: int,
    exclude_ids: Iterable[int] = (),
    window: int | None = None,
) -> tuple[Recommendation, ...]:
    """
    Merge, dedupe, filter, rank, diversify and explain candidates.

    Duplicates keep the highest strategy-local score; equal scores go to
    the strategy earlier in STRATEGY_ORDER. Final scores apply per-strategy
    boosts and the collaborative weight for this confidence tier. The
    per-primary-genre quota applies to every `window` consecutive items
    (default: the whole list), so paging through blends with the same
    window and growing limits yields one stable ranking. Items over the
    quota are skipped in score order so the list still fills up when
    alternates exist.
    """
    if limit <= 0:
        return ()
    window = window or limit

    excluded = profile.interacted_ids | set(exclude_ids)
    winners: dict[int, ContentCandidate] = {}

    for strategy in sorted(candidates_by_strategy, key=_strategy_rank):
        if strategy_weight(strategy, confidence) <= 0:
            continue
        for candidate in candidates_by_strategy[strategy]:
            if candidate.content_id in excluded:
                continue
            current = winners.get(candidate.content_id)
            if current is None or candidate.score > current.score:
                winners[candidate.content_id] = candidate

    scored = [
        (clamp(c.score * strategy_weight(c.strategy, confidence)), c)
        for c in winners.values()
    ]
    scored.sort(key=lambda x: (-x[0], -x[1].item.vote_average, x[1].content_id))

    cap = diversity_cap(window)
    ranked, skipped = _fill_windows(scored, window, cap, limit)
    results = [_recommendation(score, candidate) for score, candidate in ranked]

    if len(results) < limit and skipped:
        logger.debug(
            f"Blend returned {len(results)}/{limit} items; {skipped} skipped by the per-genre cap of {cap}"
        )
    return tuple(results)


def _ranked(candidates: Iterable[ContentCandidate]) -> list[ContentCandidate]:
    best: dict[int, ContentCandidate] = {}
    for candidate in candidates:
        current = best.get(candidate.content_id)
        if current is None or candidate.score > current.score:
            best[candidate.content_id] = candidate
    return sorted(best.values(), key=lambda c: (-c.score, -c.item.vote_average, c.content_id))


def interleave(
    primary: Iterable[ContentCandidate],
    secondary: Iterable[ContentCandidate],
    secondary_share: float,
    limit: int,
) -> tuple[Recommendation, ...]:
    """
    Deal two candidate pools into one deck.

    Each pool is ranked on its own. Secondary items are spread evenly so
    they make up about secondary_share of the deck; when one pool runs
    dry the other fills the rest. An id already dealt is never dealt again.
    """
    firsts = _ranked(primary)
    seconds = _ranked(secondary)
    deck = []
    dealt: set[int] = set()
    i = j = 0
    taken_secondary = 0
    while len(deck) < limit:
        while i < len(firsts) and firsts[i].content_id in dealt:
            i += 1
        while j < len(seconds) and seconds[j].content_id in dealt:
            j += 1
        if i >= len(firsts) and j >= len(seconds):
            break
        due = (len(deck) + 1) * secondary_share >= taken_secondary + 1
        if j < len(seconds) and (due or i >= len(firsts)):
            candidate = seconds[j]
            j += 1
            taken_secondary += 1
        else:
            candidate = firsts[i]
            i += 1
        dealt.add(candidate.content_id)
        deck.append(_recommendation(clamp(candidate.score), candidate))
    return tuple(deck)
