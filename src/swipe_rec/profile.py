import copy
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime

from .config import (
    AFFINITY_PRIOR_STRENGTH,
    DEFAULT_AVG_RATING_LIKED,
    DELIBERATE_VIEW_MS,
    GENRE_NAMES,
    PREFERRED_DECADES_MAX,
    RECENT_GENRES_CAPACITY,
    RECENT_IDS_CAPACITY,
)
from .signals import (
    ContentRef,
    ContentSnapshot,
    Engagement,
    LIKE,
    SOURCE_ONBOARDING,
    SignalFeatures,
    SwipeSignal,
)

logger = logging.getLogger(__name__)

GENRE = "genre"
ACTOR = "actor"
DIRECTOR = "director"
DIMENSIONS = (GENRE, ACTOR, DIRECTOR)


@dataclass
class AffinityScore:
    """Like/total counts for one genre, actor or director. The score is derived on read."""
    id: int
    name: str = ""
    like_count: int = 0
    total_count: int = 0

    def score(self, prior: float = 0.5, strength: float = AFFINITY_PRIOR_STRENGTH) -> float:
        """
        Bayesian-smoothed like ratio.

        score = (likes + k * prior) / (total + k), so dimensions with one or
        two observations stay near the user's overall like rate.
        """
        denominator = self.total_count + strength
        if denominator <= 0:
            return prior
        value = (self.like_count + strength * prior) / denominator
        return min(1.0, max(0.0, value))


@dataclass
class BehaviorStats:
    total_swipes: int = 0
    total_likes: int = 0
    total_dislikes: int = 0
    quick_decisions: int = 0
    current_streak: int = 0
    longest_streak: int = 0
    last_swipe_at: datetime | None = None


@dataclass
class ContentPreferences:
    genre_affinities: dict[int, AffinityScore] = field(default_factory=dict)
    actor_affinities: dict[int, AffinityScore] = field(default_factory=dict)
    director_affinities: dict[int, AffinityScore] = field(default_factory=dict)
    decade_likes: dict[int, int] = field(default_factory=dict)
    rating_sum_liked: float = 0.0
    rating_count_liked: int = 0
    runtime_sum_liked: int = 0
    runtime_count_liked: int = 0

    @property
    def avg_rating_liked(self) -> float:
        if self.rating_count_liked == 0:
            return DEFAULT_AVG_RATING_LIKED
        return self.rating_sum_liked / self.rating_count_liked

    @property
    def preferred_decades(self) -> list[int]:
        """Decades ranked by like frequency, most recent decade first on ties."""
        ranked = sorted(self.decade_likes.items(), key=lambda x: (-x[1], -x[0]))
        return [decade for decade, count in ranked[:PREFERRED_DECADES_MAX] if count > 0]

    @property
    def preferred_runtime_minutes(self) -> float | None:
        if self.runtime_count_liked == 0:
            return None
        return self.runtime_sum_liked / self.runtime_count_liked

    def affinities(self, dimension: str) -> dict[int, AffinityScore]:
        if dimension == GENRE:
            return self.genre_affinities
        if dimension == ACTOR:
            return self.actor_affinities
        if dimension == DIRECTOR:
            return self.director_affinities
        raise ValueError(f"Unknown affinity dimension: {dimension}")


@dataclass
class UserTasteProfile:
    """Durable per-user taste model. Owned by the taste profile store."""
    user_id: str
    behavior: BehaviorStats = field(default_factory=BehaviorStats)
    preferences: ContentPreferences = field(default_factory=ContentPreferences)
    recent_liked: list[ContentRef] = field(default_factory=list)     # newest first
    recent_disliked: list[ContentRef] = field(default_factory=list)  # newest first
    recent_liked_genres: list[int] = field(default_factory=list)     # primary genre per like, newest first
    updated_at: datetime | None = None

    @property
    def recent_liked_ids(self) -> list[int]:
        return [ref.content_id for ref in self.recent_liked]

    @property
    def recent_disliked_ids(self) -> list[int]:
        return [ref.content_id for ref in self.recent_disliked]

    @property
    def interacted_ids(self) -> set[int]:
        return set(self.recent_liked_ids) | set(self.recent_disliked_ids)

    @property
    def global_prior(self) -> float:
        """Overall like rate, Laplace-smoothed so it never reaches 0 or 1."""
        return (self.behavior.total_likes + 1) / (self.behavior.total_swipes + 2)

    def affinity_score(self, affinity: AffinityScore) -> float:
        return affinity.score(self.global_prior)

    def top_affinities(
        self,
        dimension: str,
        n: int,
        min_likes: int = 0,
    ) -> list[tuple[AffinityScore, float]]:
        """
        Top-n affinities of a dimension sorted by score desc, then
        total_count desc, then id asc.
        """
        prior = self.global_prior
        scored = [
            (aff, aff.score(prior))
            for aff in self.preferences.affinities(dimension).values()
            if aff.like_count >= min_likes
        ]
        scored.sort(key=lambda x: (-x[1], -x[0].total_count, x[0].id))
        return scored[:n]


def create_empty_taste_profile(user_id: str) -> UserTasteProfile:
    return UserTasteProfile(user_id=user_id)


@dataclass(frozen=True)
class AffinityIncrement:
    dimension: str
    entity_id: int
    name: str
    like_inc: int
    total_inc: int


@dataclass(frozen=True)
class ProfileDelta:
    """
    Commutative increments derived from one signal.

    Stores apply a delta with atomic add-operations, so concurrent deltas
    for the same user never lose updates.
    """
    user_id: str
    content: ContentRef
    liked: bool
    occurred_at: datetime
    affinity_increments: tuple[AffinityIncrement, ...] = ()
    decade: int | None = None
    rating_liked: float | None = None
    runtime_liked: int | None = None
    primary_genre: int | None = None
    quick_decision: bool = False
    seed: bool = False  # Skip when content is already in the liked ring buffer


def build_delta(profile: UserTasteProfile, signal: SwipeSignal) -> ProfileDelta | None:
    """
    Fold a signal into increments. Returns None for a seed whose content is
    already in the liked ring buffer, so re-seeding never double counts.
    """
    seed = signal.source == SOURCE_ONBOARDING
    if seed and signal.content_id in profile.recent_liked_ids:
        logger.debug(f"Skipping duplicate seed {signal.content_id} for {profile.user_id}")
        return None

    liked = signal.is_like
    like_inc = 1 if liked else 0
    features = signal.features

    increments = [
        AffinityIncrement(GENRE, genre_id, GENRE_NAMES.get(genre_id, ""), like_inc, 1)
        for genre_id in features.genre_ids
    ]
    increments.extend(
        AffinityIncrement(ACTOR, actor.id, actor.name, like_inc, 1)
        for actor in features.actors
    )
    if features.director is not None:
        increments.append(
            AffinityIncrement(DIRECTOR, features.director.id, features.director.name, like_inc, 1)
        )

    snapshot = signal.content_snapshot
    decade = None
    rating = None
    runtime = None
    if liked:
        if snapshot.release_year:
            decade = (snapshot.release_year // 10) * 10
        if snapshot.vote_average > 0:
            rating = snapshot.vote_average
        runtime = features.runtime

    return ProfileDelta(
        user_id=profile.user_id,
        content=signal.ref,
        liked=liked,
        occurred_at=signal.occurred_at,
        affinity_increments=tuple(increments),
        decade=decade,
        rating_liked=rating,
        runtime_liked=runtime,
        primary_genre=features.primary_genre if liked else None,
        quick_decision=not signal.is_strong,
        seed=seed,
    )


def _push_front(items: list, value, capacity: int, dedupe: bool = True) -> list:
    """Ring buffer push: newest first, oldest evicted beyond capacity."""
    if dedupe:
        items = [item for item in items if item != value]
    return ([value] + items)[:capacity]


def advance_streak(behavior: BehaviorStats, occurred_at: datetime) -> tuple[int, int]:
    """Consecutive calendar days with at least one swipe."""
    last = behavior.last_swipe_at
    if last is None:
        current = 1
    else:
        gap = (occurred_at.date() - last.date()).days
        if gap == 1:
            current = behavior.current_streak + 1
        elif gap <= 0:
            current = max(behavior.current_streak, 1)
        else:
            current = 1
    return current, max(behavior.longest_streak, current)


def apply_delta(
    profile: UserTasteProfile,
    delta: ProfileDelta,
    recent_capacity: int = RECENT_IDS_CAPACITY,
) -> UserTasteProfile:
    """Pure: return a new profile with the delta applied."""
    updated = copy.deepcopy(profile)
    behavior = updated.behavior
    prefs = updated.preferences

    for inc in delta.affinity_increments:
        affinities = prefs.affinities(inc.dimension)
        current = affinities.get(inc.entity_id)
        if current is None:
            current = affinities[inc.entity_id] = AffinityScore(id=inc.entity_id, name=inc.name)
        elif inc.name and not current.name:
            current.name = inc.name
        current.like_count += inc.like_inc
        current.total_count += inc.total_inc

    behavior.total_swipes += 1
    if delta.liked:
        behavior.total_likes += 1
        updated.recent_liked = _push_front(updated.recent_liked, delta.content, recent_capacity)
        if delta.primary_genre is not None:
            updated.recent_liked_genres = _push_front(
                updated.recent_liked_genres, delta.primary_genre, RECENT_GENRES_CAPACITY, dedupe=False
            )
    else:
        behavior.total_dislikes += 1
        updated.recent_disliked = _push_front(updated.recent_disliked, delta.content, recent_capacity)
    if delta.quick_decision:
        behavior.quick_decisions += 1

    behavior.current_streak, behavior.longest_streak = advance_streak(behavior, delta.occurred_at)
    if behavior.last_swipe_at is None or delta.occurred_at > behavior.last_swipe_at:
        behavior.last_swipe_at = delta.occurred_at

    if delta.decade is not None:
        prefs.decade_likes[delta.decade] = prefs.decade_likes.get(delta.decade, 0) + 1
    if delta.rating_liked is not None:
        prefs.rating_sum_liked += delta.rating_liked
        prefs.rating_count_liked += 1
    if delta.runtime_liked is not None:
        prefs.runtime_sum_liked += delta.runtime_liked
        prefs.runtime_count_liked += 1

    updated.updated_at = max(delta.occurred_at, profile.updated_at) if profile.updated_at else delta.occurred_at
    return updated


def apply_signal(profile: UserTasteProfile, signal: SwipeSignal) -> UserTasteProfile:
    """Affinity updater: fold one signal into the profile (pure)."""
    delta = build_delta(profile, signal)
    if delta is None:
        return profile
    return apply_delta(profile, delta)


def make_seed_signal(
    user_id: str,
    content_id: int,
    content_type: str = "movie",
    features: SignalFeatures | None = None,
    snapshot: ContentSnapshot | None = None,
    occurred_at: datetime | None = None,
) -> SwipeSignal:
    """Synthetic high-engagement like used for onboarding picks."""
    kwargs = {}
    if occurred_at is not None:
        kwargs['occurred_at'] = occurred_at
    return SwipeSignal(
        user_id=user_id,
        content_id=content_id,
        direction=LIKE,
        content_type=content_type,
        features=features or SignalFeatures(),
        content_snapshot=snapshot or ContentSnapshot(),
        engagement=Engagement(view_duration_ms=DELIBERATE_VIEW_MS + 1, card_expanded=True),
        source=SOURCE_ONBOARDING,
        **kwargs,
    )


def seed_profile(profile: UserTasteProfile, seeds: Iterable[SwipeSignal]) -> UserTasteProfile:
    """Apply each onboarding seed once; ids already liked are skipped."""
    for signal in seeds:
        profile = apply_signal(profile, signal)
    return profile


def affinity_to_dict(affinity: AffinityScore, score: float) -> dict:
    return {
        'id': affinity.id,
        'name': affinity.name,
        'like_count': affinity.like_count,
        'total_count': affinity.total_count,
        'score': score,
    }
