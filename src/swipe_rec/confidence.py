from enum import Enum

from .config import CONFIDENCE_HIGH_MIN_SWIPES, CONFIDENCE_MEDIUM_MIN_SWIPES
from .profile import UserTasteProfile


class Confidence(Enum):
    """How far a profile can be trusted to personalize."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _RANKS[self]


_RANKS = {Confidence.LOW: 0, Confidence.MEDIUM: 1, Confidence.HIGH: 2}


def classify_swipes(
    total_swipes: int,
    medium_min: int = CONFIDENCE_MEDIUM_MIN_SWIPES,
    high_min: int = CONFIDENCE_HIGH_MIN_SWIPES,
) -> Confidence:
    if total_swipes < medium_min:
        return Confidence.LOW
    if total_swipes < high_min:
        return Confidence.MEDIUM
    return Confidence.HIGH


def classify(profile: UserTasteProfile | None) -> Confidence:
    """Pure and uncached; a missing profile is simply low confidence."""
    if profile is None:
        return Confidence.LOW
    return classify_swipes(profile.behavior.total_swipes)
