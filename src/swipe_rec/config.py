"""
Configuration constants for the swipe recommender.

This module centralizes all magic numbers and configurable parameters.
Values can be overridden via environment variables.
"""
import os
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


def _get_float_env(key: str, default: float, min_val: float = 0) -> float:
    """
    Safely parse float from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated float value
    """
    try:
        val = float(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


def _get_int_env(key: str, default: int, min_val: int = 1) -> int:
    """
    Safely parse integer from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated integer value
    """
    try:
        val = int(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


# Database Configuration
DB_PATH = Path(os.environ.get("SWIPE_REC_DB", "data/swipe_rec.db"))
PROFILE_SCHEMA_VERSION = 1

# Signal Ingestion
DELIBERATE_VIEW_MS = _get_int_env("SWIPE_REC_DELIBERATE_VIEW_MS", 2500, min_val=0)
MAX_CAST_CONSIDERED = 5  # Top-billed actors folded into actor affinities

# Affinity Scoring
AFFINITY_PRIOR_STRENGTH = _get_float_env("SWIPE_REC_PRIOR_STRENGTH", 2.0, min_val=0.0)  # kappa
DEFAULT_AVG_RATING_LIKED = 7.0  # Used until the first like carries a vote average
PREFERRED_DECADES_MAX = 3

# Ring buffers (exclusion only, never scored)
RECENT_IDS_CAPACITY = _get_int_env("SWIPE_REC_RECENT_IDS", 200)
RECENT_GENRES_CAPACITY = 50

# Confidence Gate thresholds on behavior.total_swipes
CONFIDENCE_MEDIUM_MIN_SWIPES = _get_int_env("SWIPE_REC_CONFIDENCE_MEDIUM", 10)
CONFIDENCE_HIGH_MIN_SWIPES = _get_int_env("SWIPE_REC_CONFIDENCE_HIGH", 50)

# Store Boundary
STORE_WRITE_RETRIES = _get_int_env("SWIPE_REC_STORE_RETRIES", 3)
STORE_RETRY_DELAY = _get_float_env("SWIPE_REC_STORE_RETRY_DELAY", 0.1, min_val=0.0)

# Recommendation Cache
CACHE_TTL_SECONDS = _get_float_env("SWIPE_REC_CACHE_TTL", 3600.0, min_val=0.0)

# Fan-out limits toward the content catalog
MAX_CONCURRENT_CATALOG_CALLS = _get_int_env("SWIPE_REC_MAX_CONCURRENT", 6)
CATALOG_CALL_TIMEOUT = _get_float_env("SWIPE_REC_CATALOG_TIMEOUT", 5.0, min_val=0.1)

# Content catalog (TMDB)
TMDB_API_KEY = os.environ.get("TMDB_API_KEY", "")
TMDB_BASE_URL = os.environ.get("TMDB_BASE_URL", "https://api.themoviedb.org/3")
TMDB_IMAGE_LANGUAGE = "en-US"
HTTP_TIMEOUT = 10.0  # HTTP request timeout in seconds
MAX_HTTP_RETRIES = 3
DEFAULT_RETRY_AFTER = 2  # Default wait time if Retry-After header missing
DEFAULT_CONTENT_TYPE = "movie"

# Blender
DIVERSITY_CAP_FRACTION = _get_float_env("SWIPE_REC_DIVERSITY_FRACTION", 0.25, min_val=0.01)
DEFAULT_LIMIT = 20
# Pages of one ranking a request can reach; strategies fetch for this many pages up front
RECOMMENDATION_MAX_PAGES = _get_int_env("SWIPE_REC_MAX_PAGES", 5)

# Swipe deck: personal picks dealt with trending titles
SWIPE_DECK_SIZE = _get_int_env("SWIPE_REC_DECK_SIZE", 50)
SWIPE_DECK_DISCOVERY_SHARE = _get_float_env("SWIPE_REC_DECK_DISCOVERY", 0.3, min_val=0.0)
SWIPE_DECK_MIN_LIKES = 3  # Fewer likes than this and the deck is trending only

# Collaborative signals are down-weighted relative to content-based ones
COLLAB_WEIGHTS = {
    'low': 0.0,
    'medium': 0.5,
    'high': 0.8,
}

# Share of the effective limit each strategy is asked for
STRATEGY_SHARES = {
    'similar_to_liked': 0.25,
    'genre_based': 0.2,
    'popular': 0.2,
    'actor_based': 0.1,
    'director_based': 0.1,
    'mood_based': 0.1,
    'hidden_gem': 0.1,
    'exploration': 0.1,
    'trending': 0.15,
    'popular_among_similar_fans': 0.15,
    'most_liked': 0.1,
}
LOW_CONFIDENCE_SHARE = 0.6  # genre_based and popular each, when nothing else runs
STRATEGY_OVERFETCH = 2.0  # Headroom for dedup, exclusion and the diversity cap
STRATEGY_MIN_FETCH = 3

# Multipliers on strategy-local scores applied by the blender
STRATEGY_BOOSTS = {
    'actor_based': 1.15,
    'director_based': 1.15,
    'mood_based': 1.1,
    'hidden_gem': 1.05,
}

# Strategy knobs
SIMILAR_ANCHORS = 5  # Most recent likes used as similar-to-liked anchors
TOP_ENTITIES_PER_STRATEGY = 3
GENRE_BASED_PER_GENRE = 5
PERSON_BASED_PER_PERSON = 4
HIDDEN_GEM_MIN_RATING = 7.5
HIDDEN_GEM_MIN_VOTES = 50
HIDDEN_GEM_MAX_VOTES = 500
EXPLORATION_MAX_OBSERVATIONS = 1  # A genre seen at most this often counts as unexplored
EXPLORATION_MIN_RATING = 7.0
MOOD_MIN_RATING = 6.5
POPULAR_MIN_VOTES = 500

# Collaborative aggregates
TRENDING_WINDOW_DAYS = _get_int_env("SWIPE_REC_TRENDING_DAYS", 7)
COLLAB_MIN_FAN_LIKES = 2
FAN_BUCKET_TOP_GENRES = 3  # A user is a "fan" of each of their top-N liked genres

# Taste summary
TASTE_SUMMARY_TOP_N = 5

# TMDB genre ids (movie and TV)
GENRE_NAMES = {
    28: 'Action',
    12: 'Adventure',
    16: 'Animation',
    35: 'Comedy',
    80: 'Crime',
    99: 'Documentary',
    18: 'Drama',
    10751: 'Family',
    14: 'Fantasy',
    36: 'History',
    27: 'Horror',
    10402: 'Music',
    9648: 'Mystery',
    10749: 'Romance',
    878: 'Science Fiction',
    10770: 'TV Movie',
    53: 'Thriller',
    10752: 'War',
    37: 'Western',
    # TV genres
    10759: 'Action & Adventure',
    10762: 'Kids',
    10763: 'News',
    10764: 'Reality',
    10765: 'Sci-Fi & Fantasy',
    10766: 'Soap',
    10767: 'Talk',
    10768: 'War & Politics',
}

MOVIE_GENRE_IDS = (28, 12, 16, 35, 80, 99, 18, 10751, 14, 36, 27, 10402, 9648, 10749, 878, 10770, 53, 10752, 37)
TV_GENRE_IDS = (10759, 16, 35, 80, 99, 18, 10751, 10762, 9648, 10763, 10764, 10765, 10766, 10767, 10768, 37)

# Genre clusters for the mood-based strategy
MOOD_CLUSTERS = {
    'lighthearted': (35, 10751, 16),
    'adrenaline': (28, 12, 878, 10759),
    'heartfelt': (18, 10749, 10402),
    'dark': (27, 53, 80, 9648),
}
