import argparse
import asyncio
import atexit
import json
import logging
import sys
from pathlib import Path

from tqdm import tqdm

from .cache import RecommendationCache
from .catalog import ContentCatalog, StaticCatalog, TMDBCatalog
from .config import CACHE_TTL_SECONDS, DEFAULT_CONTENT_TYPE, DEFAULT_LIMIT, SWIPE_DECK_SIZE
from .database import SQLiteAggregateStore, SQLiteProfileRepository, close_pool
from .engine import RecommendationEngine
from .errors import InvalidSignalError, SwipeRecError
from .store import TasteProfileStore

logger = logging.getLogger(__name__)

# Register cleanup on exit
atexit.register(close_pool)


def _validate_user_id(user_id: str) -> str:
    user_id = user_id.strip()
    if not user_id:
        raise SystemExit("user id must not be empty")
    return user_id


def _make_catalog(args: argparse.Namespace) -> ContentCatalog:
    if getattr(args, 'catalog', None):
        return StaticCatalog.from_json(args.catalog)
    return TMDBCatalog()


def _make_engine(args: argparse.Namespace) -> RecommendationEngine:
    return RecommendationEngine(
        store=TasteProfileStore(SQLiteProfileRepository()),
        catalog=_make_catalog(args),
        aggregates=SQLiteAggregateStore(),
        cache=RecommendationCache(ttl=CACHE_TTL_SECONDS),
    )


async def _with_engine(args: argparse.Namespace, action):
    engine = _make_engine(args)
    try:
        return await action(engine)
    finally:
        await engine.close()


def _read_signals(path: str) -> list[dict]:
    """Signals from a JSON array file or a JSON-lines file ("-" reads stdin)."""
    text = sys.stdin.read() if path == "-" else Path(path).read_text(encoding="utf-8")
    text = text.strip()
    if not text:
        return []
    if text.startswith("["):
        return json.loads(text)
    return [json.loads(line) for line in text.splitlines() if line.strip()]


def cmd_ingest(args: argparse.Namespace) -> None:
    """Fold a file of swipe signals into a user's profile."""
    user_id = _validate_user_id(args.user_id)
    raw_signals = _read_signals(args.file)

    async def run(engine: RecommendationEngine):
        applied = rejected = unpersisted = 0
        for raw in tqdm(raw_signals, desc="Ingesting", disable=len(raw_signals) < 50):
            try:
                outcome = await engine.ingest_swipe(user_id, raw)
            except InvalidSignalError as e:
                rejected += 1
                logger.warning(f"Rejected signal ({e.field}): {e}")
                continue
            applied += outcome.applied
            unpersisted += outcome.applied and not outcome.persisted
        return applied, rejected, unpersisted

    applied, rejected, unpersisted = asyncio.run(_with_engine(args, run))
    logger.info(f"Applied {applied} signals for {user_id} ({rejected} rejected, {unpersisted} not persisted)")


def cmd_seed(args: argparse.Namespace) -> None:
    """Seed a profile from onboarding picks."""
    user_id = _validate_user_id(args.user_id)
    outcomes = asyncio.run(_with_engine(
        args, lambda engine: engine.seed_from_onboarding(user_id, args.content_ids, args.content_type)
    ))
    logger.info(f"Seeded {sum(o.applied for o in outcomes)} of {len(args.content_ids)} picks for {user_id}")


def _print_result(result, as_json: bool) -> None:
    if as_json:
        print(json.dumps(result.to_dict(), indent=2))
        return
    note = " (stale)" if result.stale else ""
    logger.info(f"\nConfidence: {result.confidence.value}{note}")
    for i, rec in enumerate(result.recommendations, 1):
        year = f" ({rec.release_year})" if rec.release_year else ""
        logger.info(f"{i:3}. {rec.title}{year}  [{rec.score:.3f}]")
        logger.info(f"     {rec.explanation.text}")


def cmd_recommend(args: argparse.Namespace) -> None:
    """Generate recommendations."""
    user_id = _validate_user_id(args.user_id)
    result = asyncio.run(_with_engine(
        args,
        lambda engine: engine.get_recommendations(user_id, args.limit, args.page, args.exclude),
    ))
    if not result.recommendations and not args.json:
        logger.info(f"No recommendations for {user_id}")
        return
    _print_result(result, args.json)


def cmd_more_like_this(args: argparse.Namespace) -> None:
    """Titles related to one title, ranked for a user."""
    user_id = _validate_user_id(args.user_id)
    result = asyncio.run(_with_engine(
        args,
        lambda engine: engine.more_like_this(user_id, args.content_id, args.content_type, args.limit),
    ))
    _print_result(result, args.json)


def cmd_deck(args: argparse.Namespace) -> None:
    """Deal the next swipe-screen cards for a user."""
    user_id = _validate_user_id(args.user_id)
    result = asyncio.run(_with_engine(
        args,
        lambda engine: engine.swipe_deck(user_id, args.limit, args.exclude),
    ))
    _print_result(result, args.json)


def cmd_summary(args: argparse.Namespace) -> None:
    """Show a user's taste summary."""
    user_id = _validate_user_id(args.user_id)
    summary = asyncio.run(_with_engine(args, lambda engine: engine.get_taste_summary(user_id)))

    if args.json:
        print(json.dumps(summary, indent=2))
        return

    logger.info(f"\nTaste profile for {user_id}")
    logger.info(
        f"  Swipes: {summary['total_swipes']} ({summary['total_likes']} liked, "
        f"{summary['total_dislikes']} disliked), confidence {summary['confidence']}"
    )
    logger.info(f"  Streak: {summary['current_streak']} days (longest {summary['longest_streak']})")
    for label, key in (("genres", 'top_genres'), ("actors", 'top_actors'), ("directors", 'top_directors')):
        if summary[key]:
            logger.info(f"\nTop {label}:")
            for entry in summary[key]:
                name = entry['name'] or entry['id']
                logger.info(f"  {name}: {entry['score']:.2f} ({entry['like_count']}/{entry['total_count']})")
    if summary['preferred_decades']:
        logger.info(f"\nDecades: {', '.join(f'{d}s' for d in summary['preferred_decades'])}")


def cmd_reset(args: argparse.Namespace) -> None:
    """Delete a user's profile and logged swipes."""
    user_id = _validate_user_id(args.user_id)
    existed = asyncio.run(_with_engine(args, lambda engine: engine.reset_profile(user_id)))
    logger.info(f"Reset {user_id}" if existed else f"No profile stored for {user_id}")


def cmd_rebuild_aggregates(args: argparse.Namespace) -> None:
    """Recompute collaborative popularity tables from the swipe log."""
    def progress(events):
        return tqdm(events, desc="Aggregating", unit="swipe")

    async def run(engine: RecommendationEngine):
        return await engine.rebuild_aggregates(progress=progress)

    titles, fan_rows = asyncio.run(_with_engine(args, run))
    logger.info(f"Aggregates rebuilt: {titles} titles, {fan_rows} genre-fan rows")


def main():
    parser = argparse.ArgumentParser(description="Swipe Recommender")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    parser.add_argument("--catalog", metavar="FILE",
                        help="Serve titles from a local JSON catalog instead of TMDB")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # Ingest command
    ingest_parser = subparsers.add_parser("ingest", help="Apply swipe signals to a profile")
    ingest_parser.add_argument("user_id", help="User id")
    ingest_parser.add_argument("--file", "-f", default="-",
                               help="JSON array or JSON-lines file of signals (default: stdin)")
    ingest_parser.set_defaults(func=cmd_ingest)

    # Seed command
    seed_parser = subparsers.add_parser("seed", help="Seed a profile from onboarding picks")
    seed_parser.add_argument("user_id", help="User id")
    seed_parser.add_argument("content_ids", nargs="+", type=int, help="Liked content ids")
    seed_parser.add_argument("--content-type", choices=["movie", "show"], default=DEFAULT_CONTENT_TYPE)
    seed_parser.set_defaults(func=cmd_seed)

    # Recommend command
    rec_parser = subparsers.add_parser("recommend", help="Get recommendations")
    rec_parser.add_argument("user_id", help="User id")
    rec_parser.add_argument("--limit", type=int, default=DEFAULT_LIMIT, help="Number of recommendations")
    rec_parser.add_argument("--page", type=int, default=1, help="Page number (1-based)")
    rec_parser.add_argument("--exclude", nargs="*", type=int, default=[], help="Content ids to leave out")
    rec_parser.add_argument("--json", action="store_true", help="Print JSON instead of a table")
    rec_parser.set_defaults(func=cmd_recommend)

    # More-like-this command
    mlt_parser = subparsers.add_parser("more-like-this", help="Titles similar to one title")
    mlt_parser.add_argument("user_id", help="User id")
    mlt_parser.add_argument("content_id", type=int, help="Anchor content id")
    mlt_parser.add_argument("--content-type", choices=["movie", "show"], default=DEFAULT_CONTENT_TYPE)
    mlt_parser.add_argument("--limit", type=int, default=10)
    mlt_parser.add_argument("--json", action="store_true")
    mlt_parser.set_defaults(func=cmd_more_like_this)

    # Deck command
    deck_parser = subparsers.add_parser("deck", help="Cards for the swipe screen")
    deck_parser.add_argument("user_id", help="User id")
    deck_parser.add_argument("--limit", type=int, default=SWIPE_DECK_SIZE, help="Number of cards")
    deck_parser.add_argument("--exclude", nargs="*", type=int, default=[], help="Content ids already in the deck")
    deck_parser.add_argument("--json", action="store_true")
    deck_parser.set_defaults(func=cmd_deck)

    # Summary command
    summary_parser = subparsers.add_parser("summary", help="Show a user's taste summary")
    summary_parser.add_argument("user_id", help="User id")
    summary_parser.add_argument("--json", action="store_true")
    summary_parser.set_defaults(func=cmd_summary)

    # Reset command
    reset_parser = subparsers.add_parser("reset", help="Delete a user's profile and swipe log")
    reset_parser.add_argument("user_id", help="User id")
    reset_parser.set_defaults(func=cmd_reset)

    # Rebuild-aggregates command
    agg_parser = subparsers.add_parser("rebuild-aggregates", help="Recompute collaborative aggregates")
    agg_parser.set_defaults(func=cmd_rebuild_aggregates)

    args = parser.parse_args()

    # Configure logging based on verbosity
    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        args.func(args)
    except SwipeRecError as e:
        logger.error(str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
