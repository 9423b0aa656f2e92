import asyncio

import httpx
import pytest

from swipe_rec.aggregates import InMemoryAggregateStore
from swipe_rec.cache import RecommendationCache
from swipe_rec.candidates import COLLABORATIVE, GENRE_BASED, MORE_LIKE_THIS, POPULAR, SIMILAR_TO_LIKED, TRENDING
from swipe_rec.catalog import StaticCatalog, TMDBCatalog
from swipe_rec.confidence import Confidence
from swipe_rec.engine import RecommendationEngine
from swipe_rec.errors import CatalogError, InvalidSignalError, ProfileStoreError
from swipe_rec.repository import InMemoryProfileRepository
from swipe_rec.store import TasteProfileStore


class ToggleCatalog(StaticCatalog):
    """Static catalog that can be switched off to simulate an outage."""

    def __init__(self, items):
        super().__init__(items)
        self.down = False

    def _check(self):
        if self.down:
            raise CatalogError("catalog unavailable")

    async def discover(self, query):
        self._check()
        return await super().discover(query)

    async def details(self, content_id, content_type="movie"):
        self._check()
        return await super().details(content_id, content_type)

    async def similar(self, content_id, content_type="movie", limit=20):
        self._check()
        return await super().similar(content_id, content_type, limit)

    async def trending(self, content_type="movie", window="week", limit=20):
        self._check()
        return await super().trending(content_type, window, limit)


class BrokenWriteRepository(InMemoryProfileRepository):
    def apply_delta(self, delta):
        raise ProfileStoreError("disk I/O error")


class BrokenAggregates(InMemoryAggregateStore):
    def recently_liked(self, n):
        raise ProfileStoreError("aggregate read failed")


@pytest.fixture
def toggle_catalog(items):
    return ToggleCatalog(items)


@pytest.fixture
def engine(toggle_catalog, clock):
    return RecommendationEngine(
        TasteProfileStore(InMemoryProfileRepository(), retry_delay=0.0),
        toggle_catalog,
        clock=clock,
    )


def _item(items, content_id):
    return next(item for item in items if item.content_id == content_id)


async def _swipe_items(engine, make_swipe, items, user_id, likes=(), dislikes=()):
    for content_id in likes:
        await engine.ingest_swipe(user_id, make_swipe(user_id, _item(items, content_id)))
    for content_id in dislikes:
        await engine.ingest_swipe(user_id, make_swipe(user_id, _item(items, content_id), direction="dislike"))


@pytest.mark.asyncio
async def test_new_action_fan_gets_genre_picks(engine, make_swipe, items):
    await _swipe_items(engine, make_swipe, items, "u1", likes=(10, 20, 30))

    result = await engine.get_recommendations("u1", limit=10)

    assert result.confidence is Confidence.LOW
    assert not result.stale
    assert result.recommendations
    assert len(result.recommendations) <= 10
    assert {r.strategy for r in result.recommendations} <= {GENRE_BASED, POPULAR}
    assert {r.explanation.type for r in result.recommendations} == {"genre_fans"}
    assert not {r.content_id for r in result.recommendations} & {10, 20, 30}
    assert all({28, 12} & set(r.genre_ids) for r in result.recommendations)


@pytest.mark.asyncio
async def test_empty_profile_still_gets_popular_titles(engine):
    result = await engine.get_recommendations("stranger", limit=5)

    assert result.confidence is Confidence.LOW
    assert result.recommendations
    assert {r.explanation.type for r in result.recommendations} == {"popular"}


@pytest.mark.asyncio
async def test_perfect_actor_record_is_smoothed(engine, make_swipe):
    for content_id in range(1, 6):
        await engine.ingest_swipe("u1", make_swipe("u1", content_id, actors=(500,)))

    summary = await engine.get_taste_summary("u1")

    top_actor = summary['top_actors'][0]
    assert top_actor['id'] == 500
    assert top_actor['like_count'] == 5
    assert top_actor['total_count'] == 5
    assert top_actor['score'] < 1.0
    assert summary['total_likes'] == 5
    assert summary['confidence'] == "low"


@pytest.mark.asyncio
async def test_seeding_twice_changes_nothing(engine):
    first = await engine.seed_from_onboarding("u1", [101, 202, 303])
    before = await engine.get_taste_summary("u1")
    second = await engine.seed_from_onboarding("u1", [101, 202, 303, 101])
    after = await engine.get_taste_summary("u1")

    assert [o.applied for o in first] == [True, True, True]
    assert [o.applied for o in second] == [False, False, False]
    assert before == after
    assert after['total_likes'] == 3
    profile = await engine.store.get("u1")
    assert sorted(profile.recent_liked_ids) == [101, 202, 303]


@pytest.mark.asyncio
async def test_seeding_uses_catalog_metadata(engine, items):
    await engine.seed_from_onboarding("u1", [3, 13])

    summary = await engine.get_taste_summary("u1")

    assert {g['id'] for g in summary['top_genres']} == {27, 53}
    assert summary['top_genres'][0]['like_count'] == 2
    assert summary['quick_decisions'] == 0


@pytest.mark.asyncio
async def test_seeding_survives_catalog_outage(engine, toggle_catalog):
    toggle_catalog.down = True

    outcomes = await engine.seed_from_onboarding("u1", [3, 13])

    assert all(o.applied for o in outcomes)
    summary = await engine.get_taste_summary("u1")
    assert summary['total_likes'] == 2
    assert summary['top_genres'] == []


@pytest.mark.asyncio
async def test_seeds_are_not_logged_as_swipes(engine, make_swipe):
    await engine.seed_from_onboarding("u1", [3])
    await engine.ingest_swipe("u1", make_swipe("u1", 4))
    await engine.background.drain()

    events = engine.aggregates.load_events()
    assert [(e.user_id, e.content_id) for e in events] == [("u1", 4)]


@pytest.mark.asyncio
async def test_interacted_and_requested_exclusions(engine, make_swipe, items):
    liked = tuple(range(1, 9))
    disliked = (41, 42, 43, 44)
    await _swipe_items(engine, make_swipe, items, "u1", likes=liked, dislikes=disliked)

    result = await engine.get_recommendations("u1", limit=20, exclude_ids=[11, 12, 13])

    assert result.confidence is Confidence.MEDIUM
    ids = {r.content_id for r in result.recommendations}
    assert ids
    assert not ids & set(liked)
    assert not ids & set(disliked)
    assert not ids & {11, 12, 13}
    assert len(ids) == len(result.recommendations)


@pytest.mark.asyncio
async def test_cached_until_profile_changes(engine, make_swipe, items):
    await _swipe_items(engine, make_swipe, items, "u1", likes=(10, 20))

    first = await engine.get_recommendations("u1", limit=10)
    second = await engine.get_recommendations("u1", limit=10)
    assert second == first

    await engine.ingest_swipe("u1", make_swipe("u1", _item(items, 3)))
    third = await engine.get_recommendations("u1", limit=10)

    assert third.generated_at > first.generated_at
    assert 3 not in {r.content_id for r in third.recommendations}


@pytest.mark.asyncio
async def test_identical_inputs_give_identical_lists(make_swipe, items, clock):
    results = []
    for _ in range(2):
        engine = RecommendationEngine(
            TasteProfileStore(InMemoryProfileRepository()), StaticCatalog(items), clock=clock,
        )
        await _swipe_items(engine, make_swipe, items, "u1", likes=range(1, 12), dislikes=(50,))
        results.append(await engine.get_recommendations("u1", limit=15))

    assert results[0].recommendations == results[1].recommendations


@pytest.mark.asyncio
@pytest.mark.parametrize("limit", [2, 3, 4, 8])
async def test_load_more_walks_one_ranking(engine, make_swipe, items, limit):
    await _swipe_items(engine, make_swipe, items, "u1", likes=range(1, 13))
    await engine.background.drain()

    pages = []
    for page in (1, 2, 3):
        result = await engine.get_recommendations("u1", limit=limit, page=page)
        pages.append([r.content_id for r in result.recommendations])

    seen = [content_id for ids in pages for content_id in ids]
    assert len(pages[0]) == limit
    assert all(pages)
    assert len(seen) == len(set(seen))

    # rebuilding after invalidation gives back the same pages
    engine.invalidate_cache("u1")
    again = await engine.get_recommendations("u1", limit=limit, page=2)
    assert [r.content_id for r in again.recommendations] == pages[1]


@pytest.mark.asyncio
async def test_invalid_paging_is_rejected(engine):
    with pytest.raises(ValueError):
        await engine.get_recommendations("u1", limit=0)
    with pytest.raises(ValueError):
        await engine.get_recommendations("u1", page=0)


@pytest.mark.asyncio
async def test_catalog_outage_serves_empty_stale_result(engine, toggle_catalog, make_swipe, items):
    await _swipe_items(engine, make_swipe, items, "u1", likes=(10, 20))
    toggle_catalog.down = True

    result = await engine.get_recommendations("u1", limit=10)

    assert result.stale
    assert result.recommendations == ()
    assert result.confidence is Confidence.LOW


@pytest.mark.asyncio
async def test_undecodable_provider_responses_degrade_to_stale(make_swipe, clock):
    def handler(request):
        raise httpx.DecodingError("bad gzip", request=request)

    tmdb = TMDBCatalog(
        api_key="test-key",
        base_url="https://tmdb.test/3",
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    engine = RecommendationEngine(TasteProfileStore(InMemoryProfileRepository()), tmdb, clock=clock)
    await engine.ingest_swipe("u1", make_swipe("u1", 10))

    result = await engine.get_recommendations("u1", limit=10)
    await tmdb.client.aclose()

    assert result.stale
    assert result.recommendations == ()


@pytest.mark.asyncio
async def test_catalog_outage_serves_last_known_list(toggle_catalog, make_swipe, items, clock):
    engine = RecommendationEngine(
        TasteProfileStore(InMemoryProfileRepository()),
        toggle_catalog,
        cache=RecommendationCache(ttl=0),
        clock=clock,
    )
    await _swipe_items(engine, make_swipe, items, "u1", likes=(10, 20))
    fresh = await engine.get_recommendations("u1", limit=10)

    toggle_catalog.down = True
    stale = await engine.get_recommendations("u1", limit=10)

    assert stale.stale
    assert stale.recommendations == fresh.recommendations
    assert stale.generated_at == fresh.generated_at


@pytest.mark.asyncio
async def test_invalid_signals_are_rejected(engine, make_swipe):
    raw = make_swipe("u1", 1)
    del raw["contentId"]
    with pytest.raises(InvalidSignalError):
        await engine.ingest_swipe("u1", raw)

    with pytest.raises(InvalidSignalError) as excinfo:
        await engine.ingest_swipe("u1", make_swipe("someone-else", 1))
    assert excinfo.value.field == "userId"

    assert (await engine.get_taste_summary("u1"))['total_swipes'] == 0


@pytest.mark.asyncio
async def test_payload_without_user_id_takes_callers(engine, make_swipe):
    raw = make_swipe("u1", 1)
    del raw["userId"]

    outcome = await engine.ingest_swipe("u1", raw)

    assert outcome.persisted
    assert outcome.profile.user_id == "u1"


@pytest.mark.asyncio
async def test_store_write_failure_is_surfaced(catalog, make_swipe, clock):
    engine = RecommendationEngine(
        TasteProfileStore(BrokenWriteRepository(), retries=2, retry_delay=0.0), catalog, clock=clock,
    )

    outcome = await engine.ingest_swipe("u1", make_swipe("u1", 1))

    assert outcome.applied
    assert not outcome.persisted
    assert isinstance(outcome.error, ProfileStoreError)
    await engine.background.drain()
    assert engine.aggregates.load_events()


@pytest.mark.asyncio
async def test_concurrent_swipes_are_all_counted(engine, make_swipe):
    await asyncio.gather(*(
        engine.ingest_swipe("u1", make_swipe("u1", i, genres=(27,), direction="like" if i % 2 else "dislike"))
        for i in range(1, 31)
    ))

    summary = await engine.get_taste_summary("u1")
    assert summary['total_swipes'] == 30
    assert summary['total_likes'] == 15
    assert summary['top_genres'][0]['total_count'] == 30


@pytest.mark.asyncio
async def test_more_like_this(engine, make_swipe, items):
    await _swipe_items(engine, make_swipe, items, "u1", likes=(15,))

    result = await engine.more_like_this("u1", 5, limit=4)

    ids = [r.content_id for r in result.recommendations]
    assert ids
    assert len(ids) <= 4
    assert 5 not in ids and 15 not in ids
    assert {r.strategy for r in result.recommendations} == {MORE_LIKE_THIS}
    assert {r.explanation.text for r in result.recommendations} == {"Similar to Title 5"}
    assert not result.stale


@pytest.mark.asyncio
async def test_more_like_this_during_outage(engine, toggle_catalog):
    toggle_catalog.down = True
    result = await engine.more_like_this("u1", 5)
    assert result.stale
    assert result.recommendations == ()


@pytest.mark.asyncio
async def test_reset_profile_clears_everything(engine, make_swipe, items):
    await _swipe_items(engine, make_swipe, items, "u1", likes=(10, 20))
    await engine.get_recommendations("u1")
    await engine.background.drain()

    assert await engine.reset_profile("u1") is True

    summary = await engine.get_taste_summary("u1")
    assert summary['total_swipes'] == 0
    assert engine.aggregates.load_events() == []
    assert len(engine.cache.backend) == 0


@pytest.mark.asyncio
async def test_collaborative_strategies_after_rebuild(engine, make_swipe, items):
    # a crowd of horror fans liking two titles the catalog does not carry
    for fan in ("f1", "f2", "f3", "f4"):
        for content_id in (901, 902):
            await engine.ingest_swipe(fan, make_swipe(fan, content_id, genres=(27, 53)))
    await _swipe_items(engine, make_swipe, items, "u1", likes=(3, 13, 23, 53, 63), dislikes=(1, 2, 4, 5, 6))

    titles, fan_rows = await engine.rebuild_aggregates()

    assert titles == 12
    assert fan_rows > 0
    result = await engine.get_recommendations("u1", limit=80)
    assert result.confidence is Confidence.MEDIUM
    by_id = {r.content_id: r for r in result.recommendations}
    assert {901, 902} <= set(by_id)
    assert by_id[901].strategy in COLLABORATIVE
    assert by_id[901].title == "Title 901"


@pytest.mark.asyncio
async def test_invalidate_cache_and_close(engine, make_swipe):
    await engine.ingest_swipe("u1", make_swipe("u1", 1))
    await engine.get_recommendations("u1")

    assert engine.invalidate_cache("u1") == 1
    assert engine.invalidate_cache("u1") == 0

    await engine.close()
    assert len(engine.background) == 0


class TrendingTailCatalog(StaticCatalog):
    """Trending is the highest ids, away from the popular head discover returns."""

    async def trending(self, content_type="movie", window="week", limit=20):
        return sorted(self._of_type(content_type), key=lambda i: i.content_id)[-11:][:limit]


@pytest.mark.asyncio
async def test_swipe_deck_for_new_user_is_trending(engine, make_swipe, items):
    await _swipe_items(engine, make_swipe, items, "u1", likes=(10, 20))

    deck = await engine.swipe_deck("u1", limit=5)

    ids = [r.content_id for r in deck.recommendations]
    assert len(ids) == 5
    assert not set(ids) & {10, 20}
    assert {r.strategy for r in deck.recommendations} == {TRENDING}
    assert not deck.stale


@pytest.mark.asyncio
async def test_swipe_deck_deals_trending_among_personal_picks(make_swipe, items, clock):
    engine = RecommendationEngine(
        TasteProfileStore(InMemoryProfileRepository()), TrendingTailCatalog(items), clock=clock,
    )
    await _swipe_items(engine, make_swipe, items, "u1", likes=range(1, 13))

    deck = await engine.swipe_deck("u1", limit=10, exclude_ids=[13])

    ids = [r.content_id for r in deck.recommendations]
    strategies = [r.strategy for r in deck.recommendations]
    assert len(ids) == 10
    assert len(set(ids)) == 10
    assert not set(ids) & (set(range(1, 13)) | {13})
    assert [i for i, s in enumerate(strategies) if s == TRENDING] == [3, 6, 9]
    assert set(strategies) - {TRENDING} <= {SIMILAR_TO_LIKED, GENRE_BASED}

    again = await engine.swipe_deck("u1", limit=10, exclude_ids=[13])
    assert again.recommendations == deck.recommendations


@pytest.mark.asyncio
async def test_swipe_deck_during_outage(toggle_catalog, clock):
    engine = RecommendationEngine(
        TasteProfileStore(InMemoryProfileRepository()), toggle_catalog,
        aggregates=BrokenAggregates(), clock=clock,
    )
    toggle_catalog.down = True

    deck = await engine.swipe_deck("u1", limit=5)

    assert deck.stale
    assert deck.recommendations == ()
