from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta

import pytest

from swipe_rec import profile as prof
from swipe_rec.aggregates import InMemoryAggregateStore, SwipeEvent, rebuild_aggregates
from swipe_rec.database import SQLiteAggregateStore, SQLiteProfileRepository, parse_timestamp_naive
from swipe_rec.errors import ProfileStoreError
from swipe_rec.signals import SignalFeatures, ingest


def test_init_schema_creates_expected_tables(pool):
    with pool.transaction(read_only=True) as conn:
        tables = {
            row[0]
            for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
        }

    expected = {
        "taste_profiles",
        "affinities",
        "decade_likes",
        "recent_items",
        "swipe_events",
        "content_popularity",
        "genre_fan_likes",
    }
    assert expected.issubset(tables)


def test_nested_transactions_commit_once(pool):
    with pool.transaction() as conn:
        conn.execute("INSERT INTO taste_profiles (user_id) VALUES (?)", ("alice",))
        with pool.transaction() as inner:
            inner.execute(
                "INSERT INTO decade_likes (user_id, decade, like_count) VALUES (?, ?, ?)",
                ("alice", 1990, 1),
            )

    with pool.transaction(read_only=True) as conn:
        assert conn.execute("SELECT COUNT(*) FROM decade_likes").fetchone()[0] == 1


def test_failed_transaction_rolls_back(pool):
    with pytest.raises(RuntimeError):
        with pool.transaction() as conn:
            conn.execute("INSERT INTO taste_profiles (user_id) VALUES (?)", ("bob",))
            raise RuntimeError("boom")

    with pool.transaction(read_only=True) as conn:
        assert conn.execute("SELECT COUNT(*) FROM taste_profiles").fetchone()[0] == 0


def test_parse_timestamp_naive():
    assert parse_timestamp_naive(None) is None
    assert parse_timestamp_naive("2024-01-01T10:00:00+02:00") == datetime(2024, 1, 1, 10, 0)
    assert parse_timestamp_naive("2024-01-01T10:00:00.000001") == datetime(2024, 1, 1, 10, 0, 0, 1)


def _signals(make_swipe):
    day = datetime(2024, 2, 1, 18)
    return [
        ingest(make_swipe("u1", 1, genres=(27, 53), actors=(500,), director=900, vote=7.2, year=1994,
                          occurred_at=day)),
        ingest(make_swipe("u1", 2, direction="dislike", genres=(35,), actors=(501,),
                          occurred_at=day + timedelta(days=1), view_ms=200)),
        ingest(make_swipe("u1", 3, genres=(27,), actors=(500,), vote=8.0, year=2001,
                          occurred_at=day + timedelta(days=1, hours=2))),
        ingest(make_swipe("u1", 1, genres=(27, 53), actors=(500,), director=900, vote=7.2, year=1994,
                          occurred_at=day + timedelta(days=3))),
    ]


def test_sqlite_profile_matches_pure_fold(pool, make_swipe):
    repo = SQLiteProfileRepository(pool)
    expected = prof.create_empty_taste_profile("u1")
    for signal in _signals(make_swipe):
        delta = prof.build_delta(expected, signal)
        assert repo.apply_delta(delta) is True
        expected = prof.apply_delta(expected, delta)

    loaded = repo.load("u1")

    assert loaded.behavior == expected.behavior
    assert loaded.preferences.genre_affinities == expected.preferences.genre_affinities
    assert loaded.preferences.actor_affinities == expected.preferences.actor_affinities
    assert loaded.preferences.director_affinities == expected.preferences.director_affinities
    assert loaded.preferences.decade_likes == expected.preferences.decade_likes
    assert loaded.preferences.avg_rating_liked == pytest.approx(expected.preferences.avg_rating_liked)
    assert loaded.recent_liked == expected.recent_liked
    assert loaded.recent_disliked == expected.recent_disliked
    assert loaded.recent_liked_genres == expected.recent_liked_genres
    assert loaded.updated_at == expected.updated_at
    assert loaded.behavior.longest_streak == 2
    assert loaded.behavior.current_streak == 1


def test_load_unknown_user_returns_none(pool):
    assert SQLiteProfileRepository(pool).load("nobody") is None


def test_seed_delta_skipped_when_already_liked(pool):
    repo = SQLiteProfileRepository(pool)
    seed = prof.make_seed_signal("u1", 101)
    delta = prof.build_delta(prof.create_empty_taste_profile("u1"), seed)

    assert repo.apply_delta(delta) is True
    assert repo.apply_delta(delta) is False
    assert repo.load("u1").behavior.total_likes == 1


def test_recent_ring_buffer_capacity(pool, make_swipe):
    repo = SQLiteProfileRepository(pool, recent_capacity=3)
    empty = prof.create_empty_taste_profile("u1")
    for content_id in range(1, 6):
        repo.apply_delta(prof.build_delta(empty, ingest(make_swipe("u1", content_id))))

    assert repo.load("u1").recent_liked_ids == [5, 4, 3]


def test_delete_removes_everything(pool, make_swipe):
    repo = SQLiteProfileRepository(pool)
    repo.apply_delta(prof.build_delta(prof.create_empty_taste_profile("u1"), ingest(make_swipe("u1", 1))))

    assert repo.delete("u1") is True
    assert repo.load("u1") is None
    assert repo.delete("u1") is False
    with pool.transaction(read_only=True) as conn:
        assert conn.execute("SELECT COUNT(*) FROM affinities").fetchone()[0] == 0
        assert conn.execute("SELECT COUNT(*) FROM recent_items").fetchone()[0] == 0


def test_concurrent_writers_do_not_lose_increments(pool, make_swipe):
    repo = SQLiteProfileRepository(pool)
    empty = prof.create_empty_taste_profile("u1")
    deltas = [
        prof.build_delta(empty, ingest(make_swipe("u1", i, genres=(28,), actors=(500,))))
        for i in range(1, 61)
    ]

    with ThreadPoolExecutor(max_workers=6) as executor:
        list(executor.map(repo.apply_delta, deltas))

    loaded = repo.load("u1")
    assert loaded.behavior.total_swipes == 60
    assert loaded.preferences.genre_affinities[28].like_count == 60
    assert loaded.preferences.actor_affinities[500].total_count == 60


def test_sqlite_errors_become_store_errors(pool):
    repo = SQLiteProfileRepository(pool)
    with pool.transaction() as conn:
        conn.execute("DROP TABLE affinities")

    with pytest.raises(ProfileStoreError):
        repo.apply_delta(prof.build_delta(
            prof.create_empty_taste_profile("u1"),
            prof.make_seed_signal("u1", 5, features=SignalFeatures(genre_ids=(28,))),
        ))


def _events(now):
    rows = [
        ("a", 1, True, (27,), now - timedelta(days=1)),
        ("b", 1, True, (27,), now - timedelta(days=2)),
        ("c", 1, False, (27,), now - timedelta(days=3)),
        ("a", 2, True, (27, 53), now - timedelta(days=30)),
        ("b", 2, True, (27, 53), now - timedelta(days=1)),
        ("c", 3, True, (35,), now - timedelta(days=1)),
    ]
    return [
        SwipeEvent(
            user_id=user, content_id=cid, content_type="movie", liked=liked, genre_ids=genres,
            title=f"Title {cid}", poster_path="", vote_average=7.0, release_year=2000, occurred_at=at,
        )
        for user, cid, liked, genres, at in rows
    ]


def test_sqlite_aggregate_store_matches_in_memory(pool):
    now = datetime(2024, 3, 1)
    sqlite_store = SQLiteAggregateStore(pool)
    memory_store = InMemoryAggregateStore()
    for event in _events(now):
        sqlite_store.record_event(event)
        memory_store.record_event(event)

    assert sqlite_store.load_events() == memory_store.load_events()
    assert rebuild_aggregates(sqlite_store, now) == rebuild_aggregates(memory_store, now)

    assert sqlite_store.most_liked(10) == memory_store.most_liked(10)
    assert sqlite_store.recently_liked(10) == memory_store.recently_liked(10)
    assert sqlite_store.top_for_genre(27, 10) == memory_store.top_for_genre(27, 10)
    assert [p.content.content_id for p in sqlite_store.most_liked(10)] == [2, 1, 3]


def test_delete_user_events(pool):
    store = SQLiteAggregateStore(pool)
    for event in _events(datetime(2024, 3, 1)):
        store.record_event(event)

    assert store.delete_user_events("a") == 2
    assert {e.user_id for e in store.load_events()} == {"b", "c"}


def test_default_pool_uses_configured_path(fresh_db, make_swipe):
    repo = fresh_db.SQLiteProfileRepository()
    repo.apply_delta(prof.build_delta(prof.create_empty_taste_profile("u1"), ingest(make_swipe("u1", 1))))

    assert fresh_db.DB_PATH.exists()
    with fresh_db.get_db(read_only=True) as conn:
        assert conn.execute("SELECT total_swipes FROM taste_profiles").fetchone()[0] == 1
