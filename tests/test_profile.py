import random
from datetime import datetime, timedelta

import pytest

from swipe_rec import profile as prof
from swipe_rec.signals import ContentSnapshot, Engagement, Person, SignalFeatures, SwipeSignal, ingest


def _signal(content_id, liked=True, genres=(28,), actors=(), director=None, vote=7.0, year=2010,
            when=datetime(2024, 1, 1, 9), source="swipe", view_ms=3000):
    return SwipeSignal(
        user_id="u1",
        content_id=content_id,
        direction="like" if liked else "dislike",
        features=SignalFeatures(
            genre_ids=tuple(genres),
            primary_genre=genres[0] if genres else None,
            actors=tuple(Person(a, f"Actor {a}") for a in actors),
            director=Person(director, "Dir") if director else None,
            runtime=100,
        ),
        content_snapshot=ContentSnapshot(vote_average=vote, release_year=year),
        engagement=Engagement(view_duration_ms=view_ms),
        occurred_at=when,
        source=source,
    )


def test_affinity_score_is_smoothed_toward_prior():
    assert prof.AffinityScore(id=1).score(prior=0.3) == pytest.approx(0.3)

    five_of_five = prof.AffinityScore(id=1, like_count=5, total_count=5)
    assert five_of_five.score(prior=0.5, strength=2.0) == pytest.approx(6 / 7)
    assert five_of_five.score(prior=0.5, strength=2.0) < 1.0

    zero_of_four = prof.AffinityScore(id=1, like_count=0, total_count=4)
    assert zero_of_four.score(prior=0.5, strength=2.0) == pytest.approx(1 / 6)


def test_build_delta_for_like_collects_every_dimension():
    empty = prof.create_empty_taste_profile("u1")
    delta = prof.build_delta(empty, _signal(10, genres=(28, 12), actors=(500, 501), director=900, year=1994))

    dims = {(inc.dimension, inc.entity_id): (inc.like_inc, inc.total_inc) for inc in delta.affinity_increments}
    assert dims == {
        (prof.GENRE, 28): (1, 1),
        (prof.GENRE, 12): (1, 1),
        (prof.ACTOR, 500): (1, 1),
        (prof.ACTOR, 501): (1, 1),
        (prof.DIRECTOR, 900): (1, 1),
    }
    assert delta.decade == 1990
    assert delta.rating_liked == 7.0
    assert delta.runtime_liked == 100
    assert delta.primary_genre == 28
    assert delta.quick_decision is False


def test_build_delta_for_dislike_counts_only_totals():
    delta = prof.build_delta(prof.create_empty_taste_profile("u1"), _signal(10, liked=False, view_ms=100))

    assert all(inc.like_inc == 0 and inc.total_inc == 1 for inc in delta.affinity_increments)
    assert delta.decade is None
    assert delta.rating_liked is None
    assert delta.primary_genre is None
    assert delta.quick_decision is True


def test_apply_delta_is_pure():
    empty = prof.create_empty_taste_profile("u1")
    updated = prof.apply_signal(empty, _signal(10))

    assert empty.behavior.total_swipes == 0
    assert empty.preferences.genre_affinities == {}
    assert updated.behavior.total_swipes == 1
    assert updated.preferences.genre_affinities[28].like_count == 1


def test_apply_signal_tracks_counts_and_recent_lists():
    p = prof.create_empty_taste_profile("u1")
    p = prof.apply_signal(p, _signal(1, genres=(27,)))
    p = prof.apply_signal(p, _signal(2, liked=False, genres=(35,)))
    p = prof.apply_signal(p, _signal(3, genres=(53, 27)))
    p = prof.apply_signal(p, _signal(1, genres=(27,)))

    assert p.behavior.total_swipes == 4
    assert p.behavior.total_likes == 3
    assert p.behavior.total_dislikes == 1
    assert p.recent_liked_ids == [1, 3]
    assert p.recent_disliked_ids == [2]
    assert p.recent_liked_genres == [27, 53, 27]
    assert p.interacted_ids == {1, 2, 3}
    assert p.preferences.genre_affinities[27].like_count == 3
    assert p.preferences.genre_affinities[35].like_count == 0
    assert p.preferences.genre_affinities[35].total_count == 1
    assert p.preferences.avg_rating_liked == pytest.approx(7.0)
    assert p.preferences.preferred_decades == [2010]


def test_ring_buffer_keeps_newest_within_capacity():
    p = prof.create_empty_taste_profile("u1")
    for content_id in range(1, 6):
        delta = prof.build_delta(p, _signal(content_id))
        p = prof.apply_delta(p, delta, recent_capacity=3)
    assert p.recent_liked_ids == [5, 4, 3]


def test_seeding_is_idempotent():
    seeds = [
        prof.make_seed_signal("u1", cid, features=SignalFeatures(genre_ids=(28,), primary_genre=28))
        for cid in (101, 202, 303)
    ]
    once = prof.seed_profile(prof.create_empty_taste_profile("u1"), seeds)
    twice = prof.seed_profile(once, seeds)

    assert once.recent_liked_ids == twice.recent_liked_ids == [303, 202, 101]
    assert twice.preferences.genre_affinities[28].like_count == 3
    assert twice.behavior.total_swipes == 3
    assert prof.build_delta(once, seeds[0]) is None


def test_streak_counts_consecutive_days():
    day = datetime(2024, 1, 1, 20)
    p = prof.create_empty_taste_profile("u1")
    for offset_days, content_id in [(0, 1), (1, 2), (1, 3), (3, 4)]:
        p = prof.apply_signal(p, _signal(content_id, when=day + timedelta(days=offset_days)))

    assert p.behavior.current_streak == 1
    assert p.behavior.longest_streak == 2
    assert p.behavior.last_swipe_at == day + timedelta(days=3)


def test_out_of_order_signal_does_not_move_last_swipe_backwards():
    late = datetime(2024, 1, 5)
    p = prof.apply_signal(prof.create_empty_taste_profile("u1"), _signal(1, when=late))
    p = prof.apply_signal(p, _signal(2, when=late - timedelta(days=2)))
    assert p.behavior.last_swipe_at == late
    assert p.updated_at == late


def test_top_affinities_ordering_and_min_likes():
    p = prof.create_empty_taste_profile("u1")
    p.behavior.total_swipes = 10
    p.behavior.total_likes = 5
    p.preferences.genre_affinities = {
        1: prof.AffinityScore(1, "a", like_count=2, total_count=2),
        2: prof.AffinityScore(2, "b", like_count=4, total_count=4),
        3: prof.AffinityScore(3, "c", like_count=2, total_count=2),
        4: prof.AffinityScore(4, "d", like_count=0, total_count=3),
    }

    ranked = [aff.id for aff, _ in p.top_affinities(prof.GENRE, 10)]
    assert ranked == [2, 1, 3, 4]
    assert [aff.id for aff, _ in p.top_affinities(prof.GENRE, 10, min_likes=1)] == [2, 1, 3]
    assert len(p.top_affinities(prof.GENRE, 2)) == 2


def test_unknown_dimension_raises():
    with pytest.raises(ValueError):
        prof.create_empty_taste_profile("u1").preferences.affinities("composer")


def test_deltas_commute():
    signals = [_signal(i, liked=i % 3 != 0, genres=((28,) if i % 2 else (35, 28)), actors=(500 + i % 2,))
               for i in range(1, 13)]
    forward = prof.create_empty_taste_profile("u1")
    for s in signals:
        forward = prof.apply_signal(forward, s)

    shuffled = list(signals)
    random.Random(7).shuffle(shuffled)
    backward = prof.create_empty_taste_profile("u1")
    for s in shuffled:
        backward = prof.apply_signal(backward, s)

    assert forward.preferences.genre_affinities == backward.preferences.genre_affinities
    assert forward.preferences.actor_affinities == backward.preferences.actor_affinities
    assert forward.behavior.total_likes == backward.behavior.total_likes
    assert forward.preferences.decade_likes == backward.preferences.decade_likes


def test_affinity_invariants_hold_for_random_sequences():
    rng = random.Random(42)
    p = prof.create_empty_taste_profile("u1")
    for i in range(300):
        raw = {
            "userId": "u1",
            "contentId": rng.randint(1, 60),
            "direction": rng.choice(["like", "dislike", "skip"]),
            "features": {
                "genreIds": rng.sample([28, 35, 18, 27, 53, 878], k=rng.randint(0, 3)),
                "actorIds": [rng.randint(1, 8) for _ in range(rng.randint(0, 4))],
                "directorId": rng.choice([None, 90, 91]),
            },
        }
        p = prof.apply_signal(p, ingest(raw))

    prior = p.global_prior
    for dimension in prof.DIMENSIONS:
        for aff in p.preferences.affinities(dimension).values():
            assert aff.total_count >= aff.like_count >= 0
            assert 0.0 <= aff.score(prior) <= 1.0
    assert p.behavior.total_swipes == 300


def test_affinity_to_dict():
    aff = prof.AffinityScore(500, "Actor", like_count=5, total_count=5)
    assert prof.affinity_to_dict(aff, 0.8) == {
        'id': 500, 'name': "Actor", 'like_count': 5, 'total_count': 5, 'score': 0.8,
    }
