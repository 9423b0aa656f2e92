import sys
from datetime import datetime, timedelta
from pathlib import Path

import pytest

# Ensure the package under test is importable without installation
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

from swipe_rec.catalog import CatalogItem, StaticCatalog  # noqa: E402
from swipe_rec.signals import Person  # noqa: E402

# Genre combinations cycled through the fixture catalog
GENRE_SETS = [
    (28, 12),
    (35,),
    (18, 10749),
    (27, 53),
    (878, 28),
    (16, 10751),
    (80, 18),
    (99,),
    (14, 12),
    (9648, 53),
]

BASE_TIME = datetime(2024, 3, 1, 12, 0, 0)


def build_items(n: int = 80) -> list[CatalogItem]:
    items = []
    for i in range(1, n + 1):
        items.append(CatalogItem(
            content_id=i,
            content_type="movie",
            title=f"Title {i}",
            poster_path=f"/poster{i}.jpg",
            vote_average=round(6.0 + (i * 7 % 30) / 10, 1),
            vote_count=200 if i % 4 == 0 else 1500 + i * 10,
            popularity=float(200 - i),
            release_year=1980 + i % 40,
            genre_ids=GENRE_SETS[i % len(GENRE_SETS)],
            cast=(Person(500 + i % 5, f"Actor {i % 5}"),),
            director=Person(900 + i % 3, f"Director {i % 3}"),
            runtime=90 + i % 60,
        ))
    return items


@pytest.fixture
def items():
    return build_items()


@pytest.fixture
def catalog(items):
    return StaticCatalog(items)


@pytest.fixture
def make_swipe():
    """
    Build a raw camelCase swipe payload, optionally from a CatalogItem.
    """
    def _make(
        user_id: str,
        content_id: int | CatalogItem,
        direction: str = "like",
        genres: tuple = (28,),
        vote: float = 7.5,
        year: int | None = 2015,
        actors: tuple = (),
        director: int | None = None,
        occurred_at: datetime | None = None,
        view_ms: int = 3000,
        expanded: bool = False,
        content_type: str = "movie",
    ) -> dict:
        if isinstance(content_id, CatalogItem):
            item = content_id
            content_id = item.content_id
            genres = item.genre_ids
            vote = item.vote_average
            year = item.release_year
            actors = tuple(p.id for p in item.cast)
            director = item.director.id if item.director else None
            content_type = item.content_type
        features = {
            "genreIds": list(genres),
            "actorIds": list(actors),
        }
        if director is not None:
            features["directorId"] = director
        return {
            "userId": user_id,
            "contentId": content_id,
            "contentType": content_type,
            "direction": direction,
            "features": features,
            "contentSnapshot": {
                "voteAverage": vote,
                "releaseYear": year,
                "title": f"Title {content_id}",
            },
            "engagement": {
                "viewDurationMs": view_ms,
                "cardExpanded": expanded,
            },
            "occurredAt": (occurred_at or BASE_TIME).isoformat(),
        }
    return _make


class TickingClock:
    """Strictly increasing fake wall clock."""

    def __init__(self, start: datetime = BASE_TIME):
        self.now = start

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now


@pytest.fixture
def clock():
    return TickingClock()


@pytest.fixture
def fresh_db(monkeypatch, tmp_path):
    """
    Point the default connection pool at a temporary database and close it afterwards.
    """
    import swipe_rec.database as database

    database.close_pool()
    monkeypatch.setattr(database, "DB_PATH", tmp_path / "test.db")
    yield database
    database.close_pool()


@pytest.fixture
def pool(tmp_path):
    from swipe_rec.database import ConnectionPool, init_schema

    p = ConnectionPool(tmp_path / "pool.db")
    init_schema(p)
    yield p
    p.close_all()
