import asyncio
import sqlite3
import time

import pytest

from circulation.errors import DependencyUnavailableError, ValidationError
from circulation.services.cache_manager import StatisticsCache
from circulation.statistics import DEFAULT_QUERIES, StatisticsAggregator


@pytest.fixture
def seeded(lifecycle, make_book, make_user, clock):
    """Two loans on day one; the Dune copy comes back three days late."""
    dune = make_book("Dune", "Frank Herbert", copies=2, category="Fiction")
    cosmos = make_book("Cosmos", "Carl Sagan", copies=1, category="Science")
    ada = make_user("Ada Reader")
    bob = make_user("Bob Borrower")
    make_user("Libby Librarian", role="librarian")

    first = lifecycle.borrow(dune.id, ada.id)
    lifecycle.borrow(cosmos.id, bob.id)
    clock.advance(days=17)
    lifecycle.return_book(first.id)
    return {"ada": ada, "bob": bob, "dune": dune, "cosmos": cosmos}


@pytest.fixture
def aggregator(db_file, clock):
    return StatisticsAggregator(db_file, cache=StatisticsCache(ttl_seconds=300), clock=clock)


def test_statistics_payload(seeded, aggregator):
    report = asyncio.run(aggregator.get_statistics(30))

    assert report.cached is False
    assert report.degraded == []
    data = report.data
    assert data["overview"] == {
        "totalBooks": 2,
        "totalUsers": 2,
        "totalLibrarians": 1,
        "activeLoans": 1,
        "overdue": 1,
        "totalTransactions": 2,
        "availability": {"totalCopies": 3, "availableCopies": 2},
    }
    assert data["trends"]["daily"] == [
        {"date": "2024-03-01", "borrows": 2, "returns": 0},
        {"date": "2024-03-18", "borrows": 0, "returns": 1},
    ]
    assert data["trends"]["categories"] == [
        {"category": "Fiction", "count": 1},
        {"category": "Science", "count": 1},
    ]
    assert [b["title"] for b in data["insights"]["popularBooks"]] == ["Cosmos", "Dune"]
    assert {u["name"] for u in data["insights"]["activeUsers"]} == {"Ada Reader", "Bob Borrower"}
    assert data["finances"]["fines"] == {"totalFines": 1.5, "finesPaid": 0, "unpaidFines": 1.5}


def test_short_period_excludes_older_activity(seeded, aggregator):
    report = asyncio.run(aggregator.get_statistics(7))

    assert report.data["trends"]["daily"] == [{"date": "2024-03-18", "borrows": 0, "returns": 1}]
    assert report.data["insights"]["popularBooks"] == []
    # Totals are not windowed
    assert report.data["overview"]["totalTransactions"] == 2


def test_second_call_is_served_from_cache(seeded, aggregator):
    first = asyncio.run(aggregator.get_statistics(30))
    second = asyncio.run(aggregator.get_statistics("30"))

    assert second.cached is True
    assert second.data == first.data
    assert second.to_dict() == {"success": True, "data": first.data, "cached": True}


def test_empty_database(aggregator):
    report = asyncio.run(aggregator.get_statistics())
    assert report.data["overview"]["totalBooks"] == 0
    assert report.data["finances"]["fines"] == {"totalFines": 0, "finesPaid": 0, "unpaidFines": 0}


@pytest.mark.parametrize("period", [0, 366, -5, "abc", "7 days", None, True])
def test_invalid_period(aggregator, period):
    with pytest.raises(ValidationError) as exc:
        asyncio.run(aggregator.get_statistics(period))
    assert exc.value.field == "period"


def test_failing_query_is_retried_then_degraded(db_file, clock):
    calls = []
    delays = []

    def broken(db, since, now):
        calls.append(now)
        raise sqlite3.OperationalError("database is locked")

    async def fake_sleep(delay):
        delays.append(delay)

    queries = dict(DEFAULT_QUERIES)
    queries["fines"] = (broken, DEFAULT_QUERIES["fines"][1])
    cache = StatisticsCache()
    aggregator = StatisticsAggregator(db_file, cache=cache, clock=clock, retries=2, retry_backoff=1.0,
                                      queries=queries, sleep=fake_sleep)

    report = asyncio.run(aggregator.get_statistics(30))

    assert len(calls) == 3
    assert delays == [1.0, 2.0]
    assert report.degraded == ["fines"]
    assert report.to_dict()["degraded"] == ["fines"]
    assert report.data["finances"]["fines"] == {"totalFines": 0, "finesPaid": 0, "unpaidFines": 0}
    assert report.data["overview"]["totalBooks"] == 0
    # Partial results are never cached
    assert cache.get("statistics_30") is None


def test_fallback_values_are_not_shared(db_file, clock):
    def broken(db, since, now):
        raise sqlite3.OperationalError("boom")

    queries = dict(DEFAULT_QUERIES)
    queries["daily"] = (broken, [])
    aggregator = StatisticsAggregator(db_file, cache=StatisticsCache(), clock=clock, retries=0, queries=queries)

    report = asyncio.run(aggregator.get_statistics())
    report.data["trends"]["daily"].append({"date": "x"})

    assert queries["daily"][1] == []


def test_slow_query_times_out(db_file, clock):
    def slow(db, since, now):
        time.sleep(0.3)
        return []

    queries = dict(DEFAULT_QUERIES)
    queries["daily"] = (slow, [])
    aggregator = StatisticsAggregator(db_file, cache=StatisticsCache(), clock=clock, query_timeout=0.05,
                                      retries=0, queries=queries)

    report = asyncio.run(aggregator.get_statistics())

    assert report.degraded == ["daily"]
    assert report.data["trends"]["daily"] == []


def test_total_deadline_abandons_pending_queries(db_file, clock):
    def slow(db, since, now):
        time.sleep(0.5)
        return [{"category": "late", "count": 1}]

    queries = dict(DEFAULT_QUERIES)
    queries["categories"] = (slow, [])
    aggregator = StatisticsAggregator(db_file, cache=StatisticsCache(), clock=clock, query_timeout=5,
                                      retries=0, total_timeout=0.1, queries=queries)

    report = asyncio.run(aggregator.get_statistics())

    assert "categories" in report.degraded
    assert report.data["trends"]["categories"] == []


def test_unreachable_database(tmp_path, clock):
    missing = str(tmp_path / "no-such-dir" / "library.db")
    aggregator = StatisticsAggregator(missing, cache=StatisticsCache(), clock=clock)

    with pytest.raises(DependencyUnavailableError):
        asyncio.run(aggregator.get_statistics())
