"""
Dashboard statistics.

Each rollup runs as an independent query in a worker thread, bounded by a
per-query timeout with retries and by an overall deadline for the batch.
A query that still fails degrades its section to zeros instead of failing
the request. Complete results are cached per period.
"""

import asyncio
import copy
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from circulation.config import settings
from circulation.database import get_db_connection, ping
from circulation.errors import DependencyTimeout, DependencyUnavailableError, ValidationError
from circulation.services.cache_manager import StatisticsCache
from circulation.time_utils import Clock, to_iso, utcnow

logger = logging.getLogger(__name__)

DEFAULT_PERIOD = 30
MAX_PERIOD = 365
TOP_N = 5

Query = Callable[[Optional[str], str, str], Any]


# ------------------------- Queries ------------------------- #
# Each query takes (db_file, since, now) as ISO strings and opens its own
# connection, since it runs on a worker thread.

def _query_overview(db_file: Optional[str], since: str, now: str) -> Dict[str, int]:
    conn = get_db_connection(db_file)
    try:
        row = conn.execute(
            """
            SELECT
                (SELECT COUNT(*) FROM books) AS total_books,
                (SELECT COUNT(*) FROM users WHERE role = 'student') AS total_users,
                (SELECT COUNT(*) FROM users WHERE role = 'librarian') AS total_librarians,
                (SELECT COUNT(*) FROM transactions WHERE status IN ('active', 'overdue')) AS active_loans,
                (SELECT COUNT(*) FROM transactions
                  WHERE status = 'overdue'
                     OR (status = 'active' AND return_date IS NULL AND due_date < ?)) AS overdue,
                (SELECT COUNT(*) FROM transactions) AS total_transactions
            """,
            (now,),
        ).fetchone()
        return {
            "totalBooks": row["total_books"],
            "totalUsers": row["total_users"],
            "totalLibrarians": row["total_librarians"],
            "activeLoans": row["active_loans"],
            "overdue": row["overdue"],
            "totalTransactions": row["total_transactions"],
        }
    finally:
        conn.close()


def _query_availability(db_file: Optional[str], since: str, now: str) -> Dict[str, int]:
    conn = get_db_connection(db_file)
    try:
        row = conn.execute(
            """
            SELECT COALESCE(SUM(total_copies), 0) AS total_copies,
                   COALESCE(SUM(available_copies), 0) AS available_copies
            FROM books
            """
        ).fetchone()
        return {"totalCopies": row["total_copies"], "availableCopies": row["available_copies"]}
    finally:
        conn.close()


def _query_daily(db_file: Optional[str], since: str, now: str) -> List[Dict[str, Any]]:
    conn = get_db_connection(db_file)
    try:
        rows = conn.execute(
            """
            SELECT day, SUM(borrows) AS borrows, SUM(returns) AS returns FROM (
                SELECT substr(borrow_date, 1, 10) AS day, 1 AS borrows, 0 AS returns
                FROM transactions WHERE borrow_date >= ?
                UNION ALL
                SELECT substr(return_date, 1, 10) AS day, 0 AS borrows, 1 AS returns
                FROM transactions WHERE return_date IS NOT NULL AND return_date >= ?
            )
            GROUP BY day
            ORDER BY day
            """,
            (since, since),
        ).fetchall()
        return [{"date": r["day"], "borrows": r["borrows"], "returns": r["returns"]} for r in rows]
    finally:
        conn.close()


def _query_categories(db_file: Optional[str], since: str, now: str) -> List[Dict[str, Any]]:
    conn = get_db_connection(db_file)
    try:
        rows = conn.execute(
            "SELECT category, COUNT(*) AS count FROM books GROUP BY category ORDER BY count DESC, category"
        ).fetchall()
        return [{"category": r["category"], "count": r["count"]} for r in rows]
    finally:
        conn.close()


def _query_popular_books(db_file: Optional[str], since: str, now: str) -> List[Dict[str, Any]]:
    conn = get_db_connection(db_file)
    try:
        rows = conn.execute(
            """
            SELECT t.book_id, b.title, b.author, COUNT(*) AS borrow_count
            FROM transactions t
            JOIN books b ON b.id = t.book_id
            WHERE t.borrow_date >= ?
            GROUP BY t.book_id
            ORDER BY borrow_count DESC, b.title
            LIMIT ?
            """,
            (since, TOP_N),
        ).fetchall()
        return [
            {"bookId": r["book_id"], "title": r["title"], "author": r["author"], "borrowCount": r["borrow_count"]}
            for r in rows
        ]
    finally:
        conn.close()


def _query_active_users(db_file: Optional[str], since: str, now: str) -> List[Dict[str, Any]]:
    conn = get_db_connection(db_file)
    try:
        rows = conn.execute(
            """
            SELECT t.user_id, u.name, COUNT(*) AS transaction_count
            FROM transactions t
            JOIN users u ON u.id = t.user_id
            WHERE t.borrow_date >= ?
            GROUP BY t.user_id
            ORDER BY transaction_count DESC, u.name
            LIMIT ?
            """,
            (since, TOP_N),
        ).fetchall()
        return [
            {"userId": r["user_id"], "name": r["name"], "transactionCount": r["transaction_count"]}
            for r in rows
        ]
    finally:
        conn.close()


def _query_fines(db_file: Optional[str], since: str, now: str) -> Dict[str, float]:
    conn = get_db_connection(db_file)
    try:
        row = conn.execute(
            """
            SELECT COALESCE(SUM(fine_amount), 0) AS total_fines,
                   COALESCE(SUM(CASE WHEN fine_paid = 1 THEN fine_amount ELSE 0 END), 0) AS fines_paid,
                   COALESCE(SUM(CASE WHEN fine_paid = 0 THEN fine_amount ELSE 0 END), 0) AS unpaid_fines
            FROM transactions
            WHERE borrow_date >= ? AND fine_amount > 0
            """,
            (since,),
        ).fetchone()
        return {
            "totalFines": round(row["total_fines"], 2),
            "finesPaid": round(row["fines_paid"], 2),
            "unpaidFines": round(row["unpaid_fines"], 2),
        }
    finally:
        conn.close()


# Section name -> (query, value used when the query fails)
DEFAULT_QUERIES: Dict[str, Tuple[Query, Any]] = {
    "overview": (_query_overview, {
        "totalBooks": 0, "totalUsers": 0, "totalLibrarians": 0,
        "activeLoans": 0, "overdue": 0, "totalTransactions": 0,
    }),
    "availability": (_query_availability, {"totalCopies": 0, "availableCopies": 0}),
    "daily": (_query_daily, []),
    "categories": (_query_categories, []),
    "popularBooks": (_query_popular_books, []),
    "activeUsers": (_query_active_users, []),
    "fines": (_query_fines, {"totalFines": 0, "finesPaid": 0, "unpaidFines": 0}),
}


@dataclass
class StatisticsReport:
    data: Dict[str, Any]
    cached: bool = False
    degraded: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        payload = {"success": True, "data": self.data, "cached": self.cached}
        if self.degraded:
            payload["degraded"] = self.degraded
        return payload


class StatisticsAggregator:
    """Computes the statistics payload for a trailing window of ``period`` days."""

    def __init__(self, db_file: Optional[str] = None, cache: Optional[StatisticsCache] = None,
                 clock: Clock = utcnow,
                 query_timeout: float = settings.stats_query_timeout,
                 retries: int = settings.stats_query_retries,
                 retry_backoff: float = settings.stats_retry_backoff,
                 total_timeout: float = settings.stats_total_timeout,
                 queries: Optional[Dict[str, Tuple[Query, Any]]] = None,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep) -> None:
        self.db_file = db_file
        self.cache = cache if cache is not None else StatisticsCache()
        self.clock = clock
        self.query_timeout = query_timeout
        self.retries = retries
        self.retry_backoff = retry_backoff
        self.total_timeout = total_timeout
        self.queries = queries if queries is not None else DEFAULT_QUERIES
        self._sleep = sleep

    @staticmethod
    def validate_period(period: Any) -> int:
        try:
            if isinstance(period, bool):
                raise ValueError(period)
            value = int(period)
        except (TypeError, ValueError):
            value = 0
        if not 1 <= value <= MAX_PERIOD:
            raise ValidationError(
                f"Invalid period parameter. Must be between 1 and {MAX_PERIOD} days.", field="period"
            )
        return value

    async def get_statistics(self, period: Any = DEFAULT_PERIOD) -> StatisticsReport:
        days = self.validate_period(period)
        cache_key = f"statistics_{days}"

        cached = self.cache.get(cache_key)
        if cached is not None:
            return StatisticsReport(data=cached, cached=True)

        try:
            await asyncio.to_thread(ping, self.db_file)
        except sqlite3.Error as e:
            logger.error("Database unavailable for statistics: %s", e)
            raise DependencyUnavailableError("Database connection failed") from e

        now = self.clock()
        since = now - timedelta(days=days)
        sections, degraded = await self._collect(to_iso(since), to_iso(now))

        data = {
            "overview": {**sections["overview"], "availability": sections["availability"]},
            "trends": {"daily": sections["daily"], "categories": sections["categories"]},
            "insights": {"popularBooks": sections["popularBooks"], "activeUsers": sections["activeUsers"]},
            "finances": {"fines": sections["fines"]},
        }

        if degraded:
            logger.warning("Statistics for %d days degraded: %s", days, ", ".join(degraded))
        else:
            self.cache.set(cache_key, data)
        return StatisticsReport(data=data, cached=False, degraded=degraded)

    # ------------------------- Helpers ------------------------- #
    async def _collect(self, since: str, now: str) -> Tuple[Dict[str, Any], List[str]]:
        names = list(self.queries)
        tasks = {
            name: asyncio.ensure_future(self._run_query(name, self.queries[name][0], since, now))
            for name in names
        }
        done, pending = await asyncio.wait(tasks.values(), timeout=self.total_timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.error("Statistics deadline of %.1fs exceeded; %d queries abandoned",
                         self.total_timeout, len(pending))

        sections: Dict[str, Any] = {}
        degraded: List[str] = []
        for name in names:
            task = tasks[name]
            if task in done and task.exception() is None:
                sections[name] = task.result()
                continue
            if task in done:
                logger.error("Statistics query %s failed: %s", name, task.exception())
            sections[name] = copy.deepcopy(self.queries[name][1])
            degraded.append(name)
        return sections, degraded

    async def _run_query(self, name: str, query: Query, since: str, now: str) -> Any:
        """Run one query on a worker thread with timeout and retry."""
        last_error: Optional[Exception] = None
        for attempt in range(self.retries + 1):
            try:
                return await asyncio.wait_for(
                    asyncio.to_thread(query, self.db_file, since, now), timeout=self.query_timeout
                )
            except asyncio.TimeoutError:
                last_error = DependencyTimeout(f"{name} query timed out after {self.query_timeout}s")
            except sqlite3.Error as e:
                last_error = e

            if attempt < self.retries:
                delay = self.retry_backoff * (2 ** attempt)
                logger.warning("Retrying %s query in %.1fs (attempt %d/%d): %s",
                               name, delay, attempt + 1, self.retries, last_error)
                await self._sleep(delay)
        raise last_error
