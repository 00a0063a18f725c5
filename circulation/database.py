import logging
import sqlite3
from contextlib import contextmanager
from typing import Iterator, Optional

from circulation.config import settings

logger = logging.getLogger(__name__)

# Default database file; callers (and tests) pass an explicit path instead.
DATABASE_FILE = settings.database_file


def get_db_connection(db_file: Optional[str] = None) -> sqlite3.Connection:
    """Open a connection to the SQLite database.

    Connections run in autocommit mode; multi-statement writes go through
    :func:`write_transaction`, which opens an explicit ``BEGIN IMMEDIATE``.
    """
    conn = sqlite3.connect(
        db_file or DATABASE_FILE,
        timeout=settings.database_timeout,
        isolation_level=None,
        check_same_thread=False,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA temp_store=MEMORY;")
    return conn


@contextmanager
def write_transaction(db_file: Optional[str] = None) -> Iterator[sqlite3.Connection]:
    """Run a block of statements as one atomic write unit.

    ``BEGIN IMMEDIATE`` takes the write lock up front, so a read-check-write
    sequence inside the block cannot interleave with another writer.
    """
    conn = get_db_connection(db_file)
    try:
        conn.execute("BEGIN IMMEDIATE")
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        else:
            conn.execute("COMMIT")
    finally:
        conn.close()


def ping(db_file: Optional[str] = None) -> None:
    """Raise ``sqlite3.Error`` if the database cannot be reached."""
    conn = get_db_connection(db_file)
    try:
        conn.execute("SELECT 1").fetchone()
    finally:
        conn.close()


def create_tables(db_file: Optional[str] = None) -> None:
    """Create the required tables if they do not exist yet."""
    conn = get_db_connection(db_file)
    try:
        # WAL gives readers a consistent snapshot while a borrow/return commits
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS books (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                title TEXT NOT NULL,
                author TEXT NOT NULL,
                isbn TEXT NOT NULL UNIQUE,
                category TEXT NOT NULL,
                location TEXT,
                total_copies INTEGER NOT NULL DEFAULT 1 CHECK(total_copies >= 1),
                available_copies INTEGER NOT NULL DEFAULT 1
                    CHECK(available_copies >= 0 AND available_copies <= total_copies),
                status TEXT NOT NULL DEFAULT 'available'
                    CHECK(status IN ('available', 'borrowed', 'reserved', 'maintenance')),
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                email TEXT NOT NULL UNIQUE,
                role TEXT NOT NULL DEFAULT 'student'
                    CHECK(role IN ('student', 'librarian', 'admin')),
                status TEXT NOT NULL DEFAULT 'active'
                    CHECK(status IN ('active', 'suspended', 'inactive')),
                created_at TEXT NOT NULL
            );

            -- No foreign keys: removing a book from the catalog does not
            -- touch its open loans.
            CREATE TABLE IF NOT EXISTS transactions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                book_id INTEGER NOT NULL,
                user_id INTEGER NOT NULL,
                type TEXT NOT NULL CHECK(type IN ('borrow', 'return', 'renew')),
                borrow_date TEXT NOT NULL,
                due_date TEXT NOT NULL,
                return_date TEXT,
                status TEXT NOT NULL DEFAULT 'active'
                    CHECK(status IN ('active', 'returned', 'overdue')),
                fine_amount REAL NOT NULL DEFAULT 0,
                fine_paid INTEGER NOT NULL DEFAULT 0,
                fine_paid_date TEXT,
                notes TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS notifications (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                kind TEXT NOT NULL,
                title TEXT NOT NULL,
                message TEXT NOT NULL,
                book_id INTEGER,
                book_title TEXT,
                due_date TEXT,
                fine_amount REAL NOT NULL DEFAULT 0,
                priority TEXT NOT NULL DEFAULT 'medium',
                action_required INTEGER NOT NULL DEFAULT 0,
                is_read INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS activity_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                action_type TEXT NOT NULL,
                performer_name TEXT NOT NULL,
                performer_role TEXT NOT NULL,
                entity_type TEXT NOT NULL,
                entity_id INTEGER,
                entity_name TEXT NOT NULL,
                description TEXT NOT NULL,
                timestamp TEXT NOT NULL
            );
        """)

        # Indexes for the ledger and statistics queries
        conn.execute("CREATE INDEX IF NOT EXISTS idx_books_category ON books(category)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_users_role ON users(role)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_transactions_user ON transactions(user_id, borrow_date DESC)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_transactions_book ON transactions(book_id)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_transactions_status_due ON transactions(status, due_date)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_transactions_borrow_date ON transactions(borrow_date)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id, is_read, created_at DESC)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_activity_logs_timestamp ON activity_logs(timestamp DESC)")
    finally:
        conn.close()


def initialize_database(db_file: Optional[str] = None) -> None:
    """Initialize the database schema; safe to call on every start."""
    create_tables(db_file)
    logger.debug("Database initialized at %s", db_file or DATABASE_FILE)
