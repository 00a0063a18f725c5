import logging
import sqlite3
from typing import List, Optional

from circulation.book import Book, BookStatus, derive_book_status
from circulation.database import get_db_connection, write_transaction
from circulation.errors import BookNotFound, InventoryExhausted, ValidationError
from circulation.time_utils import to_iso, utcnow
from circulation.validators import ISBNValidator, TextValidator

logger = logging.getLogger(__name__)

BOOK_COLUMNS = """
    id, title, author, isbn, category, location, total_copies,
    available_copies, status, created_at, updated_at
"""


class Inventory:
    """Manages the book catalog and its copy counts."""

    def __init__(self, db_file: Optional[str] = None) -> None:
        self.db_file = db_file

    # ------------------------- Catalog operations ------------------------- #
    def add_book(self, book: Book) -> Book:
        """Add a new title. ISBNs are unique across the catalog."""
        book.isbn = ISBNValidator.normalize_isbn(book.isbn)
        book.title = TextValidator.sanitize_text(book.title)
        book.author = TextValidator.sanitize_text(book.author)
        self._validate(book)
        now = to_iso(utcnow())
        book.available_copies = book.total_copies
        book.status = derive_book_status(book.available_copies, book.status)

        try:
            with write_transaction(self.db_file) as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO books (
                        title, author, isbn, category, location, total_copies,
                        available_copies, status, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        book.title, book.author, book.isbn, book.category, book.location,
                        book.total_copies, book.available_copies, book.status.value, now, now,
                    ),
                )
                book.id = cursor.lastrowid
        except sqlite3.IntegrityError as e:
            raise ValidationError(f"Book with ISBN {book.isbn} already exists.", field="isbn") from e

        book.created_at = book.updated_at = now
        logger.info("Added book %s (%s) with %d copies", book.id, book.isbn, book.total_copies)
        return book

    def remove_book(self, book_id: int) -> bool:
        with write_transaction(self.db_file) as conn:
            cursor = conn.execute("DELETE FROM books WHERE id = ?", (book_id,))
            removed = cursor.rowcount > 0
        if removed:
            logger.info("Removed book %s", book_id)
        return removed

    def list_books(self, category: Optional[str] = None) -> List[Book]:
        """List every book (fresh from the database on each call)."""
        conn = get_db_connection(self.db_file)
        try:
            if category:
                cursor = conn.execute(
                    f"SELECT {BOOK_COLUMNS} FROM books WHERE category = ? ORDER BY title",
                    (category,),
                )
            else:
                cursor = conn.execute(f"SELECT {BOOK_COLUMNS} FROM books ORDER BY title")
            return [Book.from_dict(dict(row)) for row in cursor.fetchall()]
        finally:
            conn.close()

    def find_book(self, book_id: int) -> Optional[Book]:
        conn = get_db_connection(self.db_file)
        try:
            row = conn.execute(f"SELECT {BOOK_COLUMNS} FROM books WHERE id = ?", (book_id,)).fetchone()
            return Book.from_dict(dict(row)) if row else None
        finally:
            conn.close()

    def find_by_isbn(self, isbn: str) -> Optional[Book]:
        norm = ISBNValidator.normalize_isbn(isbn)
        conn = get_db_connection(self.db_file)
        try:
            row = conn.execute(f"SELECT {BOOK_COLUMNS} FROM books WHERE isbn = ?", (norm,)).fetchone()
            return Book.from_dict(dict(row)) if row else None
        finally:
            conn.close()

    def search_books(self, query: str) -> List[Book]:
        """Search by title, author or category."""
        pattern = f"%{query}%"
        conn = get_db_connection(self.db_file)
        try:
            cursor = conn.execute(
                f"""
                SELECT {BOOK_COLUMNS} FROM books
                WHERE title LIKE ? OR author LIKE ? OR category LIKE ?
                ORDER BY title
                """,
                (pattern, pattern, pattern),
            )
            return [Book.from_dict(dict(row)) for row in cursor.fetchall()]
        finally:
            conn.close()

    def update_book(self, book_id: int, *, title: Optional[str] = None, author: Optional[str] = None,
                    category: Optional[str] = None, location: Optional[str] = None,
                    total_copies: Optional[int] = None,
                    status: Optional[BookStatus] = None) -> Optional[Book]:
        """Apply a catalog edit. Returns the updated book, or None if not found.

        Changing ``total_copies`` shifts ``available_copies`` by the same delta,
        so copies already on loan stay accounted for.
        """
        with write_transaction(self.db_file) as conn:
            row = conn.execute(f"SELECT {BOOK_COLUMNS} FROM books WHERE id = ?", (book_id,)).fetchone()
            if row is None:
                return None
            book = Book.from_dict(dict(row))

            if title is not None:
                book.title = title.strip()
            if author is not None:
                book.author = author.strip()
            if category is not None:
                book.category = category.strip()
            if location is not None:
                book.location = location.strip() or None
            if total_copies is not None:
                on_loan = book.total_copies - book.available_copies
                if total_copies < 1:
                    raise ValidationError("Total copies must be at least 1", field="totalCopies")
                if total_copies < on_loan:
                    raise ValidationError(
                        f"Total copies cannot drop below the {on_loan} copies currently on loan",
                        field="totalCopies",
                    )
                book.total_copies = total_copies
                book.available_copies = min(max(total_copies - on_loan, 0), total_copies)

            self._validate(book)
            book.status = derive_book_status(book.available_copies, status or book.status)
            book.updated_at = to_iso(utcnow())
            conn.execute(
                """
                UPDATE books
                SET title = ?, author = ?, category = ?, location = ?, total_copies = ?,
                    available_copies = ?, status = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    book.title, book.author, book.category, book.location, book.total_copies,
                    book.available_copies, book.status.value, book.updated_at, book_id,
                ),
            )
        return book

    # ------------------------- Copy accounting ------------------------- #
    # Both helpers run inside the caller's write transaction.
    @staticmethod
    def take_copy(conn: sqlite3.Connection, book_id: int, now: str) -> None:
        """Decrement available copies by one, only if one is left."""
        exists = conn.execute("SELECT 1 FROM books WHERE id = ?", (book_id,)).fetchone()
        if exists is None:
            raise BookNotFound(book_id)
        cursor = conn.execute(
            """
            UPDATE books
            SET available_copies = available_copies - 1,
                status = CASE WHEN available_copies - 1 = 0 THEN 'borrowed' ELSE status END,
                updated_at = ?
            WHERE id = ? AND available_copies > 0
            """,
            (now, book_id),
        )
        if cursor.rowcount == 0:
            raise InventoryExhausted(book_id)

    @staticmethod
    def release_copy(conn: sqlite3.Connection, book_id: int, now: str) -> None:
        """Increment available copies by one, never past the total."""
        cursor = conn.execute(
            """
            UPDATE books
            SET available_copies = available_copies + 1,
                status = 'available',
                updated_at = ?
            WHERE id = ? AND available_copies < total_copies
            """,
            (now, book_id),
        )
        if cursor.rowcount == 0:
            exists = conn.execute("SELECT 1 FROM books WHERE id = ?", (book_id,)).fetchone()
            if exists is None:
                logger.warning("Returned a copy of book %s, which is no longer in the catalog", book_id)
            else:
                logger.warning("Book %s already has all copies on the shelf; count left unchanged", book_id)

    # ------------------------- Helpers ------------------------- #
    @staticmethod
    def _validate(book: Book) -> None:
        if not ISBNValidator.is_valid_isbn(book.isbn):
            raise ValidationError(f"{book.isbn} is not a valid ISBN!", field="isbn")
        if not TextValidator.validate_title(book.title):
            raise ValidationError("Title is required (max 200 characters)", field="title")
        if not TextValidator.validate_author(book.author):
            raise ValidationError("Author is required (max 100 characters)", field="author")
        if not TextValidator.validate_category(book.category):
            raise ValidationError("Category is required", field="category")
        if not isinstance(book.total_copies, int) or book.total_copies < 1:
            raise ValidationError("Total copies must be an integer of at least 1", field="totalCopies")
