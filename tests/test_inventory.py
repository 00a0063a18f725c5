import pytest

from circulation.book import Book, BookStatus, derive_book_status
from circulation.database import write_transaction
from circulation.errors import BookNotFound, InventoryExhausted, ValidationError
from circulation.inventory import Inventory


def test_add_list_and_find(inventory, make_book):
    assert inventory.list_books() == []

    book = make_book("Ulysses", "James Joyce", copies=3, isbn="978-0-19-953567-5")

    assert book.id is not None
    assert book.isbn == "9780199535675"
    assert book.available_copies == 3
    found = inventory.find_book(book.id)
    assert found.title == "Ulysses"
    assert inventory.find_by_isbn("978 0199535675").id == book.id


def test_duplicate_isbn_rejected(inventory, make_book):
    make_book(isbn="1234567890")
    with pytest.raises(ValidationError, match="already exists"):
        make_book(title="Other", isbn="123-456-7890")
    assert len(inventory.list_books()) == 1


@pytest.mark.parametrize(
    "title,author,isbn,copies,field",
    [
        ("", "Author", "1234567890", 1, "title"),
        ("T" * 201, "Author", "1234567890", 1, "title"),
        ("Title", "", "1234567890", 1, "author"),
        ("Title", "Author", "12345", 1, "isbn"),
        ("Title", "Author", "1234567890", 0, "totalCopies"),
    ],
)
def test_invalid_books_rejected(inventory, title, author, isbn, copies, field):
    with pytest.raises(ValidationError) as exc:
        inventory.add_book(Book(title=title, author=author, isbn=isbn, category="Fiction", total_copies=copies))
    assert exc.value.field == field


def test_search_and_category_filter(inventory, make_book):
    make_book("Dune", "Frank Herbert", category="Fiction")
    make_book("Cosmos", "Carl Sagan", category="Science")

    assert [b.title for b in inventory.search_books("sagan")] == ["Cosmos"]
    assert [b.title for b in inventory.list_books("Fiction")] == ["Dune"]


def test_take_copy_until_exhausted(db_file, make_book):
    book = make_book(copies=2)

    for _ in range(2):
        with write_transaction(db_file) as conn:
            Inventory.take_copy(conn, book.id, "2024-03-01T09:00:00+00:00")
    with pytest.raises(InventoryExhausted):
        with write_transaction(db_file) as conn:
            Inventory.take_copy(conn, book.id, "2024-03-01T09:00:00+00:00")

    stored = Inventory(db_file).find_book(book.id)
    assert stored.available_copies == 0
    assert stored.status == BookStatus.BORROWED


def test_take_copy_of_unknown_book(db_file):
    with pytest.raises(BookNotFound):
        with write_transaction(db_file) as conn:
            Inventory.take_copy(conn, 999, "2024-03-01T09:00:00+00:00")


def test_release_copy_never_exceeds_total(db_file, make_book):
    book = make_book(copies=1)
    with write_transaction(db_file) as conn:
        Inventory.release_copy(conn, book.id, "2024-03-01T09:00:00+00:00")
    assert Inventory(db_file).find_book(book.id).available_copies == 1


def test_update_total_copies_keeps_loans_accounted(db_file, inventory, make_book):
    book = make_book(copies=3)
    with write_transaction(db_file) as conn:
        Inventory.take_copy(conn, book.id, "2024-03-01T09:00:00+00:00")

    updated = inventory.update_book(book.id, total_copies=5)
    assert (updated.total_copies, updated.available_copies) == (5, 4)

    updated = inventory.update_book(book.id, total_copies=1)
    assert (updated.total_copies, updated.available_copies) == (1, 0)
    assert updated.status == BookStatus.BORROWED

    with pytest.raises(ValidationError, match="at least 1"):
        inventory.update_book(book.id, total_copies=0)


def test_total_copies_cannot_drop_below_loans(db_file, inventory, make_book):
    book = make_book(copies=3)
    for _ in range(2):
        with write_transaction(db_file) as conn:
            Inventory.take_copy(conn, book.id, "2024-03-01T09:00:00+00:00")

    with pytest.raises(ValidationError, match="on loan"):
        inventory.update_book(book.id, total_copies=1)
    assert inventory.find_book(book.id).total_copies == 3


def test_update_unknown_book_returns_none(inventory):
    assert inventory.update_book(42, title="Nope") is None


def test_maintenance_status_survives_while_copies_remain(inventory, make_book):
    book = make_book(copies=2)
    updated = inventory.update_book(book.id, status=BookStatus.MAINTENANCE)
    assert updated.status == BookStatus.MAINTENANCE


def test_remove_book(inventory, make_book):
    book = make_book()
    assert inventory.remove_book(book.id) is True
    assert inventory.remove_book(book.id) is False
    assert inventory.find_book(book.id) is None


@pytest.mark.parametrize(
    "available,current,expected",
    [
        (0, BookStatus.AVAILABLE, BookStatus.BORROWED),
        (1, BookStatus.BORROWED, BookStatus.AVAILABLE),
        (1, BookStatus.RESERVED, BookStatus.RESERVED),
        (0, BookStatus.MAINTENANCE, BookStatus.BORROWED),
    ],
)
def test_derive_book_status(available, current, expected):
    assert derive_book_status(available, current) == expected
