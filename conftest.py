from datetime import datetime, timedelta, timezone

import pytest

from circulation.book import Book
from circulation.database import initialize_database
from circulation.inventory import Inventory
from circulation.lifecycle import TransactionLifecycle
from circulation.ui_helpers import OUTPUT_MODE_ENV
from circulation.users import User, UserDirectory

START = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock; tests move time forward explicitly."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def _plain_output(monkeypatch):
    # The CLI stores its output mode in the environment
    monkeypatch.delenv(OUTPUT_MODE_ENV, raising=False)


@pytest.fixture
def db_file(tmp_path, request):
    # Unique database file per test
    path = str(tmp_path / "test.db")
    initialize_database(path)
    return path


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def inventory(db_file):
    return Inventory(db_file)


@pytest.fixture
def users(db_file):
    return UserDirectory(db_file)


@pytest.fixture
def lifecycle(db_file, clock):
    return TransactionLifecycle(db_file, clock=clock)


@pytest.fixture
def make_book(inventory):
    counter = iter(range(1000))

    def _make(title="Dune", author="Frank Herbert", copies=1, category="Fiction", **kwargs):
        isbn = kwargs.pop("isbn", f"978000000{next(counter):04d}")
        return inventory.add_book(
            Book(title=title, author=author, isbn=isbn, category=category, total_copies=copies, **kwargs)
        )

    return _make


@pytest.fixture
def make_user(users):
    counter = iter(range(1000))

    def _make(name="Ada Reader", role="student", **kwargs):
        email = kwargs.pop("email", f"reader{next(counter)}@example.com")
        return users.add_user(User(name=name, email=email, role=role, **kwargs))

    return _make
