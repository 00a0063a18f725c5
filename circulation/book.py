from __future__ import annotations

from enum import Enum
from typing import Optional


class BookStatus(str, Enum):
    AVAILABLE = "available"
    BORROWED = "borrowed"
    RESERVED = "reserved"
    MAINTENANCE = "maintenance"


def derive_book_status(available_copies: int, current: BookStatus = BookStatus.AVAILABLE) -> BookStatus:
    """Status follows the copy counts; reserved/maintenance survive while copies remain."""
    if available_copies <= 0:
        return BookStatus.BORROWED
    if current == BookStatus.BORROWED:
        return BookStatus.AVAILABLE
    return current


class Book:
    """Represents a single title in the inventory, with its copy counts."""

    def __init__(self, title: str, author: str, isbn: str, category: str,
                 total_copies: int = 1, available_copies: Optional[int] = None,
                 status: BookStatus | str = BookStatus.AVAILABLE, location: str | None = None,
                 id: int | None = None, created_at: str | None = None,
                 updated_at: str | None = None) -> None:
        self.id = id
        self.title = title.strip()
        self.author = author.strip()
        self.isbn = isbn.strip()
        self.category = category.strip()
        self.location = location
        self.total_copies = total_copies
        self.available_copies = total_copies if available_copies is None else available_copies
        self.status = BookStatus(status)
        self.created_at = created_at
        self.updated_at = updated_at

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author} (ISBN: {self.isbn})"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "isbn": self.isbn,
            "category": self.category,
            "location": self.location,
            "totalCopies": self.total_copies,
            "availableCopies": self.available_copies,
            "status": self.status.value,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    @staticmethod
    def from_dict(data: dict) -> "Book":
        # Rows come from SQLite with snake_case column names
        return Book(
            id=data.get("id"),
            title=data["title"],
            author=data["author"],
            isbn=data["isbn"],
            category=data["category"],
            location=data.get("location"),
            total_copies=data["total_copies"],
            available_copies=data["available_copies"],
            status=data.get("status") or BookStatus.AVAILABLE,
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )
