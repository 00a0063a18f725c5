"""Ledger entry model and the pure overdue-derivation rule."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from circulation.time_utils import format_date, parse_datetime


class TransactionStatus(str, Enum):
    ACTIVE = "active"
    RETURNED = "returned"
    OVERDUE = "overdue"


class TransactionType(str, Enum):
    BORROW = "borrow"
    RETURN = "return"
    RENEW = "renew"


OPEN_STATUSES = (TransactionStatus.ACTIVE, TransactionStatus.OVERDUE)


class Transaction:
    """One borrow event, from checkout until the copy comes back."""

    def __init__(self, book_id: int, user_id: int, borrow_date: datetime, due_date: datetime,
                 type: TransactionType | str = TransactionType.BORROW,
                 status: TransactionStatus | str = TransactionStatus.ACTIVE,
                 return_date: Optional[datetime] = None, fine_amount: float = 0.0,
                 fine_paid: bool = False, fine_paid_date: Optional[datetime] = None,
                 notes: Optional[str] = None, id: Optional[int] = None,
                 book: Optional[Dict[str, Any]] = None) -> None:
        self.id = id
        self.book_id = book_id
        self.user_id = user_id
        self.type = TransactionType(type)
        self.borrow_date = borrow_date
        self.due_date = due_date
        self.return_date = return_date
        self.status = TransactionStatus(status)
        self.fine_amount = fine_amount
        self.fine_paid = fine_paid
        self.fine_paid_date = fine_paid_date
        self.notes = notes
        # Joined catalog details (title/author/isbn/category), when loaded
        self.book = book or {}

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "bookId": self.book_id,
            "userId": self.user_id,
            "bookTitle": self.book.get("title") or "Unknown Book",
            "bookAuthor": self.book.get("author") or "Unknown Author",
            "bookIsbn": self.book.get("isbn") or "",
            "bookCategory": self.book.get("category") or "",
            "type": self.type.value,
            "borrowDate": format_date(self.borrow_date),
            "dueDate": format_date(self.due_date),
            "returnDate": format_date(self.return_date),
            "status": self.status.value,
            "fineAmount": round(self.fine_amount or 0.0, 2),
            "finePaid": bool(self.fine_paid),
            "finePaidDate": format_date(self.fine_paid_date),
            "notes": self.notes or "",
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Transaction":
        def _dt(key: str) -> Optional[datetime]:
            value = data.get(key)
            return parse_datetime(value) if value else None

        book = None
        if data.get("book_title") is not None:
            book = {
                "title": data.get("book_title"),
                "author": data.get("book_author"),
                "isbn": data.get("book_isbn"),
                "category": data.get("book_category"),
            }
        return Transaction(
            id=data.get("id"),
            book_id=data["book_id"],
            user_id=data["user_id"],
            type=data["type"],
            borrow_date=_dt("borrow_date"),
            due_date=_dt("due_date"),
            return_date=_dt("return_date"),
            status=data["status"],
            fine_amount=data.get("fine_amount") or 0.0,
            fine_paid=bool(data.get("fine_paid")),
            fine_paid_date=_dt("fine_paid_date"),
            notes=data.get("notes"),
            book=book,
        )


def derive_status(transaction: Transaction, now: datetime) -> TransactionStatus:
    """Status as of ``now``: an active loan past its due date reads as overdue."""
    if (
        transaction.status == TransactionStatus.ACTIVE
        and transaction.return_date is None
        and transaction.due_date < now
    ):
        return TransactionStatus.OVERDUE
    return transaction.status
