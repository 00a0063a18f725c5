"""Borrowing rules applied by the HTTP and CLI surfaces before a borrow.

These are library policy, not ledger invariants: the lifecycle service
itself only guards copy counts.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable

from circulation.config import settings
from circulation.errors import PolicyViolationError
from circulation.transaction import Transaction, TransactionStatus, derive_status
from circulation.users import User


@dataclass
class BorrowingPolicy:
    max_active_loans: int = settings.max_active_loans
    block_on_overdue: bool = settings.block_borrow_when_overdue

    def check(self, user: User, open_loans: Iterable[Transaction], now: datetime) -> None:
        if not user.can_borrow():
            raise PolicyViolationError(f"User {user.id} is {user.status.value} and cannot borrow books.")

        loans = [tx for tx in open_loans if tx.is_open]
        if self.block_on_overdue and any(derive_status(tx, now) == TransactionStatus.OVERDUE for tx in loans):
            raise PolicyViolationError(
                "You cannot borrow books while you have overdue books. Please return them first."
            )
        if len(loans) >= self.max_active_loans:
            raise PolicyViolationError(
                f"You have reached the maximum borrowing limit ({self.max_active_loans} books). "
                "Please return some books first."
            )
