"""Borrow/return/renew lifecycle.

This service is the only writer of ``books.available_copies`` and of a
transaction's status and fine. Borrow and return each run as a single
``BEGIN IMMEDIATE`` unit, so the copy count and the ledger entry change
together or not at all.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import List, Optional

from circulation.config import settings
from circulation.database import write_transaction
from circulation.errors import InvalidActionError, ResourceNotFoundError, ValidationError
from circulation.fines import accrue_fine
from circulation.inventory import Inventory
from circulation.ledger import TransactionLedger
from circulation.time_utils import Clock, DateLike, end_of_day, is_date_only, parse_datetime, to_iso, utcnow
from circulation.transaction import (
    Transaction,
    TransactionStatus,
    TransactionType,
    derive_status,
)

logger = logging.getLogger(__name__)

MAX_EXTENSION_DAYS = 365


class TransactionLifecycle:
    def __init__(self, db_file: Optional[str] = None, clock: Clock = utcnow,
                 loan_period_days: int = settings.loan_period_days,
                 renew_days: int = settings.renew_days,
                 fine_rate_per_day: float = settings.fine_rate_per_day) -> None:
        self.db_file = db_file
        self.clock = clock
        self.loan_period_days = loan_period_days
        self.renew_days = renew_days
        self.fine_rate_per_day = fine_rate_per_day
        self.ledger = TransactionLedger(db_file)

    # ------------------------- Mutations ------------------------- #
    def borrow(self, book_id: int, user_id: int, due_date: Optional[DateLike] = None) -> Transaction:
        """Check out one copy of ``book_id`` to ``user_id``.

        Raises ``BookNotFound`` for an unknown book and ``InventoryExhausted``
        when no copy is left.
        """
        if book_id is None:
            raise ValidationError("Book ID is required", field="bookId")
        if user_id is None:
            raise ValidationError("User ID is required", field="userId")

        now = self.clock()
        if due_date:
            due = self._parse_date(due_date, "dueDate")
            # A bare date means the loan is due by the end of that day
            if is_date_only(due_date):
                due = end_of_day(due)
        else:
            due = now + timedelta(days=self.loan_period_days)
        if due <= now:
            raise ValidationError("Due date cannot be in the past", field="dueDate")

        tx = Transaction(book_id=book_id, user_id=user_id, borrow_date=now, due_date=due)
        with write_transaction(self.db_file) as conn:
            Inventory.take_copy(conn, book_id, to_iso(now))
            self.ledger.insert(conn, tx, now)

        logger.info("User %s borrowed book %s (transaction %s, due %s)", user_id, book_id, tx.id, to_iso(due))
        return self._load(tx.id, now)

    def return_book(self, transaction_id: int, return_date: Optional[DateLike] = None) -> Transaction:
        """Close an open loan, price any late days and put the copy back."""
        now = self.clock()
        returned_at = self._parse_date(return_date, "returnDate") if return_date else now

        with write_transaction(self.db_file) as conn:
            tx = self._get_open(conn, transaction_id, "return")
            if returned_at.date() < tx.borrow_date.date():
                raise ValidationError("Return date cannot be before the borrow date", field="returnDate")

            tx.return_date = max(returned_at, tx.borrow_date)
            tx.fine_amount = accrue_fine(tx.fine_amount, tx.due_date, tx.return_date, self.fine_rate_per_day)
            tx.status = TransactionStatus.RETURNED
            tx.type = TransactionType.RETURN
            self.ledger.save(conn, tx, now)
            Inventory.release_copy(conn, tx.book_id, to_iso(now))

        if tx.fine_amount > 0:
            logger.info("Transaction %s returned late; fine %.2f", transaction_id, tx.fine_amount)
        else:
            logger.info("Transaction %s returned on time", transaction_id)
        return self._load(transaction_id, now)

    def renew(self, transaction_id: int, extension_days: Optional[int] = None) -> Transaction:
        """Push the due date out; overdue loans may be renewed and become active again."""
        # None and 0 both mean the default extension
        days = extension_days or self.renew_days
        if not isinstance(days, int) or isinstance(days, bool) or not 1 <= days <= MAX_EXTENSION_DAYS:
            raise ValidationError(f"Renew days must be between 1 and {MAX_EXTENSION_DAYS}", field="renewDays")

        now = self.clock()
        with write_transaction(self.db_file) as conn:
            tx = self._get_open(conn, transaction_id, "renew")
            tx.due_date = tx.due_date + timedelta(days=days)
            tx.status = TransactionStatus.ACTIVE
            tx.type = TransactionType.RENEW
            self.ledger.save(conn, tx, now)

        logger.info("Transaction %s renewed by %d days (due %s)", transaction_id, days, to_iso(tx.due_date))
        return self._load(transaction_id, now)

    def pay_fine(self, transaction_id: int, fine_paid: bool = True) -> Transaction:
        now = self.clock()
        with write_transaction(self.db_file) as conn:
            tx = self.ledger.get(transaction_id, conn)
            if tx is None:
                raise ResourceNotFoundError("Transaction", transaction_id)
            tx.fine_paid = bool(fine_paid)
            tx.fine_paid_date = now if tx.fine_paid else None
            # Keep a lazily-detected overdue state in step with what readers see
            tx.status = derive_status(tx, now)
            self.ledger.save(conn, tx, now)

        logger.info("Transaction %s fine marked %s", transaction_id, "paid" if fine_paid else "unpaid")
        return self._load(transaction_id, now)

    def reconcile_overdue(self) -> List[Transaction]:
        """Persist the active -> overdue transition for every past-due loan.

        Idempotent: a second run with the same clock flips nothing.
        """
        now = self.clock()
        with write_transaction(self.db_file) as conn:
            flipped = self.ledger.mark_overdue(conn, now)
        if flipped:
            logger.info("Marked %d transaction(s) overdue", len(flipped))
        return [self._load(tx_id, now) for tx_id in flipped]

    # ------------------------- Reads ------------------------- #
    def get_transaction(self, transaction_id: int) -> Transaction:
        return self._load(transaction_id, self.clock())

    def list_transactions(self, user_id: int, status: Optional[TransactionStatus] = None) -> List[Transaction]:
        """A user's transactions, newest first, with overdue status derived."""
        now = self.clock()
        transactions = [self._present(tx, now) for tx in self.ledger.list_for_user(user_id)]
        if status is not None:
            wanted = TransactionStatus(status)
            transactions = [tx for tx in transactions if tx.status == wanted]
        return transactions

    def open_loans(self, user_id: int) -> List[Transaction]:
        now = self.clock()
        return [self._present(tx, now) for tx in self.ledger.list_open_for_user(user_id)]

    def due_soon(self, within_days: int = 2) -> List[Transaction]:
        now = self.clock()
        return self.ledger.list_due_between(now, now + timedelta(days=within_days))

    # ------------------------- Helpers ------------------------- #
    def _get_open(self, conn, transaction_id: int, action: str) -> Transaction:
        tx = self.ledger.get(transaction_id, conn)
        if tx is None:
            raise ResourceNotFoundError("Transaction", transaction_id)
        if not tx.is_open:
            raise InvalidActionError(action, f"transaction {transaction_id} is already {tx.status.value}")
        return tx

    def _load(self, transaction_id: int, now: datetime) -> Transaction:
        tx = self.ledger.get(transaction_id)
        if tx is None:
            raise ResourceNotFoundError("Transaction", transaction_id)
        return self._present(tx, now)

    @staticmethod
    def _present(tx: Transaction, now: datetime) -> Transaction:
        tx.status = derive_status(tx, now)
        return tx

    @staticmethod
    def _parse_date(value: DateLike, field: str) -> datetime:
        try:
            return parse_datetime(value)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Invalid date: {value!r}", field=field) from e
