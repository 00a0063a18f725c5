"""Front desk: the circulation workflow shared by the HTTP API and the CLI.

Wraps the lifecycle service with the member checks that precede a borrow
and the notifications and audit entries that follow each change. Those
follow-ups are best effort and never undo a committed lifecycle write.
"""

import logging
from typing import List, Optional

from circulation.errors import ResourceNotFoundError
from circulation.lifecycle import TransactionLifecycle
from circulation.policy import BorrowingPolicy
from circulation.services import notifications
from circulation.services.activity import SYSTEM, ActionType, ActivityLog, Entity, Performer
from circulation.services.notifications import Defer, NotificationService
from circulation.time_utils import DateLike
from circulation.transaction import Transaction
from circulation.users import User, UserDirectory

logger = logging.getLogger(__name__)


def _book_entity(tx: Transaction) -> Entity:
    return Entity("book", tx.book.get("title") or "Unknown Book", tx.book_id)


class CirculationDesk:
    def __init__(self, lifecycle: TransactionLifecycle, users: UserDirectory,
                 policy: BorrowingPolicy, notifier: NotificationService,
                 activity: ActivityLog) -> None:
        self.lifecycle = lifecycle
        self.users = users
        self.policy = policy
        self.notifier = notifier
        self.activity = activity

    def borrow(self, book_id: int, user_id: int, due_date: Optional[DateLike] = None,
               defer: Optional[Defer] = None) -> Transaction:
        user = self.users.get_user(user_id)
        if user is None:
            raise ResourceNotFoundError("User", user_id)
        self.policy.check(user, self.lifecycle.open_loans(user.id), self.lifecycle.clock())

        tx = self.lifecycle.borrow(book_id, user_id, due_date)
        try:
            self.notifier.dispatch_all(notifications.for_borrow(tx), defer)
            self.activity.record(
                ActionType.BOOK_BORROWED, self._as_performer(user), _book_entity(tx),
                f'{user.name} borrowed "{tx.book.get("title") or "Unknown Book"}"',
            )
        except Exception:
            logger.exception("Follow-up for borrow transaction %s failed", tx.id)
        return tx

    def return_book(self, transaction_id: int, return_date: Optional[DateLike] = None,
                    defer: Optional[Defer] = None) -> Transaction:
        tx = self.lifecycle.return_book(transaction_id, return_date)
        try:
            self.notifier.dispatch_all(notifications.for_return(tx), defer)
            description = "Book returned successfully"
            if tx.fine_amount > 0:
                description += f". Late fee: ${tx.fine_amount:.2f}"
            self.activity.record(ActionType.BOOK_RETURNED, self._performer(tx.user_id),
                                 _book_entity(tx), description)
        except Exception:
            logger.exception("Follow-up for return of transaction %s failed", tx.id)
        return tx

    def renew(self, transaction_id: int, extension_days: Optional[int] = None) -> Transaction:
        tx = self.lifecycle.renew(transaction_id, extension_days)
        try:
            self.activity.record(ActionType.BOOK_RENEWED, self._performer(tx.user_id), _book_entity(tx),
                                 f"Loan renewed until {tx.to_dict()['dueDate']}")
        except Exception:
            logger.exception("Follow-up for renewal of transaction %s failed", tx.id)
        return tx

    def pay_fine(self, transaction_id: int, fine_paid: bool = True) -> Transaction:
        tx = self.lifecycle.pay_fine(transaction_id, fine_paid)
        try:
            self.activity.record(ActionType.FINE_PAID, self._performer(tx.user_id), _book_entity(tx),
                                 "Fine marked as paid" if fine_paid else "Fine marked as unpaid")
        except Exception:
            logger.exception("Follow-up for fine payment of transaction %s failed", tx.id)
        return tx

    def reconcile(self, defer: Optional[Defer] = None) -> List[Transaction]:
        """Persist overdue transitions and alert each affected member."""
        flipped = self.lifecycle.reconcile_overdue()
        now = self.lifecycle.clock()
        for tx in flipped:
            try:
                self.notifier.dispatch_all(
                    notifications.for_overdue(tx, now, self.lifecycle.fine_rate_per_day), defer
                )
            except Exception:
                logger.exception("Overdue alert for transaction %s failed", tx.id)
        return flipped

    def send_due_reminders(self, within_days: int = 2, defer: Optional[Defer] = None) -> List[Transaction]:
        loans = self.lifecycle.due_soon(within_days)
        for tx in loans:
            try:
                self.notifier.dispatch_all(notifications.for_due_soon(tx), defer)
            except Exception:
                logger.exception("Due reminder for transaction %s failed", tx.id)
        return loans

    @staticmethod
    def _as_performer(user: User) -> Performer:
        return Performer(user.name, user.role.value)

    def _performer(self, user_id: int) -> Performer:
        user = self.users.get_user(user_id)
        if user is None:
            return SYSTEM
        return self._as_performer(user)
