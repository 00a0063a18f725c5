"""
Member notifications.

Each notification kind is its own pydantic model carrying exactly the fields
it needs, and knows how to render its title, message and priority. The
service persists every notification and forwards it to a webhook when one
is configured. Dispatch never raises: a failed notification must not undo
the circulation event that triggered it.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import date, datetime
from enum import Enum
from typing import Annotated, Any, Callable, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

from circulation.config import settings
from circulation.database import get_db_connection, write_transaction
from circulation.fines import compute_fine
from circulation.services.http_client import WebhookClient
from circulation.time_utils import Clock, to_iso, utcnow
from circulation.transaction import Transaction

logger = logging.getLogger(__name__)

# Schedules fn(*args) to run later, e.g. BackgroundTasks.add_task
Defer = Callable[..., None]


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


# Accrued fines at or above this amount escalate an overdue alert to urgent
URGENT_FINE_THRESHOLD = 10.0


class _NotificationBase(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    user_id: int

    def render(self) -> Dict[str, Any]:
        raise NotImplementedError


class DueReminder(_NotificationBase):
    kind: Literal["due_reminder"] = "due_reminder"
    book_id: int
    book_title: str
    due_date: date

    def render(self) -> Dict[str, Any]:
        return {
            "title": "Book Due Soon",
            "message": f'"{self.book_title}" is due on {self.due_date.isoformat()}. Please return or renew it.',
            "priority": Priority.MEDIUM,
            "action_required": True,
        }


class OverdueAlert(_NotificationBase):
    kind: Literal["overdue_alert"] = "overdue_alert"
    book_id: int
    book_title: str
    due_date: date
    fine_amount: float = 0.0

    def render(self) -> Dict[str, Any]:
        message = f'"{self.book_title}" was due on {self.due_date.isoformat()} and is now overdue.'
        if self.fine_amount > 0:
            message += f" Current fine: ${self.fine_amount:.2f}."
        return {
            "title": "Book Overdue",
            "message": message,
            "priority": Priority.URGENT if self.fine_amount >= URGENT_FINE_THRESHOLD else Priority.HIGH,
            "action_required": True,
        }


class BorrowConfirmation(_NotificationBase):
    kind: Literal["borrow_confirmation"] = "borrow_confirmation"
    book_id: int
    book_title: str
    due_date: date

    def render(self) -> Dict[str, Any]:
        return {
            "title": "Book Borrowed",
            "message": f'You borrowed "{self.book_title}". It is due on {self.due_date.isoformat()}.',
            "priority": Priority.LOW,
            "action_required": False,
        }


class ReturnConfirmation(_NotificationBase):
    kind: Literal["return_confirmation"] = "return_confirmation"
    book_id: Optional[int] = None
    book_title: str
    fine_amount: float = 0.0

    def render(self) -> Dict[str, Any]:
        message = f'You returned "{self.book_title}".'
        if self.fine_amount > 0:
            message += f" A late fee of ${self.fine_amount:.2f} applies."
        return {
            "title": "Book Returned",
            "message": message,
            "priority": Priority.MEDIUM if self.fine_amount > 0 else Priority.LOW,
            "action_required": False,
        }


class FineNotice(_NotificationBase):
    kind: Literal["fine_notice"] = "fine_notice"
    book_id: Optional[int] = None
    book_title: str
    fine_amount: float

    def render(self) -> Dict[str, Any]:
        return {
            "title": "Fine Issued",
            "message": f'A fine of ${self.fine_amount:.2f} was issued for "{self.book_title}".',
            "priority": Priority.HIGH,
            "action_required": True,
        }


class SystemAlert(_NotificationBase):
    kind: Literal["system_alert"] = "system_alert"
    title: str
    message: str
    priority: Priority = Priority.MEDIUM

    def render(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "message": self.message,
            "priority": self.priority,
            "action_required": False,
        }


Notification = Annotated[
    Union[DueReminder, OverdueAlert, BorrowConfirmation, ReturnConfirmation, FineNotice, SystemAlert],
    Field(discriminator="kind"),
]
notification_adapter: TypeAdapter = TypeAdapter(Notification)


def parse_notification(data: Dict[str, Any]) -> _NotificationBase:
    """Build the matching variant from a ``kind``-tagged mapping."""
    return notification_adapter.validate_python(data)


# ------------------------- Builders for circulation events ------------------------- #
def _book_title(tx: Transaction) -> str:
    return tx.book.get("title") or "Unknown Book"


def for_borrow(tx: Transaction) -> List[_NotificationBase]:
    return [BorrowConfirmation(user_id=tx.user_id, book_id=tx.book_id,
                               book_title=_book_title(tx), due_date=tx.due_date.date())]


def for_return(tx: Transaction) -> List[_NotificationBase]:
    notes: List[_NotificationBase] = [
        ReturnConfirmation(user_id=tx.user_id, book_id=tx.book_id,
                           book_title=_book_title(tx), fine_amount=tx.fine_amount)
    ]
    if tx.fine_amount > 0 and not tx.fine_paid:
        notes.append(FineNotice(user_id=tx.user_id, book_id=tx.book_id,
                                book_title=_book_title(tx), fine_amount=tx.fine_amount))
    return notes


def for_overdue(tx: Transaction, now: datetime,
                rate_per_day: float = settings.fine_rate_per_day) -> List[_NotificationBase]:
    """Alert for a loan that just went overdue, quoting the fine accrued so far."""
    return [OverdueAlert(user_id=tx.user_id, book_id=tx.book_id, book_title=_book_title(tx),
                         due_date=tx.due_date.date(),
                         fine_amount=compute_fine(tx.due_date, now, rate_per_day))]


def for_due_soon(tx: Transaction) -> List[_NotificationBase]:
    return [DueReminder(user_id=tx.user_id, book_id=tx.book_id,
                        book_title=_book_title(tx), due_date=tx.due_date.date())]


class NotificationRecord:
    """A stored notification as read back from the database."""

    def __init__(self, user_id: int, kind: str, title: str, message: str,
                 priority: str = Priority.MEDIUM.value, book_id: Optional[int] = None,
                 book_title: Optional[str] = None, due_date: Optional[str] = None,
                 fine_amount: float = 0.0, action_required: bool = False,
                 is_read: bool = False, created_at: Optional[str] = None,
                 id: Optional[int] = None) -> None:
        self.id = id
        self.user_id = user_id
        self.kind = kind
        self.title = title
        self.message = message
        self.priority = priority
        self.book_id = book_id
        self.book_title = book_title
        self.due_date = due_date
        self.fine_amount = fine_amount
        self.action_required = action_required
        self.is_read = is_read
        self.created_at = created_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "type": self.kind,
            "title": self.title,
            "message": self.message,
            "bookId": self.book_id,
            "bookTitle": self.book_title,
            "dueDate": self.due_date,
            "fineAmount": round(self.fine_amount or 0.0, 2),
            "priority": self.priority,
            "actionRequired": self.action_required,
            "isRead": self.is_read,
            "createdAt": self.created_at,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "NotificationRecord":
        return NotificationRecord(
            id=data.get("id"),
            user_id=data["user_id"],
            kind=data["kind"],
            title=data["title"],
            message=data["message"],
            priority=data.get("priority") or Priority.MEDIUM.value,
            book_id=data.get("book_id"),
            book_title=data.get("book_title"),
            due_date=data.get("due_date"),
            fine_amount=data.get("fine_amount") or 0.0,
            action_required=bool(data.get("action_required")),
            is_read=bool(data.get("is_read")),
            created_at=data.get("created_at"),
        )


NOTIFICATION_COLUMNS = """
    id, user_id, kind, title, message, book_id, book_title, due_date,
    fine_amount, priority, action_required, is_read, created_at
"""


class NotificationStore:
    def __init__(self, db_file: Optional[str] = None) -> None:
        self.db_file = db_file

    def save(self, notification: _NotificationBase, now: datetime) -> NotificationRecord:
        rendered = notification.render()
        due = getattr(notification, "due_date", None)
        record = NotificationRecord(
            user_id=notification.user_id,
            kind=notification.kind,
            title=rendered["title"],
            message=rendered["message"],
            priority=Priority(rendered["priority"]).value,
            book_id=getattr(notification, "book_id", None),
            book_title=getattr(notification, "book_title", None),
            due_date=due.isoformat() if due else None,
            fine_amount=getattr(notification, "fine_amount", 0.0),
            action_required=rendered["action_required"],
            created_at=to_iso(now),
        )
        with write_transaction(self.db_file) as conn:
            cursor = conn.execute(
                """
                INSERT INTO notifications (
                    user_id, kind, title, message, book_id, book_title, due_date,
                    fine_amount, priority, action_required, is_read, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?)
                """,
                (
                    record.user_id, record.kind, record.title, record.message, record.book_id,
                    record.book_title, record.due_date, record.fine_amount, record.priority,
                    int(record.action_required), record.created_at,
                ),
            )
            record.id = cursor.lastrowid
        return record

    def list_for_user(self, user_id: int, unread_only: bool = False, limit: int = 50) -> List[NotificationRecord]:
        query = f"SELECT {NOTIFICATION_COLUMNS} FROM notifications WHERE user_id = ?"
        if unread_only:
            query += " AND is_read = 0"
        query += " ORDER BY created_at DESC, id DESC LIMIT ?"
        conn = get_db_connection(self.db_file)
        try:
            rows = conn.execute(query, (user_id, limit)).fetchall()
            return [NotificationRecord.from_dict(dict(row)) for row in rows]
        finally:
            conn.close()

    def mark_read(self, notification_id: int) -> Optional[NotificationRecord]:
        with write_transaction(self.db_file) as conn:
            cursor = conn.execute("UPDATE notifications SET is_read = 1 WHERE id = ?", (notification_id,))
            if cursor.rowcount == 0:
                return None
            row = conn.execute(
                f"SELECT {NOTIFICATION_COLUMNS} FROM notifications WHERE id = ?", (notification_id,)
            ).fetchone()
        return NotificationRecord.from_dict(dict(row))

    def mark_all_read(self, user_id: int) -> int:
        with write_transaction(self.db_file) as conn:
            cursor = conn.execute(
                "UPDATE notifications SET is_read = 1 WHERE user_id = ? AND is_read = 0", (user_id,)
            )
            return cursor.rowcount

    def unread_count(self, user_id: int) -> int:
        conn = get_db_connection(self.db_file)
        try:
            row = conn.execute(
                "SELECT COUNT(*) AS n FROM notifications WHERE user_id = ? AND is_read = 0", (user_id,)
            ).fetchone()
            return row["n"]
        finally:
            conn.close()


class NotificationService:
    """Persists notifications and forwards them to the configured webhook."""

    def __init__(self, store: NotificationStore, webhook_url: Optional[str] = settings.notification_webhook_url,
                 client: Optional[WebhookClient] = None, retries: int = 3, backoff: float = 0.5,
                 clock: Clock = utcnow) -> None:
        self.store = store
        self.webhook_url = webhook_url
        self.client = client
        self.retries = retries
        self.backoff = backoff
        self.clock = clock

    def dispatch(self, notification: _NotificationBase,
                 defer: Optional[Defer] = None) -> Optional[NotificationRecord]:
        """Store ``notification`` and hand it to the webhook.

        The store write happens inline. Delivery goes through ``defer``
        (e.g. ``BackgroundTasks.add_task``) when given, so a slow webhook
        never holds up the caller.
        """
        try:
            record = self.store.save(notification, self.clock())
        except sqlite3.Error:
            logger.exception("Failed to store %s notification for user %s",
                             notification.kind, notification.user_id)
            return None

        if self.webhook_url:
            if defer is not None:
                defer(self._deliver, record)
            else:
                self._deliver(record)
        return record

    def dispatch_all(self, notifications: List[_NotificationBase],
                     defer: Optional[Defer] = None) -> List[NotificationRecord]:
        records = [self.dispatch(n, defer) for n in notifications]
        return [r for r in records if r is not None]

    def _deliver(self, record: NotificationRecord) -> None:
        try:
            self._post(record)
        except Exception:
            logger.exception("Webhook delivery of notification %s raised", record.id)

    def _post(self, record: NotificationRecord) -> None:
        if self.client is None:
            self.client = WebhookClient()
        response = self.client.post_with_retry(
            self.webhook_url, retries=self.retries, backoff=self.backoff, json=record.to_dict()
        )
        if response is None:
            logger.error("Webhook delivery of notification %s failed after %d attempts", record.id, self.retries)
        elif response.status_code >= 400:
            logger.warning("Webhook rejected notification %s with status %d", record.id, response.status_code)
        else:
            logger.debug("Delivered notification %s to webhook", record.id)

    def close(self) -> None:
        if self.client is not None:
            self.client.close()
