import sqlite3
from datetime import datetime
from typing import List, Optional

from circulation.database import get_db_connection
from circulation.time_utils import to_iso
from circulation.transaction import Transaction, TransactionStatus

TRANSACTION_SELECT = """
    SELECT t.id, t.book_id, t.user_id, t.type, t.borrow_date, t.due_date, t.return_date,
           t.status, t.fine_amount, t.fine_paid, t.fine_paid_date, t.notes,
           b.title AS book_title, b.author AS book_author,
           b.isbn AS book_isbn, b.category AS book_category
    FROM transactions t
    LEFT JOIN books b ON b.id = t.book_id
"""


class TransactionLedger:
    """Persistence for transactions. Status derivation is left to the caller."""

    def __init__(self, db_file: Optional[str] = None) -> None:
        self.db_file = db_file

    def insert(self, conn: sqlite3.Connection, tx: Transaction, now: datetime) -> Transaction:
        stamp = to_iso(now)
        cursor = conn.execute(
            """
            INSERT INTO transactions (
                book_id, user_id, type, borrow_date, due_date, return_date, status,
                fine_amount, fine_paid, fine_paid_date, notes, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                tx.book_id, tx.user_id, tx.type.value, to_iso(tx.borrow_date), to_iso(tx.due_date),
                to_iso(tx.return_date), tx.status.value, tx.fine_amount, int(tx.fine_paid),
                to_iso(tx.fine_paid_date), tx.notes, stamp, stamp,
            ),
        )
        tx.id = cursor.lastrowid
        return tx

    def save(self, conn: sqlite3.Connection, tx: Transaction, now: datetime) -> None:
        """Write back every mutable field of ``tx``."""
        conn.execute(
            """
            UPDATE transactions
            SET type = ?, due_date = ?, return_date = ?, status = ?, fine_amount = ?,
                fine_paid = ?, fine_paid_date = ?, notes = ?, updated_at = ?
            WHERE id = ?
            """,
            (
                tx.type.value, to_iso(tx.due_date), to_iso(tx.return_date), tx.status.value,
                tx.fine_amount, int(tx.fine_paid), to_iso(tx.fine_paid_date), tx.notes,
                to_iso(now), tx.id,
            ),
        )

    def get(self, tx_id: int, conn: Optional[sqlite3.Connection] = None) -> Optional[Transaction]:
        own = conn is None
        conn = conn or get_db_connection(self.db_file)
        try:
            row = conn.execute(TRANSACTION_SELECT + " WHERE t.id = ?", (tx_id,)).fetchone()
            return Transaction.from_dict(dict(row)) if row else None
        finally:
            if own:
                conn.close()

    def list_for_user(self, user_id: int) -> List[Transaction]:
        """All of a user's transactions, newest borrow first."""
        conn = get_db_connection(self.db_file)
        try:
            rows = conn.execute(
                TRANSACTION_SELECT + " WHERE t.user_id = ? ORDER BY t.borrow_date DESC, t.id DESC",
                (user_id,),
            ).fetchall()
            return [Transaction.from_dict(dict(row)) for row in rows]
        finally:
            conn.close()

    def list_open_for_user(self, user_id: int) -> List[Transaction]:
        conn = get_db_connection(self.db_file)
        try:
            rows = conn.execute(
                TRANSACTION_SELECT + " WHERE t.user_id = ? AND t.status IN (?, ?) ORDER BY t.due_date",
                (user_id, TransactionStatus.ACTIVE.value, TransactionStatus.OVERDUE.value),
            ).fetchall()
            return [Transaction.from_dict(dict(row)) for row in rows]
        finally:
            conn.close()

    @staticmethod
    def mark_overdue(conn: sqlite3.Connection, now: datetime) -> List[int]:
        """Flip active, unreturned, past-due rows to overdue; returns the flipped ids."""
        stamp = to_iso(now)
        rows = conn.execute(
            """
            SELECT id FROM transactions
            WHERE status = ? AND return_date IS NULL AND due_date < ?
            """,
            (TransactionStatus.ACTIVE.value, stamp),
        ).fetchall()
        ids = [row["id"] for row in rows]
        if ids:
            conn.executemany(
                "UPDATE transactions SET status = ?, updated_at = ? WHERE id = ? AND status = ?",
                [(TransactionStatus.OVERDUE.value, stamp, tx_id, TransactionStatus.ACTIVE.value) for tx_id in ids],
            )
        return ids

    def list_due_between(self, start: datetime, end: datetime) -> List[Transaction]:
        """Active loans whose due date falls in [start, end), soonest first."""
        conn = get_db_connection(self.db_file)
        try:
            rows = conn.execute(
                TRANSACTION_SELECT + """
                WHERE t.status = ? AND t.return_date IS NULL AND t.due_date >= ? AND t.due_date < ?
                ORDER BY t.due_date
                """,
                (TransactionStatus.ACTIVE.value, to_iso(start), to_iso(end)),
            ).fetchall()
            return [Transaction.from_dict(dict(row)) for row in rows]
        finally:
            conn.close()
