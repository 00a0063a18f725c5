from __future__ import annotations

import logging
import sqlite3
from enum import Enum
from typing import List, Optional

from circulation.database import get_db_connection, write_transaction
from circulation.errors import ValidationError
from circulation.time_utils import to_iso, utcnow
from circulation.validators import TextValidator

logger = logging.getLogger(__name__)


class Role(str, Enum):
    STUDENT = "student"
    LIBRARIAN = "librarian"
    ADMIN = "admin"


class UserStatus(str, Enum):
    ACTIVE = "active"
    SUSPENDED = "suspended"
    INACTIVE = "inactive"


class User:
    def __init__(self, name: str, email: str, role: Role | str = Role.STUDENT,
                 status: UserStatus | str = UserStatus.ACTIVE, id: Optional[int] = None,
                 created_at: Optional[str] = None) -> None:
        self.id = id
        self.name = name.strip()
        self.email = email.strip().lower()
        self.role = Role(role)
        self.status = UserStatus(status)
        self.created_at = created_at

    def can_borrow(self) -> bool:
        return self.status == UserStatus.ACTIVE

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role.value,
            "status": self.status.value,
            "createdAt": self.created_at,
        }

    @staticmethod
    def from_dict(data: dict) -> "User":
        return User(
            id=data.get("id"),
            name=data["name"],
            email=data["email"],
            role=data.get("role") or Role.STUDENT,
            status=data.get("status") or UserStatus.ACTIVE,
            created_at=data.get("created_at"),
        )


class UserDirectory:
    """Lookup of library members by id, as consumed by the circulation core."""

    def __init__(self, db_file: Optional[str] = None) -> None:
        self.db_file = db_file

    def add_user(self, user: User) -> User:
        if not user.name:
            raise ValidationError("Name is required", field="name")
        if not TextValidator.validate_email(user.email):
            raise ValidationError("Email must be in valid format (e.g., user@example.com)", field="email")

        user.created_at = to_iso(utcnow())
        try:
            with write_transaction(self.db_file) as conn:
                cursor = conn.execute(
                    "INSERT INTO users (name, email, role, status, created_at) VALUES (?, ?, ?, ?, ?)",
                    (user.name, user.email, user.role.value, user.status.value, user.created_at),
                )
                user.id = cursor.lastrowid
        except sqlite3.IntegrityError as e:
            raise ValidationError(f"User with email {user.email} already exists.", field="email") from e
        logger.info("Registered %s %s", user.role.value, user.id)
        return user

    def get_user(self, user_id: int) -> Optional[User]:
        conn = get_db_connection(self.db_file)
        try:
            row = conn.execute(
                "SELECT id, name, email, role, status, created_at FROM users WHERE id = ?",
                (user_id,),
            ).fetchone()
            return User.from_dict(dict(row)) if row else None
        finally:
            conn.close()

    def list_users(self, role: Optional[Role] = None) -> List[User]:
        conn = get_db_connection(self.db_file)
        try:
            query = "SELECT id, name, email, role, status, created_at FROM users"
            params: tuple = ()
            if role:
                query += " WHERE role = ?"
                params = (Role(role).value,)
            rows = conn.execute(query + " ORDER BY name", params).fetchall()
            return [User.from_dict(dict(row)) for row in rows]
        finally:
            conn.close()

    def set_status(self, user_id: int, status: UserStatus) -> Optional[User]:
        with write_transaction(self.db_file) as conn:
            cursor = conn.execute("UPDATE users SET status = ? WHERE id = ?", (UserStatus(status).value, user_id))
            if cursor.rowcount == 0:
                return None
        return self.get_user(user_id)
