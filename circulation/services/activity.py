"""Audit trail of catalog, membership and circulation events."""

from __future__ import annotations

import logging
import sqlite3
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from circulation.database import get_db_connection, write_transaction
from circulation.time_utils import Clock, to_iso, utcnow

logger = logging.getLogger(__name__)


class ActionType(str, Enum):
    USER_ADDED = "USER_ADDED"
    USER_UPDATED = "USER_UPDATED"
    BOOK_ADDED = "BOOK_ADDED"
    BOOK_REMOVED = "BOOK_REMOVED"
    BOOK_UPDATED = "BOOK_UPDATED"
    BOOK_BORROWED = "BOOK_BORROWED"
    BOOK_RETURNED = "BOOK_RETURNED"
    BOOK_RENEWED = "BOOK_RENEWED"
    FINE_PAID = "FINE_PAID"


class Performer:
    """Who triggered an event. Requests without a known member act as ``system``."""

    def __init__(self, name: str = "system", role: str = "system") -> None:
        self.name = name
        self.role = role


SYSTEM = Performer()


class Entity:
    def __init__(self, entity_type: str, name: str, entity_id: Optional[int] = None) -> None:
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.name = name


class Activity:
    def __init__(self, action_type: str, performer_name: str, performer_role: str,
                 entity_type: str, entity_name: str, description: str, timestamp: str,
                 entity_id: Optional[int] = None, id: Optional[int] = None) -> None:
        self.id = id
        self.action_type = action_type
        self.performer_name = performer_name
        self.performer_role = performer_role
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.entity_name = entity_name
        self.description = description
        self.timestamp = timestamp

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "actionType": self.action_type,
            "performedBy": {"userName": self.performer_name, "userRole": self.performer_role},
            "targetEntity": {
                "entityType": self.entity_type,
                "entityId": self.entity_id,
                "entityName": self.entity_name,
            },
            "description": self.description,
            "timestamp": self.timestamp,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Activity":
        return Activity(
            id=data.get("id"),
            action_type=data["action_type"],
            performer_name=data["performer_name"],
            performer_role=data["performer_role"],
            entity_type=data["entity_type"],
            entity_id=data.get("entity_id"),
            entity_name=data["entity_name"],
            description=data["description"],
            timestamp=data["timestamp"],
        )


class ActivityLog:
    def __init__(self, db_file: Optional[str] = None, clock: Clock = utcnow) -> None:
        self.db_file = db_file
        self.clock = clock

    def record(self, action_type: ActionType, performer: Performer, entity: Entity,
               description: str) -> Optional[Activity]:
        """Append an audit entry. Storage failures are logged, never raised."""
        activity = Activity(
            action_type=ActionType(action_type).value,
            performer_name=performer.name,
            performer_role=performer.role,
            entity_type=entity.entity_type,
            entity_id=entity.entity_id,
            entity_name=entity.name,
            description=description,
            timestamp=to_iso(self.clock()),
        )
        try:
            with write_transaction(self.db_file) as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO activity_logs (
                        action_type, performer_name, performer_role, entity_type,
                        entity_id, entity_name, description, timestamp
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        activity.action_type, activity.performer_name, activity.performer_role,
                        activity.entity_type, activity.entity_id, activity.entity_name,
                        activity.description, activity.timestamp,
                    ),
                )
                activity.id = cursor.lastrowid
        except sqlite3.Error:
            logger.exception("Failed to record %s activity", activity.action_type)
            return None
        return activity

    def recent(self, limit: int = 50, action_types: Optional[Iterable[ActionType]] = None) -> List[Activity]:
        """Newest entries first, optionally restricted to some action types."""
        query = "SELECT * FROM activity_logs"
        params: list = []
        types = [ActionType(t).value for t in action_types] if action_types else []
        if types:
            query += f" WHERE action_type IN ({', '.join('?' for _ in types)})"
            params.extend(types)
        query += " ORDER BY timestamp DESC, id DESC LIMIT ?"
        params.append(limit)

        conn = get_db_connection(self.db_file)
        try:
            rows = conn.execute(query, params).fetchall()
            return [Activity.from_dict(dict(row)) for row in rows]
        finally:
            conn.close()
