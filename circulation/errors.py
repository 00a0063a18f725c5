"""Exception taxonomy for the circulation service.

Every error carries a machine-readable ``code`` and the HTTP status the API
layer maps it to.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class CirculationError(Exception):
    code = "CIRCULATION_ERROR"
    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def details(self) -> Any:
        return self.message


class ValidationError(CirculationError):
    code = "VALIDATION_ERROR"
    status_code = 400

    def __init__(self, message: str, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field

    def details(self) -> Any:
        if self.field:
            return {"field": self.field, "message": self.message}
        return self.message


class ResourceNotFoundError(CirculationError):
    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, resource: str, resource_id: Any) -> None:
        super().__init__(f"{resource} with ID {resource_id} not found")
        self.resource = resource
        self.resource_id = resource_id


class BookNotFound(ResourceNotFoundError):
    def __init__(self, book_id: Any) -> None:
        super().__init__("Book", book_id)


class InvalidActionError(CirculationError):
    code = "INVALID_ACTION"
    status_code = 400

    def __init__(self, action: str, reason: str) -> None:
        super().__init__(f'Invalid action "{action}": {reason}')
        self.action = action


class InventoryExhausted(CirculationError):
    code = "NO_COPIES_AVAILABLE"
    status_code = 400

    def __init__(self, book_id: Any) -> None:
        super().__init__(f"No copies of book {book_id} are available")
        self.book_id = book_id


class PolicyViolationError(CirculationError):
    code = "POLICY_VIOLATION"
    status_code = 400


class AuthorizationError(CirculationError):
    code = "FORBIDDEN"
    status_code = 403


class DependencyTimeout(CirculationError):
    code = "DEPENDENCY_TIMEOUT"
    status_code = 503


class DependencyUnavailableError(CirculationError):
    code = "SERVICE_UNAVAILABLE"
    status_code = 503


class PersistenceError(CirculationError):
    code = "INTERNAL_ERROR"
    status_code = 500

    def details(self) -> Any:
        # Internal causes are logged, never returned to callers.
        return "An unexpected error occurred while accessing the database"


def error_payload(error: CirculationError) -> Dict[str, Any]:
    return {"success": False, "error": error.code, "details": error.details()}
