"""Domain errors raised by the reservation and event services."""

from __future__ import annotations


class DomainError(Exception):
    """Base class for business-rule failures surfaced to the caller."""

    status_code = 400
    error = "DomainError"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def as_payload(self) -> dict[str, str]:
        return {"error": self.error, "message": self.message}


class NotFound(DomainError):
    """Entity is absent or hidden from the caller."""

    status_code = 404
    error = "NotFound"


class Forbidden(DomainError):
    """Role or ownership mismatch."""

    status_code = 403
    error = "Forbidden"


class InvalidState(DomainError):
    """Wrong event status, full capacity or a terminal reservation state."""

    status_code = 400
    error = "InvalidState"


class Conflict(DomainError):
    """Duplicate active reservation."""

    status_code = 400
    error = "Conflict"


class Unauthenticated(DomainError):
    status_code = 401
    error = "Unauthenticated"
