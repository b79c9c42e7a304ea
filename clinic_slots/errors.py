"""Error taxonomy for slot allocation.

Every error carries the HTTP status it maps to so the API layer can render it
without knowing about individual cases.
"""

from __future__ import annotations


class SchedulingError(Exception):
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def payload(self) -> dict:
        return {"success": False, "message": self.message}


class ValidationError(SchedulingError):
    """Missing or malformed request fields. Not retried."""

    status_code = 400


class NotFoundError(SchedulingError):
    """Doctor or appointment missing, or not in an eligible state."""

    status_code = 404


class SlotConflict(SchedulingError):
    """The requested slot is taken; carries ranked alternatives for the caller."""

    status_code = 400

    def __init__(self, message: str, suggested_slots: list[str]) -> None:
        super().__init__(message)
        self.suggested_slots = suggested_slots

    def payload(self) -> dict:
        return {**super().payload(), "suggestedSlots": self.suggested_slots}


class PersistenceError(SchedulingError):
    """The booking store failed or timed out. The caller may retry the request."""

    status_code = 503


class DuplicateBookingError(SchedulingError):
    """Raised by a booking store when an active booking already holds the slot."""

    status_code = 400
