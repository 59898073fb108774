"""Error taxonomy shared by the resolution engine, coordinator and Booking API.

Each error carries the client-facing ``message``.  The HTTP layer maps the
class to a status code; the WebSocket layer turns it into ``claim_denied``
or ``error`` events.
"""

from __future__ import annotations

# Contention and expiry deliberately share one client-facing message.
SLOT_HELD_MESSAGE = "This time slot is currently held by another invitee. Pick another slot or try again shortly."
SLOT_TAKEN_MESSAGE = "Time slot is no longer available"


class SchedulingError(Exception):
    """Base class for all request-level scheduling failures."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.message}


class ValidationError(SchedulingError):
    """Malformed input: bad date range, unknown meeting type, bad claim handle."""

    status_code = 400


class NotFoundError(ValidationError):
    """Unknown organizer or record."""

    status_code = 404


class ContentionError(SchedulingError):
    """A live claim from another session overlaps the requested interval."""

    status_code = 409

    def __init__(self, message: str = SLOT_HELD_MESSAGE) -> None:
        super().__init__(message)


class ExpiryError(SchedulingError):
    """A claim handle was used after its TTL elapsed."""

    status_code = 409

    def __init__(self, message: str = SLOT_HELD_MESSAGE) -> None:
        super().__init__(message)


class ConflictError(SchedulingError):
    """A booked appointment already occupies the interval.

    Never retried automatically; the client has to resolve slots again.
    """

    status_code = 409

    def __init__(self, message: str = SLOT_TAKEN_MESSAGE) -> None:
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error": self.message, "resolve_again": True}
