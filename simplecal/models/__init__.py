"""Request/response models for the HTTP and WebSocket interfaces."""

from .availability import ExceptionEntryIn, RecurringRuleIn
from .booking import AppointmentUpdate, BookingRequest, CancelRequest
from .claim import ClaimRequest

__all__ = [
    "AppointmentUpdate",
    "BookingRequest",
    "CancelRequest",
    "ClaimRequest",
    "ExceptionEntryIn",
    "RecurringRuleIn",
]
