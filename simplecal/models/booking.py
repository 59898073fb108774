"""Pydantic models for booking requests and appointment updates."""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, field_validator


class BookingRequest(BaseModel):
    """Data an invitee submits to finalize a claimed slot."""

    meeting_type_id: str
    slot_start: datetime
    invitee_name: str
    invitee_email: str
    invitee_phone: Optional[str] = None
    invitee_notes: Optional[str] = None
    claim_handle: str

    @field_validator("invitee_name")
    @classmethod
    def _name_present(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("invitee_name is required")
        return value

    @field_validator("invitee_email")
    @classmethod
    def _email_shape(cls, value: str) -> str:
        value = value.strip()
        local, _, domain = value.partition("@")
        if not local or "." not in domain:
            raise ValueError("invitee_email is not a valid address")
        return value


class AppointmentUpdate(BaseModel):
    """Organizer-side change: cancel, or move to a new start."""

    status: Optional[Literal["booked", "canceled", "rescheduled"]] = None
    slot_start: Optional[datetime] = None


class CancelRequest(BaseModel):
    """Invitee-side cancellation using the token from the confirmation."""

    cancellation_token: str
