"""Pydantic model for claim requests over HTTP."""

from datetime import datetime

from pydantic import BaseModel


class ClaimRequest(BaseModel):
    organizer_id: str
    slot_start: datetime
    slot_end: datetime
    claimant_id: str
