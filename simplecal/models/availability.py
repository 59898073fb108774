"""Pydantic models for organizer availability rules and exceptions."""

from __future__ import annotations

from datetime import date
from typing import Optional

from pydantic import BaseModel, Field, field_validator, model_validator

from ..availability.base import parse_hhmm


def _check_hhmm(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    parse_hhmm(value)  # raises ValueError on bad input
    return value


class RecurringRuleIn(BaseModel):
    """A weekly window.  ``day_of_week``: 0 = Sunday ... 6 = Saturday."""

    day_of_week: int = Field(ge=0, le=6)
    start_time: str
    end_time: str
    buffer_before: int = Field(default=0, ge=0)
    buffer_after: int = Field(default=0, ge=0)
    meeting_duration: int = Field(default=30, gt=0)

    @field_validator("start_time", "end_time")
    @classmethod
    def _times(cls, value):
        return _check_hhmm(value)

    @model_validator(mode="after")
    def _start_before_end(self) -> "RecurringRuleIn":
        if parse_hhmm(self.start_time) >= parse_hhmm(self.end_time):
            raise ValueError("start_time must be before end_time")
        return self


class ExceptionEntryIn(BaseModel):
    """A single-date override.  Omit both times for a full-day blackout."""

    exception_date: date
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    note: Optional[str] = None

    @field_validator("start_time", "end_time")
    @classmethod
    def _times(cls, value):
        return _check_hhmm(value)

    @model_validator(mode="after")
    def _both_or_neither(self) -> "ExceptionEntryIn":
        if (self.start_time is None) != (self.end_time is None):
            raise ValueError("start_time and end_time must be given together")
        if self.start_time and parse_hhmm(self.start_time) >= parse_hhmm(self.end_time):
            raise ValueError("start_time must be before end_time")
        return self
