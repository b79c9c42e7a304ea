"""Booking records and slot candidates exchanged with callers and stores."""

from __future__ import annotations

import datetime as dt
import math
import uuid
from dataclasses import dataclass
from enum import Enum

from pydantic import BaseModel, Field, field_validator


class BookingStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


ACTIVE_STATUSES = frozenset({BookingStatus.PENDING, BookingStatus.APPROVED})


def to_calendar_date(value) -> dt.date:
    """Coerce a date, datetime or ISO string to a calendar day, dropping time-of-day."""
    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, dt.date):
        return value
    if isinstance(value, str):
        text = value.strip()
        try:
            return dt.date.fromisoformat(text[:10])
        except ValueError:
            pass
        return dt.datetime.fromisoformat(text.replace("Z", "+00:00")).date()
    raise ValueError(f"cannot interpret {value!r} as a calendar date")


class BookingRecord(BaseModel):
    """One appointment as held by the booking store."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    doctor_id: str
    patient_id: str | None = None
    date: dt.date
    time: str
    reason: str = ""
    status: BookingStatus = BookingStatus.PENDING
    notes: str = ""
    rejection_reason: str = ""
    # Active bookings for the doctor/date just before this one was created.
    booking_load: int | None = None
    created_at: dt.datetime = Field(default_factory=lambda: dt.datetime.now(dt.timezone.utc))

    @field_validator("date", mode="before")
    @classmethod
    def _drop_time_of_day(cls, value):
        return to_calendar_date(value)

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES


class BookingRequest(BaseModel):
    """Body of a booking request. Fields are checked by the allocator, not here."""

    doctorId: str | None = None
    date: str | None = None
    time: str | None = None
    reason: str | None = None


class StatusUpdateRequest(BaseModel):
    status: str | None = None
    rejectionReason: str | None = None
    notes: str | None = None


@dataclass(frozen=True, slots=True)
class SlotCandidate:
    time: str
    score: float
    available: bool

    def as_dict(self) -> dict:
        # JSON has no infinity; booked slots report a null score.
        score = None if math.isinf(self.score) else self.score
        return {"time": self.time, "available": self.available, "score": score}
