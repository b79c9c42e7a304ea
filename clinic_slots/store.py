"""Contracts for the booking store and doctor directory, plus in-memory versions.

The allocator only talks to these protocols. The in-memory versions back the
tests and local runs; a production deployment plugs in a database-backed store
that enforces the same one-active-booking-per-slot rule (unique index or
conditional write).
"""

from __future__ import annotations

import asyncio
import datetime as dt
from collections.abc import Iterable
from typing import Protocol

from clinic_slots.errors import DuplicateBookingError
from clinic_slots.models import BookingRecord, BookingStatus


class BookingStore(Protocol):
    async def find(
        self, doctor_id: str, date: dt.date, status_in: Iterable[BookingStatus] | None = None
    ) -> list[BookingRecord]: ...

    async def get(self, booking_id: str) -> BookingRecord | None: ...

    async def create(self, record: BookingRecord) -> BookingRecord: ...

    async def update(self, booking_id: str, fields: dict) -> BookingRecord | None: ...


class DoctorDirectory(Protocol):
    async def exists(self, doctor_id: str) -> bool: ...


class InMemoryBookingStore:
    """Dict-backed store; writes are serialised with an asyncio.Lock."""

    def __init__(self, records: Iterable[BookingRecord] = ()) -> None:
        self._records: dict[str, BookingRecord] = {r.id: r.model_copy() for r in records}
        self._lock = asyncio.Lock()

    async def find(
        self, doctor_id: str, date: dt.date, status_in: Iterable[BookingStatus] | None = None
    ) -> list[BookingRecord]:
        statuses = set(status_in) if status_in is not None else None
        async with self._lock:
            return [
                r.model_copy()
                for r in self._records.values()
                if r.doctor_id == doctor_id
                and r.date == date
                and (statuses is None or r.status in statuses)
            ]

    async def get(self, booking_id: str) -> BookingRecord | None:
        async with self._lock:
            record = self._records.get(booking_id)
        return record.model_copy() if record else None

    async def create(self, record: BookingRecord) -> BookingRecord:
        async with self._lock:
            if record.is_active:
                self._ensure_free(record)
            self._records[record.id] = record.model_copy()
        return record.model_copy()

    async def update(self, booking_id: str, fields: dict) -> BookingRecord | None:
        async with self._lock:
            current = self._records.get(booking_id)
            if current is None:
                return None
            updated = current.model_copy(update=fields)
            # Re-activating a booking must not steal a slot someone else now holds.
            if updated.is_active and not current.is_active:
                self._ensure_free(updated)
            self._records[booking_id] = updated
        return updated.model_copy()

    def _ensure_free(self, record: BookingRecord) -> None:
        for other in self._records.values():
            if (
                other.id != record.id
                and other.is_active
                and other.doctor_id == record.doctor_id
                and other.date == record.date
                and other.time == record.time
            ):
                raise DuplicateBookingError(
                    f"Doctor {record.doctor_id} already has an active booking at {record.date} {record.time}"
                )


class InMemoryDoctorDirectory:
    """Fake doctor directory used for tests and local runs."""

    def __init__(self, doctor_ids: Iterable[str] = ()) -> None:
        self._doctor_ids = set(doctor_ids)

    def add(self, doctor_id: str) -> None:
        self._doctor_ids.add(doctor_id)

    async def exists(self, doctor_id: str) -> bool:
        return doctor_id in self._doctor_ids
