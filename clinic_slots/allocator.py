"""Slot availability, ranking and booking arbitration for one doctor's day."""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
from collections.abc import Awaitable, Iterable
from typing import TypeVar

from clinic_slots.booking_graph import BookingFlowState, BookingGraph
from clinic_slots.config import Settings
from clinic_slots.errors import (
    DuplicateBookingError,
    NotFoundError,
    PersistenceError,
    SchedulingError,
    SlotConflict,
    ValidationError,
)
from clinic_slots.models import (
    ACTIVE_STATUSES,
    BookingRecord,
    BookingStatus,
    SlotCandidate,
    to_calendar_date,
)
from clinic_slots.scorer import SlotScorer
from clinic_slots.slots import DEFAULT_TEMPLATE, SlotTemplate
from clinic_slots.store import BookingStore, DoctorDirectory

logger = logging.getLogger(__name__)

T = TypeVar("T")

STATUS_REWARDS = {
    BookingStatus.APPROVED: 1.0,
    BookingStatus.REJECTED: -0.5,
}


class SlotAllocator:
    """Turns a doctor's bookings into ranked free slots and arbitrates requests.

    The booking store is the source of truth for slot exclusivity; the checks
    made here reject early and produce alternatives, they do not replace the
    store's own uniqueness guarantee.
    """

    def __init__(
        self,
        bookings: BookingStore,
        doctors: DoctorDirectory,
        scorer: SlotScorer | None = None,
        template: SlotTemplate = DEFAULT_TEMPLATE,
        *,
        conflict_suggestions: int = 3,
        suggestion_top_n: int = 5,
        persistence_timeout: float = 5.0,
        legacy_status_load: bool = False,
    ) -> None:
        self.bookings = bookings
        self.doctors = doctors
        self.scorer = scorer if scorer is not None else SlotScorer()
        self.template = template
        self.conflict_suggestions = conflict_suggestions
        self.suggestion_top_n = suggestion_top_n
        self.persistence_timeout = persistence_timeout
        self.legacy_status_load = legacy_status_load

        self.flow = BookingGraph(self)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        bookings: BookingStore,
        doctors: DoctorDirectory,
        scorer: SlotScorer | None = None,
    ) -> SlotAllocator:
        if scorer is None:
            scorer = SlotScorer(learning_rate=settings.learning_rate)
        return cls(
            bookings,
            doctors,
            scorer,
            conflict_suggestions=settings.conflict_suggestions,
            suggestion_top_n=settings.suggestion_top_n,
            persistence_timeout=settings.persistence_timeout_seconds,
            legacy_status_load=settings.legacy_status_load,
        )

    # ------------------------------------------------------------------ #
    #  Read path
    # ------------------------------------------------------------------ #
    def compute_availability(
        self, doctor_id: str, date, existing_bookings: Iterable[BookingRecord]
    ) -> list[SlotCandidate]:
        """Score every template slot for the doctor's day, in template order.

        A slot is booked when an active booking for this doctor and date holds
        exactly that label. The doctor load used for scoring is the number of
        active bookings that day, the same for every slot in the call.
        """
        day = to_calendar_date(date)
        active = [
            b
            for b in existing_bookings
            if b.doctor_id == doctor_id and b.date == day and b.status in ACTIVE_STATUSES
        ]
        taken = {b.time for b in active}
        load = len(active)

        candidates = []
        for label in self.template:
            if label in taken:
                candidates.append(SlotCandidate(label, float("-inf"), False))
            else:
                score = self.scorer.score(self.scorer.state_key(day, label, load))
                candidates.append(SlotCandidate(label, score, True))
        return candidates

    def rank_available(self, candidates: Iterable[SlotCandidate]) -> list[SlotCandidate]:
        """Available candidates, best score first; equal scores keep their input order."""
        # sorted() is stable, so template order is the tie-break
        return sorted((c for c in candidates if c.available), key=lambda c: c.score, reverse=True)

    def get_suggestions(
        self, doctor_id: str, date, existing_bookings: Iterable[BookingRecord], top_n: int | None = None
    ) -> list[SlotCandidate]:
        limit = self.suggestion_top_n if top_n is None else top_n
        ranked = self.rank_available(self.compute_availability(doctor_id, date, existing_bookings))
        return ranked[:limit]

    async def suggest_slots(self, doctor_id: str, date, top_n: int | None = None) -> list[SlotCandidate]:
        """Load the doctor's active bookings and return the top suggestions."""
        if not doctor_id:
            raise ValidationError("Please provide a doctor id")
        day = self._parse_date(date)
        existing = await self.active_bookings(doctor_id, day)
        return self.get_suggestions(doctor_id, day, existing, top_n)

    # ------------------------------------------------------------------ #
    #  Booking
    # ------------------------------------------------------------------ #
    async def request_booking(
        self, doctor_id: str | None, date, time: str | None, patient_id: str | None, reason: str | None
    ) -> BookingRecord:
        """Book a pending appointment, or raise SlotConflict with alternatives."""
        if isinstance(date, (dt.date, dt.datetime)):
            date = date.isoformat()
        elif date is not None:
            date = str(date)
        state = BookingFlowState(
            doctor_id=doctor_id,
            raw_date=date,
            raw_time=time,
            patient_id=patient_id,
            reason=reason,
        )
        result = await self.flow.run(state)

        if result.booking is None:
            logger.warning(
                f"Slot {result.time} on {result.date} taken for doctor {doctor_id}; "
                f"suggesting {result.suggested_slots}"
            )
            raise SlotConflict("Time slot not available", result.suggested_slots)

        logger.info(
            f"Booked {result.booking.id} with doctor {doctor_id} at {result.date} {result.time} "
            f"(load {result.load}, score now {result.new_score:.3f})"
        )
        return result.booking

    # ------------------------------------------------------------------ #
    #  Status changes
    # ------------------------------------------------------------------ #
    def report_status_change(self, appointment: BookingRecord, new_status) -> float | None:
        """Feed a doctor's decision back into the scorer. Returns the new score, if any."""
        try:
            status = BookingStatus(new_status)
        except ValueError:
            return None
        reward = STATUS_REWARDS.get(status)
        if reward is None:
            return None

        load = 0
        if not self.legacy_status_load and appointment.booking_load is not None:
            load = appointment.booking_load
        key = self.scorer.state_key(appointment.date, appointment.time, load)
        return self.scorer.update(key, reward)

    async def update_status(
        self,
        appointment_id: str,
        status: str | None,
        rejection_reason: str | None = None,
        notes: str | None = None,
        doctor_id: str | None = None,
    ) -> BookingRecord:
        """Persist a doctor's status decision, then apply its reward if the appointment was pending."""
        try:
            new_status = BookingStatus(status)
        except ValueError as e:
            allowed = ", ".join(s.value for s in BookingStatus)
            raise ValidationError(f"Invalid status {status!r}. Expected one of: {allowed}") from e

        appointment = await self._owned_appointment(appointment_id, doctor_id=doctor_id)

        fields: dict = {"status": new_status}
        if rejection_reason:
            fields["rejection_reason"] = rejection_reason
        if notes:
            fields["notes"] = notes

        try:
            updated = await self.call_store(self.bookings.update(appointment.id, fields), "update booking")
        except DuplicateBookingError as e:
            existing = await self.active_bookings(appointment.doctor_id, appointment.date)
            ranked = self.rank_available(
                self.compute_availability(appointment.doctor_id, appointment.date, existing)
            )
            raise SlotConflict(str(e), [c.time for c in ranked[: self.conflict_suggestions]]) from e
        if updated is None:
            raise NotFoundError("Appointment not found")

        # Only a decision on a pending request is a booking outcome worth learning from.
        new_score = None
        if appointment.status is BookingStatus.PENDING:
            new_score = self.report_status_change(updated, new_status)
        logger.info(f"Appointment {updated.id} {appointment.status.value} -> {new_status.value}")
        if new_score is not None:
            logger.debug(f"Status reward applied for {updated.id}, score now {new_score:.3f}")
        return updated

    async def cancel_booking(self, appointment_id: str, patient_id: str | None = None) -> BookingRecord:
        """Cancel an appointment and free its slot. Cancellation carries no reward."""
        appointment = await self._owned_appointment(appointment_id, patient_id=patient_id)
        updated = await self.call_store(
            self.bookings.update(appointment.id, {"status": BookingStatus.CANCELLED}), "cancel booking"
        )
        if updated is None:
            raise NotFoundError("Appointment not found")
        logger.info(f"Appointment {updated.id} cancelled, {updated.date} {updated.time} is free again")
        return updated

    # ------------------------------------------------------------------ #
    #  Store helpers
    # ------------------------------------------------------------------ #
    async def call_store(self, awaitable: Awaitable[T], action: str) -> T:
        """Await a store call under the persistence timeout, mapping failures to PersistenceError."""
        try:
            return await asyncio.wait_for(awaitable, timeout=self.persistence_timeout)
        except SchedulingError:
            raise
        except asyncio.TimeoutError as e:
            logger.warning(f"Timed out after {self.persistence_timeout}s trying to {action}")
            raise PersistenceError(f"Timed out trying to {action}") from e
        except Exception as e:
            logger.warning(f"Store failure while trying to {action}: {e}")
            raise PersistenceError(f"Failed to {action}: {e}") from e

    async def active_bookings(self, doctor_id: str, date: dt.date) -> list[BookingRecord]:
        return await self.call_store(
            self.bookings.find(doctor_id, date, ACTIVE_STATUSES), "load bookings"
        )

    async def _owned_appointment(
        self, appointment_id: str, *, doctor_id: str | None = None, patient_id: str | None = None
    ) -> BookingRecord:
        appointment = await self.call_store(self.bookings.get(appointment_id), "load appointment")
        if appointment is None:
            raise NotFoundError("Appointment not found")
        if doctor_id is not None and appointment.doctor_id != doctor_id:
            raise NotFoundError("Appointment not found")
        if patient_id is not None and appointment.patient_id != patient_id:
            raise NotFoundError("Appointment not found")
        return appointment

    @staticmethod
    def _parse_date(value) -> dt.date:
        try:
            return to_calendar_date(value)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Invalid date: {value!r}") from e
