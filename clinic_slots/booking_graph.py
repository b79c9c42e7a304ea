from __future__ import annotations

import datetime as dt
import logging
from typing import TYPE_CHECKING

from langgraph.graph import END, StateGraph
from pydantic import BaseModel, Field

from clinic_slots.errors import DuplicateBookingError, NotFoundError, ValidationError
from clinic_slots.models import BookingRecord, BookingStatus, to_calendar_date

if TYPE_CHECKING:
    from clinic_slots.allocator import SlotAllocator

logger = logging.getLogger(__name__)

BOOKING_REWARD = 1.0


class BookingFlowState(BaseModel):
    """State carried through one booking request."""

    # ─ request ─
    doctor_id: str | None = None
    raw_date: str | None = None
    raw_time: str | None = None
    patient_id: str | None = None
    reason: str | None = None

    # ─ derived ─
    date: dt.date | None = None
    time: str | None = None
    existing: list[BookingRecord] = Field(default_factory=list)
    load: int = 0

    # ─ outcome ─
    conflict: bool = False
    suggested_slots: list[str] = Field(default_factory=list)
    booking: BookingRecord | None = None
    new_score: float | None = None

    model_config = {"arbitrary_types_allowed": True}


class BookingGraph:
    """LangGraph state machine for a booking request.

    validate → check_doctor → load_bookings → check_conflict
        ├─ taken → suggest → END
        └─ free  → persist ─┬─ committed → reward → END
                            └─ lost race → refresh → suggest → END
    """

    def __init__(self, allocator: SlotAllocator) -> None:
        self.allocator = allocator
        self.graph = self._build_graph()
        self.executor = self.graph.compile()

    def _build_graph(self) -> StateGraph:
        g = StateGraph(BookingFlowState)

        g.add_node("validate", self._validate)
        g.add_node("check_doctor", self._check_doctor)
        g.add_node("load_bookings", self._load_bookings)
        g.add_node("check_conflict", self._check_conflict)
        g.add_node("persist", self._persist)
        g.add_node("refresh", self._load_bookings)
        g.add_node("suggest", self._suggest)
        g.add_node("reward", self._reward)

        g.set_entry_point("validate")

        g.add_edge("validate", "check_doctor")
        g.add_edge("check_doctor", "load_bookings")
        g.add_edge("load_bookings", "check_conflict")

        g.add_conditional_edges(
            "check_conflict",
            self._route_after_check,
            {"taken": "suggest", "free": "persist"},
        )
        g.add_conditional_edges(
            "persist",
            self._route_after_persist,
            {"lost": "refresh", "committed": "reward"},
        )

        g.add_edge("refresh", "suggest")
        g.add_edge("suggest", END)
        g.add_edge("reward", END)
        return g

    async def run(self, state: BookingFlowState) -> BookingFlowState:
        result = await self.executor.ainvoke(state)
        if isinstance(result, BookingFlowState):
            return result
        return BookingFlowState.model_validate(result)

    # ------------------------------------------------------------------ #
    #  Nodes
    # ------------------------------------------------------------------ #
    async def _validate(self, state: BookingFlowState) -> dict:
        missing = [
            name
            for name, value in (
                ("doctorId", state.doctor_id),
                ("date", state.raw_date),
                ("time", state.raw_time),
                ("reason", state.reason),
            )
            if value is None or (isinstance(value, str) and not value.strip())
        ]
        if missing:
            raise ValidationError(f"Please provide all required fields: missing {', '.join(missing)}")

        try:
            date = to_calendar_date(state.raw_date)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Invalid appointment date: {state.raw_date!r}") from e

        time = self.allocator.template.resolve(state.raw_time)
        if time is None:
            raise ValidationError(
                f"Invalid appointment time: {state.raw_time!r}. "
                f"Choose one of: {', '.join(self.allocator.template)}"
            )
        return {"date": date, "time": time}

    async def _check_doctor(self, state: BookingFlowState) -> dict:
        exists = await self.allocator.call_store(
            self.allocator.doctors.exists(state.doctor_id), "look up doctor"
        )
        if not exists:
            raise NotFoundError("Doctor not found or not approved")
        return {"doctor_id": state.doctor_id}

    async def _load_bookings(self, state: BookingFlowState) -> dict:
        existing = await self.allocator.active_bookings(state.doctor_id, state.date)
        return {"existing": existing, "load": len(existing)}

    async def _check_conflict(self, state: BookingFlowState) -> dict:
        taken = any(b.time == state.time for b in state.existing)
        return {"conflict": taken}

    async def _persist(self, state: BookingFlowState) -> dict:
        record = BookingRecord(
            doctor_id=state.doctor_id,
            patient_id=state.patient_id,
            date=state.date,
            time=state.time,
            reason=state.reason.strip(),
            status=BookingStatus.PENDING,
            booking_load=state.load,
        )
        try:
            created = await self.allocator.call_store(
                self.allocator.bookings.create(record), "create booking"
            )
        except DuplicateBookingError:
            logger.warning(
                f"Lost booking race for doctor {state.doctor_id} at {state.date} {state.time}"
            )
            return {"conflict": True}
        return {"booking": created}

    async def _suggest(self, state: BookingFlowState) -> dict:
        candidates = self.allocator.compute_availability(state.doctor_id, state.date, state.existing)
        ranked = self.allocator.rank_available(candidates)
        alternatives = [c.time for c in ranked if c.time != state.time]
        top = alternatives[: self.allocator.conflict_suggestions]
        return {"suggested_slots": top}

    async def _reward(self, state: BookingFlowState) -> dict:
        scorer = self.allocator.scorer
        key = scorer.state_key(state.date, state.time, state.load)
        return {"new_score": scorer.update(key, BOOKING_REWARD)}

    # ------------------------------------------------------------------ #
    #  Routing
    # ------------------------------------------------------------------ #
    @staticmethod
    def _route_after_check(state: BookingFlowState) -> str:
        return "taken" if state.conflict else "free"

    @staticmethod
    def _route_after_persist(state: BookingFlowState) -> str:
        return "lost" if state.conflict else "committed"


