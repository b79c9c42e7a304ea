"""FastAPI server for appointment slot booking and suggestions."""

import datetime as dt
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from clinic_slots.allocator import SlotAllocator
from clinic_slots.config import Settings, load_settings
from clinic_slots.errors import SchedulingError, ValidationError
from clinic_slots.models import BookingRecord, BookingRequest, StatusUpdateRequest
from clinic_slots.score_file import load_scores, save_scores
from clinic_slots.store import InMemoryBookingStore, InMemoryDoctorDirectory

logger = logging.getLogger(__name__)


def build_allocator(settings: Settings) -> SlotAllocator:
    """Wire an allocator over the in-memory store and directory."""
    return SlotAllocator.from_settings(
        settings,
        InMemoryBookingStore(),
        InMemoryDoctorDirectory(settings.doctor_ids),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    scorer = app.state.allocator.scorer
    if settings.score_snapshot_path:
        load_scores(settings.score_snapshot_path, scorer)
    if settings.score_retention_days is not None:
        cutoff = dt.date.today() - dt.timedelta(days=settings.score_retention_days)
        scorer.evict_before(cutoff)
    yield
    if settings.score_snapshot_path:
        save_scores(settings.score_snapshot_path, scorer)


app = FastAPI(title="Clinic Slot Scheduler", lifespan=lifespan)
app.state.settings = load_settings()
app.state.allocator = build_allocator(app.state.settings)


def get_allocator(request: Request) -> SlotAllocator:
    return request.app.state.allocator


def booking_payload(record: BookingRecord) -> dict:
    return {
        "id": record.id,
        "doctorId": record.doctor_id,
        "patientId": record.patient_id,
        "date": record.date.isoformat(),
        "time": record.time,
        "reason": record.reason,
        "status": record.status.value,
        "notes": record.notes,
        "rejectionReason": record.rejection_reason,
        "createdAt": record.created_at.isoformat(),
    }


@app.exception_handler(SchedulingError)
async def scheduling_error_handler(_: Request, exc: SchedulingError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.payload())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(_: Request, exc: RequestValidationError) -> JSONResponse:
    problems = "; ".join(
        f"{'.'.join(str(part) for part in err.get('loc', ()))}: {err.get('msg', 'invalid')}"
        for err in exc.errors()
    )
    error = ValidationError(f"Invalid request: {problems}")
    return JSONResponse(status_code=error.status_code, content=error.payload())


@app.post("/appointments", status_code=201)
async def create_appointment(
    body: BookingRequest,
    # TODO(auth): patient identity comes from a header until a real auth layer sits in front.
    patient_id: str | None = Header(default=None, alias="X-Patient-Id"),
    allocator: SlotAllocator = Depends(get_allocator),
):
    """Book a slot, or answer 400 with suggested alternatives when it is taken."""
    booking = await allocator.request_booking(body.doctorId, body.date, body.time, patient_id, body.reason)
    return {
        "success": True,
        "message": "Appointment request sent. Waiting for doctor confirmation.",
        "data": booking_payload(booking),
    }


@app.get("/appointments/suggested-slots/{doctor_id}/{date}")
async def suggested_slots(doctor_id: str, date: str, allocator: SlotAllocator = Depends(get_allocator)):
    """Top ranked free slots for a doctor's day."""
    slots = await allocator.suggest_slots(doctor_id, date)
    return {"success": True, "data": [s.as_dict() for s in slots]}


@app.put("/appointments/{appointment_id}/status")
async def update_appointment_status(
    appointment_id: str,
    body: StatusUpdateRequest,
    doctor_id: str | None = Header(default=None, alias="X-Doctor-Id"),
    allocator: SlotAllocator = Depends(get_allocator),
):
    booking = await allocator.update_status(
        appointment_id, body.status, body.rejectionReason, body.notes, doctor_id=doctor_id
    )
    return {
        "success": True,
        "message": f"Appointment {booking.status.value} successfully",
        "data": booking_payload(booking),
    }


@app.put("/appointments/{appointment_id}/cancel")
async def cancel_appointment(
    appointment_id: str,
    patient_id: str | None = Header(default=None, alias="X-Patient-Id"),
    allocator: SlotAllocator = Depends(get_allocator),
):
    booking = await allocator.cancel_booking(appointment_id, patient_id=patient_id)
    return {
        "success": True,
        "message": "Appointment cancelled successfully",
        "data": booking_payload(booking),
    }


@app.get("/")
async def root():
    """Root endpoint providing basic API information."""
    return {
        "message": "Clinic Slot Scheduler API: POST /appointments to book, "
        "GET /appointments/suggested-slots/{doctor_id}/{date} for suggestions."
    }
