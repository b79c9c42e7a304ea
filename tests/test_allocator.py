import asyncio
import datetime as dt
import math

import pytest

from clinic_slots.allocator import SlotAllocator
from clinic_slots.errors import NotFoundError, PersistenceError, SlotConflict, ValidationError
from clinic_slots.models import BookingRecord, BookingStatus
from clinic_slots.scorer import SlotScorer
from clinic_slots.slots import DEFAULT_TEMPLATE
from clinic_slots.store import InMemoryBookingStore, InMemoryDoctorDirectory

DAY = dt.date(2025, 3, 10)
DOCTOR = "doc-1"


class FailingStore(InMemoryBookingStore):
    """Store whose writes always fail."""

    async def create(self, record):
        raise RuntimeError("database unavailable")


class SlowStore(InMemoryBookingStore):
    """Store whose writes never finish in time."""

    async def create(self, record):
        await asyncio.sleep(1)
        return await super().create(record)


class StaleReadStore(InMemoryBookingStore):
    """Store whose reads lag behind its writes."""

    async def find(self, doctor_id, date, status_in=None):
        return []


@pytest.fixture
def scorer():
    return SlotScorer()


@pytest.fixture
def store():
    return InMemoryBookingStore()


@pytest.fixture
def allocator(store, scorer):
    """Create a fresh SlotAllocator over empty in-memory collaborators."""
    return SlotAllocator(store, InMemoryDoctorDirectory([DOCTOR, "doc-2"]), scorer)


def booking(time, status=BookingStatus.PENDING, doctor_id=DOCTOR, date=DAY, **extra):
    return BookingRecord(doctor_id=doctor_id, date=date, time=time, status=status, **extra)


# ------------------------------------------------------------------ #
#  Availability and ranking
# ------------------------------------------------------------------ #
def test_empty_day_is_fully_available(allocator):
    candidates = allocator.compute_availability(DOCTOR, DAY, [])

    assert [c.time for c in candidates] == list(DEFAULT_TEMPLATE)
    assert all(c.available for c in candidates)
    assert all(c.score == 0.0 for c in candidates)


def test_booked_slot_is_unavailable(allocator):
    candidates = allocator.compute_availability(DOCTOR, DAY, [booking("10:00 AM")])

    by_time = {c.time: c for c in candidates}
    assert not by_time["10:00 AM"].available
    assert by_time["10:00 AM"].score == -math.inf
    assert all(c.available and c.score == 0.0 for t, c in by_time.items() if t != "10:00 AM")


def test_inactive_and_foreign_bookings_do_not_occupy(allocator):
    existing = [
        booking("09:00 AM", status=BookingStatus.CANCELLED),
        booking("10:00 AM", status=BookingStatus.REJECTED),
        booking("11:00 AM", status=BookingStatus.COMPLETED),
        booking("12:00 PM", doctor_id="doc-2"),
        booking("02:00 PM", date=DAY + dt.timedelta(days=1)),
    ]
    candidates = allocator.compute_availability(DOCTOR, DAY, existing)
    assert all(c.available for c in candidates)


def test_time_matching_is_exact_on_stored_records(allocator, scorer):
    """A non-canonical stored label does not block the canonical slot but still counts as load."""
    scorer.update(scorer.state_key(DAY, "09:00 AM", 1), 1.0)
    candidates = allocator.compute_availability(DOCTOR, DAY, [booking("9:00 AM")])

    first = candidates[0]
    assert first.time == "09:00 AM"
    assert first.available
    assert first.score == pytest.approx(0.1)


def test_load_is_constant_across_slots(allocator, scorer):
    scorer.update(scorer.state_key(DAY, "03:00 PM", 2), 1.0)
    scorer.update(scorer.state_key(DAY, "04:00 PM", 1), 1.0)

    existing = [booking("09:00 AM"), booking("10:00 AM", status=BookingStatus.APPROVED)]
    by_time = {c.time: c.score for c in allocator.compute_availability(DOCTOR, DAY, existing)}

    assert by_time["03:00 PM"] == pytest.approx(0.1)
    assert by_time["04:00 PM"] == 0.0


def test_equal_scores_keep_template_order(allocator):
    ranked = allocator.rank_available(allocator.compute_availability(DOCTOR, DAY, [booking("11:00 AM")]))
    assert [c.time for c in ranked] == [t for t in DEFAULT_TEMPLATE if t != "11:00 AM"]


def test_learned_scores_drive_ranking(allocator, scorer):
    scorer.update(scorer.state_key(DAY, "03:00 PM", 0), 1.0)
    scorer.update(scorer.state_key(DAY, "11:00 AM", 0), -0.5)

    suggestions = allocator.get_suggestions(DOCTOR, DAY, [])

    assert [s.time for s in suggestions] == ["03:00 PM", "09:00 AM", "10:00 AM", "12:00 PM", "02:00 PM"]
    ranked = allocator.rank_available(allocator.compute_availability(DOCTOR, DAY, []))
    assert ranked[-1].time == "11:00 AM"


def test_suggestions_are_idempotent(allocator, scorer):
    scorer.update(scorer.state_key(DAY, "05:00 PM", 1), 1.0)
    existing = [booking("10:00 AM")]

    first = allocator.get_suggestions(DOCTOR, DAY, existing)
    second = allocator.get_suggestions(DOCTOR, DAY, existing)

    assert first == second
    assert len(first) == 5
    assert len(scorer) == 1


def test_get_suggestions_top_n(allocator):
    assert len(allocator.get_suggestions(DOCTOR, DAY, [], top_n=2)) == 2
    full_day = [booking(t) for t in DEFAULT_TEMPLATE]
    assert allocator.get_suggestions(DOCTOR, DAY, full_day) == []


@pytest.mark.asyncio
async def test_suggest_slots_reads_store(allocator):
    await allocator.request_booking(DOCTOR, DAY, "09:00 AM", "pat-1", "checkup")

    slots = await allocator.suggest_slots(DOCTOR, DAY.isoformat())

    assert [s.time for s in slots] == ["10:00 AM", "11:00 AM", "12:00 PM", "02:00 PM", "03:00 PM"]


@pytest.mark.asyncio
async def test_suggest_slots_rejects_bad_date(allocator):
    with pytest.raises(ValidationError):
        await allocator.suggest_slots(DOCTOR, "tomorrow-ish")


# ------------------------------------------------------------------ #
#  Booking
# ------------------------------------------------------------------ #
@pytest.mark.asyncio
async def test_booking_rewards_pre_booking_state(allocator, scorer, store):
    record = await allocator.request_booking(DOCTOR, DAY, "09:00 AM", "pat-1", "checkup")

    assert record.status is BookingStatus.PENDING
    assert record.booking_load == 0
    assert scorer.score(scorer.state_key(DAY, "09:00 AM", 0)) == pytest.approx(0.1)
    assert len(await store.find(DOCTOR, DAY)) == 1

    await allocator.request_booking(DOCTOR, DAY, "10:00 AM", "pat-2", "follow-up")
    assert scorer.score(scorer.state_key(DAY, "10:00 AM", 1)) == pytest.approx(0.1)


@pytest.mark.asyncio
async def test_conflict_returns_three_ranked_alternatives(allocator, scorer):
    await allocator.request_booking(DOCTOR, DAY, "10:00 AM", "pat-1", "checkup")

    with pytest.raises(SlotConflict) as excinfo:
        await allocator.request_booking(DOCTOR, DAY, "10:00 AM", "pat-2", "checkup")

    assert excinfo.value.suggested_slots == ["09:00 AM", "11:00 AM", "12:00 PM"]
    assert len(scorer) == 1


@pytest.mark.asyncio
async def test_conflict_alternatives_follow_scores(allocator, scorer):
    await allocator.request_booking(DOCTOR, DAY, "10:00 AM", "pat-1", "checkup")
    scorer.update(scorer.state_key(DAY, "04:00 PM", 1), 1.0)
    scorer.update(scorer.state_key(DAY, "09:00 AM", 1), -0.5)

    with pytest.raises(SlotConflict) as excinfo:
        await allocator.request_booking(DOCTOR, DAY, "10:00 AM", "pat-2", "checkup")

    assert excinfo.value.suggested_slots == ["04:00 PM", "11:00 AM", "12:00 PM"]


@pytest.mark.asyncio
async def test_booking_normalises_time_and_date(allocator):
    record = await allocator.request_booking(DOCTOR, "2025-03-10T15:30:00", "9:00 am", "pat-1", "checkup")

    assert record.time == "09:00 AM"
    assert record.date == DAY


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "doctor_id, date, time, reason",
    [
        (None, "2025-03-10", "09:00 AM", "checkup"),
        (DOCTOR, None, "09:00 AM", "checkup"),
        (DOCTOR, "2025-03-10", "", "checkup"),
        (DOCTOR, "2025-03-10", "09:00 AM", "   "),
        (DOCTOR, "not-a-date", "09:00 AM", "checkup"),
        (DOCTOR, "2025-03-10", "01:00 PM", "checkup"),
    ],
)
async def test_invalid_requests_are_rejected(allocator, scorer, doctor_id, date, time, reason):
    with pytest.raises(ValidationError):
        await allocator.request_booking(doctor_id, date, time, "pat-1", reason)
    assert len(scorer) == 0


@pytest.mark.asyncio
async def test_unknown_doctor(allocator):
    with pytest.raises(NotFoundError):
        await allocator.request_booking("doc-404", DAY, "09:00 AM", "pat-1", "checkup")


@pytest.mark.asyncio
async def test_concurrent_requests_book_slot_once(allocator, store):
    results = await asyncio.gather(
        *(allocator.request_booking(DOCTOR, DAY, "11:00 AM", f"pat-{i}", "checkup") for i in range(6)),
        return_exceptions=True,
    )

    booked = [r for r in results if isinstance(r, BookingRecord)]
    conflicts = [r for r in results if isinstance(r, SlotConflict)]
    assert len(booked) == 1
    assert len(conflicts) == 5
    active = await store.find(DOCTOR, DAY, {BookingStatus.PENDING, BookingStatus.APPROVED})
    assert [r.time for r in active] == ["11:00 AM"]


@pytest.mark.asyncio
async def test_store_uniqueness_wins_over_stale_reads(scorer):
    store = StaleReadStore([booking("10:00 AM")])
    allocator = SlotAllocator(store, InMemoryDoctorDirectory([DOCTOR]), scorer)

    with pytest.raises(SlotConflict) as excinfo:
        await allocator.request_booking(DOCTOR, DAY, "10:00 AM", "pat-1", "checkup")

    assert excinfo.value.suggested_slots == ["09:00 AM", "11:00 AM", "12:00 PM"]
    assert len(scorer) == 0


@pytest.mark.asyncio
async def test_persistence_failure_applies_no_reward(scorer):
    allocator = SlotAllocator(FailingStore(), InMemoryDoctorDirectory([DOCTOR]), scorer)

    with pytest.raises(PersistenceError):
        await allocator.request_booking(DOCTOR, DAY, "09:00 AM", "pat-1", "checkup")
    assert len(scorer) == 0


@pytest.mark.asyncio
async def test_persistence_timeout_applies_no_reward(scorer):
    allocator = SlotAllocator(
        SlowStore(), InMemoryDoctorDirectory([DOCTOR]), scorer, persistence_timeout=0.05
    )

    with pytest.raises(PersistenceError):
        await allocator.request_booking(DOCTOR, DAY, "09:00 AM", "pat-1", "checkup")
    assert len(scorer) == 0


# ------------------------------------------------------------------ #
#  Status changes
# ------------------------------------------------------------------ #
def test_report_status_change_rewards(allocator, scorer):
    approved = allocator.report_status_change(booking("11:00 AM"), "approved")
    rejected = allocator.report_status_change(booking("02:00 PM"), BookingStatus.REJECTED)

    assert approved == pytest.approx(0.1)
    assert rejected == pytest.approx(-0.05)
    assert scorer.score(scorer.state_key(DAY, "11:00 AM", 0)) == pytest.approx(0.1)
    assert scorer.score(scorer.state_key(DAY, "02:00 PM", 0)) == pytest.approx(-0.05)


@pytest.mark.parametrize("status", ["cancelled", "completed", "pending", "bogus"])
def test_report_status_change_ignores_other_statuses(allocator, scorer, status):
    assert allocator.report_status_change(booking("11:00 AM"), status) is None
    assert len(scorer) == 0


@pytest.mark.asyncio
async def test_update_status_uses_load_captured_at_booking(allocator, scorer):
    first = await allocator.request_booking(DOCTOR, DAY, "11:00 AM", "pat-1", "checkup")
    second = await allocator.request_booking(DOCTOR, DAY, "02:00 PM", "pat-2", "checkup")

    approved = await allocator.update_status(first.id, "approved", notes="see you", doctor_id=DOCTOR)
    rejected = await allocator.update_status(second.id, "rejected", rejection_reason="on leave")

    assert approved.status is BookingStatus.APPROVED
    assert approved.notes == "see you"
    assert rejected.rejection_reason == "on leave"
    assert scorer.score(scorer.state_key(DAY, "11:00 AM", 0)) == pytest.approx(0.19)
    assert scorer.score(scorer.state_key(DAY, "02:00 PM", 1)) == pytest.approx(0.04)


@pytest.mark.asyncio
async def test_legacy_status_load_rewards_load_zero(store, scorer):
    allocator = SlotAllocator(store, InMemoryDoctorDirectory([DOCTOR]), scorer, legacy_status_load=True)
    await allocator.request_booking(DOCTOR, DAY, "11:00 AM", "pat-1", "checkup")
    second = await allocator.request_booking(DOCTOR, DAY, "02:00 PM", "pat-2", "checkup")

    await allocator.update_status(second.id, "rejected")

    assert scorer.score(scorer.state_key(DAY, "02:00 PM", 0)) == pytest.approx(-0.05)
    assert scorer.score(scorer.state_key(DAY, "02:00 PM", 1)) == pytest.approx(0.1)


@pytest.mark.asyncio
async def test_repeated_approval_rewards_once(allocator, scorer):
    record = await allocator.request_booking(DOCTOR, DAY, "11:00 AM", "pat-1", "checkup")

    for _ in range(3):
        approved = await allocator.update_status(record.id, "approved")

    assert approved.status is BookingStatus.APPROVED
    assert scorer.score(scorer.state_key(DAY, "11:00 AM", 0)) == pytest.approx(0.19)


@pytest.mark.asyncio
async def test_rejecting_a_cancelled_appointment_applies_no_reward(allocator, scorer):
    await allocator.request_booking(DOCTOR, DAY, "11:00 AM", "pat-1", "checkup")
    second = await allocator.request_booking(DOCTOR, DAY, "02:00 PM", "pat-2", "checkup")
    await allocator.cancel_booking(second.id)

    rejected = await allocator.update_status(second.id, "rejected")

    assert rejected.status is BookingStatus.REJECTED
    assert scorer.score(scorer.state_key(DAY, "02:00 PM", 1)) == pytest.approx(0.1)
    assert scorer.score(scorer.state_key(DAY, "02:00 PM", 0)) == 0.0


@pytest.mark.asyncio
async def test_rejection_frees_the_slot(allocator, store):
    first = await allocator.request_booking(DOCTOR, DAY, "03:00 PM", "pat-1", "checkup")
    await allocator.update_status(first.id, "rejected")

    existing = await store.find(DOCTOR, DAY)
    by_time = {c.time: c for c in allocator.compute_availability(DOCTOR, DAY, existing)}
    assert by_time["03:00 PM"].available

    again = await allocator.request_booking(DOCTOR, DAY, "03:00 PM", "pat-2", "checkup")
    assert again.booking_load == 0


@pytest.mark.asyncio
async def test_update_status_errors(allocator):
    record = await allocator.request_booking(DOCTOR, DAY, "09:00 AM", "pat-1", "checkup")

    with pytest.raises(ValidationError):
        await allocator.update_status(record.id, "maybe")
    with pytest.raises(NotFoundError):
        await allocator.update_status("missing", "approved")
    with pytest.raises(NotFoundError):
        await allocator.update_status(record.id, "approved", doctor_id="doc-2")


@pytest.mark.asyncio
async def test_reactivating_into_a_taken_slot_conflicts(allocator):
    first = await allocator.request_booking(DOCTOR, DAY, "09:00 AM", "pat-1", "checkup")
    await allocator.update_status(first.id, "rejected")
    await allocator.request_booking(DOCTOR, DAY, "09:00 AM", "pat-2", "checkup")

    with pytest.raises(SlotConflict) as excinfo:
        await allocator.update_status(first.id, "approved")
    assert "09:00 AM" not in excinfo.value.suggested_slots


@pytest.mark.asyncio
async def test_cancel_frees_slot_without_reward(allocator, scorer, store):
    record = await allocator.request_booking(DOCTOR, DAY, "12:00 PM", "pat-1", "checkup")
    before = scorer.snapshot()

    cancelled = await allocator.cancel_booking(record.id, patient_id="pat-1")

    assert cancelled.status is BookingStatus.CANCELLED
    assert scorer.snapshot() == before
    assert await store.find(DOCTOR, DAY, {BookingStatus.PENDING, BookingStatus.APPROVED}) == []
    await allocator.request_booking(DOCTOR, DAY, "12:00 PM", "pat-2", "checkup")


@pytest.mark.asyncio
async def test_cancel_requires_owner(allocator):
    record = await allocator.request_booking(DOCTOR, DAY, "12:00 PM", "pat-1", "checkup")
    with pytest.raises(NotFoundError):
        await allocator.cancel_booking(record.id, patient_id="pat-2")
