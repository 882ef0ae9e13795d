"""Tests for slot capacity and technician assignment."""

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from servicebay.core.errors import ResourceReleaseMismatch, SlotFull, SlotUnavailable
from servicebay.models.slot import SlotStatus
from tests.conftest import hours_from_now


def reserve(workflow, slot_id):
    return workflow.run(lambda uow: uow.scheduler.reserve_seat(slot_id))


def release(workflow, slot_id):
    return workflow.run(lambda uow: uow.scheduler.release_seat(slot_id))


class TestSeatCounting:
    def test_reserve_until_full(self, workflow, make_slot):
        slot = make_slot(capacity=2)
        first = reserve(workflow, slot.id)
        assert first.booked_count == 1
        assert first.status == SlotStatus.PARTIALLY_BOOKED.value
        second = reserve(workflow, slot.id)
        assert second.booked_count == 2
        assert second.status == SlotStatus.FULL.value

    def test_third_reservation_fails_then_succeeds_after_release(self, workflow, make_slot):
        slot = make_slot(capacity=2)
        reserve(workflow, slot.id)
        reserve(workflow, slot.id)

        with pytest.raises(SlotFull) as excinfo:
            reserve(workflow, slot.id)
        assert excinfo.value.details["slot"]["booked_count"] == 2

        released = release(workflow, slot.id)
        assert released.booked_count == 1
        assert released.status == SlotStatus.PARTIALLY_BOOKED.value
        assert reserve(workflow, slot.id).booked_count == 2

    def test_release_to_empty_marks_available(self, workflow, make_slot):
        slot = make_slot(capacity=1)
        reserve(workflow, slot.id)
        assert release(workflow, slot.id).status == SlotStatus.AVAILABLE.value

    def test_release_without_booking_is_a_mismatch(self, workflow, make_slot):
        slot = make_slot()
        with pytest.raises(ResourceReleaseMismatch):
            release(workflow, slot.id)

    def test_disabled_slot_refuses_seats(self, workflow, make_slot):
        slot = make_slot()
        workflow.run(lambda uow: uow.scheduler.disable_slot(slot.id))
        with pytest.raises(SlotUnavailable):
            reserve(workflow, slot.id)


class TestConcurrency:
    def test_concurrent_reservations_never_exceed_capacity(self, workflow, make_slot):
        slot = make_slot(capacity=3)

        def attempt(_):
            try:
                reserve(workflow, slot.id)
                return True
            except SlotFull:
                return False

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(attempt, range(12)))

        assert sum(results) == 3
        final = workflow.run(lambda uow: uow.scheduler.get_slot(slot.id))
        assert final.booked_count == 3
        assert final.status == SlotStatus.FULL.value


class TestSlotManagement:
    def test_duplicate_window_rejected(self, workflow, make_slot):
        slot = make_slot(hours_ahead=100)
        with pytest.raises(ValueError):
            workflow.run(lambda uow: uow.scheduler.create_slot(start=slot.start, end=slot.end))

    def test_overlapping_slot_rejected(self, workflow, make_slot):
        slot = make_slot(hours_ahead=100)
        start = slot.start + timedelta(minutes=30)
        with pytest.raises(ValueError, match="overlaps"):
            workflow.run(lambda uow: uow.scheduler.create_slot(start=start, end=start + timedelta(hours=1)))

    def test_assign_technicians_dedupes_and_keeps_bookings(self, workflow, make_slot):
        slot = make_slot(capacity=2)
        reserve(workflow, slot.id)
        updated = workflow.run(
            lambda uow: uow.scheduler.assign_technicians(slot.id, technician_ids=["t-9", "t-9", "t-8"], capacity=4)
        )
        assert updated.technician_ids == ["t-9", "t-8"]
        assert updated.capacity == 4
        assert updated.booked_count == 1

    def test_capacity_cannot_drop_below_bookings(self, workflow, make_slot):
        slot = make_slot(capacity=2)
        reserve(workflow, slot.id)
        reserve(workflow, slot.id)
        with pytest.raises(ValueError):
            workflow.run(lambda uow: uow.scheduler.assign_technicians(slot.id, technician_ids=[], capacity=1))

    def test_auto_assign_uses_roster(self, workflow, make_slot):
        slot = make_slot(capacity=1, technician_ids=())
        updated = workflow.run(lambda uow: uow.scheduler.auto_assign(slot.id))
        assert updated.technician_ids == ["tech-1", "tech-2", "tech-3"]
        assert updated.capacity == 3

    def test_list_filters_by_technician_and_window(self, workflow, make_slot):
        early = make_slot(hours_ahead=50, technician_ids=("tech-1",))
        make_slot(hours_ahead=52, technician_ids=("tech-2",))
        make_slot(hours_ahead=200, technician_ids=("tech-1",))

        found = workflow.run(
            lambda uow: uow.scheduler.list_slots(
                start=hours_from_now(48), end=hours_from_now(60), technician_id="tech-1"
            )
        )
        assert [slot.id for slot in found] == [early.id]

    def test_ensure_slot_requires_auto_create(self, workflow):
        start = hours_from_now(300)
        with pytest.raises(SlotUnavailable):
            workflow.run(lambda uow: uow.scheduler.ensure_slot(start=start))

    def test_ensure_slot_creates_with_roster(self, database, settings):
        from servicebay.services.workflow import AppointmentWorkflow

        workflow = AppointmentWorkflow(settings=settings.model_copy(update={"auto_create_slots": True}))
        start = hours_from_now(300)
        slot = workflow.run(lambda uow: uow.scheduler.ensure_slot(start=start))
        assert slot.end - slot.start == timedelta(minutes=settings.default_slot_minutes)
        assert slot.capacity == 3
        again = workflow.run(lambda uow: uow.scheduler.ensure_slot(start=start))
        assert again.id == slot.id
