from __future__ import annotations

from datetime import datetime, timedelta

from loguru import logger
from sqlalchemy import case, select, update
from sqlalchemy.orm import Session

from servicebay.core.config import AppConfig, get_settings
from servicebay.core.errors import NotFound, ResourceReleaseMismatch, SlotFull, SlotUnavailable
from servicebay.models.slot import Slot, SlotStatus, slot_status_for
from servicebay.utils.time import ensure_aware


def slot_snapshot(slot: Slot) -> dict:
    return {
        "id": slot.id,
        "start": slot.start.isoformat(),
        "end": slot.end.isoformat(),
        "capacity": slot.capacity,
        "booked_count": slot.booked_count,
        "status": slot.status,
        "technician_ids": list(slot.technician_ids or []),
        "is_active": slot.is_active,
    }


class SlotScheduler:
    """Seat capacity and technician assignment for bookable time slots.

    Seat counters are only ever changed through single conditional UPDATE
    statements, so concurrent callers cannot push ``booked_count`` past
    ``capacity`` or below zero.
    """

    def __init__(self, session: Session, settings: AppConfig | None = None) -> None:
        self.session = session
        self.settings = settings or get_settings()

    def get_slot(self, slot_id: int, *, refresh: bool = False) -> Slot:
        slot = self.session.get(Slot, slot_id, populate_existing=refresh)
        if slot is None:
            raise NotFound(f"Slot {slot_id} not found", slot_id=slot_id)
        return slot

    def create_slot(
        self,
        *,
        start: datetime,
        end: datetime,
        capacity: int = 1,
        technician_ids: list[str] | None = None,
    ) -> Slot:
        start = ensure_aware(start, self.settings.timezone)
        end = ensure_aware(end, self.settings.timezone)
        if end <= start:
            raise ValueError("Slot end must be after start")
        if capacity < 1:
            raise ValueError("Slot capacity must be at least 1")

        duplicate = self.session.scalars(select(Slot).where(Slot.start == start, Slot.end == end)).first()
        if duplicate is not None:
            raise ValueError(f"A slot already exists for {start.isoformat()} - {end.isoformat()}")

        overlapping = self.session.scalars(
            select(Slot).where(Slot.is_active.is_(True), Slot.start < end, Slot.end > start)
        ).first()
        if overlapping is not None:
            raise ValueError(f"Slot overlaps existing slot {overlapping.id}")

        slot = Slot(
            start=start,
            end=end,
            capacity=capacity,
            booked_count=0,
            status=SlotStatus.AVAILABLE.value,
            technician_ids=list(dict.fromkeys(technician_ids or [])),
        )
        self.session.add(slot)
        self.session.flush()
        logger.info(
            "Created slot id={slot_id} start={start} capacity={capacity}",
            slot_id=slot.id,
            start=start.isoformat(),
            capacity=capacity,
        )
        return slot

    def ensure_slot(self, *, start: datetime, end: datetime | None = None) -> Slot:
        start = ensure_aware(start, self.settings.timezone)
        end = ensure_aware(end, self.settings.timezone) if end else start + timedelta(
            minutes=self.settings.default_slot_minutes
        )
        slot = self.session.scalars(select(Slot).where(Slot.start == start, Slot.end == end)).first()
        if slot is not None:
            return slot
        if not self.settings.auto_create_slots:
            raise SlotUnavailable(
                "No slot exists for the requested window",
                start=start.isoformat(),
                end=end.isoformat(),
            )
        slot = self.create_slot(start=start, end=end, capacity=1)
        if self.settings.technician_roster:
            self.auto_assign(slot.id)
        return slot

    def reserve_seat(self, slot_id: int) -> Slot:
        stmt = (
            update(Slot)
            .where(Slot.id == slot_id, Slot.is_active.is_(True), Slot.booked_count < Slot.capacity)
            .values(
                booked_count=Slot.booked_count + 1,
                status=case(
                    (Slot.booked_count + 1 >= Slot.capacity, SlotStatus.FULL.value),
                    else_=SlotStatus.PARTIALLY_BOOKED.value,
                ),
            )
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)
        slot = self.get_slot(slot_id, refresh=True)
        if result.rowcount != 1:
            if not slot.is_active:
                raise SlotUnavailable(f"Slot {slot_id} is disabled", slot=slot_snapshot(slot))
            raise SlotFull(
                f"Slot {slot_id} is full",
                capacity=slot.capacity,
                booked_count=slot.booked_count,
                slot=slot_snapshot(slot),
            )
        logger.info(
            "Reserved seat slot={slot_id} booked={booked}/{capacity}",
            slot_id=slot_id,
            booked=slot.booked_count,
            capacity=slot.capacity,
        )
        return slot

    def release_seat(self, slot_id: int) -> Slot:
        remaining = Slot.booked_count - 1
        stmt = (
            update(Slot)
            .where(Slot.id == slot_id, Slot.booked_count > 0)
            .values(
                booked_count=remaining,
                status=case(
                    (remaining <= 0, SlotStatus.AVAILABLE.value),
                    (remaining >= Slot.capacity, SlotStatus.FULL.value),
                    else_=SlotStatus.PARTIALLY_BOOKED.value,
                ),
            )
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)
        slot = self.get_slot(slot_id, refresh=True)
        if result.rowcount != 1:
            raise ResourceReleaseMismatch(
                f"Slot {slot_id} has no booked seat to release",
                slot=slot_snapshot(slot),
            )
        logger.info(
            "Released seat slot={slot_id} booked={booked}/{capacity}",
            slot_id=slot_id,
            booked=slot.booked_count,
            capacity=slot.capacity,
        )
        return slot

    def assign_technicians(self, slot_id: int, *, technician_ids: list[str], capacity: int | None = None) -> Slot:
        slot = self.get_slot(slot_id, refresh=True)
        if capacity is not None:
            if capacity < 1:
                raise ValueError("Slot capacity must be at least 1")
            if capacity < slot.booked_count:
                raise ValueError(
                    f"Capacity {capacity} is below the {slot.booked_count} seats already booked"
                )
            slot.capacity = capacity
        slot.technician_ids = list(dict.fromkeys(tid for tid in technician_ids if tid))
        slot.status = slot_status_for(slot.booked_count, slot.capacity).value
        self.session.flush()
        logger.info(
            "Assigned technicians slot={slot_id} technicians={technicians} capacity={capacity}",
            slot_id=slot_id,
            technicians=slot.technician_ids,
            capacity=slot.capacity,
        )
        return slot

    def auto_assign(self, slot_id: int) -> Slot:
        roster = list(dict.fromkeys(self.settings.technician_roster))
        if not roster:
            raise ValueError("Technician roster is empty; nothing to auto-assign")
        return self.assign_technicians(slot_id, technician_ids=roster, capacity=len(roster))

    def disable_slot(self, slot_id: int) -> Slot:
        slot = self.get_slot(slot_id)
        slot.is_active = False
        self.session.flush()
        logger.info("Disabled slot id={slot_id} booked={booked}", slot_id=slot_id, booked=slot.booked_count)
        return slot

    def list_slots(
        self,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
        technician_id: str | None = None,
        include_inactive: bool = False,
        only_open: bool = False,
    ) -> list[Slot]:
        stmt = select(Slot).order_by(Slot.start)
        if start is not None:
            stmt = stmt.where(Slot.end > ensure_aware(start, self.settings.timezone))
        if end is not None:
            stmt = stmt.where(Slot.start < ensure_aware(end, self.settings.timezone))
        if not include_inactive:
            stmt = stmt.where(Slot.is_active.is_(True))
        if only_open:
            stmt = stmt.where(Slot.booked_count < Slot.capacity)
        slots = list(self.session.scalars(stmt))
        if technician_id:
            slots = [slot for slot in slots if technician_id in (slot.technician_ids or [])]
        return slots
