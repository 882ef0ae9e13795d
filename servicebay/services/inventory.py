from __future__ import annotations

import math

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from servicebay.core.errors import (
    InsufficientStock,
    LedgerInvariantViolation,
    NotFound,
    ResourceReleaseMismatch,
)
from servicebay.models.part import Part, PartReservation, ReservationStatus, StockAdjustment
from servicebay.services.events import EventPublisher
from servicebay.utils.time import utcnow

USAGE_SMOOTHING = 0.1


def part_snapshot(part: Part) -> dict:
    return {
        "id": part.id,
        "part_number": part.part_number,
        "name": part.name,
        "current_stock": part.current_stock,
        "reserved_stock": part.reserved_stock,
        "used_stock": part.used_stock,
        "reorder_point": part.reorder_point,
    }


def smoothed_usage(previous: int, observed: int) -> int:
    # Rounds half up; analytics only.
    return int(math.floor(previous * (1 - USAGE_SMOOTHING) + observed * USAGE_SMOOTHING + 0.5))


class InventoryLedger:
    """Per-part stock buckets and the reservations that move quantity between them.

    ``current_stock + reserved_stock + used_stock`` only changes through
    :meth:`adjust_stock`; every other operation moves quantity between buckets
    with one conditional UPDATE and re-checks the total afterwards.
    """

    def __init__(self, session: Session, events: EventPublisher | None = None) -> None:
        self.session = session
        self.events = events or EventPublisher(session)

    # catalog

    def create_part(
        self,
        *,
        part_number: str,
        name: str,
        category: str = "consumables",
        brand: str | None = None,
        description: str | None = None,
        cost_price: int = 0,
        retail_price: int = 0,
        initial_stock: int = 0,
        min_stock_level: int = 5,
        reorder_point: int = 10,
        max_stock_level: int = 100,
        actor_id: str = "system",
    ) -> Part:
        part_number = part_number.strip().upper()
        if not part_number:
            raise ValueError("part_number is required")
        if initial_stock < 0:
            raise ValueError("initial_stock cannot be negative")
        existing = self.session.scalars(select(Part).where(Part.part_number == part_number)).first()
        if existing is not None:
            raise ValueError(f"Part number {part_number} already exists")

        part = Part(
            part_number=part_number,
            name=name,
            category=category,
            brand=brand,
            description=description,
            cost_price=cost_price,
            retail_price=retail_price,
            current_stock=initial_stock,
            reserved_stock=0,
            used_stock=0,
            min_stock_level=min_stock_level,
            reorder_point=reorder_point,
            max_stock_level=max_stock_level,
            last_restocked_at=utcnow() if initial_stock else None,
        )
        self.session.add(part)
        self.session.flush()
        if initial_stock:
            self.session.add(
                StockAdjustment(
                    part_id=part.id,
                    delta=initial_stock,
                    previous_stock=0,
                    new_stock=initial_stock,
                    reason="initial stock",
                    actor_id=actor_id,
                )
            )
        logger.info(
            "Created part id={part_id} number={number} stock={stock}",
            part_id=part.id,
            number=part_number,
            stock=initial_stock,
        )
        return part

    def get_part(self, part_id: int, *, refresh: bool = False) -> Part:
        part = self.session.get(Part, part_id, populate_existing=refresh)
        if part is None:
            raise NotFound(f"Part {part_id} not found", part_id=part_id)
        return part

    def list_parts(self, *, active_only: bool = True, low_stock_only: bool = False) -> list[Part]:
        stmt = select(Part).order_by(Part.part_number)
        if active_only:
            stmt = stmt.where(Part.is_active.is_(True))
        if low_stock_only:
            stmt = stmt.where(Part.current_stock <= Part.reorder_point)
        return list(self.session.scalars(stmt))

    def available(self, part_id: int) -> int:
        return self.get_part(part_id, refresh=True).current_stock

    def list_reservations(
        self,
        *,
        appointment_id: int | None = None,
        part_id: int | None = None,
        status: ReservationStatus | None = None,
    ) -> list[PartReservation]:
        stmt = select(PartReservation).order_by(PartReservation.id)
        if appointment_id is not None:
            stmt = stmt.where(PartReservation.appointment_id == appointment_id)
        if part_id is not None:
            stmt = stmt.where(PartReservation.part_id == part_id)
        if status is not None:
            stmt = stmt.where(PartReservation.status == status.value)
        return list(self.session.scalars(stmt))

    def history(self, part_id: int) -> list[StockAdjustment]:
        stmt = select(StockAdjustment).where(StockAdjustment.part_id == part_id).order_by(StockAdjustment.id)
        return list(self.session.scalars(stmt))

    # ledger operations

    def reserve(self, *, part_id: int, appointment_id: int, quantity: int, actor_id: str) -> PartReservation:
        if quantity < 1:
            raise ValueError("Reservation quantity must be at least 1")
        part = self.get_part(part_id, refresh=True)
        if not part.is_active:
            raise ValueError(f"Part {part.part_number} is inactive")
        total_before = part.stock_total

        stmt = (
            update(Part)
            .where(Part.id == part_id, Part.current_stock >= quantity)
            .values(
                current_stock=Part.current_stock - quantity,
                reserved_stock=Part.reserved_stock + quantity,
            )
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)
        part = self.get_part(part_id, refresh=True)
        if result.rowcount != 1:
            raise InsufficientStock(
                f"Insufficient stock for {part.part_number}: {part.current_stock} available, {quantity} requested",
                available=part.current_stock,
                requested=quantity,
                part=part_snapshot(part),
            )
        self._check_conserved(part, total_before, "reserve")

        reservation = self._reserved_record(part_id, appointment_id)
        if reservation is not None:
            reservation.quantity += quantity
        else:
            reservation = PartReservation(
                part_id=part_id,
                appointment_id=appointment_id,
                quantity=quantity,
                status=ReservationStatus.RESERVED.value,
                reserved_by=actor_id,
                reserved_at=utcnow(),
            )
            self.session.add(reservation)
        self.session.flush()

        logger.info(
            "Reserved part={part_id} qty={qty} appointment={appointment_id} current={current} reserved={reserved}",
            part_id=part_id,
            qty=quantity,
            appointment_id=appointment_id,
            current=part.current_stock,
            reserved=part.reserved_stock,
        )
        self._alert_if_low(part)
        return reservation

    def mark_used(self, *, part_id: int, appointment_id: int, quantity_used: int, actor_id: str) -> PartReservation:
        if quantity_used < 0:
            raise ValueError("quantity_used cannot be negative")
        reservation = self._require_reserved(part_id, appointment_id)
        reserved_qty = reservation.quantity
        if quantity_used > reserved_qty:
            raise ValueError(f"Cannot use {quantity_used} of part {part_id}; only {reserved_qty} reserved")

        part = self.get_part(part_id, refresh=True)
        total_before = part.stock_total
        now = utcnow()
        self._close_reservation(
            reservation,
            ReservationStatus.USED,
            quantity_used=quantity_used,
            used_by=actor_id,
            used_at=now,
        )

        values = {
            "reserved_stock": Part.reserved_stock - reserved_qty,
            "used_stock": Part.used_stock + quantity_used,
            "current_stock": Part.current_stock + (reserved_qty - quantity_used),
        }
        if quantity_used:
            values.update(total_used=Part.total_used + quantity_used, last_used_at=now)
        self._move(part_id, reserved_qty, values, "mark_used")

        part = self.get_part(part_id, refresh=True)
        self._check_conserved(part, total_before, "mark_used")
        part.average_usage = smoothed_usage(part.average_usage, quantity_used)
        self.session.flush()

        logger.info(
            "Marked used part={part_id} used={used}/{reserved} appointment={appointment_id}",
            part_id=part_id,
            used=quantity_used,
            reserved=reserved_qty,
            appointment_id=appointment_id,
        )
        return reservation

    def release(
        self,
        *,
        part_id: int,
        appointment_id: int,
        actor_id: str,
        status: ReservationStatus = ReservationStatus.CANCELLED,
    ) -> PartReservation:
        if status not in (ReservationStatus.CANCELLED, ReservationStatus.RETURNED):
            raise ValueError("Released reservations end as cancelled or returned")
        reservation = self._require_reserved(part_id, appointment_id)
        quantity = reservation.quantity

        part = self.get_part(part_id, refresh=True)
        total_before = part.stock_total
        self._close_reservation(reservation, status, released_by=actor_id, released_at=utcnow())
        self._move(
            part_id,
            quantity,
            {
                "reserved_stock": Part.reserved_stock - quantity,
                "current_stock": Part.current_stock + quantity,
            },
            "release",
        )
        part = self.get_part(part_id, refresh=True)
        self._check_conserved(part, total_before, "release")

        logger.info(
            "Released part={part_id} qty={qty} appointment={appointment_id} status={status}",
            part_id=part_id,
            qty=quantity,
            appointment_id=appointment_id,
            status=status.value,
        )
        return reservation

    def release_all(
        self,
        *,
        appointment_id: int,
        actor_id: str,
        status: ReservationStatus = ReservationStatus.CANCELLED,
    ) -> list[PartReservation]:
        held = self.list_reservations(appointment_id=appointment_id, status=ReservationStatus.RESERVED)
        return [
            self.release(part_id=item.part_id, appointment_id=appointment_id, actor_id=actor_id, status=status)
            for item in held
        ]

    def commit_for_work(self, *, appointment_id: int) -> list[PartReservation]:
        """Mark held reservations as committed to work in progress; quantities are untouched."""
        now = utcnow()
        held = self.list_reservations(appointment_id=appointment_id, status=ReservationStatus.RESERVED)
        for reservation in held:
            if reservation.committed_at is None:
                reservation.committed_at = now
        self.session.flush()
        return held

    def adjust_stock(self, *, part_id: int, delta: int, reason: str, actor_id: str) -> StockAdjustment:
        if delta == 0:
            raise ValueError("Stock adjustment delta must be non-zero")
        if not reason or not reason.strip():
            raise ValueError("A reason is required for stock adjustments")
        self.get_part(part_id)

        values: dict = {"current_stock": Part.current_stock + delta}
        if delta > 0:
            values["last_restocked_at"] = utcnow()
        stmt = (
            update(Part)
            .where(Part.id == part_id, Part.current_stock + delta >= 0)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)
        part = self.get_part(part_id, refresh=True)
        if result.rowcount != 1:
            raise InsufficientStock(
                f"Adjustment of {delta} would make {part.part_number} stock negative",
                available=part.current_stock,
                requested=-delta,
                part=part_snapshot(part),
            )

        adjustment = StockAdjustment(
            part_id=part_id,
            delta=delta,
            previous_stock=part.current_stock - delta,
            new_stock=part.current_stock,
            reason=reason.strip(),
            actor_id=actor_id,
        )
        self.session.add(adjustment)
        self.session.flush()
        logger.info(
            "Adjusted stock part={part_id} delta={delta} new={new} reason={reason} actor={actor}",
            part_id=part_id,
            delta=delta,
            new=part.current_stock,
            reason=adjustment.reason,
            actor=actor_id,
        )
        self._alert_if_low(part)
        return adjustment

    # internals

    def _reserved_record(self, part_id: int, appointment_id: int) -> PartReservation | None:
        stmt = select(PartReservation).where(
            PartReservation.part_id == part_id,
            PartReservation.appointment_id == appointment_id,
            PartReservation.status == ReservationStatus.RESERVED.value,
        )
        return self.session.scalars(stmt.execution_options(populate_existing=True)).first()

    def _require_reserved(self, part_id: int, appointment_id: int) -> PartReservation:
        reservation = self._reserved_record(part_id, appointment_id)
        if reservation is None:
            part = self.get_part(part_id, refresh=True)
            raise ResourceReleaseMismatch(
                f"No active reservation of part {part_id} for appointment {appointment_id}",
                part_id=part_id,
                appointment_id=appointment_id,
                part=part_snapshot(part),
            )
        return reservation

    def _close_reservation(self, reservation: PartReservation, status: ReservationStatus, **values) -> None:
        stmt = (
            update(PartReservation)
            .where(
                PartReservation.id == reservation.id,
                PartReservation.status == ReservationStatus.RESERVED.value,
            )
            .values(status=status.value, **values)
            .execution_options(synchronize_session=False)
        )
        if self.session.execute(stmt).rowcount != 1:
            part = self.get_part(reservation.part_id, refresh=True)
            raise ResourceReleaseMismatch(
                f"Reservation {reservation.id} was already closed",
                reservation_id=reservation.id,
                part=part_snapshot(part),
            )
        self.session.refresh(reservation)

    def _move(self, part_id: int, reserved_qty: int, values: dict, operation: str) -> None:
        stmt = (
            update(Part)
            .where(Part.id == part_id, Part.reserved_stock >= reserved_qty)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if self.session.execute(stmt).rowcount != 1:
            raise LedgerInvariantViolation(
                f"Reserved stock of part {part_id} is below an active reservation during {operation}",
                part_id=part_id,
                reserved_quantity=reserved_qty,
            )

    def _check_conserved(self, part: Part, total_before: int, operation: str) -> None:
        if part.stock_total != total_before:
            logger.error(
                "Stock total drifted part={part_id} op={op} before={before} after={after}",
                part_id=part.id,
                op=operation,
                before=total_before,
                after=part.stock_total,
            )
            raise LedgerInvariantViolation(
                f"Stock total for part {part.id} changed during {operation}",
                before=total_before,
                after=part.stock_total,
                part=part_snapshot(part),
            )
        if part.current_stock < 0:
            raise LedgerInvariantViolation(f"Part {part.id} stock went negative", part=part_snapshot(part))

    def _alert_if_low(self, part: Part) -> None:
        if part.needs_reorder:
            logger.warning(
                "Low stock part={part_id} number={number} current={current} reorder_point={reorder}",
                part_id=part.id,
                number=part.part_number,
                current=part.current_stock,
                reorder=part.reorder_point,
            )
            self.events.low_stock(part)
