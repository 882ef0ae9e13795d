from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import JSON, Boolean, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from servicebay.utils.time import utcnow

from .base import Base, UTCDateTime


class AppointmentStatus(str, Enum):
    """Coarse lifecycle stage."""

    SCHEDULED = "scheduled"
    CHECKED_IN = "checked_in"
    ON_HOLD = "on_hold"
    IN_SERVICE = "in_service"
    CLOSED = "closed"


class DetailedStatus(str, Enum):
    PENDING_CONFIRMATION = "pending_confirmation"
    CONFIRMED = "confirmed"
    CUSTOMER_ARRIVED = "customer_arrived"
    RECEPTION_SUBMITTED = "reception_submitted"
    RECEPTION_APPROVED_PENDING_PAYMENT = "reception_approved_pending_payment"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    REJECTED = "rejected"
    CANCEL_REQUESTED = "cancel_requested"
    CANCEL_APPROVED = "cancel_approved"
    RESCHEDULED = "rescheduled"


# Every detailed status belongs to exactly one coarse status.
STATUS_MEMBERS: dict[AppointmentStatus, frozenset[DetailedStatus]] = {
    AppointmentStatus.SCHEDULED: frozenset(
        {DetailedStatus.PENDING_CONFIRMATION, DetailedStatus.CONFIRMED, DetailedStatus.RESCHEDULED}
    ),
    AppointmentStatus.CHECKED_IN: frozenset({DetailedStatus.CUSTOMER_ARRIVED, DetailedStatus.RECEPTION_SUBMITTED}),
    AppointmentStatus.ON_HOLD: frozenset(
        {DetailedStatus.RECEPTION_APPROVED_PENDING_PAYMENT, DetailedStatus.CANCEL_REQUESTED}
    ),
    AppointmentStatus.IN_SERVICE: frozenset({DetailedStatus.IN_PROGRESS}),
    AppointmentStatus.CLOSED: frozenset(
        {DetailedStatus.COMPLETED, DetailedStatus.REJECTED, DetailedStatus.CANCEL_APPROVED}
    ),
}

TERMINAL_STATUSES = frozenset({DetailedStatus.COMPLETED, DetailedStatus.CANCEL_APPROVED, DetailedStatus.REJECTED})


def coarse_status_for(detailed: DetailedStatus | str) -> AppointmentStatus:
    detailed = DetailedStatus(detailed)
    for coarse, members in STATUS_MEMBERS.items():
        if detailed in members:
            return coarse
    raise ValueError(f"Detailed status {detailed.value!r} has no coarse status")


class Appointment(Base):
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    customer_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    vehicle_id: Mapped[str] = mapped_column(String(64), nullable=False)
    slot_id: Mapped[int] = mapped_column(ForeignKey("slot.id"), nullable=False, index=True)
    technician_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)

    status: Mapped[str] = mapped_column(String(32), nullable=False, default=AppointmentStatus.SCHEDULED.value)
    detailed_status: Mapped[str] = mapped_column(
        String(48), nullable=False, default=DetailedStatus.PENDING_CONFIRMATION.value, index=True
    )
    priority: Mapped[str] = mapped_column(String(16), nullable=False, default="normal")

    services: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    customer_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    internal_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    seat_held: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    reschedule_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    deposit_amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    deposit_paid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    amount_due: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    amount_paid: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    payment_reference: Mapped[str | None] = mapped_column(String(64), nullable=True)

    reception: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    arrival: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    cancel_request: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)
    confirmed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    rejected_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    arrived_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    reception_submitted_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    reception_reviewed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    payment_confirmed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    work_started_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    cancel_requested_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    rescheduled_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    history: Mapped[list["AppointmentHistory"]] = relationship(
        back_populates="appointment",
        order_by="AppointmentHistory.id",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def services_total(self) -> int:
        return sum(int(item.get("price") or 0) * int(item.get("quantity") or 1) for item in self.services or [])

    @property
    def is_terminal(self) -> bool:
        return DetailedStatus(self.detailed_status) in TERMINAL_STATUSES


class AppointmentHistory(Base):
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    appointment_id: Mapped[int] = mapped_column(ForeignKey("appointment.id"), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(48), nullable=False)
    from_status: Mapped[str | None] = mapped_column(String(48), nullable=True)
    to_status: Mapped[str] = mapped_column(String(48), nullable=False)
    actor_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    actor_role: Mapped[str | None] = mapped_column(String(16), nullable=True)
    reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    appointment: Mapped[Appointment] = relationship(back_populates="history")
