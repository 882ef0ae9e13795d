from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from servicebay.utils.time import utcnow

from .base import Base, UTCDateTime


class RequestStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class RequestKind(str, Enum):
    RECEPTION = "reception"
    ADDITIONAL = "additional"


class ConflictStatus(str, Enum):
    OPEN = "open"
    RESOLVED = "resolved"


class PartRequest(Base):
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    appointment_id: Mapped[int] = mapped_column(ForeignKey("appointment.id"), nullable=False, index=True)
    part_id: Mapped[int] = mapped_column(ForeignKey("part.id"), nullable=False, index=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    kind: Mapped[str] = mapped_column(String(16), nullable=False, default=RequestKind.RECEPTION.value)
    reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    requested_by: Mapped[str] = mapped_column(String(64), nullable=False)
    requested_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=RequestStatus.PENDING.value, index=True)
    conflict_id: Mapped[int | None] = mapped_column(ForeignKey("part_conflict.id"), nullable=True, index=True)
    decided_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    decided_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    decision_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    conflict: Mapped["PartConflict | None"] = relationship(back_populates="requests")

    __mapper_args__ = {"version_id_col": version}


class PartConflict(Base):
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    number: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    part_id: Mapped[int] = mapped_column(ForeignKey("part.id"), nullable=False, index=True)
    part_name: Mapped[str] = mapped_column(String(128), nullable=False)
    part_number: Mapped[str] = mapped_column(String(64), nullable=False)
    available_stock: Mapped[int] = mapped_column(Integer, nullable=False)
    total_requested: Mapped[int] = mapped_column(Integer, nullable=False)
    shortfall: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=ConflictStatus.OPEN.value, index=True)
    resolved_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    # Submission order; the resolver puts earlier slots and higher priority first.
    requests: Mapped[list[PartRequest]] = relationship(
        back_populates="conflict",
        order_by=[PartRequest.requested_at, PartRequest.id],
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def pending_requests(self) -> list[PartRequest]:
        return [request for request in self.requests if request.status == RequestStatus.PENDING]
