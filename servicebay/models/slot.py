from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import JSON, Boolean, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from servicebay.utils.time import utcnow

from .base import Base, UTCDateTime


class SlotStatus(str, Enum):
    AVAILABLE = "available"
    PARTIALLY_BOOKED = "partially_booked"
    FULL = "full"


def slot_status_for(booked_count: int, capacity: int) -> SlotStatus:
    if booked_count >= capacity:
        return SlotStatus.FULL
    if booked_count == 0:
        return SlotStatus.AVAILABLE
    return SlotStatus.PARTIALLY_BOOKED


class Slot(Base):
    __table_args__ = (UniqueConstraint("start", "end", name="uq_slot_window"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    start: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    end: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    capacity: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    booked_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=SlotStatus.AVAILABLE.value)
    technician_ids: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def seats_left(self) -> int:
        return max(0, self.capacity - self.booked_count)
