from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column

from servicebay.utils.time import utcnow

from .base import Base, UTCDateTime


class HoldKind(str, Enum):
    SEAT = "seat"
    PARTS = "parts"
    PAYMENT = "payment"


class HoldStatus(str, Enum):
    ACTIVE = "active"
    CONVERTED = "converted"
    RELEASED = "released"
    EXPIRED = "expired"


class Hold(Base):
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    hold_id: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)
    appointment_id: Mapped[int] = mapped_column(ForeignKey("appointment.id"), nullable=False, index=True)
    slot_id: Mapped[int | None] = mapped_column(ForeignKey("slot.id"), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=HoldStatus.ACTIVE.value, index=True)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    closed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
