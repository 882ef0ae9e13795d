from __future__ import annotations

from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from servicebay.utils.time import utcnow

from .base import Base, UTCDateTime


class ReservationStatus(str, Enum):
    RESERVED = "reserved"
    USED = "used"
    RETURNED = "returned"
    CANCELLED = "cancelled"


class Part(Base):
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    part_number: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    category: Mapped[str] = mapped_column(String(32), nullable=False, default="consumables")
    brand: Mapped[str | None] = mapped_column(String(64), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    cost_price: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    retail_price: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    current_stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reserved_stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    used_stock: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    min_stock_level: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    reorder_point: Mapped[int] = mapped_column(Integer, nullable=False, default=10)
    max_stock_level: Mapped[int] = mapped_column(Integer, nullable=False, default=100)

    average_usage: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_used_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    last_restocked_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    reservations: Mapped[list["PartReservation"]] = relationship(back_populates="part", order_by="PartReservation.id")

    @property
    def stock_total(self) -> int:
        return self.current_stock + self.reserved_stock + self.used_stock

    @property
    def needs_reorder(self) -> bool:
        return self.current_stock <= self.reorder_point


class PartReservation(Base):
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    part_id: Mapped[int] = mapped_column(ForeignKey("part.id"), nullable=False, index=True)
    appointment_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=ReservationStatus.RESERVED.value)
    reserved_by: Mapped[str] = mapped_column(String(64), nullable=False)
    reserved_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    committed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    used_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    used_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    released_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    released_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    part: Mapped[Part] = relationship(back_populates="reservations")


class StockAdjustment(Base):
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    part_id: Mapped[int] = mapped_column(ForeignKey("part.id"), nullable=False, index=True)
    delta: Mapped[int] = mapped_column(Integer, nullable=False)
    previous_stock: Mapped[int] = mapped_column(Integer, nullable=False)
    new_stock: Mapped[int] = mapped_column(Integer, nullable=False)
    reason: Mapped[str] = mapped_column(String(255), nullable=False)
    actor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
