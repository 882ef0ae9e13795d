from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

PartCategory = Literal["battery", "motor", "charging", "electronics", "body", "interior", "safety", "consumables"]


class PartCreate(BaseModel):
    part_number: str
    name: str
    category: PartCategory = "consumables"
    brand: str | None = None
    description: str | None = None
    cost_price: int = Field(default=0, ge=0)
    retail_price: int = Field(default=0, ge=0)
    initial_stock: int = Field(default=0, ge=0)
    min_stock_level: int = Field(default=5, ge=0)
    reorder_point: int = Field(default=10, ge=0)
    max_stock_level: int = Field(default=100, ge=0)

    @field_validator("part_number")
    @classmethod
    def _normalize_number(cls, value: str) -> str:
        cleaned = (value or "").strip().upper()
        if not cleaned:
            raise ValueError("part_number is required")
        return cleaned

    @field_validator("name")
    @classmethod
    def _ensure_name(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("name is required")
        return value.strip()


class ReservePayload(BaseModel):
    appointment_id: int
    quantity: int = Field(..., ge=1)


class MarkUsedPayload(BaseModel):
    appointment_id: int
    quantity_used: int = Field(..., ge=0)


class ReleasePayload(BaseModel):
    appointment_id: int


class AdjustStockPayload(BaseModel):
    delta: int
    reason: str

    @field_validator("delta")
    @classmethod
    def _non_zero(cls, value: int) -> int:
        if value == 0:
            raise ValueError("delta must be non-zero")
        return value

    @field_validator("reason")
    @classmethod
    def _ensure_reason(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("a reason is required for stock adjustments")
        return value.strip()


class PartOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    part_number: str
    name: str
    category: str
    brand: str | None = None
    retail_price: int
    current_stock: int
    reserved_stock: int
    used_stock: int
    reorder_point: int
    min_stock_level: int
    average_usage: int
    total_used: int
    needs_reorder: bool
    is_active: bool


class ReservationOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    part_id: int
    appointment_id: int
    quantity: int
    quantity_used: int
    status: str
    reserved_by: str
    reserved_at: datetime
    committed_at: datetime | None = None
    used_at: datetime | None = None
    released_at: datetime | None = None


class StockAdjustmentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    part_id: int
    delta: int
    previous_stock: int
    new_stock: int
    reason: str
    actor_id: str
    at: datetime
