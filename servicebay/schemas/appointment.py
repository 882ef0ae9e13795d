from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class ServiceLine(BaseModel):
    service_id: str
    name: str | None = None
    quantity: int = Field(default=1, ge=1)
    price: int = Field(default=0, ge=0)


class SlotSelector(BaseModel):
    slot_id: int | None = None
    start: datetime | None = None
    end: datetime | None = None

    @model_validator(mode="after")
    def _require_slot_or_window(self) -> "SlotSelector":
        if self.slot_id is None and self.start is None:
            raise ValueError("either slot_id or start is required")
        if self.start is not None and self.end is not None and self.end <= self.start:
            raise ValueError("end must be after start")
        return self


class BookingRequest(SlotSelector):
    customer_id: str | None = None
    vehicle_id: str
    services: list[ServiceLine] = Field(default_factory=list)
    priority: Literal["low", "normal", "high", "urgent"] = "normal"
    customer_notes: str | None = None

    @field_validator("vehicle_id")
    @classmethod
    def _ensure_vehicle(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("vehicle_id is required")
        return value.strip()


class ConfirmPayload(BaseModel):
    technician_id: str | None = None
    notes: str | None = None


class RejectPayload(BaseModel):
    reason: str
    suggested_action: str | None = None

    @field_validator("reason")
    @classmethod
    def _ensure_reason(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("a rejection reason is required")
        return value.strip()


class AssignTechnicianPayload(BaseModel):
    technician_id: str


class ArrivalPayload(BaseModel):
    vehicle_condition_notes: str | None = None
    customer_items: list[str] = Field(default_factory=list)


class PartRequestLine(BaseModel):
    part_id: int
    quantity: int = Field(..., ge=1)
    reason: str | None = None


class ReceptionPayload(BaseModel):
    inspection_findings: str
    recommended_services: list[ServiceLine] = Field(default_factory=list)
    part_requests: list[PartRequestLine] = Field(default_factory=list)
    notes: str | None = None


class ReviewPayload(BaseModel):
    decision: Literal["approve", "reject"]
    notes: str | None = None


class AdditionalPartsPayload(BaseModel):
    part_requests: list[PartRequestLine] = Field(..., min_length=1)
    notes: str | None = None


class PaymentProof(BaseModel):
    reference: str
    amount: int = Field(..., ge=0)
    provider: str | None = None
    transaction_id: str | None = None


class PartUsageLine(BaseModel):
    part_id: int
    quantity_used: int = Field(..., ge=0)


class UsageReport(BaseModel):
    parts: list[PartUsageLine] = Field(default_factory=list)
    notes: str | None = None

    @field_validator("parts")
    @classmethod
    def _unique_parts(cls, value: list[PartUsageLine]) -> list[PartUsageLine]:
        seen = [line.part_id for line in value]
        if len(seen) != len(set(seen)):
            raise ValueError("each part may appear only once in a usage report")
        return value


class CancellationRequest(BaseModel):
    reason: str | None = None
    refund_method: Literal["cash", "bank_transfer"] | None = None


class CancellationDecision(BaseModel):
    notes: str | None = None


class ReschedulePayload(SlotSelector):
    reason: str | None = None


class HistoryEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    action: str
    from_status: str | None = None
    to_status: str
    actor_id: str | None = None
    actor_role: str | None = None
    reason: str | None = None
    notes: str | None = None
    at: datetime


class AppointmentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    number: str
    customer_id: str
    vehicle_id: str
    slot_id: int
    technician_id: str | None = None
    status: str
    detailed_status: str
    priority: str
    services: list[dict[str, Any]] = Field(default_factory=list)
    customer_notes: str | None = None
    seat_held: bool
    reschedule_count: int
    deposit_amount: int
    deposit_paid: bool
    amount_due: int
    amount_paid: int
    payment_reference: str | None = None
    reception: dict[str, Any] | None = None
    arrival: dict[str, Any] | None = None
    cancel_request: dict[str, Any] | None = None
    rejection_reason: str | None = None
    created_at: datetime
    confirmed_at: datetime | None = None
    rejected_at: datetime | None = None
    arrived_at: datetime | None = None
    reception_submitted_at: datetime | None = None
    reception_reviewed_at: datetime | None = None
    payment_confirmed_at: datetime | None = None
    work_started_at: datetime | None = None
    completed_at: datetime | None = None
    cancel_requested_at: datetime | None = None
    cancelled_at: datetime | None = None
    rescheduled_at: datetime | None = None
    version: int


class AppointmentDetailOut(AppointmentOut):
    history: list[HistoryEntryOut] = Field(default_factory=list)
