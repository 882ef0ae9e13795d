from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class PartRequestOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    number: str
    appointment_id: int
    part_id: int
    quantity: int
    kind: str
    reason: str | None = None
    requested_by: str
    requested_at: datetime
    status: str
    conflict_id: int | None = None
    decided_by: str | None = None
    decided_at: datetime | None = None
    decision_notes: str | None = None


class ConflictMemberOut(PartRequestOut):
    appointment_number: str | None = None
    can_be_fulfilled: bool = False


class ConflictOut(BaseModel):
    id: int
    number: str
    part_id: int
    part_name: str
    part_number: str
    available_stock: int
    total_requested: int
    shortfall: int
    status: str
    resolved_by: str | None = None
    resolved_at: datetime | None = None
    resolution_notes: str | None = None
    created_at: datetime
    requests: list[ConflictMemberOut] = Field(default_factory=list)


class SuggestionOut(BaseModel):
    conflict_id: int
    available_stock: int
    approve: list[int] = Field(default_factory=list)
    reject: list[int] = Field(default_factory=list)
    remaining_stock: int


class DecisionPayload(BaseModel):
    request_id: int
    notes: str | None = None


class ResolvePayload(BaseModel):
    notes: str | None = None


class ConflictStats(BaseModel):
    open: int
    resolved: int
    total_shortfall: int
