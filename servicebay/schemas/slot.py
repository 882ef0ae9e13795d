from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def _dedupe(ids: list[str]) -> list[str]:
    cleaned = [item.strip() for item in ids if item and item.strip()]
    return list(dict.fromkeys(cleaned))


class SlotCreate(BaseModel):
    start: datetime
    end: datetime
    capacity: int = Field(default=1, ge=1)
    technician_ids: list[str] = Field(default_factory=list)

    @field_validator("technician_ids")
    @classmethod
    def _normalize_ids(cls, value: list[str]) -> list[str]:
        return _dedupe(value)

    @model_validator(mode="after")
    def _check_window(self) -> "SlotCreate":
        if self.end <= self.start:
            raise ValueError("end must be after start")
        return self


class AssignTechniciansPayload(BaseModel):
    technician_ids: list[str] = Field(default_factory=list)
    capacity: int | None = Field(default=None, ge=1)

    @field_validator("technician_ids")
    @classmethod
    def _normalize_ids(cls, value: list[str]) -> list[str]:
        return _dedupe(value)


class SlotOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    start: datetime
    end: datetime
    capacity: int
    booked_count: int
    status: str
    technician_ids: list[str] = Field(default_factory=list)
    is_active: bool
