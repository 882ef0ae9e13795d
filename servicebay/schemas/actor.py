from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field, field_validator


class Role(str, Enum):
    CUSTOMER = "customer"
    STAFF = "staff"
    TECHNICIAN = "technician"
    ADMIN = "admin"
    SYSTEM = "system"


class Actor(BaseModel):
    """Authenticated identity handed to us by the auth gateway."""

    id: str = Field(..., description="User identifier from the auth subsystem")
    role: Role

    @field_validator("id")
    @classmethod
    def _ensure_not_empty(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("actor id is required")
        return value.strip()


SYSTEM_ACTOR = Actor(id="system", role=Role.SYSTEM)
