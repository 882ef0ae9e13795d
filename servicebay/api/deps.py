from __future__ import annotations

from fastapi import Header, HTTPException, status

from servicebay.core.config import get_settings
from servicebay.schemas.actor import Actor, Role
from servicebay.services.workflow import AppointmentWorkflow


def _authorize(token: str | None, expected: str | None, label: str) -> None:
    if expected and token != expected:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=f"Invalid {label}")


def get_actor(
    x_actor_id: str | None = Header(default=None, alias="x-actor-id"),
    x_actor_role: str | None = Header(default=None, alias="x-actor-role"),
    x_api_token: str | None = Header(default=None, alias="x-api-token"),
) -> Actor:
    _authorize(x_api_token, get_settings().api_token, "API token")
    if not x_actor_id or not x_actor_role:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing actor identity headers")
    try:
        role = Role(x_actor_role.strip().lower())
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unknown role {x_actor_role}") from exc
    return Actor(id=x_actor_id, role=role)


def require_payment_token(
    x_payment_token: str | None = Header(default=None, alias="x-payment-token"),
) -> None:
    _authorize(x_payment_token, get_settings().payment_webhook_token, "payment webhook token")


def get_workflow() -> AppointmentWorkflow:
    return AppointmentWorkflow()
