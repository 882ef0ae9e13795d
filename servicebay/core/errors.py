from __future__ import annotations

from typing import Any


class ServiceBayError(Exception):
    """Base for every failure surfaced by the workflow and resource services.

    ``state`` carries the unchanged entity snapshot(s) at the time of the
    failure so a client can reconcile without re-fetching.
    """

    code = "service_error"
    http_status = 400

    def __init__(self, message: str, *, state: dict[str, Any] | None = None, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = details
        self.state: dict[str, Any] = dict(state or {})

    def with_state(self, **state: Any) -> "ServiceBayError":
        for key, value in state.items():
            self.state.setdefault(key, value)
        return self

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": "error",
            "error": self.code,
            "message": self.message,
            "details": self.details,
            "state": self.state,
        }


class NotFound(ServiceBayError):
    code = "not_found"
    http_status = 404


class InvalidStateTransition(ServiceBayError):
    code = "invalid_state_transition"
    http_status = 409


class SlotUnavailable(ServiceBayError):
    code = "slot_unavailable"
    http_status = 409


class SlotFull(ServiceBayError):
    code = "slot_full"
    http_status = 409


class InsufficientStock(ServiceBayError):
    code = "insufficient_stock"
    http_status = 409


class ConflictUnresolved(ServiceBayError):
    code = "conflict_unresolved"
    http_status = 409


class Unauthorized(ServiceBayError):
    code = "unauthorized"
    http_status = 403


class ResourceReleaseMismatch(ServiceBayError):
    code = "resource_release_mismatch"
    http_status = 409


class StaleWrite(ServiceBayError):
    code = "stale_write"
    http_status = 409


class PaymentMismatch(ServiceBayError):
    code = "payment_mismatch"
    http_status = 400


class LedgerInvariantViolation(ServiceBayError):
    code = "ledger_invariant_violation"
    http_status = 500
