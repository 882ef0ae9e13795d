"""Who may do what to an appointment, and from which states.

Both tables are the single source of truth for the workflow engine: every
operation authorizes against ``GRANTS`` first and then checks ``TRANSITIONS``.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from servicebay.core.errors import InvalidStateTransition, Unauthorized
from servicebay.models.appointment import Appointment, DetailedStatus, TERMINAL_STATUSES
from servicebay.schemas.actor import Actor, Role


class Action(str, Enum):
    CREATE = "create"
    VIEW = "view"
    STAFF_CONFIRM = "staff_confirm"
    STAFF_REJECT = "staff_reject"
    ASSIGN_TECHNICIAN = "assign_technician"
    CUSTOMER_ARRIVED = "customer_arrived"
    SUBMIT_RECEPTION = "submit_reception"
    APPROVE_RECEPTION = "approve_reception"
    REJECT_RECEPTION = "reject_reception"
    CONFIRM_PAYMENT = "confirm_payment"
    START_WORK = "start_work"
    REQUEST_ADDITIONAL_PARTS = "request_additional_parts"
    COMPLETE = "complete"
    REQUEST_CANCELLATION = "request_cancellation"
    APPROVE_CANCELLATION = "approve_cancellation"
    DENY_CANCELLATION = "deny_cancellation"
    RESCHEDULE = "reschedule"
    EXPIRE_SEAT_HOLD = "expire_seat_hold"
    EXPIRE_PARTS_HOLD = "expire_parts_hold"
    MANAGE_SLOTS = "manage_slots"
    MANAGE_INVENTORY = "manage_inventory"
    MANAGE_CONFLICTS = "manage_conflicts"


class Relationship(str, Enum):
    ANY = "any"
    OWNER = "owner"
    ASSIGNED_TECHNICIAN = "assigned_technician"


@dataclass(frozen=True)
class Transition:
    sources: frozenset[DetailedStatus]
    # None keeps the current status (or, for denied cancellations, restores the previous one).
    target: DetailedStatus | None


_S = DetailedStatus
_ANY = Relationship.ANY

GRANTS: dict[Action, dict[Role, Relationship]] = {
    Action.CREATE: {Role.CUSTOMER: Relationship.OWNER, Role.STAFF: _ANY},
    Action.VIEW: {Role.CUSTOMER: Relationship.OWNER, Role.STAFF: _ANY, Role.TECHNICIAN: _ANY, Role.SYSTEM: _ANY},
    Action.STAFF_CONFIRM: {Role.STAFF: _ANY},
    Action.STAFF_REJECT: {Role.STAFF: _ANY},
    Action.ASSIGN_TECHNICIAN: {Role.STAFF: _ANY},
    Action.CUSTOMER_ARRIVED: {Role.STAFF: _ANY, Role.TECHNICIAN: _ANY},
    Action.SUBMIT_RECEPTION: {Role.TECHNICIAN: Relationship.ASSIGNED_TECHNICIAN},
    Action.APPROVE_RECEPTION: {Role.STAFF: _ANY},
    Action.REJECT_RECEPTION: {Role.STAFF: _ANY},
    Action.CONFIRM_PAYMENT: {Role.STAFF: _ANY, Role.SYSTEM: _ANY},
    Action.START_WORK: {Role.TECHNICIAN: Relationship.ASSIGNED_TECHNICIAN},
    Action.REQUEST_ADDITIONAL_PARTS: {Role.TECHNICIAN: Relationship.ASSIGNED_TECHNICIAN},
    Action.COMPLETE: {Role.STAFF: _ANY, Role.TECHNICIAN: Relationship.ASSIGNED_TECHNICIAN},
    Action.REQUEST_CANCELLATION: {Role.CUSTOMER: Relationship.OWNER, Role.STAFF: _ANY},
    Action.APPROVE_CANCELLATION: {Role.STAFF: _ANY},
    Action.DENY_CANCELLATION: {Role.STAFF: _ANY},
    Action.RESCHEDULE: {Role.CUSTOMER: Relationship.OWNER, Role.STAFF: _ANY},
    Action.EXPIRE_SEAT_HOLD: {Role.SYSTEM: _ANY},
    Action.EXPIRE_PARTS_HOLD: {Role.SYSTEM: _ANY},
    Action.MANAGE_SLOTS: {Role.STAFF: _ANY},
    Action.MANAGE_INVENTORY: {Role.STAFF: _ANY},
    Action.MANAGE_CONFLICTS: {Role.STAFF: _ANY},
}

_OPEN_STATES = frozenset(status for status in DetailedStatus if status not in TERMINAL_STATUSES)

TRANSITIONS: dict[Action, Transition] = {
    Action.STAFF_CONFIRM: Transition(frozenset({_S.PENDING_CONFIRMATION}), _S.CONFIRMED),
    Action.STAFF_REJECT: Transition(frozenset({_S.PENDING_CONFIRMATION}), _S.REJECTED),
    Action.ASSIGN_TECHNICIAN: Transition(
        frozenset({_S.PENDING_CONFIRMATION, _S.CONFIRMED, _S.CUSTOMER_ARRIVED}), None
    ),
    Action.CUSTOMER_ARRIVED: Transition(frozenset({_S.CONFIRMED}), _S.CUSTOMER_ARRIVED),
    Action.SUBMIT_RECEPTION: Transition(frozenset({_S.CUSTOMER_ARRIVED}), _S.RECEPTION_SUBMITTED),
    Action.APPROVE_RECEPTION: Transition(
        frozenset({_S.RECEPTION_SUBMITTED}), _S.RECEPTION_APPROVED_PENDING_PAYMENT
    ),
    Action.REJECT_RECEPTION: Transition(frozenset({_S.RECEPTION_SUBMITTED}), _S.CUSTOMER_ARRIVED),
    Action.CONFIRM_PAYMENT: Transition(frozenset({_S.RECEPTION_APPROVED_PENDING_PAYMENT}), _S.IN_PROGRESS),
    Action.START_WORK: Transition(frozenset({_S.IN_PROGRESS}), None),
    Action.REQUEST_ADDITIONAL_PARTS: Transition(frozenset({_S.IN_PROGRESS}), None),
    Action.COMPLETE: Transition(frozenset({_S.IN_PROGRESS}), _S.COMPLETED),
    Action.REQUEST_CANCELLATION: Transition(
        _OPEN_STATES - {_S.CANCEL_REQUESTED, _S.RESCHEDULED}, _S.CANCEL_REQUESTED
    ),
    Action.APPROVE_CANCELLATION: Transition(_OPEN_STATES, _S.CANCEL_APPROVED),
    Action.DENY_CANCELLATION: Transition(frozenset({_S.CANCEL_REQUESTED}), None),
    Action.RESCHEDULE: Transition(frozenset({_S.PENDING_CONFIRMATION, _S.CONFIRMED}), _S.PENDING_CONFIRMATION),
    Action.EXPIRE_SEAT_HOLD: Transition(frozenset({_S.PENDING_CONFIRMATION}), _S.REJECTED),
    Action.EXPIRE_PARTS_HOLD: Transition(
        frozenset({_S.RECEPTION_SUBMITTED, _S.RECEPTION_APPROVED_PENDING_PAYMENT}), _S.CUSTOMER_ARRIVED
    ),
}


def _related(actor: Actor, relationship: Relationship, appointment: Appointment | None, customer_id: str | None) -> bool:
    if relationship == Relationship.ANY:
        return True
    if relationship == Relationship.OWNER:
        owner = appointment.customer_id if appointment is not None else customer_id
        return owner is not None and owner == actor.id
    if relationship == Relationship.ASSIGNED_TECHNICIAN:
        return appointment is not None and appointment.technician_id == actor.id
    return False


def is_allowed(
    actor: Actor,
    action: Action,
    appointment: Appointment | None = None,
    *,
    customer_id: str | None = None,
) -> bool:
    if actor.role == Role.ADMIN:
        return True
    relationship = GRANTS.get(action, {}).get(Role(actor.role))
    if relationship is None:
        return False
    return _related(actor, relationship, appointment, customer_id)


def authorize(
    actor: Actor,
    action: Action,
    appointment: Appointment | None = None,
    *,
    customer_id: str | None = None,
) -> None:
    if not is_allowed(actor, action, appointment, customer_id=customer_id):
        raise Unauthorized(
            f"Role {Role(actor.role).value} may not {action.value.replace('_', ' ')}",
            action=action.value,
            actor_id=actor.id,
            role=Role(actor.role).value,
        )


def ensure_transition(action: Action, appointment: Appointment) -> Transition:
    transition = TRANSITIONS[action]
    current = DetailedStatus(appointment.detailed_status)
    if current not in transition.sources:
        raise InvalidStateTransition(
            f"Cannot {action.value.replace('_', ' ')} from {current.value}",
            action=action.value,
            current_status=current.value,
            allowed_from=sorted(status.value for status in transition.sources),
        )
    return transition


def available_actions(actor: Actor, appointment: Appointment) -> list[str]:
    current = DetailedStatus(appointment.detailed_status)
    return [
        action.value
        for action, transition in TRANSITIONS.items()
        if current in transition.sources and is_allowed(actor, action, appointment)
    ]
