"""Tests for role grants and transition legality."""

import pytest

from servicebay.core.errors import InvalidStateTransition, Unauthorized
from servicebay.models.appointment import Appointment, DetailedStatus, TERMINAL_STATUSES
from servicebay.schemas.actor import SYSTEM_ACTOR
from servicebay.schemas.appointment import (
    ArrivalPayload,
    CancellationDecision,
    CancellationRequest,
    PaymentProof,
    ReceptionPayload,
    RejectPayload,
    ReschedulePayload,
    ReviewPayload,
    UsageReport,
)
from servicebay.services.policy import TRANSITIONS, Action, authorize, available_actions, is_allowed
from tests.conftest import ADMIN, CUSTOMER, OTHER_CUSTOMER, OTHER_TECH, STAFF, TECH, force_status, load_appointment


def appointment_at(status: DetailedStatus) -> Appointment:
    return Appointment(customer_id="cust-1", technician_id="tech-1", detailed_status=status.value)


class TestGrants:
    @pytest.mark.parametrize(
        "actor, action, allowed",
        [
            (CUSTOMER, Action.REQUEST_CANCELLATION, True),
            (OTHER_CUSTOMER, Action.REQUEST_CANCELLATION, False),
            (CUSTOMER, Action.STAFF_CONFIRM, False),
            (STAFF, Action.STAFF_CONFIRM, True),
            (TECH, Action.SUBMIT_RECEPTION, True),
            (OTHER_TECH, Action.SUBMIT_RECEPTION, False),
            (STAFF, Action.SUBMIT_RECEPTION, False),
            (TECH, Action.COMPLETE, True),
            (OTHER_TECH, Action.COMPLETE, False),
            (STAFF, Action.COMPLETE, True),
            (TECH, Action.APPROVE_CANCELLATION, False),
            (SYSTEM_ACTOR, Action.CONFIRM_PAYMENT, True),
            (SYSTEM_ACTOR, Action.STAFF_CONFIRM, False),
            (ADMIN, Action.EXPIRE_SEAT_HOLD, True),
        ],
    )
    def test_grant_table(self, actor, action, allowed):
        assert is_allowed(actor, action, appointment_at(DetailedStatus.CONFIRMED)) is allowed

    def test_booking_ownership_checked_without_appointment(self):
        assert is_allowed(CUSTOMER, Action.CREATE, customer_id="cust-1")
        assert not is_allowed(CUSTOMER, Action.CREATE, customer_id="cust-2")

    def test_authorize_raises_with_details(self):
        with pytest.raises(Unauthorized) as excinfo:
            authorize(OTHER_TECH, Action.START_WORK, appointment_at(DetailedStatus.IN_PROGRESS))
        assert excinfo.value.details["role"] == "technician"
        assert excinfo.value.details["action"] == "start_work"

    def test_available_actions_follow_state_and_role(self):
        arrived = appointment_at(DetailedStatus.CUSTOMER_ARRIVED)
        assert "submit_reception" in available_actions(TECH, arrived)
        assert "submit_reception" not in available_actions(OTHER_TECH, arrived)
        assert available_actions(CUSTOMER, appointment_at(DetailedStatus.COMPLETED)) == []


class TestTransitionTable:
    def test_terminal_states_have_no_exit(self):
        for action, transition in TRANSITIONS.items():
            assert not (transition.sources & TERMINAL_STATUSES), action

    def test_reschedule_only_before_arrival(self):
        sources = TRANSITIONS[Action.RESCHEDULE].sources
        assert sources == {DetailedStatus.PENDING_CONFIRMATION, DetailedStatus.CONFIRMED}


OPEN_STATUSES = {status for status in DetailedStatus if status not in TERMINAL_STATUSES}

OPERATIONS = {
    "confirm": (
        lambda wf, apt_id: wf.staff_confirm(ADMIN, apt_id),
        {DetailedStatus.PENDING_CONFIRMATION},
    ),
    "reject": (
        lambda wf, apt_id: wf.staff_reject(ADMIN, apt_id, RejectPayload(reason="no parts")),
        {DetailedStatus.PENDING_CONFIRMATION},
    ),
    "arrival": (
        lambda wf, apt_id: wf.customer_arrived(ADMIN, apt_id, ArrivalPayload()),
        {DetailedStatus.CONFIRMED},
    ),
    "start_work": (
        lambda wf, apt_id: wf.start_work(ADMIN, apt_id),
        {DetailedStatus.IN_PROGRESS},
    ),
    "deny_cancellation": (
        lambda wf, apt_id: wf.deny_cancellation(ADMIN, apt_id, CancellationDecision()),
        {DetailedStatus.CANCEL_REQUESTED},
    ),
    "submit_reception": (
        lambda wf, apt_id: wf.submit_reception(ADMIN, apt_id, ReceptionPayload(inspection_findings="worn cells")),
        {DetailedStatus.CUSTOMER_ARRIVED},
    ),
    "review_reception": (
        lambda wf, apt_id: wf.review_reception(ADMIN, apt_id, ReviewPayload(decision="approve")),
        {DetailedStatus.RECEPTION_SUBMITTED},
    ),
    "confirm_payment": (
        lambda wf, apt_id: wf.confirm_payment(ADMIN, apt_id, PaymentProof(reference="PAY-unknown", amount=1)),
        {DetailedStatus.RECEPTION_APPROVED_PENDING_PAYMENT},
    ),
    "complete": (
        lambda wf, apt_id: wf.complete(ADMIN, apt_id, UsageReport()),
        {DetailedStatus.IN_PROGRESS},
    ),
    "reschedule": (
        lambda wf, apt_id: wf.reschedule(ADMIN, apt_id, ReschedulePayload(slot_id=9999)),
        {DetailedStatus.PENDING_CONFIRMATION, DetailedStatus.CONFIRMED},
    ),
    "request_cancellation": (
        lambda wf, apt_id: wf.request_cancellation(ADMIN, apt_id, CancellationRequest()),
        OPEN_STATUSES - {DetailedStatus.CANCEL_REQUESTED, DetailedStatus.RESCHEDULED},
    ),
    "approve_cancellation": (
        lambda wf, apt_id: wf.approve_cancellation(ADMIN, apt_id, CancellationDecision()),
        OPEN_STATUSES,
    ),
}

ILLEGAL_CASES = [
    (name, status)
    for name, (_, legal) in OPERATIONS.items()
    for status in DetailedStatus
    if status not in legal
]


class TestIllegalTransitions:
    @pytest.mark.parametrize("name, status", ILLEGAL_CASES, ids=[f"{n}-{s.value}" for n, s in ILLEGAL_CASES])
    def test_rejected_without_side_effects(self, workflow, make_slot, book, name, status):
        appointment = book(make_slot())
        force_status(appointment.id, status)
        operation, _ = OPERATIONS[name]

        with pytest.raises(InvalidStateTransition) as excinfo:
            operation(workflow, appointment.id)

        assert excinfo.value.state["appointment"]["detailed_status"] == status.value
        after = load_appointment(appointment.id)
        assert after.detailed_status == status.value
        assert after.version == excinfo.value.state["appointment"]["version"]
