"""Tests for part-request conflict detection and resolution."""

import pytest

from servicebay.core.errors import ConflictUnresolved, InsufficientStock, InvalidStateTransition
from servicebay.models.appointment import DetailedStatus
from servicebay.models.part_request import ConflictStatus, RequestStatus
from servicebay.schemas.appointment import AdditionalPartsPayload, BookingRequest, PartRequestLine, ReviewPayload
from tests.conftest import CUSTOMER, STAFF, TECH


@pytest.fixture
def arrived_pair(workflow, make_slot, book, advance):
    slot = make_slot(capacity=2)
    first = advance(book(slot, vehicle_id="veh-1"), DetailedStatus.CUSTOMER_ARRIVED)
    second = advance(book(slot, vehicle_id="veh-2"), DetailedStatus.CUSTOMER_ARRIVED)
    return first, second


def submit(advance, appointment, part_id, quantity):
    return advance(appointment, DetailedStatus.RECEPTION_SUBMITTED, part_requests=[(part_id, quantity)])


def only_conflict(workflow):
    conflicts = workflow.detect_conflicts(STAFF)
    assert len(conflicts) == 1
    return conflicts[0]


def requests_of(workflow, appointment_id):
    return workflow.run(lambda uow: uow.conflicts.requests_for(appointment_id))


class TestDetection:
    def test_uncontended_request_is_reserved_immediately(self, workflow, make_part, arrived_pair, advance):
        part = make_part(stock=5)
        first, _ = arrived_pair
        submit(advance, first, part.id, 3)
        [request] = requests_of(workflow, first.id)
        assert request.status == RequestStatus.APPROVED.value
        assert request.conflict_id is None
        assert workflow.detect_conflicts(STAFF) == []

    def test_second_claim_exceeding_stock_opens_conflict(self, workflow, make_part, arrived_pair, advance):
        part = make_part(stock=5)
        first, second = arrived_pair
        submit(advance, first, part.id, 3)
        submit(advance, second, part.id, 3)

        conflict = only_conflict(workflow)
        assert conflict["status"] == ConflictStatus.OPEN.value
        assert conflict["available_stock"] == 2
        assert conflict["total_requested"] == 3
        assert conflict["shortfall"] == 1
        [member] = conflict["requests"]
        assert member["appointment_id"] == second.id
        assert member["appointment_number"] == second.number
        assert member["can_be_fulfilled"] is False

    def test_later_requests_join_open_conflict_in_submission_order(
        self, workflow, make_part, arrived_pair, advance
    ):
        part = make_part(stock=5)
        first, second = arrived_pair
        submit(advance, first, part.id, 6)
        submit(advance, second, part.id, 2)

        conflict = only_conflict(workflow)
        assert [member["appointment_id"] for member in conflict["requests"]] == [first.id, second.id]
        assert conflict["total_requested"] == 8
        assert conflict["shortfall"] == 3

    def test_suggestion_is_first_fit_and_not_applied(self, workflow, make_part, arrived_pair, advance):
        part = make_part(stock=5)
        first, second = arrived_pair
        submit(advance, first, part.id, 6)
        submit(advance, second, part.id, 2)
        conflict = only_conflict(workflow)

        suggestion = workflow.run(lambda uow: uow.conflicts.suggest_resolution(conflict["id"]))
        first_request, second_request = (member["id"] for member in conflict["requests"])
        assert suggestion["approve"] == [second_request]
        assert suggestion["reject"] == [first_request]
        assert suggestion["remaining_stock"] == 3
        assert all(req.status == RequestStatus.PENDING.value for req in requests_of(workflow, first.id))


class TestServiceOrder:
    @staticmethod
    def contend(workflow, advance, part, waiting, blocking):
        """``waiting`` claims more than stock, ``blocking`` joins, then two units arrive."""
        submit(advance, waiting, part.id, 6)
        submit(advance, blocking, part.id, 4)
        workflow.run(
            lambda uow: uow.ledger.adjust_stock(part_id=part.id, delta=2, reason="delivery", actor_id=STAFF.id)
        )
        conflict = only_conflict(workflow)
        suggestion = workflow.run(lambda uow: uow.conflicts.suggest_resolution(conflict["id"]))
        return conflict, suggestion

    def test_earlier_slot_is_served_first(self, workflow, make_part, make_slot, book, advance):
        part = make_part(stock=5)
        late = advance(book(make_slot(hours_ahead=120), vehicle_id="veh-1"), DetailedStatus.CUSTOMER_ARRIVED)
        early = advance(book(make_slot(hours_ahead=96), vehicle_id="veh-2"), DetailedStatus.CUSTOMER_ARRIVED)

        conflict, suggestion = self.contend(workflow, advance, part, late, early)

        [late_request] = requests_of(workflow, late.id)
        [early_request] = requests_of(workflow, early.id)
        assert [member["id"] for member in conflict["requests"]] == [early_request.id, late_request.id]
        assert suggestion["approve"] == [early_request.id]
        assert suggestion["reject"] == [late_request.id]
        assert suggestion["remaining_stock"] == 3

    def test_priority_breaks_ties_within_a_slot(self, workflow, make_part, make_slot, book, advance):
        part = make_part(stock=5)
        slot = make_slot(capacity=2)
        normal = advance(book(slot, vehicle_id="veh-1"), DetailedStatus.CUSTOMER_ARRIVED)
        urgent = workflow.create(CUSTOMER, BookingRequest(slot_id=slot.id, vehicle_id="veh-2", priority="urgent"))
        urgent = advance(urgent, DetailedStatus.CUSTOMER_ARRIVED)

        conflict, suggestion = self.contend(workflow, advance, part, normal, urgent)

        [urgent_request] = requests_of(workflow, urgent.id)
        assert conflict["requests"][0]["appointment_id"] == urgent.id
        assert suggestion["approve"] == [urgent_request.id]


class TestDecisions:
    def test_approval_that_no_longer_fits_is_surfaced(self, workflow, make_part, arrived_pair, advance):
        part = make_part(stock=5)
        first, second = arrived_pair
        submit(advance, first, part.id, 6)
        submit(advance, second, part.id, 2)
        conflict = only_conflict(workflow)
        first_request = conflict["requests"][0]["id"]

        with pytest.raises(InsufficientStock) as excinfo:
            workflow.approve_part_request(STAFF, conflict["id"], first_request)
        assert excinfo.value.details["available"] == 5
        assert "conflict" in excinfo.value.state
        [request] = requests_of(workflow, first.id)
        assert request.status == RequestStatus.PENDING.value

    def test_conflict_closes_when_every_member_is_decided(self, workflow, make_part, arrived_pair, advance):
        part = make_part(stock=5)
        first, second = arrived_pair
        submit(advance, first, part.id, 6)
        submit(advance, second, part.id, 2)
        conflict = only_conflict(workflow)
        first_request, second_request = (member["id"] for member in conflict["requests"])

        after_approve = workflow.approve_part_request(STAFF, conflict["id"], second_request)
        assert after_approve["status"] == ConflictStatus.OPEN.value

        with pytest.raises(ConflictUnresolved):
            workflow.resolve_conflict(STAFF, conflict["id"])

        closed = workflow.reject_part_request(STAFF, conflict["id"], first_request, "not enough cells")
        assert closed["status"] == ConflictStatus.RESOLVED.value
        assert closed["resolved_by"] == STAFF.id

        part_after = workflow.run(lambda uow: uow.ledger.get_part(part.id))
        assert (part_after.current_stock, part_after.reserved_stock) == (3, 2)

    def test_decided_request_cannot_be_decided_again(self, workflow, make_part, arrived_pair, advance):
        part = make_part(stock=5)
        first, second = arrived_pair
        submit(advance, first, part.id, 6)
        submit(advance, second, part.id, 2)
        conflict = only_conflict(workflow)
        second_request = conflict["requests"][1]["id"]
        workflow.approve_part_request(STAFF, conflict["id"], second_request)
        with pytest.raises(InvalidStateTransition):
            workflow.reject_part_request(STAFF, conflict["id"], second_request)

    def test_stats(self, workflow, make_part, arrived_pair, advance):
        part = make_part(stock=5)
        first, second = arrived_pair
        submit(advance, first, part.id, 3)
        submit(advance, second, part.id, 4)
        stats = workflow.run(lambda uow: uow.conflicts.stats())
        assert stats == {"open": 1, "resolved": 0, "total_shortfall": 2}


class TestReceptionGate:
    def test_review_blocked_until_conflict_resolved(self, workflow, make_part, arrived_pair, advance):
        part = make_part(stock=5)
        first, second = arrived_pair
        submit(advance, first, part.id, 3)
        second = submit(advance, second, part.id, 3)

        with pytest.raises(ConflictUnresolved) as excinfo:
            workflow.review_reception(STAFF, second.id, ReviewPayload(decision="approve"))
        assert excinfo.value.state["appointment"]["detailed_status"] == DetailedStatus.RECEPTION_SUBMITTED.value
        assert excinfo.value.details["open_conflict_ids"]

        workflow.run(lambda uow: uow.ledger.adjust_stock(part_id=part.id, delta=1, reason="restock", actor_id="s"))
        conflict = only_conflict(workflow)
        workflow.approve_part_request(STAFF, conflict["id"], conflict["requests"][0]["id"])

        approved = workflow.review_reception(STAFF, second.id, ReviewPayload(decision="approve"))
        assert approved.detailed_status == DetailedStatus.RECEPTION_APPROVED_PENDING_PAYMENT.value

    def test_rejecting_reception_releases_its_reservations(self, workflow, make_part, arrived_pair, advance):
        part = make_part(stock=5)
        first, _ = arrived_pair
        first = submit(advance, first, part.id, 3)
        back = workflow.review_reception(STAFF, first.id, ReviewPayload(decision="reject", notes="redo"))
        assert back.detailed_status == DetailedStatus.CUSTOMER_ARRIVED.value
        part_after = workflow.run(lambda uow: uow.ledger.get_part(part.id))
        assert (part_after.current_stock, part_after.reserved_stock) == (5, 0)

    def test_additional_parts_in_progress(self, workflow, make_part, make_slot, book, advance):
        part = make_part(stock=1)
        appointment = advance(book(make_slot()), DetailedStatus.IN_PROGRESS)
        workflow.request_additional_parts(
            TECH, appointment.id, AdditionalPartsPayload(part_requests=[PartRequestLine(part_id=part.id, quantity=2)])
        )
        [request] = requests_of(workflow, appointment.id)
        assert request.status == RequestStatus.PENDING.value
        assert request.kind == "additional"
        assert only_conflict(workflow)["shortfall"] == 1
