from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from servicebay.core.errors import ConflictUnresolved, InsufficientStock, InvalidStateTransition, NotFound
from servicebay.models.appointment import Appointment
from servicebay.models.part_request import (
    ConflictStatus,
    PartConflict,
    PartRequest,
    RequestKind,
    RequestStatus,
)
from servicebay.models.slot import Slot
from servicebay.services.inventory import InventoryLedger
from servicebay.utils.ids import make_number
from servicebay.utils.time import utcnow


# Lower ranks are served first when stock is short.
PRIORITY_RANK = {"urgent": 0, "high": 1, "normal": 2, "low": 3}


def request_snapshot(request: PartRequest) -> dict[str, Any]:
    return {
        "id": request.id,
        "number": request.number,
        "appointment_id": request.appointment_id,
        "part_id": request.part_id,
        "quantity": request.quantity,
        "status": request.status,
        "conflict_id": request.conflict_id,
    }


def conflict_snapshot(conflict: PartConflict) -> dict[str, Any]:
    return {
        "id": conflict.id,
        "number": conflict.number,
        "part_id": conflict.part_id,
        "status": conflict.status,
        "available_stock": conflict.available_stock,
        "total_requested": conflict.total_requested,
        "shortfall": conflict.shortfall,
        "requests": [request_snapshot(request) for request in conflict.requests],
    }


class ConflictResolver:
    """Detects over-committed parts across pending requests and records staff decisions."""

    def __init__(self, session: Session, ledger: InventoryLedger) -> None:
        self.session = session
        self.ledger = ledger

    # requests

    def create_requests(
        self,
        *,
        appointment: Appointment,
        lines: Iterable[Any],
        kind: RequestKind,
        actor_id: str,
    ) -> list[PartRequest]:
        """Record part requests, then reserve the uncontended ones straight away.

        Requests for a part that is (or becomes) contended stay pending and are
        attached to that part's open conflict for staff adjudication.
        """
        created: list[PartRequest] = []
        now = utcnow()
        for line in lines:
            self.ledger.get_part(line.part_id)
            request = PartRequest(
                number=make_number("PR"),
                appointment_id=appointment.id,
                part_id=line.part_id,
                quantity=line.quantity,
                kind=kind.value,
                reason=getattr(line, "reason", None),
                requested_by=actor_id,
                requested_at=now,
                status=RequestStatus.PENDING.value,
            )
            self.session.add(request)
            created.append(request)
        self.session.flush()

        for part_id in dict.fromkeys(request.part_id for request in created):
            self.detect(part_id)

        for request in created:
            if request.conflict_id is not None:
                continue
            try:
                self.ledger.reserve(
                    part_id=request.part_id,
                    appointment_id=appointment.id,
                    quantity=request.quantity,
                    actor_id=actor_id,
                )
            except InsufficientStock:
                logger.warning(
                    "Stock moved under request={number}; raising conflict instead",
                    number=request.number,
                )
                self.detect(request.part_id)
                continue
            self._decide(request, RequestStatus.APPROVED, actor_id, "reserved on submission")

        logger.info(
            "Recorded part requests appointment={appointment_id} kind={kind} count={count} contended={contended}",
            appointment_id=appointment.id,
            kind=kind.value,
            count=len(created),
            contended=sum(1 for request in created if request.conflict_id is not None),
        )
        return created

    def get_request(self, request_id: int) -> PartRequest:
        request = self.session.get(PartRequest, request_id)
        if request is None:
            raise NotFound(f"Part request {request_id} not found", request_id=request_id)
        return request

    def requests_for(self, appointment_id: int, *, status: RequestStatus | None = None) -> list[PartRequest]:
        stmt = (
            select(PartRequest)
            .where(PartRequest.appointment_id == appointment_id)
            .order_by(PartRequest.requested_at, PartRequest.id)
        )
        if status is not None:
            stmt = stmt.where(PartRequest.status == status.value)
        return list(self.session.scalars(stmt))

    def reject_pending_for(self, *, appointment_id: int, actor_id: str, notes: str) -> list[PartRequest]:
        rejected = self.requests_for(appointment_id, status=RequestStatus.PENDING)
        touched: dict[int, PartConflict] = {}
        for request in rejected:
            self._decide(request, RequestStatus.REJECTED, actor_id, notes)
            if request.conflict is not None:
                touched[request.conflict.id] = request.conflict
        for conflict in touched.values():
            self._refresh_figures(conflict)
            self._close_if_decided(conflict, actor_id)
        return rejected

    # detection

    def detect(self, part_id: int) -> PartConflict | None:
        part = self.ledger.get_part(part_id, refresh=True)
        pending = list(
            self.session.scalars(
                select(PartRequest)
                .where(PartRequest.part_id == part_id, PartRequest.status == RequestStatus.PENDING.value)
                .order_by(PartRequest.requested_at, PartRequest.id)
            )
        )
        requested = sum(request.quantity for request in pending)
        conflict = self._open_conflict_for(part_id)

        if conflict is None:
            if requested <= part.current_stock:
                return None
            conflict = PartConflict(
                number=make_number("CF", long_date=True),
                part_id=part.id,
                part_name=part.name,
                part_number=part.part_number,
                available_stock=part.current_stock,
                total_requested=requested,
                shortfall=requested - part.current_stock,
                status=ConflictStatus.OPEN.value,
            )
            self.session.add(conflict)
            self.session.flush()
            logger.warning(
                "Opened conflict={number} part={part_number} available={available} requested={requested}",
                number=conflict.number,
                part_number=part.part_number,
                available=part.current_stock,
                requested=requested,
            )

        for request in pending:
            if request.conflict_id != conflict.id:
                request.conflict = conflict
        self.session.flush()
        self._refresh_figures(conflict)
        return conflict

    def detect_all(self) -> list[PartConflict]:
        part_ids = self.session.scalars(
            select(PartRequest.part_id)
            .where(PartRequest.status == RequestStatus.PENDING.value)
            .distinct()
            .order_by(PartRequest.part_id)
        )
        conflicts = []
        for part_id in list(part_ids):
            conflict = self.detect(part_id)
            if conflict is not None:
                conflicts.append(conflict)
        return conflicts

    def suggest_resolution(self, conflict_id: int) -> dict[str, Any]:
        """First-fit against current stock in service order; nothing is applied."""
        conflict = self.get_conflict(conflict_id)
        remaining = self.ledger.available(conflict.part_id)
        available = remaining
        approve: list[int] = []
        reject: list[int] = []
        for request in self.ordered(conflict.pending_requests):
            if request.quantity <= remaining:
                approve.append(request.id)
                remaining -= request.quantity
            else:
                reject.append(request.id)
        return {
            "conflict_id": conflict.id,
            "available_stock": available,
            "approve": approve,
            "reject": reject,
            "remaining_stock": remaining,
        }

    # decisions

    def approve_request(
        self, *, conflict_id: int, request_id: int, actor_id: str, notes: str | None = None
    ) -> PartRequest:
        conflict, request = self._member(conflict_id, request_id)
        try:
            self.ledger.reserve(
                part_id=request.part_id,
                appointment_id=request.appointment_id,
                quantity=request.quantity,
                actor_id=actor_id,
            )
        except InsufficientStock as exc:
            exc.with_state(conflict=conflict_snapshot(conflict), request=request_snapshot(request))
            raise
        self._decide(request, RequestStatus.APPROVED, actor_id, notes)
        self._refresh_figures(conflict)
        self._close_if_decided(conflict, actor_id)
        logger.info(
            "Approved request={number} conflict={conflict} by={actor}",
            number=request.number,
            conflict=conflict.number,
            actor=actor_id,
        )
        return request

    def reject_request(
        self, *, conflict_id: int, request_id: int, actor_id: str, notes: str | None = None
    ) -> PartRequest:
        conflict, request = self._member(conflict_id, request_id)
        self._decide(request, RequestStatus.REJECTED, actor_id, notes)
        self._refresh_figures(conflict)
        self._close_if_decided(conflict, actor_id)
        logger.info(
            "Rejected request={number} conflict={conflict} by={actor}",
            number=request.number,
            conflict=conflict.number,
            actor=actor_id,
        )
        return request

    def resolve(self, *, conflict_id: int, actor_id: str, notes: str | None = None) -> PartConflict:
        conflict = self.get_conflict(conflict_id)
        if conflict.status == ConflictStatus.RESOLVED.value:
            return conflict
        pending = conflict.pending_requests
        if pending:
            raise ConflictUnresolved(
                f"Conflict {conflict.number} still has {len(pending)} pending request(s)",
                pending_request_ids=[request.id for request in pending],
                conflict=conflict_snapshot(conflict),
            )
        self._mark_resolved(conflict, actor_id, notes)
        return conflict

    # queries

    def ordered(self, requests: Iterable[PartRequest]) -> list[PartRequest]:
        """Sort requests by slot start, then priority, then submission time."""
        requests = list(requests)
        appointment_ids = {request.appointment_id for request in requests}
        if not appointment_ids:
            return requests
        rows = self.session.execute(
            select(Appointment.id, Slot.start, Appointment.priority)
            .join(Slot, Slot.id == Appointment.slot_id)
            .where(Appointment.id.in_(appointment_ids))
        )
        keys = {appointment_id: (start, PRIORITY_RANK.get(priority, 2)) for appointment_id, start, priority in rows}

        def sort_key(request: PartRequest):
            start, rank = keys[request.appointment_id]
            return start, rank, request.requested_at, request.id

        return sorted(requests, key=sort_key)

    def get_conflict(self, conflict_id: int) -> PartConflict:
        conflict = self.session.get(PartConflict, conflict_id)
        if conflict is None:
            raise NotFound(f"Conflict {conflict_id} not found", conflict_id=conflict_id)
        return conflict

    def list_conflicts(self, *, status: ConflictStatus | None = None, part_id: int | None = None) -> list[PartConflict]:
        stmt = select(PartConflict).order_by(PartConflict.created_at.desc(), PartConflict.id.desc())
        if status is not None:
            stmt = stmt.where(PartConflict.status == status.value)
        if part_id is not None:
            stmt = stmt.where(PartConflict.part_id == part_id)
        return list(self.session.scalars(stmt))

    def open_conflicts_for(self, appointment_id: int) -> list[PartConflict]:
        stmt = (
            select(PartConflict)
            .join(PartRequest, PartRequest.conflict_id == PartConflict.id)
            .where(
                PartRequest.appointment_id == appointment_id,
                PartConflict.status == ConflictStatus.OPEN.value,
            )
            .distinct()
        )
        return list(self.session.scalars(stmt))

    def stats(self) -> dict[str, int]:
        rows = self.session.execute(
            select(PartConflict.status, func.count(PartConflict.id)).group_by(PartConflict.status)
        ).all()
        counts = {status: count for status, count in rows}
        shortfall = self.session.scalar(
            select(func.coalesce(func.sum(PartConflict.shortfall), 0)).where(
                PartConflict.status == ConflictStatus.OPEN.value
            )
        )
        return {
            "open": counts.get(ConflictStatus.OPEN.value, 0),
            "resolved": counts.get(ConflictStatus.RESOLVED.value, 0),
            "total_shortfall": int(shortfall or 0),
        }

    def describe(self, conflict: PartConflict) -> dict[str, Any]:
        available = self.ledger.available(conflict.part_id)
        appointment_ids = {request.appointment_id for request in conflict.requests}
        numbers: dict[int, str] = {}
        if appointment_ids:
            rows = self.session.execute(
                select(Appointment.id, Appointment.number).where(Appointment.id.in_(appointment_ids))
            )
            numbers = {appointment_id: number for appointment_id, number in rows}
        members = []
        for request in self.ordered(conflict.requests):
            member = {
                "id": request.id,
                "number": request.number,
                "appointment_id": request.appointment_id,
                "appointment_number": numbers.get(request.appointment_id),
                "part_id": request.part_id,
                "quantity": request.quantity,
                "kind": request.kind,
                "reason": request.reason,
                "requested_by": request.requested_by,
                "requested_at": request.requested_at,
                "status": request.status,
                "conflict_id": request.conflict_id,
                "decided_by": request.decided_by,
                "decided_at": request.decided_at,
                "decision_notes": request.decision_notes,
                "can_be_fulfilled": request.status == RequestStatus.PENDING.value and request.quantity <= available,
            }
            members.append(member)
        return {
            "id": conflict.id,
            "number": conflict.number,
            "part_id": conflict.part_id,
            "part_name": conflict.part_name,
            "part_number": conflict.part_number,
            "available_stock": conflict.available_stock,
            "total_requested": conflict.total_requested,
            "shortfall": conflict.shortfall,
            "status": conflict.status,
            "resolved_by": conflict.resolved_by,
            "resolved_at": conflict.resolved_at,
            "resolution_notes": conflict.resolution_notes,
            "created_at": conflict.created_at,
            "requests": members,
        }

    # internals

    def _open_conflict_for(self, part_id: int) -> PartConflict | None:
        stmt = select(PartConflict).where(
            PartConflict.part_id == part_id,
            PartConflict.status == ConflictStatus.OPEN.value,
        )
        return self.session.scalars(stmt).first()

    def _member(self, conflict_id: int, request_id: int) -> tuple[PartConflict, PartRequest]:
        conflict = self.get_conflict(conflict_id)
        request = self.get_request(request_id)
        if request.conflict_id != conflict.id:
            raise ValueError(f"Request {request_id} is not part of conflict {conflict.number}")
        if request.status != RequestStatus.PENDING.value:
            raise InvalidStateTransition(
                f"Request {request.number} was already {request.status}",
                request=request_snapshot(request),
                conflict=conflict_snapshot(conflict),
            )
        return conflict, request

    def _decide(self, request: PartRequest, status: RequestStatus, actor_id: str, notes: str | None) -> None:
        request.status = status.value
        request.decided_by = actor_id
        request.decided_at = utcnow()
        request.decision_notes = notes
        self.session.flush()

    def _refresh_figures(self, conflict: PartConflict) -> None:
        if conflict.status != ConflictStatus.OPEN.value:
            return
        available = self.ledger.available(conflict.part_id)
        requested = sum(request.quantity for request in conflict.pending_requests)
        conflict.available_stock = available
        conflict.total_requested = requested
        conflict.shortfall = max(0, requested - available)
        self.session.flush()

    def _close_if_decided(self, conflict: PartConflict, actor_id: str) -> None:
        if conflict.status == ConflictStatus.OPEN.value and not conflict.pending_requests:
            self._mark_resolved(conflict, actor_id, "all requests decided")

    def _mark_resolved(self, conflict: PartConflict, actor_id: str, notes: str | None) -> None:
        conflict.status = ConflictStatus.RESOLVED.value
        conflict.resolved_by = actor_id
        conflict.resolved_at = utcnow()
        conflict.resolution_notes = notes
        self.session.flush()
        logger.info("Resolved conflict={number} by={actor}", number=conflict.number, actor=actor_id)
