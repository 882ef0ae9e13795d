from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Generator, TypeVar

from loguru import logger
from sqlalchemy import select
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError
from tenacity import RetryCallState, Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from servicebay.core.config import AppConfig, get_settings
from servicebay.core.errors import (
    ConflictUnresolved,
    InvalidStateTransition,
    NotFound,
    ResourceReleaseMismatch,
    ServiceBayError,
    SlotFull,
    SlotUnavailable,
    StaleWrite,
    Unauthorized,
)
from servicebay.models.appointment import (
    Appointment,
    AppointmentHistory,
    DetailedStatus,
    coarse_status_for,
)
from servicebay.models.hold import Hold, HoldKind, HoldStatus
from servicebay.models.part import Part, ReservationStatus
from servicebay.models.part_request import RequestKind, RequestStatus
from servicebay.models.payment import PaymentIntent
from servicebay.models.slot import Slot
from servicebay.schemas.actor import SYSTEM_ACTOR, Actor, Role
from servicebay.schemas.appointment import (
    AdditionalPartsPayload,
    ArrivalPayload,
    BookingRequest,
    CancellationDecision,
    CancellationRequest,
    ConfirmPayload,
    PaymentProof,
    ReceptionPayload,
    RejectPayload,
    ReschedulePayload,
    ReviewPayload,
    SlotSelector,
    UsageReport,
)
from servicebay.services.conflicts import ConflictResolver
from servicebay.services.db import db_session
from servicebay.services.events import EventPublisher
from servicebay.services.holds import HoldService
from servicebay.services.inventory import InventoryLedger
from servicebay.services.payments import PaymentStore
from servicebay.services.policy import TRANSITIONS, Action, authorize, ensure_transition
from servicebay.services.scheduler import SlotScheduler, slot_snapshot
from servicebay.services.vehicles import VehicleDirectory
from servicebay.utils.ids import make_number
from servicebay.utils.time import hours_until, utcnow

T = TypeVar("T")

# Statuses that wait on a hold, and the hold that bounds the wait.
RESTORED_HOLDS = {
    DetailedStatus.PENDING_CONFIRMATION: HoldKind.SEAT,
    DetailedStatus.RECEPTION_SUBMITTED: HoldKind.PARTS,
    DetailedStatus.RECEPTION_APPROVED_PENDING_PAYMENT: HoldKind.PAYMENT,
}


def appointment_snapshot(appointment: Appointment) -> dict[str, Any]:
    return {
        "id": appointment.id,
        "number": appointment.number,
        "status": appointment.status,
        "detailed_status": appointment.detailed_status,
        "slot_id": appointment.slot_id,
        "technician_id": appointment.technician_id,
        "seat_held": appointment.seat_held,
        "reschedule_count": appointment.reschedule_count,
        "amount_due": appointment.amount_due,
        "amount_paid": appointment.amount_paid,
        "version": appointment.version,
    }


@dataclass
class UnitOfWork:
    session: Session
    scheduler: SlotScheduler
    ledger: InventoryLedger
    conflicts: ConflictResolver
    holds: HoldService
    payments: PaymentStore
    events: EventPublisher
    vehicles: VehicleDirectory


def _log_retry(retry_state: RetryCallState) -> None:
    logger.warning(
        "Stale write, retrying attempt={attempt} error={error}",
        attempt=retry_state.attempt_number,
        error=retry_state.outcome.exception() if retry_state.outcome else None,
    )


class AppointmentWorkflow:
    """The appointment state machine.

    Every public operation runs as one database transaction: authorization,
    transition check, resource calls (seats, parts, holds, payments), history
    and outbound events either all commit or none do. Optimistic-lock failures
    are retried on a fresh transaction a bounded number of times.
    """

    def __init__(
        self,
        session_factory: Callable[[], Any] = db_session,
        settings: AppConfig | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.settings = settings or get_settings()

    # plumbing

    @contextmanager
    def _unit(self) -> Generator[UnitOfWork, None, None]:
        try:
            with self.session_factory() as session:
                events = EventPublisher(session)
                ledger = InventoryLedger(session, events)
                yield UnitOfWork(
                    session=session,
                    scheduler=SlotScheduler(session, self.settings),
                    ledger=ledger,
                    conflicts=ConflictResolver(session, ledger),
                    holds=HoldService(session),
                    payments=PaymentStore(session),
                    events=events,
                    vehicles=VehicleDirectory(session),
                )
        except StaleDataError as exc:
            raise StaleWrite("Record was modified concurrently", reason=str(exc)) from exc

    def run(self, operation: Callable[[UnitOfWork], T], *, appointment_id: int | None = None) -> T:
        """Run ``operation`` in one transaction, retrying stale writes."""
        retrying = Retrying(
            retry=retry_if_exception_type(StaleWrite),
            stop=stop_after_attempt(max(1, self.settings.stale_write_retries)),
            wait=wait_exponential(multiplier=0.05, max=0.5),
            before_sleep=_log_retry,
            reraise=True,
        )
        try:
            for attempt in retrying:
                with attempt:
                    with self._unit() as uow:
                        result = operation(uow)
            return result
        except ServiceBayError as exc:
            if appointment_id is not None:
                self._attach_snapshot(exc, appointment_id)
            logger.info("Operation failed error={code} message={message}", code=exc.code, message=exc.message)
            raise

    def _attach_snapshot(self, exc: ServiceBayError, appointment_id: int) -> None:
        with self.session_factory() as session:
            appointment = session.get(Appointment, appointment_id)
            if appointment is not None:
                exc.with_state(appointment=appointment_snapshot(appointment))

    @staticmethod
    def _load(uow: UnitOfWork, appointment_id: int) -> Appointment:
        appointment = uow.session.get(Appointment, appointment_id)
        if appointment is None:
            raise NotFound(f"Appointment {appointment_id} not found", appointment_id=appointment_id)
        return appointment

    def _record(
        self,
        uow: UnitOfWork,
        appointment: Appointment,
        actor: Actor,
        action: Action | str,
        *,
        to_status: DetailedStatus | None = None,
        reason: str | None = None,
        notes: str | None = None,
    ) -> None:
        from_status = appointment.detailed_status
        action_name = action.value if isinstance(action, Action) else action
        if to_status is not None:
            appointment.detailed_status = to_status.value
            appointment.status = coarse_status_for(to_status).value
        appointment.history.append(
            AppointmentHistory(
                action=action_name,
                from_status=from_status,
                to_status=appointment.detailed_status,
                actor_id=actor.id,
                actor_role=Role(actor.role).value,
                reason=reason,
                notes=notes,
                at=utcnow(),
            )
        )
        uow.session.flush()
        if to_status is not None:
            uow.events.status_changed(appointment, from_status=from_status, action=action_name)
            logger.info(
                "Appointment {number} {from_status} -> {to_status} action={action} actor={actor}",
                number=appointment.number,
                from_status=from_status,
                to_status=appointment.detailed_status,
                action=action_name,
                actor=actor.id,
            )

    def _pick_slot(self, uow: UnitOfWork, selector: SlotSelector) -> Slot:
        if selector.slot_id is not None:
            return uow.scheduler.get_slot(selector.slot_id)
        return uow.scheduler.ensure_slot(start=selector.start, end=selector.end)

    def _take_seat(self, uow: UnitOfWork, slot: Slot, now: datetime) -> Slot:
        if slot.start <= now:
            raise SlotUnavailable(
                "Slot has already started",
                slot_id=slot.id,
                start=slot.start.isoformat(),
                state={"slot": slot_snapshot(slot)},
            )
        try:
            return uow.scheduler.reserve_seat(slot.id)
        except SlotFull as exc:
            raise SlotUnavailable(
                exc.message,
                capacity=exc.details.get("capacity"),
                booked_count=exc.details.get("booked_count"),
                state={"slot": exc.details.get("slot")},
            ) from exc

    def _release_seat(self, uow: UnitOfWork, appointment: Appointment) -> None:
        if appointment.seat_held:
            uow.scheduler.release_seat(appointment.slot_id)
            appointment.seat_held = False

    @staticmethod
    def _reserved_parts_total(uow: UnitOfWork, appointment_id: int) -> int:
        total = 0
        for reservation in uow.ledger.list_reservations(
            appointment_id=appointment_id, status=ReservationStatus.RESERVED
        ):
            part = uow.session.get(Part, reservation.part_id)
            total += reservation.quantity * (part.retail_price if part else 0)
        return total

    @staticmethod
    def _require_no_pending_requests(uow: UnitOfWork, appointment: Appointment, doing: str) -> None:
        pending = uow.conflicts.requests_for(appointment.id, status=RequestStatus.PENDING)
        if pending:
            open_conflicts = uow.conflicts.open_conflicts_for(appointment.id)
            raise ConflictUnresolved(
                f"Cannot {doing} while {len(pending)} part request(s) await a decision",
                pending_request_ids=[request.id for request in pending],
                open_conflict_ids=[conflict.id for conflict in open_conflicts],
            )

    # booking

    def create(self, actor: Actor, request: BookingRequest, *, now: datetime | None = None) -> Appointment:
        def operation(uow: UnitOfWork) -> Appointment:
            moment = now or utcnow()
            customer_id = request.customer_id or (actor.id if actor.role == Role.CUSTOMER else None)
            if not customer_id:
                raise ValueError("customer_id is required when booking on behalf of a customer")
            authorize(actor, Action.CREATE, customer_id=customer_id)
            uow.vehicles.require_owned(vehicle_id=request.vehicle_id, customer_id=customer_id)

            slot = self._take_seat(uow, self._pick_slot(uow, request), moment)
            appointment = Appointment(
                number=make_number("APT", now=moment),
                customer_id=customer_id,
                vehicle_id=request.vehicle_id,
                slot_id=slot.id,
                detailed_status=DetailedStatus.PENDING_CONFIRMATION.value,
                status=coarse_status_for(DetailedStatus.PENDING_CONFIRMATION).value,
                priority=request.priority,
                services=[line.model_dump() for line in request.services],
                customer_notes=request.customer_notes,
                seat_held=True,
                reschedule_count=0,
                deposit_amount=self.settings.deposit_amount,
                created_at=moment,
            )
            uow.session.add(appointment)
            uow.session.flush()
            appointment.history.append(
                AppointmentHistory(
                    action=Action.CREATE.value,
                    from_status=None,
                    to_status=appointment.detailed_status,
                    actor_id=actor.id,
                    actor_role=Role(actor.role).value,
                    at=moment,
                )
            )
            uow.holds.place(kind=HoldKind.SEAT, appointment_id=appointment.id, slot_id=slot.id, now=moment)
            uow.events.status_changed(appointment, from_status=None, action=Action.CREATE.value)
            logger.info(
                "Booked appointment {number} slot={slot_id} customer={customer}",
                number=appointment.number,
                slot_id=slot.id,
                customer=customer_id,
            )
            return appointment

        return self.run(operation)

    def staff_confirm(self, actor: Actor, appointment_id: int, payload: ConfirmPayload | None = None) -> Appointment:
        payload = payload or ConfirmPayload()

        def operation(uow: UnitOfWork) -> Appointment:
            appointment = self._load(uow, appointment_id)
            authorize(actor, Action.STAFF_CONFIRM, appointment)
            transition = ensure_transition(Action.STAFF_CONFIRM, appointment)
            if payload.technician_id:
                self._assign(uow, appointment, actor, payload.technician_id)
            uow.holds.close_for(appointment_id=appointment.id, status=HoldStatus.CONVERTED)
            appointment.confirmed_at = utcnow()
            if payload.notes:
                appointment.internal_notes = payload.notes
            self._record(uow, appointment, actor, Action.STAFF_CONFIRM, to_status=transition.target, notes=payload.notes)
            return appointment

        return self.run(operation, appointment_id=appointment_id)

    def staff_reject(self, actor: Actor, appointment_id: int, payload: RejectPayload) -> Appointment:
        def operation(uow: UnitOfWork) -> Appointment:
            appointment = self._load(uow, appointment_id)
            authorize(actor, Action.STAFF_REJECT, appointment)
            transition = ensure_transition(Action.STAFF_REJECT, appointment)
            self._release_seat(uow, appointment)
            uow.holds.close_for(appointment_id=appointment.id, status=HoldStatus.RELEASED)
            appointment.rejection_reason = payload.reason
            appointment.rejected_at = utcnow()
            self._record(
                uow,
                appointment,
                actor,
                Action.STAFF_REJECT,
                to_status=transition.target,
                reason=payload.reason,
                notes=payload.suggested_action,
            )
            return appointment

        return self.run(operation, appointment_id=appointment_id)

    def _assign(self, uow: UnitOfWork, appointment: Appointment, actor: Actor, technician_id: str) -> None:
        slot = uow.scheduler.get_slot(appointment.slot_id)
        if slot.technician_ids and technician_id not in slot.technician_ids:
            raise ValueError(f"Technician {technician_id} is not assigned to slot {slot.id}")
        appointment.technician_id = technician_id
        self._record(uow, appointment, actor, Action.ASSIGN_TECHNICIAN, notes=f"technician={technician_id}")

    def assign_technician(self, actor: Actor, appointment_id: int, technician_id: str) -> Appointment:
        def operation(uow: UnitOfWork) -> Appointment:
            appointment = self._load(uow, appointment_id)
            authorize(actor, Action.ASSIGN_TECHNICIAN, appointment)
            ensure_transition(Action.ASSIGN_TECHNICIAN, appointment)
            self._assign(uow, appointment, actor, technician_id)
            return appointment

        return self.run(operation, appointment_id=appointment_id)

    def customer_arrived(
        self, actor: Actor, appointment_id: int, payload: ArrivalPayload | None = None
    ) -> Appointment:
        payload = payload or ArrivalPayload()

        def operation(uow: UnitOfWork) -> Appointment:
            appointment = self._load(uow, appointment_id)
            authorize(actor, Action.CUSTOMER_ARRIVED, appointment)
            transition = ensure_transition(Action.CUSTOMER_ARRIVED, appointment)
            appointment.arrived_at = utcnow()
            appointment.arrival = {
                "vehicle_condition_notes": payload.vehicle_condition_notes,
                "customer_items": payload.customer_items,
                "recorded_by": actor.id,
            }
            self._record(uow, appointment, actor, Action.CUSTOMER_ARRIVED, to_status=transition.target)
            return appointment

        return self.run(operation, appointment_id=appointment_id)

    # reception

    def submit_reception(self, actor: Actor, appointment_id: int, payload: ReceptionPayload) -> Appointment:
        def operation(uow: UnitOfWork) -> Appointment:
            appointment = self._load(uow, appointment_id)
            authorize(actor, Action.SUBMIT_RECEPTION, appointment)
            transition = ensure_transition(Action.SUBMIT_RECEPTION, appointment)
            now = utcnow()
            appointment.reception = {
                "inspection_findings": payload.inspection_findings,
                "recommended_services": [line.model_dump() for line in payload.recommended_services],
                "notes": payload.notes,
                "submitted_by": actor.id,
                "submitted_at": now.isoformat(),
            }
            appointment.reception_submitted_at = now
            uow.conflicts.create_requests(
                appointment=appointment,
                lines=payload.part_requests,
                kind=RequestKind.RECEPTION,
                actor_id=actor.id,
            )
            uow.holds.place(kind=HoldKind.PARTS, appointment_id=appointment.id)
            self._record(uow, appointment, actor, Action.SUBMIT_RECEPTION, to_status=transition.target)
            return appointment

        return self.run(operation, appointment_id=appointment_id)

    def review_reception(self, actor: Actor, appointment_id: int, payload: ReviewPayload) -> Appointment:
        if payload.decision == "approve":
            return self._approve_reception(actor, appointment_id, payload)
        return self._reject_reception(actor, appointment_id, payload)

    def _approve_reception(self, actor: Actor, appointment_id: int, payload: ReviewPayload) -> Appointment:
        def operation(uow: UnitOfWork) -> Appointment:
            appointment = self._load(uow, appointment_id)
            authorize(actor, Action.APPROVE_RECEPTION, appointment)
            transition = ensure_transition(Action.APPROVE_RECEPTION, appointment)
            self._require_no_pending_requests(uow, appointment, "approve the reception")

            reception = dict(appointment.reception or {})
            recommended = reception.get("recommended_services") or []
            if recommended:
                appointment.services = list(appointment.services or []) + list(recommended)
            reception["review"] = {"decision": "approve", "by": actor.id, "notes": payload.notes}
            appointment.reception = reception
            appointment.reception_reviewed_at = utcnow()

            total = appointment.services_total + self._reserved_parts_total(uow, appointment.id)
            credit = appointment.deposit_amount if appointment.deposit_paid else 0
            appointment.amount_due = max(0, total - credit - appointment.amount_paid)
            intent = uow.payments.create_intent(appointment_id=appointment.id, amount_due=appointment.amount_due)
            appointment.payment_reference = intent.reference
            uow.holds.place(kind=HoldKind.PAYMENT, appointment_id=appointment.id)
            self._record(
                uow, appointment, actor, Action.APPROVE_RECEPTION, to_status=transition.target, notes=payload.notes
            )
            uow.events.invoice_requested(appointment, stage="payment_requested")
            return appointment

        return self.run(operation, appointment_id=appointment_id)

    def _reject_reception(self, actor: Actor, appointment_id: int, payload: ReviewPayload) -> Appointment:
        def operation(uow: UnitOfWork) -> Appointment:
            appointment = self._load(uow, appointment_id)
            authorize(actor, Action.REJECT_RECEPTION, appointment)
            transition = ensure_transition(Action.REJECT_RECEPTION, appointment)
            self._unwind_parts(uow, appointment, actor, notes="reception rejected")
            uow.holds.close_for(appointment_id=appointment.id, status=HoldStatus.RELEASED)
            reception = dict(appointment.reception or {})
            reception["review"] = {"decision": "reject", "by": actor.id, "notes": payload.notes}
            appointment.reception = reception
            appointment.reception_reviewed_at = utcnow()
            self._record(
                uow, appointment, actor, Action.REJECT_RECEPTION, to_status=transition.target, reason=payload.notes
            )
            return appointment

        return self.run(operation, appointment_id=appointment_id)

    def _unwind_parts(self, uow: UnitOfWork, appointment: Appointment, actor: Actor, *, notes: str) -> None:
        uow.ledger.release_all(appointment_id=appointment.id, actor_id=actor.id)
        uow.conflicts.reject_pending_for(appointment_id=appointment.id, actor_id=actor.id, notes=notes)

    # payment and work

    def confirm_payment(self, actor: Actor, appointment_id: int, proof: PaymentProof) -> Appointment:
        def operation(uow: UnitOfWork) -> Appointment:
            appointment = self._load(uow, appointment_id)
            authorize(actor, Action.CONFIRM_PAYMENT, appointment)
            transition = ensure_transition(Action.CONFIRM_PAYMENT, appointment)
            uow.payments.confirm(
                appointment_id=appointment.id,
                reference=proof.reference,
                amount=proof.amount,
                provider=proof.provider,
            )
            appointment.amount_paid += proof.amount
            appointment.payment_confirmed_at = utcnow()
            uow.ledger.commit_for_work(appointment_id=appointment.id)
            uow.holds.close_for(appointment_id=appointment.id, status=HoldStatus.CONVERTED)
            self._record(
                uow,
                appointment,
                actor,
                Action.CONFIRM_PAYMENT,
                to_status=transition.target,
                notes=proof.transaction_id,
            )
            uow.events.invoice_requested(appointment, stage="payment_confirmed")
            return appointment

        return self.run(operation, appointment_id=appointment_id)

    def confirm_payment_by_reference(self, proof: PaymentProof, actor: Actor = SYSTEM_ACTOR) -> Appointment:
        def lookup(uow: UnitOfWork) -> int:
            intent = uow.session.scalars(
                select(PaymentIntent).where(PaymentIntent.reference == proof.reference)
            ).first()
            if intent is None:
                raise NotFound(f"Payment reference {proof.reference} not found", reference=proof.reference)
            return intent.appointment_id

        return self.confirm_payment(actor, self.run(lookup), proof)

    def start_work(self, actor: Actor, appointment_id: int) -> Appointment:
        def operation(uow: UnitOfWork) -> Appointment:
            appointment = self._load(uow, appointment_id)
            authorize(actor, Action.START_WORK, appointment)
            ensure_transition(Action.START_WORK, appointment)
            if appointment.work_started_at is None:
                appointment.work_started_at = utcnow()
                self._record(uow, appointment, actor, Action.START_WORK)
            return appointment

        return self.run(operation, appointment_id=appointment_id)

    def request_additional_parts(
        self, actor: Actor, appointment_id: int, payload: AdditionalPartsPayload
    ) -> Appointment:
        def operation(uow: UnitOfWork) -> Appointment:
            appointment = self._load(uow, appointment_id)
            authorize(actor, Action.REQUEST_ADDITIONAL_PARTS, appointment)
            ensure_transition(Action.REQUEST_ADDITIONAL_PARTS, appointment)
            requests = uow.conflicts.create_requests(
                appointment=appointment,
                lines=payload.part_requests,
                kind=RequestKind.ADDITIONAL,
                actor_id=actor.id,
            )
            self._record(
                uow,
                appointment,
                actor,
                Action.REQUEST_ADDITIONAL_PARTS,
                notes=payload.notes or ", ".join(request.number for request in requests),
            )
            return appointment

        return self.run(operation, appointment_id=appointment_id)

    def complete(self, actor: Actor, appointment_id: int, report: UsageReport) -> Appointment:
        def operation(uow: UnitOfWork) -> Appointment:
            appointment = self._load(uow, appointment_id)
            authorize(actor, Action.COMPLETE, appointment)
            transition = ensure_transition(Action.COMPLETE, appointment)
            self._require_no_pending_requests(uow, appointment, "complete the appointment")

            held = uow.ledger.list_reservations(appointment_id=appointment.id, status=ReservationStatus.RESERVED)
            held_parts = {reservation.part_id for reservation in held}
            usage = {line.part_id: line.quantity_used for line in report.parts}
            unknown = sorted(set(usage) - held_parts)
            if unknown:
                raise ResourceReleaseMismatch(
                    "Usage reported for parts that were never reserved",
                    part_ids=unknown,
                )

            parts_total = 0
            for reservation in held:
                used = usage.get(reservation.part_id, 0)
                if used:
                    uow.ledger.mark_used(
                        part_id=reservation.part_id,
                        appointment_id=appointment.id,
                        quantity_used=used,
                        actor_id=actor.id,
                    )
                    part = uow.session.get(Part, reservation.part_id)
                    parts_total += used * (part.retail_price if part else 0)
                else:
                    uow.ledger.release(
                        part_id=reservation.part_id,
                        appointment_id=appointment.id,
                        actor_id=actor.id,
                        status=ReservationStatus.RETURNED,
                    )

            appointment.amount_due = appointment.services_total + parts_total
            appointment.completed_at = utcnow()
            uow.holds.close_for(appointment_id=appointment.id, status=HoldStatus.CONVERTED)
            self._record(uow, appointment, actor, Action.COMPLETE, to_status=transition.target, notes=report.notes)
            uow.events.invoice_requested(appointment, stage="completed")
            return appointment

        return self.run(operation, appointment_id=appointment_id)

    # cancellation

    def _refund_estimate(self, uow: UnitOfWork, appointment: Appointment, now: datetime) -> tuple[int, int]:
        base = appointment.deposit_amount if appointment.deposit_paid else appointment.amount_paid
        slot = uow.scheduler.get_slot(appointment.slot_id)
        percent = 100
        if hours_until(slot.start, now) < self.settings.late_cancel_hours:
            percent = self.settings.late_cancel_refund_percent
        return percent, base * percent // 100

    def request_cancellation(
        self,
        actor: Actor,
        appointment_id: int,
        payload: CancellationRequest | None = None,
        *,
        now: datetime | None = None,
    ) -> Appointment:
        payload = payload or CancellationRequest()

        def operation(uow: UnitOfWork) -> Appointment:
            appointment = self._load(uow, appointment_id)
            authorize(actor, Action.REQUEST_CANCELLATION, appointment)
            transition = ensure_transition(Action.REQUEST_CANCELLATION, appointment)
            moment = now or utcnow()
            percent, amount = self._refund_estimate(uow, appointment, moment)
            appointment.cancel_request = {
                "reason": payload.reason,
                "refund_method": payload.refund_method,
                "requested_by": actor.id,
                "previous_status": appointment.detailed_status,
                "refund_percent": percent,
                "refund_amount": amount,
            }
            appointment.cancel_requested_at = moment
            self._record(
                uow, appointment, actor, Action.REQUEST_CANCELLATION, to_status=transition.target, reason=payload.reason
            )
            return appointment

        return self.run(operation, appointment_id=appointment_id)

    def approve_cancellation(
        self,
        actor: Actor,
        appointment_id: int,
        payload: CancellationDecision | None = None,
        *,
        now: datetime | None = None,
    ) -> Appointment:
        payload = payload or CancellationDecision()

        def operation(uow: UnitOfWork) -> Appointment:
            appointment = self._load(uow, appointment_id)
            authorize(actor, Action.APPROVE_CANCELLATION, appointment)
            transition = ensure_transition(Action.APPROVE_CANCELLATION, appointment)
            moment = now or utcnow()

            self._release_seat(uow, appointment)
            self._unwind_parts(uow, appointment, actor, notes="appointment cancelled")
            uow.payments.cancel_pending(appointment_id=appointment.id)
            uow.holds.close_for(appointment_id=appointment.id, status=HoldStatus.RELEASED)

            request = dict(appointment.cancel_request or {})
            if "refund_amount" not in request:
                request["refund_percent"], request["refund_amount"] = self._refund_estimate(uow, appointment, moment)
            request.update(approved_by=actor.id, decision_notes=payload.notes)
            appointment.cancel_request = request
            appointment.cancelled_at = moment
            self._record(
                uow, appointment, actor, Action.APPROVE_CANCELLATION, to_status=transition.target, notes=payload.notes
            )
            if request["refund_amount"]:
                uow.events.refund_requested(
                    appointment, amount=request["refund_amount"], method=request.get("refund_method")
                )
            return appointment

        return self.run(operation, appointment_id=appointment_id)

    def deny_cancellation(
        self, actor: Actor, appointment_id: int, payload: CancellationDecision | None = None
    ) -> Appointment:
        payload = payload or CancellationDecision()

        def operation(uow: UnitOfWork) -> Appointment:
            appointment = self._load(uow, appointment_id)
            authorize(actor, Action.DENY_CANCELLATION, appointment)
            ensure_transition(Action.DENY_CANCELLATION, appointment)
            request = dict(appointment.cancel_request or {})
            previous = DetailedStatus(request.get("previous_status") or DetailedStatus.PENDING_CONFIRMATION.value)
            request.update(denied_by=actor.id, decision_notes=payload.notes)
            appointment.cancel_request = request
            self._record(uow, appointment, actor, Action.DENY_CANCELLATION, to_status=previous, notes=payload.notes)
            kind = RESTORED_HOLDS.get(previous)
            if kind is not None and not uow.holds.active_for(appointment_id=appointment.id, kind=kind):
                # The original hold lapsed while the request was open.
                slot_id = appointment.slot_id if kind == HoldKind.SEAT else None
                uow.holds.place(kind=kind, appointment_id=appointment.id, slot_id=slot_id)
            return appointment

        return self.run(operation, appointment_id=appointment_id)

    # rescheduling

    def reschedule(
        self,
        actor: Actor,
        appointment_id: int,
        payload: ReschedulePayload,
        *,
        now: datetime | None = None,
    ) -> Appointment:
        def operation(uow: UnitOfWork) -> Appointment:
            appointment = self._load(uow, appointment_id)
            authorize(actor, Action.RESCHEDULE, appointment)
            transition = ensure_transition(Action.RESCHEDULE, appointment)
            moment = now or utcnow()

            if appointment.reschedule_count >= self.settings.max_reschedules:
                raise InvalidStateTransition(
                    f"Appointment was already rescheduled {appointment.reschedule_count} time(s)",
                    max_reschedules=self.settings.max_reschedules,
                )
            old_slot = uow.scheduler.get_slot(appointment.slot_id)
            if actor.role == Role.CUSTOMER and hours_until(old_slot.start, moment) < self.settings.reschedule_cutoff_hours:
                raise Unauthorized(
                    f"Customers cannot reschedule within {self.settings.reschedule_cutoff_hours}h of the appointment",
                    cutoff_hours=self.settings.reschedule_cutoff_hours,
                )

            new_slot = self._pick_slot(uow, payload)
            if new_slot.id == old_slot.id:
                raise ValueError("New slot is the same as the current slot")
            # New seat first; if it fails nothing has been released.
            new_slot = self._take_seat(uow, new_slot, moment)
            self._release_seat(uow, appointment)

            appointment.slot_id = new_slot.id
            appointment.seat_held = True
            appointment.reschedule_count += 1
            appointment.rescheduled_at = moment
            appointment.confirmed_at = None
            if new_slot.technician_ids and appointment.technician_id not in new_slot.technician_ids:
                appointment.technician_id = None

            note = f"slot {old_slot.id} -> {new_slot.id}"
            self._record(
                uow, appointment, actor, Action.RESCHEDULE, to_status=DetailedStatus.RESCHEDULED,
                reason=payload.reason, notes=note,
            )
            self._record(uow, appointment, actor, Action.RESCHEDULE, to_status=transition.target, notes=note)
            uow.holds.place(kind=HoldKind.SEAT, appointment_id=appointment.id, slot_id=new_slot.id, now=moment)
            return appointment

        return self.run(operation, appointment_id=appointment_id)

    # holds

    def expire_holds(self, *, now: datetime | None = None) -> list[dict[str, Any]]:
        """Release everything held by holds whose deadline has passed."""
        moment = now or utcnow()
        due = self.run(lambda uow: [hold.id for hold in uow.holds.due(now=moment)])
        outcomes = []
        for hold_pk in due:
            try:
                outcomes.append(self.run(lambda uow, pk=hold_pk: self._expire_one(uow, pk, moment)))
            except ServiceBayError as exc:
                logger.error("Failed to expire hold={hold} error={error}", hold=hold_pk, error=exc.message)
        if outcomes:
            logger.info("Expired {count} hold(s)", count=len(outcomes))
        return outcomes

    def _expire_one(self, uow: UnitOfWork, hold_pk: int, now: datetime) -> dict[str, Any]:
        hold = uow.session.get(Hold, hold_pk)
        outcome: dict[str, Any] = {"hold_id": hold.hold_id if hold else None, "kind": None, "expired": False}
        if hold is None or hold.status != HoldStatus.ACTIVE.value or hold.expires_at > now:
            return outcome
        outcome["kind"] = hold.kind
        uow.holds.close(hold, status=HoldStatus.EXPIRED)
        appointment = self._load(uow, hold.appointment_id)
        outcome["appointment_id"] = appointment.id

        kind = HoldKind(hold.kind)
        action = Action.EXPIRE_SEAT_HOLD if kind == HoldKind.SEAT else Action.EXPIRE_PARTS_HOLD
        transition = TRANSITIONS[action]
        if DetailedStatus(appointment.detailed_status) not in transition.sources:
            logger.info(
                "Hold {hold_id} lapsed after appointment moved on status={status}",
                hold_id=hold.hold_id,
                status=appointment.detailed_status,
            )
            return outcome

        actor = SYSTEM_ACTOR
        authorize(actor, action, appointment)
        if kind == HoldKind.SEAT:
            self._release_seat(uow, appointment)
            appointment.rejection_reason = "confirmation window expired"
            appointment.rejected_at = now
            reason = "seat hold expired"
        else:
            self._unwind_parts(uow, appointment, actor, notes=f"{kind.value} hold expired")
            uow.payments.expire(appointment_id=appointment.id)
            appointment.payment_reference = None
            reason = f"{kind.value} hold expired"
        self._record(uow, appointment, actor, action, to_status=transition.target, reason=reason)
        outcome.update(expired=True, status=appointment.detailed_status)
        logger.warning(
            "Hold {hold_id} expired kind={kind} appointment={number}",
            hold_id=hold.hold_id,
            kind=kind.value,
            number=appointment.number,
        )
        return outcome

    # reads

    def get(self, actor: Actor, appointment_id: int) -> Appointment:
        def operation(uow: UnitOfWork) -> Appointment:
            appointment = self._load(uow, appointment_id)
            authorize(actor, Action.VIEW, appointment)
            appointment.history  # noqa: B018  (load before the session closes)
            return appointment

        return self.run(operation)

    def list_appointments(
        self,
        actor: Actor,
        *,
        detailed_status: DetailedStatus | None = None,
        technician_id: str | None = None,
        slot_id: int | None = None,
        limit: int = 100,
    ) -> list[Appointment]:
        def operation(uow: UnitOfWork) -> list[Appointment]:
            stmt = select(Appointment).order_by(Appointment.created_at.desc()).limit(limit)
            if actor.role == Role.CUSTOMER:
                stmt = stmt.where(Appointment.customer_id == actor.id)
            if detailed_status is not None:
                stmt = stmt.where(Appointment.detailed_status == detailed_status.value)
            if technician_id is not None:
                stmt = stmt.where(Appointment.technician_id == technician_id)
            if slot_id is not None:
                stmt = stmt.where(Appointment.slot_id == slot_id)
            return list(uow.session.scalars(stmt))

        return self.run(operation)

    # part conflicts

    def approve_part_request(
        self, actor: Actor, conflict_id: int, request_id: int, notes: str | None = None
    ) -> dict[str, Any]:
        def operation(uow: UnitOfWork) -> dict[str, Any]:
            authorize(actor, Action.MANAGE_CONFLICTS)
            uow.conflicts.approve_request(conflict_id=conflict_id, request_id=request_id, actor_id=actor.id, notes=notes)
            return uow.conflicts.describe(uow.conflicts.get_conflict(conflict_id))

        return self.run(operation)

    def reject_part_request(
        self, actor: Actor, conflict_id: int, request_id: int, notes: str | None = None
    ) -> dict[str, Any]:
        def operation(uow: UnitOfWork) -> dict[str, Any]:
            authorize(actor, Action.MANAGE_CONFLICTS)
            uow.conflicts.reject_request(conflict_id=conflict_id, request_id=request_id, actor_id=actor.id, notes=notes)
            return uow.conflicts.describe(uow.conflicts.get_conflict(conflict_id))

        return self.run(operation)

    def resolve_conflict(self, actor: Actor, conflict_id: int, notes: str | None = None) -> dict[str, Any]:
        def operation(uow: UnitOfWork) -> dict[str, Any]:
            authorize(actor, Action.MANAGE_CONFLICTS)
            return uow.conflicts.describe(uow.conflicts.resolve(conflict_id=conflict_id, actor_id=actor.id, notes=notes))

        return self.run(operation)

    def detect_conflicts(self, actor: Actor, part_id: int | None = None) -> list[dict[str, Any]]:
        def operation(uow: UnitOfWork) -> list[dict[str, Any]]:
            authorize(actor, Action.MANAGE_CONFLICTS)
            if part_id is not None:
                found = uow.conflicts.detect(part_id)
                conflicts = [found] if found is not None else []
            else:
                conflicts = uow.conflicts.detect_all()
            return [uow.conflicts.describe(conflict) for conflict in conflicts]

        return self.run(operation)
