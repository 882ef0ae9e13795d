from __future__ import annotations

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from servicebay.api.deps import get_actor, get_workflow
from servicebay.models.appointment import Appointment, DetailedStatus
from servicebay.models.part_request import RequestStatus
from servicebay.schemas.actor import Actor
from servicebay.schemas.appointment import (
    AdditionalPartsPayload,
    AppointmentDetailOut,
    AppointmentOut,
    ArrivalPayload,
    AssignTechnicianPayload,
    BookingRequest,
    CancellationDecision,
    CancellationRequest,
    ConfirmPayload,
    PaymentProof,
    ReceptionPayload,
    RejectPayload,
    ReschedulePayload,
    ReviewPayload,
    UsageReport,
)
from servicebay.schemas.conflict import PartRequestOut
from servicebay.services.conflicts import ConflictResolver
from servicebay.services.db import get_db
from servicebay.services.inventory import InventoryLedger
from servicebay.services.policy import available_actions
from servicebay.services.workflow import AppointmentWorkflow

router = APIRouter(prefix="/appointments", tags=["appointments"])


def _out(appointment: Appointment, status_code: int = status.HTTP_200_OK) -> JSONResponse:
    body = AppointmentOut.model_validate(appointment).model_dump(mode="json")
    return JSONResponse(status_code=status_code, content=body)


@router.post("")
def create_appointment(
    payload: BookingRequest,
    actor: Actor = Depends(get_actor),
    workflow: AppointmentWorkflow = Depends(get_workflow),
):
    return _out(workflow.create(actor, payload), status.HTTP_201_CREATED)


@router.get("")
def list_appointments(
    detailed_status: DetailedStatus | None = Query(default=None),
    technician_id: str | None = Query(default=None),
    slot_id: int | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=500),
    actor: Actor = Depends(get_actor),
    workflow: AppointmentWorkflow = Depends(get_workflow),
):
    items = workflow.list_appointments(
        actor,
        detailed_status=detailed_status,
        technician_id=technician_id,
        slot_id=slot_id,
        limit=limit,
    )
    return JSONResponse(content=[AppointmentOut.model_validate(item).model_dump(mode="json") for item in items])


@router.get("/{appointment_id}")
def get_appointment(
    appointment_id: int,
    actor: Actor = Depends(get_actor),
    workflow: AppointmentWorkflow = Depends(get_workflow),
):
    appointment = workflow.get(actor, appointment_id)
    body = AppointmentDetailOut.model_validate(appointment).model_dump(mode="json")
    body["available_actions"] = available_actions(actor, appointment)
    return JSONResponse(content=body)


@router.get("/{appointment_id}/part-requests")
def list_part_requests(
    appointment_id: int,
    request_status: RequestStatus | None = Query(default=None, alias="status"),
    actor: Actor = Depends(get_actor),
    workflow: AppointmentWorkflow = Depends(get_workflow),
    session: Session = Depends(get_db),
):
    workflow.get(actor, appointment_id)
    resolver = ConflictResolver(session, InventoryLedger(session))
    requests = resolver.requests_for(appointment_id, status=request_status)
    return JSONResponse(content=[PartRequestOut.model_validate(item).model_dump(mode="json") for item in requests])


@router.post("/{appointment_id}/confirm")
def confirm_appointment(
    appointment_id: int,
    payload: ConfirmPayload | None = None,
    actor: Actor = Depends(get_actor),
    workflow: AppointmentWorkflow = Depends(get_workflow),
):
    return _out(workflow.staff_confirm(actor, appointment_id, payload))


@router.post("/{appointment_id}/reject")
def reject_appointment(
    appointment_id: int,
    payload: RejectPayload,
    actor: Actor = Depends(get_actor),
    workflow: AppointmentWorkflow = Depends(get_workflow),
):
    return _out(workflow.staff_reject(actor, appointment_id, payload))


@router.post("/{appointment_id}/technician")
def assign_technician(
    appointment_id: int,
    payload: AssignTechnicianPayload,
    actor: Actor = Depends(get_actor),
    workflow: AppointmentWorkflow = Depends(get_workflow),
):
    return _out(workflow.assign_technician(actor, appointment_id, payload.technician_id))


@router.post("/{appointment_id}/arrival")
def customer_arrived(
    appointment_id: int,
    payload: ArrivalPayload | None = None,
    actor: Actor = Depends(get_actor),
    workflow: AppointmentWorkflow = Depends(get_workflow),
):
    return _out(workflow.customer_arrived(actor, appointment_id, payload))


@router.post("/{appointment_id}/reception")
def submit_reception(
    appointment_id: int,
    payload: ReceptionPayload,
    actor: Actor = Depends(get_actor),
    workflow: AppointmentWorkflow = Depends(get_workflow),
):
    return _out(workflow.submit_reception(actor, appointment_id, payload))


@router.post("/{appointment_id}/reception/review")
def review_reception(
    appointment_id: int,
    payload: ReviewPayload,
    actor: Actor = Depends(get_actor),
    workflow: AppointmentWorkflow = Depends(get_workflow),
):
    return _out(workflow.review_reception(actor, appointment_id, payload))


@router.post("/{appointment_id}/payment")
def confirm_payment(
    appointment_id: int,
    payload: PaymentProof,
    actor: Actor = Depends(get_actor),
    workflow: AppointmentWorkflow = Depends(get_workflow),
):
    return _out(workflow.confirm_payment(actor, appointment_id, payload))


@router.post("/{appointment_id}/start")
def start_work(
    appointment_id: int,
    actor: Actor = Depends(get_actor),
    workflow: AppointmentWorkflow = Depends(get_workflow),
):
    return _out(workflow.start_work(actor, appointment_id))


@router.post("/{appointment_id}/additional-parts")
def request_additional_parts(
    appointment_id: int,
    payload: AdditionalPartsPayload,
    actor: Actor = Depends(get_actor),
    workflow: AppointmentWorkflow = Depends(get_workflow),
):
    return _out(workflow.request_additional_parts(actor, appointment_id, payload))


@router.post("/{appointment_id}/complete")
def complete_appointment(
    appointment_id: int,
    payload: UsageReport,
    actor: Actor = Depends(get_actor),
    workflow: AppointmentWorkflow = Depends(get_workflow),
):
    return _out(workflow.complete(actor, appointment_id, payload))


@router.post("/{appointment_id}/cancellation")
def request_cancellation(
    appointment_id: int,
    payload: CancellationRequest | None = None,
    actor: Actor = Depends(get_actor),
    workflow: AppointmentWorkflow = Depends(get_workflow),
):
    return _out(workflow.request_cancellation(actor, appointment_id, payload))


@router.post("/{appointment_id}/cancellation/approve")
def approve_cancellation(
    appointment_id: int,
    payload: CancellationDecision | None = None,
    actor: Actor = Depends(get_actor),
    workflow: AppointmentWorkflow = Depends(get_workflow),
):
    return _out(workflow.approve_cancellation(actor, appointment_id, payload))


@router.post("/{appointment_id}/cancellation/deny")
def deny_cancellation(
    appointment_id: int,
    payload: CancellationDecision | None = None,
    actor: Actor = Depends(get_actor),
    workflow: AppointmentWorkflow = Depends(get_workflow),
):
    return _out(workflow.deny_cancellation(actor, appointment_id, payload))


@router.post("/{appointment_id}/reschedule")
def reschedule_appointment(
    appointment_id: int,
    payload: ReschedulePayload,
    actor: Actor = Depends(get_actor),
    workflow: AppointmentWorkflow = Depends(get_workflow),
):
    return _out(workflow.reschedule(actor, appointment_id, payload))
