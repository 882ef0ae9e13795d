from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from servicebay.api.deps import get_actor, get_workflow
from servicebay.core.config import get_settings
from servicebay.models.part import ReservationStatus
from servicebay.models.part_request import ConflictStatus
from servicebay.schemas.actor import Actor
from servicebay.schemas.conflict import ConflictOut, ConflictStats, DecisionPayload, ResolvePayload, SuggestionOut
from servicebay.schemas.part import (
    AdjustStockPayload,
    MarkUsedPayload,
    PartCreate,
    PartOut,
    ReleasePayload,
    ReservationOut,
    ReservePayload,
    StockAdjustmentOut,
)
from servicebay.schemas.slot import AssignTechniciansPayload, SlotCreate, SlotOut
from servicebay.services.conflicts import ConflictResolver
from servicebay.services.db import get_db
from servicebay.services.inventory import InventoryLedger
from servicebay.services.policy import Action, authorize
from servicebay.services.scheduler import SlotScheduler
from servicebay.services.workflow import AppointmentWorkflow, UnitOfWork
from servicebay.utils.time import parse_human_range

slots_router = APIRouter(prefix="/slots", tags=["slots"])
parts_router = APIRouter(prefix="/parts", tags=["parts"])
conflicts_router = APIRouter(prefix="/part-conflicts", tags=["part-conflicts"])


def _dump(schema, obj) -> dict:
    return schema.model_validate(obj).model_dump(mode="json")


# slots


@slots_router.post("")
def create_slot(
    payload: SlotCreate,
    actor: Actor = Depends(get_actor),
    workflow: AppointmentWorkflow = Depends(get_workflow),
):
    def operation(uow: UnitOfWork) -> dict:
        authorize(actor, Action.MANAGE_SLOTS)
        slot = uow.scheduler.create_slot(
            start=payload.start,
            end=payload.end,
            capacity=payload.capacity,
            technician_ids=payload.technician_ids,
        )
        return _dump(SlotOut, slot)

    return JSONResponse(status_code=status.HTTP_201_CREATED, content=workflow.run(operation))


@slots_router.get("")
def list_slots(
    start: datetime | None = Query(default=None),
    end: datetime | None = Query(default=None),
    window: str | None = Query(default=None, description="Human range such as 'tomorrow morning'"),
    technician_id: str | None = Query(default=None),
    only_open: bool = Query(default=False),
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_db),
):
    if window:
        start, end = parse_human_range(window, get_settings().timezone)
        if start is None:
            raise ValueError(f"Could not understand time window {window!r}")
    slots = SlotScheduler(session).list_slots(
        start=start,
        end=end,
        technician_id=technician_id,
        only_open=only_open,
    )
    return JSONResponse(content=[_dump(SlotOut, slot) for slot in slots])


@slots_router.get("/{slot_id}")
def get_slot(slot_id: int, actor: Actor = Depends(get_actor), session: Session = Depends(get_db)):
    return JSONResponse(content=_dump(SlotOut, SlotScheduler(session).get_slot(slot_id)))


@slots_router.post("/{slot_id}/reserve")
def reserve_slot(
    slot_id: int,
    actor: Actor = Depends(get_actor),
    workflow: AppointmentWorkflow = Depends(get_workflow),
):
    def operation(uow: UnitOfWork) -> dict:
        authorize(actor, Action.MANAGE_SLOTS)
        return _dump(SlotOut, uow.scheduler.reserve_seat(slot_id))

    return JSONResponse(content=workflow.run(operation))


@slots_router.post("/{slot_id}/release")
def release_slot(
    slot_id: int,
    actor: Actor = Depends(get_actor),
    workflow: AppointmentWorkflow = Depends(get_workflow),
):
    def operation(uow: UnitOfWork) -> dict:
        authorize(actor, Action.MANAGE_SLOTS)
        return _dump(SlotOut, uow.scheduler.release_seat(slot_id))

    return JSONResponse(content=workflow.run(operation))


@slots_router.put("/{slot_id}/technicians")
def assign_technicians(
    slot_id: int,
    payload: AssignTechniciansPayload,
    actor: Actor = Depends(get_actor),
    workflow: AppointmentWorkflow = Depends(get_workflow),
):
    def operation(uow: UnitOfWork) -> dict:
        authorize(actor, Action.MANAGE_SLOTS)
        slot = uow.scheduler.assign_technicians(
            slot_id, technician_ids=payload.technician_ids, capacity=payload.capacity
        )
        return _dump(SlotOut, slot)

    return JSONResponse(content=workflow.run(operation))


@slots_router.post("/{slot_id}/auto-assign")
def auto_assign(
    slot_id: int,
    actor: Actor = Depends(get_actor),
    workflow: AppointmentWorkflow = Depends(get_workflow),
):
    def operation(uow: UnitOfWork) -> dict:
        authorize(actor, Action.MANAGE_SLOTS)
        return _dump(SlotOut, uow.scheduler.auto_assign(slot_id))

    return JSONResponse(content=workflow.run(operation))


@slots_router.post("/{slot_id}/disable")
def disable_slot(
    slot_id: int,
    actor: Actor = Depends(get_actor),
    workflow: AppointmentWorkflow = Depends(get_workflow),
):
    def operation(uow: UnitOfWork) -> dict:
        authorize(actor, Action.MANAGE_SLOTS)
        return _dump(SlotOut, uow.scheduler.disable_slot(slot_id))

    return JSONResponse(content=workflow.run(operation))


# parts


@parts_router.post("")
def create_part(
    payload: PartCreate,
    actor: Actor = Depends(get_actor),
    workflow: AppointmentWorkflow = Depends(get_workflow),
):
    def operation(uow: UnitOfWork) -> dict:
        authorize(actor, Action.MANAGE_INVENTORY)
        return _dump(PartOut, uow.ledger.create_part(**payload.model_dump(), actor_id=actor.id))

    return JSONResponse(status_code=status.HTTP_201_CREATED, content=workflow.run(operation))


@parts_router.get("")
def list_parts(
    low_stock: bool = Query(default=False),
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_db),
):
    parts = InventoryLedger(session).list_parts(low_stock_only=low_stock)
    return JSONResponse(content=[_dump(PartOut, part) for part in parts])


@parts_router.get("/{part_id}")
def get_part(part_id: int, actor: Actor = Depends(get_actor), session: Session = Depends(get_db)):
    return JSONResponse(content=_dump(PartOut, InventoryLedger(session).get_part(part_id)))


@parts_router.get("/{part_id}/reservations")
def list_reservations(
    part_id: int,
    reservation_status: ReservationStatus | None = Query(default=None, alias="status"),
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_db),
):
    authorize(actor, Action.MANAGE_INVENTORY)
    items = InventoryLedger(session).list_reservations(part_id=part_id, status=reservation_status)
    return JSONResponse(content=[_dump(ReservationOut, item) for item in items])


@parts_router.get("/{part_id}/adjustments")
def list_adjustments(part_id: int, actor: Actor = Depends(get_actor), session: Session = Depends(get_db)):
    authorize(actor, Action.MANAGE_INVENTORY)
    ledger = InventoryLedger(session)
    ledger.get_part(part_id)
    return JSONResponse(content=[_dump(StockAdjustmentOut, item) for item in ledger.history(part_id)])


@parts_router.post("/{part_id}/reserve")
def reserve_part(
    part_id: int,
    payload: ReservePayload,
    actor: Actor = Depends(get_actor),
    workflow: AppointmentWorkflow = Depends(get_workflow),
):
    def operation(uow: UnitOfWork) -> dict:
        authorize(actor, Action.MANAGE_INVENTORY)
        reservation = uow.ledger.reserve(
            part_id=part_id,
            appointment_id=payload.appointment_id,
            quantity=payload.quantity,
            actor_id=actor.id,
        )
        return _dump(ReservationOut, reservation)

    return JSONResponse(content=workflow.run(operation))


@parts_router.post("/{part_id}/mark-used")
def mark_part_used(
    part_id: int,
    payload: MarkUsedPayload,
    actor: Actor = Depends(get_actor),
    workflow: AppointmentWorkflow = Depends(get_workflow),
):
    def operation(uow: UnitOfWork) -> dict:
        authorize(actor, Action.MANAGE_INVENTORY)
        reservation = uow.ledger.mark_used(
            part_id=part_id,
            appointment_id=payload.appointment_id,
            quantity_used=payload.quantity_used,
            actor_id=actor.id,
        )
        return _dump(ReservationOut, reservation)

    return JSONResponse(content=workflow.run(operation))


@parts_router.post("/{part_id}/release")
def release_part(
    part_id: int,
    payload: ReleasePayload,
    actor: Actor = Depends(get_actor),
    workflow: AppointmentWorkflow = Depends(get_workflow),
):
    def operation(uow: UnitOfWork) -> dict:
        authorize(actor, Action.MANAGE_INVENTORY)
        reservation = uow.ledger.release(part_id=part_id, appointment_id=payload.appointment_id, actor_id=actor.id)
        return _dump(ReservationOut, reservation)

    return JSONResponse(content=workflow.run(operation))


@parts_router.post("/{part_id}/adjust")
def adjust_stock(
    part_id: int,
    payload: AdjustStockPayload,
    actor: Actor = Depends(get_actor),
    workflow: AppointmentWorkflow = Depends(get_workflow),
):
    def operation(uow: UnitOfWork) -> dict:
        authorize(actor, Action.MANAGE_INVENTORY)
        adjustment = uow.ledger.adjust_stock(
            part_id=part_id, delta=payload.delta, reason=payload.reason, actor_id=actor.id
        )
        return _dump(StockAdjustmentOut, adjustment)

    return JSONResponse(content=workflow.run(operation))


# conflicts


@conflicts_router.post("/detect")
def detect_conflicts(
    part_id: int | None = Query(default=None),
    actor: Actor = Depends(get_actor),
    workflow: AppointmentWorkflow = Depends(get_workflow),
):
    conflicts = workflow.detect_conflicts(actor, part_id)
    return JSONResponse(content=[ConflictOut.model_validate(item).model_dump(mode="json") for item in conflicts])


@conflicts_router.get("")
def list_conflicts(
    conflict_status: ConflictStatus | None = Query(default=None, alias="status"),
    part_id: int | None = Query(default=None),
    actor: Actor = Depends(get_actor),
    session: Session = Depends(get_db),
):
    authorize(actor, Action.MANAGE_CONFLICTS)
    resolver = ConflictResolver(session, InventoryLedger(session))
    conflicts = resolver.list_conflicts(status=conflict_status, part_id=part_id)
    return JSONResponse(
        content=[ConflictOut.model_validate(resolver.describe(item)).model_dump(mode="json") for item in conflicts]
    )


@conflicts_router.get("/stats")
def conflict_stats(actor: Actor = Depends(get_actor), session: Session = Depends(get_db)):
    authorize(actor, Action.MANAGE_CONFLICTS)
    stats = ConflictResolver(session, InventoryLedger(session)).stats()
    return JSONResponse(content=ConflictStats.model_validate(stats).model_dump(mode="json"))


@conflicts_router.get("/{conflict_id}")
def get_conflict(conflict_id: int, actor: Actor = Depends(get_actor), session: Session = Depends(get_db)):
    authorize(actor, Action.MANAGE_CONFLICTS)
    resolver = ConflictResolver(session, InventoryLedger(session))
    body = resolver.describe(resolver.get_conflict(conflict_id))
    return JSONResponse(content=ConflictOut.model_validate(body).model_dump(mode="json"))


@conflicts_router.get("/{conflict_id}/suggestion")
def suggest_resolution(conflict_id: int, actor: Actor = Depends(get_actor), session: Session = Depends(get_db)):
    authorize(actor, Action.MANAGE_CONFLICTS)
    suggestion = ConflictResolver(session, InventoryLedger(session)).suggest_resolution(conflict_id)
    return JSONResponse(content=SuggestionOut.model_validate(suggestion).model_dump(mode="json"))


@conflicts_router.post("/{conflict_id}/approve")
def approve_request(
    conflict_id: int,
    payload: DecisionPayload,
    actor: Actor = Depends(get_actor),
    workflow: AppointmentWorkflow = Depends(get_workflow),
):
    body = workflow.approve_part_request(actor, conflict_id, payload.request_id, payload.notes)
    return JSONResponse(content=ConflictOut.model_validate(body).model_dump(mode="json"))


@conflicts_router.post("/{conflict_id}/reject")
def reject_request(
    conflict_id: int,
    payload: DecisionPayload,
    actor: Actor = Depends(get_actor),
    workflow: AppointmentWorkflow = Depends(get_workflow),
):
    body = workflow.reject_part_request(actor, conflict_id, payload.request_id, payload.notes)
    return JSONResponse(content=ConflictOut.model_validate(body).model_dump(mode="json"))


@conflicts_router.post("/{conflict_id}/resolve")
def resolve_conflict(
    conflict_id: int,
    payload: ResolvePayload | None = None,
    actor: Actor = Depends(get_actor),
    workflow: AppointmentWorkflow = Depends(get_workflow),
):
    body = workflow.resolve_conflict(actor, conflict_id, payload.notes if payload else None)
    return JSONResponse(content=ConflictOut.model_validate(body).model_dump(mode="json"))
