"""Shared fixtures: a fresh SQLite database per test plus booking helpers."""

import itertools
import os
from datetime import timedelta
from typing import Optional

import pytest

os.environ.setdefault("ENABLE_HOLD_SWEEPER", "false")

from servicebay.core.config import get_settings  # noqa: E402
from servicebay.models.appointment import Appointment, DetailedStatus, coarse_status_for  # noqa: E402
from servicebay.schemas.actor import Actor, Role  # noqa: E402
from servicebay.schemas.appointment import (  # noqa: E402
    ArrivalPayload,
    BookingRequest,
    ConfirmPayload,
    PartRequestLine,
    PaymentProof,
    ReceptionPayload,
    ReviewPayload,
    ServiceLine,
)
from servicebay.services.db import configure_database, db_session, init_db  # noqa: E402
from servicebay.services.workflow import AppointmentWorkflow  # noqa: E402
from servicebay.utils.time import utcnow  # noqa: E402

STAFF = Actor(id="staff-1", role=Role.STAFF)
ADMIN = Actor(id="admin-1", role=Role.ADMIN)
CUSTOMER = Actor(id="cust-1", role=Role.CUSTOMER)
OTHER_CUSTOMER = Actor(id="cust-2", role=Role.CUSTOMER)
TECH = Actor(id="tech-1", role=Role.TECHNICIAN)
OTHER_TECH = Actor(id="tech-2", role=Role.TECHNICIAN)

SERVICE_PRICE = 500_000
PART_PRICE = 100_000


def hours_from_now(hours: float):
    return utcnow().replace(minute=0, second=0, microsecond=0) + timedelta(hours=hours)


@pytest.fixture
def database(tmp_path):
    engine = configure_database(f"sqlite:///{tmp_path / 'servicebay.db'}")
    init_db()
    yield engine
    engine.dispose()


@pytest.fixture
def settings():
    return get_settings().model_copy(
        update={"technician_roster": ["tech-1", "tech-2", "tech-3"], "auto_create_slots": False}
    )


@pytest.fixture
def workflow(database, settings):
    return AppointmentWorkflow(settings=settings)


@pytest.fixture
def make_slot(workflow):
    offsets = itertools.count()

    def _make(capacity: int = 2, hours_ahead: Optional[float] = None, technician_ids=("tech-1", "tech-2")):
        start = hours_from_now(hours_ahead if hours_ahead is not None else 72 + 2 * next(offsets))
        return workflow.run(
            lambda uow: uow.scheduler.create_slot(
                start=start,
                end=start + timedelta(hours=1),
                capacity=capacity,
                technician_ids=list(technician_ids),
            )
        )

    return _make


@pytest.fixture
def make_part(workflow):
    numbers = itertools.count(1)

    def _make(stock: int = 10, reorder_point: int = 0, retail_price: int = PART_PRICE):
        number = f"BAT-{next(numbers):03d}"
        return workflow.run(
            lambda uow: uow.ledger.create_part(
                part_number=number,
                name=f"Battery cell {number}",
                category="battery",
                retail_price=retail_price,
                initial_stock=stock,
                reorder_point=reorder_point,
            )
        )

    return _make


@pytest.fixture
def vehicles(workflow):
    def register(uow):
        uow.vehicles.register(vehicle_id="veh-1", customer_id="cust-1", make="VinFast", model="VF8")
        uow.vehicles.register(vehicle_id="veh-2", customer_id="cust-1", make="VinFast", model="VF9")
        uow.vehicles.register(vehicle_id="veh-3", customer_id="cust-2", make="VinFast", model="VF5")

    workflow.run(register)
    return ["veh-1", "veh-2", "veh-3"]


@pytest.fixture
def book(workflow, vehicles):
    def _book(slot, actor: Actor = CUSTOMER, vehicle_id: str = "veh-1"):
        request = BookingRequest(
            slot_id=slot.id,
            vehicle_id=vehicle_id,
            services=[ServiceLine(service_id="svc-battery-check", name="Battery check", price=SERVICE_PRICE)],
        )
        return workflow.create(actor, request)

    return _book


@pytest.fixture
def advance(workflow):
    """Walk an appointment forward to a target status along the happy path."""

    order = [
        DetailedStatus.CONFIRMED,
        DetailedStatus.CUSTOMER_ARRIVED,
        DetailedStatus.RECEPTION_SUBMITTED,
        DetailedStatus.RECEPTION_APPROVED_PENDING_PAYMENT,
        DetailedStatus.IN_PROGRESS,
    ]

    def _advance(appointment: Appointment, target: DetailedStatus, part_requests=None):
        current = DetailedStatus(appointment.detailed_status)
        first = order.index(current) + 1 if current in order else 0
        for step in order[first : order.index(target) + 1]:
            if step == DetailedStatus.CONFIRMED:
                appointment = workflow.staff_confirm(STAFF, appointment.id, ConfirmPayload(technician_id="tech-1"))
            elif step == DetailedStatus.CUSTOMER_ARRIVED:
                appointment = workflow.customer_arrived(STAFF, appointment.id, ArrivalPayload())
            elif step == DetailedStatus.RECEPTION_SUBMITTED:
                lines = [PartRequestLine(part_id=part_id, quantity=qty) for part_id, qty in (part_requests or [])]
                appointment = workflow.submit_reception(
                    TECH,
                    appointment.id,
                    ReceptionPayload(inspection_findings="Cell imbalance", part_requests=lines),
                )
            elif step == DetailedStatus.RECEPTION_APPROVED_PENDING_PAYMENT:
                appointment = workflow.review_reception(STAFF, appointment.id, ReviewPayload(decision="approve"))
            elif step == DetailedStatus.IN_PROGRESS:
                appointment = workflow.confirm_payment(
                    STAFF,
                    appointment.id,
                    PaymentProof(reference=appointment.payment_reference, amount=appointment.amount_due),
                )
        return appointment

    return _advance


def force_status(appointment_id: int, status: DetailedStatus) -> None:
    with db_session() as session:
        appointment = session.get(Appointment, appointment_id)
        appointment.detailed_status = status.value
        appointment.status = coarse_status_for(status).value


def load_appointment(appointment_id: int) -> Appointment:
    with db_session() as session:
        return session.get(Appointment, appointment_id)
