from __future__ import annotations

from typing import Any

from loguru import logger
from sqlalchemy.orm import Session

from servicebay.models.appointment import Appointment
from servicebay.models.event import OutboxEvent
from servicebay.models.part import Part

STATUS_CHANGED = "appointment.status_changed"
INVOICE_REQUESTED = "invoice.requested"
LOW_STOCK = "part.low_stock"
REFUND_REQUESTED = "refund.requested"


class EventPublisher:
    """Writes outbound events in the caller's transaction.

    An external relay (notifications or billing) drains the table and sets
    ``published_at``; nothing here talks to the outside world.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    def publish(self, *, event_type: str, aggregate_type: str, aggregate_id: Any, payload: dict[str, Any]) -> OutboxEvent:
        event = OutboxEvent(
            event_type=event_type,
            aggregate_type=aggregate_type,
            aggregate_id=str(aggregate_id),
            payload=payload,
        )
        self.session.add(event)
        logger.info(
            "Queued event type={event_type} {aggregate_type}={aggregate_id}",
            event_type=event_type,
            aggregate_type=aggregate_type,
            aggregate_id=aggregate_id,
        )
        return event

    def status_changed(self, appointment: Appointment, *, from_status: str | None, action: str) -> OutboxEvent:
        return self.publish(
            event_type=STATUS_CHANGED,
            aggregate_type="appointment",
            aggregate_id=appointment.id,
            payload={
                "number": appointment.number,
                "customer_id": appointment.customer_id,
                "technician_id": appointment.technician_id,
                "action": action,
                "from": from_status,
                "to": appointment.detailed_status,
                "status": appointment.status,
            },
        )

    def invoice_requested(self, appointment: Appointment, *, stage: str) -> OutboxEvent:
        return self.publish(
            event_type=INVOICE_REQUESTED,
            aggregate_type="appointment",
            aggregate_id=appointment.id,
            payload={
                "number": appointment.number,
                "stage": stage,
                "amount_due": appointment.amount_due,
                "amount_paid": appointment.amount_paid,
                "payment_reference": appointment.payment_reference,
            },
        )

    def low_stock(self, part: Part) -> OutboxEvent:
        return self.publish(
            event_type=LOW_STOCK,
            aggregate_type="part",
            aggregate_id=part.id,
            payload={
                "part_number": part.part_number,
                "name": part.name,
                "current_stock": part.current_stock,
                "reorder_point": part.reorder_point,
            },
        )

    def refund_requested(self, appointment: Appointment, *, amount: int, method: str | None) -> OutboxEvent:
        return self.publish(
            event_type=REFUND_REQUESTED,
            aggregate_type="appointment",
            aggregate_id=appointment.id,
            payload={"number": appointment.number, "amount": amount, "method": method},
        )
