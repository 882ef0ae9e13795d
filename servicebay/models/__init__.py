from .appointment import (
    Appointment,
    AppointmentHistory,
    AppointmentStatus,
    DetailedStatus,
    coarse_status_for,
)
from .base import Base
from .event import OutboxEvent
from .hold import Hold, HoldKind, HoldStatus
from .part import Part, PartReservation, ReservationStatus, StockAdjustment
from .part_request import ConflictStatus, PartConflict, PartRequest, RequestKind, RequestStatus
from .payment import PaymentIntent, PaymentStatus
from .slot import Slot, SlotStatus
from .vehicle import Vehicle

__all__ = [
    "Appointment",
    "AppointmentHistory",
    "AppointmentStatus",
    "Base",
    "ConflictStatus",
    "DetailedStatus",
    "Hold",
    "HoldKind",
    "HoldStatus",
    "OutboxEvent",
    "Part",
    "PartConflict",
    "PartRequest",
    "PartReservation",
    "PaymentIntent",
    "PaymentStatus",
    "RequestKind",
    "RequestStatus",
    "ReservationStatus",
    "Slot",
    "SlotStatus",
    "StockAdjustment",
    "Vehicle",
    "coarse_status_for",
]
