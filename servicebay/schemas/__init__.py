from .actor import SYSTEM_ACTOR, Actor, Role
from .appointment import (
    AdditionalPartsPayload,
    AppointmentDetailOut,
    AppointmentOut,
    ArrivalPayload,
    AssignTechnicianPayload,
    BookingRequest,
    CancellationDecision,
    CancellationRequest,
    ConfirmPayload,
    PartRequestLine,
    PartUsageLine,
    PaymentProof,
    ReceptionPayload,
    RejectPayload,
    ReschedulePayload,
    ReviewPayload,
    ServiceLine,
    UsageReport,
)
from .conflict import ConflictOut, ConflictStats, DecisionPayload, PartRequestOut, ResolvePayload, SuggestionOut
from .part import AdjustStockPayload, PartCreate, PartOut, ReservationOut, StockAdjustmentOut
from .slot import AssignTechniciansPayload, SlotCreate, SlotOut

__all__ = [
    "SYSTEM_ACTOR",
    "Actor",
    "AdditionalPartsPayload",
    "AdjustStockPayload",
    "AppointmentDetailOut",
    "AppointmentOut",
    "ArrivalPayload",
    "AssignTechnicianPayload",
    "AssignTechniciansPayload",
    "BookingRequest",
    "CancellationDecision",
    "CancellationRequest",
    "ConfirmPayload",
    "ConflictOut",
    "ConflictStats",
    "DecisionPayload",
    "PartCreate",
    "PartOut",
    "PartRequestLine",
    "PartRequestOut",
    "PartUsageLine",
    "PaymentProof",
    "ReceptionPayload",
    "RejectPayload",
    "ReschedulePayload",
    "ReservationOut",
    "ResolvePayload",
    "ReviewPayload",
    "Role",
    "ServiceLine",
    "SlotCreate",
    "SlotOut",
    "StockAdjustmentOut",
    "SuggestionOut",
    "UsageReport",
]
