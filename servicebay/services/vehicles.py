from __future__ import annotations

from sqlalchemy.orm import Session

from servicebay.core.errors import NotFound, Unauthorized
from servicebay.models.vehicle import Vehicle


class VehicleDirectory:
    """Ownership lookups against the vehicle registry projection."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def register(self, *, vehicle_id: str, customer_id: str, vin: str | None = None,
                 make: str | None = None, model: str | None = None) -> Vehicle:
        vehicle = self.session.get(Vehicle, vehicle_id)
        if vehicle is None:
            vehicle = Vehicle(id=vehicle_id, customer_id=customer_id)
            self.session.add(vehicle)
        vehicle.customer_id = customer_id
        vehicle.vin = vin or vehicle.vin
        vehicle.make = make or vehicle.make
        vehicle.model = model or vehicle.model
        self.session.flush()
        return vehicle

    def require_owned(self, *, vehicle_id: str, customer_id: str) -> Vehicle:
        vehicle = self.session.get(Vehicle, vehicle_id)
        if vehicle is None:
            raise NotFound(f"Vehicle {vehicle_id} not found", vehicle_id=vehicle_id)
        if vehicle.customer_id != customer_id:
            raise Unauthorized(
                "Vehicle does not belong to this customer",
                vehicle_id=vehicle_id,
                customer_id=customer_id,
            )
        return vehicle
