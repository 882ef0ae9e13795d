from __future__ import annotations

from datetime import datetime, timedelta

from loguru import logger
from sqlalchemy import select
from sqlalchemy.orm import Session

from servicebay.core.config import get_config_value
from servicebay.models.hold import Hold, HoldKind, HoldStatus
from servicebay.utils.ids import short_id
from servicebay.utils.time import utcnow


class HoldService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def place(
        self,
        *,
        kind: HoldKind,
        appointment_id: int,
        slot_id: int | None = None,
        ttl_minutes: int | None = None,
        now: datetime | None = None,
    ) -> Hold:
        # One active hold per appointment; a new stage supersedes the previous one.
        for previous in self.active_for(appointment_id=appointment_id):
            self.close(previous, status=HoldStatus.CONVERTED)

        ttl = ttl_minutes if ttl_minutes is not None else int(get_config_value(f"{kind.value}_hold_ttl_min", 60))
        created = now or utcnow()
        hold = Hold(
            hold_id=f"H-{short_id(12)}",
            kind=kind.value,
            appointment_id=appointment_id,
            slot_id=slot_id,
            status=HoldStatus.ACTIVE.value,
            created_at=created,
            expires_at=created + timedelta(minutes=ttl),
        )
        self.session.add(hold)
        self.session.flush()
        logger.info(
            "Placed hold id={hold_id} kind={kind} appointment={appointment_id} expires={expires}",
            hold_id=hold.hold_id,
            kind=kind.value,
            appointment_id=appointment_id,
            expires=hold.expires_at.isoformat(),
        )
        return hold

    def active_for(self, *, appointment_id: int, kind: HoldKind | None = None) -> list[Hold]:
        stmt = select(Hold).where(Hold.appointment_id == appointment_id, Hold.status == HoldStatus.ACTIVE.value)
        if kind is not None:
            stmt = stmt.where(Hold.kind == kind.value)
        return list(self.session.scalars(stmt))

    def close(self, hold: Hold, *, status: HoldStatus) -> Hold:
        if hold.status == HoldStatus.ACTIVE.value:
            hold.status = status.value
            hold.closed_at = utcnow()
        return hold

    def close_for(self, *, appointment_id: int, status: HoldStatus) -> list[Hold]:
        holds = self.active_for(appointment_id=appointment_id)
        for hold in holds:
            self.close(hold, status=status)
        return holds

    def due(self, *, now: datetime | None = None, limit: int = 200) -> list[Hold]:
        stmt = (
            select(Hold)
            .where(Hold.status == HoldStatus.ACTIVE.value, Hold.expires_at <= (now or utcnow()))
            .order_by(Hold.expires_at)
            .limit(limit)
        )
        return list(self.session.scalars(stmt))
