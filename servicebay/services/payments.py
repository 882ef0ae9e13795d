from __future__ import annotations

from datetime import datetime, timedelta

from loguru import logger
from sqlalchemy import select
from sqlalchemy.orm import Session

from servicebay.core.config import get_config_value
from servicebay.core.errors import NotFound, PaymentMismatch
from servicebay.models.payment import PaymentIntent, PaymentStatus
from servicebay.utils.ids import short_id
from servicebay.utils.time import utcnow


class PaymentStore:
    """Durable pending-payment records keyed by the correlation reference the gateway echoes back."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def create_intent(self, *, appointment_id: int, amount_due: int, now: datetime | None = None) -> PaymentIntent:
        self.cancel_pending(appointment_id=appointment_id)
        created = now or utcnow()
        ttl = int(get_config_value("payment_hold_ttl_min", 30))
        intent = PaymentIntent(
            reference=f"PAY-{short_id(12)}",
            appointment_id=appointment_id,
            amount_due=amount_due,
            status=PaymentStatus.PENDING.value,
            created_at=created,
            expires_at=created + timedelta(minutes=ttl),
        )
        self.session.add(intent)
        self.session.flush()
        logger.info(
            "Created payment intent ref={reference} appointment={appointment_id} amount={amount}",
            reference=intent.reference,
            appointment_id=appointment_id,
            amount=amount_due,
        )
        return intent

    def get(self, reference: str) -> PaymentIntent:
        intent = self.session.scalars(select(PaymentIntent).where(PaymentIntent.reference == reference)).first()
        if intent is None:
            raise NotFound(f"Payment reference {reference} not found", reference=reference)
        return intent

    def pending_for(self, *, appointment_id: int) -> PaymentIntent | None:
        stmt = select(PaymentIntent).where(
            PaymentIntent.appointment_id == appointment_id,
            PaymentIntent.status == PaymentStatus.PENDING.value,
        )
        return self.session.scalars(stmt).first()

    def confirm(
        self,
        *,
        appointment_id: int,
        reference: str,
        amount: int,
        provider: str | None = None,
    ) -> PaymentIntent:
        intent = self.pending_for(appointment_id=appointment_id)
        if intent is None:
            raise PaymentMismatch("No pending payment for this appointment", appointment_id=appointment_id)
        if intent.reference != reference:
            raise PaymentMismatch(
                "Payment reference does not match the pending payment",
                expected_reference=intent.reference,
                received_reference=reference,
            )
        if amount < intent.amount_due:
            raise PaymentMismatch(
                f"Paid amount {amount} is below the amount due {intent.amount_due}",
                amount_due=intent.amount_due,
                amount_paid=amount,
            )
        intent.amount_paid = amount
        intent.provider = provider
        intent.status = PaymentStatus.PAID.value
        intent.paid_at = utcnow()
        self.session.flush()
        logger.info("Payment confirmed ref={reference} amount={amount}", reference=reference, amount=amount)
        return intent

    def expire(self, *, appointment_id: int) -> PaymentIntent | None:
        intent = self.pending_for(appointment_id=appointment_id)
        if intent is not None:
            intent.status = PaymentStatus.EXPIRED.value
            logger.info("Payment intent expired ref={reference}", reference=intent.reference)
        return intent

    def cancel_pending(self, *, appointment_id: int) -> PaymentIntent | None:
        intent = self.pending_for(appointment_id=appointment_id)
        if intent is not None:
            intent.status = PaymentStatus.CANCELLED.value
        return intent
