from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from loguru import logger

from servicebay.api.deps import get_workflow, require_payment_token
from servicebay.schemas.appointment import AppointmentOut, PaymentProof
from servicebay.services.workflow import AppointmentWorkflow

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/webhook", dependencies=[Depends(require_payment_token)])
def payment_webhook(payload: PaymentProof, workflow: AppointmentWorkflow = Depends(get_workflow)):
    """Payment-gateway confirmation; the reference correlates it with a pending payment."""
    logger.info(
        "Payment webhook ref={reference} amount={amount} provider={provider}",
        reference=payload.reference,
        amount=payload.amount,
        provider=payload.provider,
    )
    appointment = workflow.confirm_payment_by_reference(payload)
    body = AppointmentOut.model_validate(appointment).model_dump(mode="json")
    return JSONResponse(content={"status": "ok", "appointment": body})
