from __future__ import annotations

from fastapi import APIRouter

from servicebay.api.appointments import router as appointments_router
from servicebay.api.payments import router as payments_router
from servicebay.api.resources import conflicts_router, parts_router, slots_router

router = APIRouter()
router.include_router(appointments_router)
router.include_router(slots_router)
router.include_router(parts_router)
router.include_router(conflicts_router)
router.include_router(payments_router)


@router.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}
