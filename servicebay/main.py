from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger

from servicebay.api.routes import router as api_router
from servicebay.core.config import get_settings
from servicebay.core.errors import ServiceBayError
from servicebay.core.logging import setup_logging
from servicebay.services.db import init_db

settings = get_settings()
setup_logging(settings.logging.level)

app = FastAPI(title="ServiceBay Appointments", version="0.1.0")

app.include_router(api_router)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(ServiceBayError)
async def service_error_handler(request: Request, exc: ServiceBayError) -> JSONResponse:
    logger.warning(
        "{method} {path} failed error={code} message={message}",
        method=request.method,
        path=request.url.path,
        code=exc.code,
        message=exc.message,
    )
    return JSONResponse(status_code=exc.http_status, content=jsonable_encoder(exc.to_dict()))


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
    logger.warning("{method} {path} rejected: {error}", method=request.method, path=request.url.path, error=exc)
    return JSONResponse(
        status_code=400,
        content={"status": "error", "error": "invalid_request", "message": str(exc), "details": {}, "state": {}},
    )


@app.on_event("startup")
async def on_startup() -> None:
    init_db()
    if settings.enable_hold_sweeper:
        from servicebay.jobs.holds import start_scheduler

        app.state.scheduler = start_scheduler()


@app.on_event("shutdown")
async def on_shutdown() -> None:
    scheduler = getattr(app.state, "scheduler", None)
    if scheduler is not None:
        scheduler.shutdown(wait=False)
