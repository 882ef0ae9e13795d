from __future__ import annotations

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from loguru import logger

from servicebay.core.config import get_settings
from servicebay.services.workflow import AppointmentWorkflow


def sweep_holds_job() -> None:
    outcomes = AppointmentWorkflow().expire_holds()
    expired = [item for item in outcomes if item.get("expired")]
    if expired:
        logger.info("Hold sweep expired={count}", count=len(expired))


def start_scheduler() -> BackgroundScheduler:
    settings = get_settings()
    scheduler = BackgroundScheduler(timezone=settings.timezone)
    scheduler.add_job(
        sweep_holds_job,
        IntervalTrigger(seconds=settings.hold_sweep_interval_sec),
        id="expire-holds",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    scheduler.start()
    logger.info("Hold sweeper started every {seconds}s", seconds=settings.hold_sweep_interval_sec)
    return scheduler
