import logging
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from src.api.routers.rebalance_requests import get_rebalance_coordinator_service
from src.api.routers.rebalance_requests_config import (
    reconciliation_enabled,
    reconciliation_interval_seconds,
)

RECONCILIATION_JOB_ID = "rebalance_reconciliation_sweep"

logger = logging.getLogger(__name__)

_scheduler: Optional[BackgroundScheduler] = None


def run_reconciliation_sweep() -> None:
    summary = get_rebalance_coordinator_service().reconcile()
    if summary.scanned:
        logger.info(
            "rebalance.sweep_completed", extra={"extra_fields": summary.model_dump()}
        )


def get_scheduler() -> BackgroundScheduler:
    global _scheduler
    if _scheduler is None:
        _scheduler = BackgroundScheduler(timezone="UTC")
    return _scheduler


def start_reconciliation_scheduler() -> bool:
    """Start the periodic sweep when enabled; returns whether a job is scheduled."""
    if not reconciliation_enabled():
        return False
    scheduler = get_scheduler()
    if scheduler.running:
        return True
    interval = reconciliation_interval_seconds()
    scheduler.add_job(
        run_reconciliation_sweep,
        trigger=IntervalTrigger(seconds=interval),
        id=RECONCILIATION_JOB_ID,
        name="Rebalance reconciliation sweep",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    scheduler.start()
    logger.info(
        "rebalance.scheduler_started", extra={"extra_fields": {"interval_seconds": interval}}
    )
    return True


def stop_reconciliation_scheduler() -> None:
    global _scheduler
    if _scheduler is not None and _scheduler.running:
        _scheduler.shutdown(wait=False)
        logger.info("rebalance.scheduler_stopped")
    _scheduler = None
