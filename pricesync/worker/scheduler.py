"""APScheduler job definitions."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from pricesync.ai.llm_service import llm_service
from pricesync.config import settings
from pricesync.worker.tasks import task_runner

logger = logging.getLogger(__name__)


def setup_scheduler() -> AsyncIOScheduler:
    """
    Setup and configure APScheduler.

    Scheduling overview:
    - Reconciliation runs every settings.reconciliation_interval_minutes
    - LLM cost counters reset daily at midnight UTC

    Returns:
        Configured scheduler instance
    """
    scheduler = AsyncIOScheduler(timezone="UTC")
    interval = max(1, int(settings.reconciliation_interval_minutes))

    if settings.reconciliation_enabled:
        scheduler.add_job(
            task_runner.scheduled_reconciliation,
            IntervalTrigger(minutes=interval),
            id="price_reconciliation",
            name="Reconcile tracked item prices",
            max_instances=1,  # Prevent overlapping runs
            coalesce=True,
            misfire_grace_time=600,
            replace_existing=True,
        )

    scheduler.add_job(
        llm_service.reset_daily_stats,
        CronTrigger(hour=0, minute=0),
        id="llm_cost_reset",
        name="Reset daily LLM cost counters",
        replace_existing=True,
    )

    logger.info(
        f"Scheduler configured: reconciliation every {interval} minutes "
        f"(enabled={settings.reconciliation_enabled})"
    )
    return scheduler
