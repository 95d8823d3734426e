"""Background task entry point for price reconciliation."""

import asyncio
import logging
from datetime import timedelta
from typing import Optional
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from pricesync import metrics
from pricesync.ai.product_matcher import ProductMatcher, product_matcher
from pricesync.config import settings
from pricesync.db.models import ReconciliationRun, TrackedItem, utcnow
from pricesync.db.session import AsyncSessionLocal
from pricesync.detect.alert_policy import AlertChannel
from pricesync.ingest.sources import HttpPriceSource, PriceSource
from pricesync.notify.webhook import WebhookAlertChannel
from pricesync.worker.reconciler import Reconciler, RunReport, has_reference, select_due
from pricesync.worker.run_lock import RunLockManager, run_lock_manager

logger = logging.getLogger(__name__)


class TaskRunner:
    """
    Runner for reconciliation runs.

    ``run_reconciliation`` is the single entry point for scheduled and
    manual triggers; the run lock guarantees one run at a time.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        lock_manager: Optional[RunLockManager] = None,
        source: Optional[PriceSource] = None,
        matcher: Optional[ProductMatcher] = None,
        alert_channel: Optional[AlertChannel] = None,
        sleep=asyncio.sleep,
    ):
        self.session_factory = session_factory or AsyncSessionLocal
        self.lock_manager = lock_manager or run_lock_manager
        # Retries are applied per fetch by the reconciler
        self.source = source or HttpPriceSource(max_attempts=1)
        self.matcher = matcher or product_matcher
        self.alert_channel = alert_channel or WebhookAlertChannel()
        self._sleep = sleep
        self._cancel_event: Optional[asyncio.Event] = None

    async def close(self):
        """Clean up resources."""
        for resource in (self.source, self.alert_channel):
            close = getattr(resource, "close", None)
            if close is not None:
                await close()
        await self.lock_manager.close()

    def cancel_current_run(self) -> bool:
        """Ask the running batch to stop before its next item."""
        if self._cancel_event is None:
            return False
        self._cancel_event.set()
        return True

    async def scheduled_reconciliation(self):
        """APScheduler job: delegates to run_reconciliation."""
        if not settings.reconciliation_enabled:
            logger.info("Reconciliation skipped (reconciliation_enabled=False)")
            return
        await self.run_reconciliation(trigger="scheduled")

    async def _load_due_items(self) -> list[TrackedItem]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(TrackedItem)
                .options(selectinload(TrackedItem.listings))
                .where(
                    TrackedItem.tracking_enabled == True,  # noqa: E712
                    TrackedItem.is_purchased == False,  # noqa: E712
                )
            )
            items = list(result.scalars().all())

        return select_due(
            items,
            now=utcnow(),
            stale_after=timedelta(hours=settings.stale_after_hours),
        )

    async def _update_run(self, run_pk: int, report: RunReport, error_message: Optional[str] = None):
        async with self.session_factory() as db:
            run = await db.get(ReconciliationRun, run_pk)
            if run is None:
                return
            run.status = report.status
            run.total_items = report.total
            run.success_count = report.successful
            run.error_count = report.failed + report.skipped
            run.alerts_sent = report.alerts_sent
            run.completed_at = report.completed_at or utcnow()
            if error_message:
                run.error_message = error_message[:500]
            elif report.errors:
                run.error_message = "\n".join(report.errors[:5])
            await db.commit()

    def _reconciler(self) -> Reconciler:
        return Reconciler(
            session_factory=self.session_factory,
            source=self.source,
            matcher=self.matcher,
            alert_channel=self.alert_channel,
            sleep=self._sleep,
        )

    async def check_items(self, item_ids: list[int], trigger: str = "on_demand") -> RunReport:
        """
        Re-check specific items now, whether or not they are due.

        Runs outside the run lock and without a ReconciliationRun record.
        Unknown, untracked and purchased items, and items with nothing to
        price, are reported as skipped.

        Args:
            item_ids: Items to check, in order (duplicates are checked once)
            trigger: Trigger label for the report

        Returns:
            RunReport
        """
        item_ids = list(dict.fromkeys(item_ids))
        async with self.session_factory() as db:
            result = await db.execute(
                select(TrackedItem)
                .options(selectinload(TrackedItem.listings))
                .where(TrackedItem.id.in_(item_ids))
            )
            found = {item.id: item for item in result.scalars().all()}

        report = RunReport(run_id=uuid4().hex, trigger=trigger)
        eligible = []
        for item_id in item_ids:
            item = found.get(item_id)
            if item is None:
                reason = "no longer exists"
            elif not item.tracking_enabled or item.is_purchased:
                reason = "not tracked"
            elif not has_reference(item):
                reason = "no URL or active listing to price"
            else:
                eligible.append(item)
                continue
            report.total += 1
            report.skipped += 1
            report.errors.append(f"item {item_id}: {reason}")

        await self._reconciler().run_batch(
            eligible,
            max_items=len(eligible),
            inter_request_delay=settings.inter_request_delay_seconds,
            max_retries_per_item=settings.max_retries_per_item,
            max_workers=1,
            report=report,
        )
        metrics.record_reconciliation_run(trigger, report.status)
        logger.info(
            f"On-demand check of {len(item_ids)} items {report.status}: "
            f"{report.successful} ok, {report.failed} failed, {report.skipped} skipped"
        )
        return report

    async def run_reconciliation(self, trigger: str = "manual") -> RunReport:
        """
        Run one reconciliation pass.

        This function:
        1. Acquires the Redis run lock (a held lock yields a skipped report)
        2. Creates a ReconciliationRun record
        3. Starts the lock heartbeat
        4. Selects due items and runs the batch with timeout protection
        5. Updates the ReconciliationRun with results
        6. Releases the lock in a finally block

        Args:
            trigger: Trigger type ("scheduled" | "manual")

        Returns:
            RunReport
        """
        run_id = uuid4().hex
        logger.info(f"Starting reconciliation (trigger: {trigger}, run_id: {run_id[:16]}...)")

        lock_token = await self.lock_manager.acquire(run_id)
        if not lock_token:
            lock_info = await self.lock_manager.get_lock_info()
            holder = lock_info.get("run_id") if lock_info else None
            logger.info(
                f"Reconciliation already running; skipping {trigger} run "
                f"(lock_run_id: {holder[:16] if holder else None})"
            )
            metrics.record_run_lock_skipped(trigger)
            report = RunReport(run_id=run_id, trigger=trigger)
            report.finish("skipped")
            return report

        heartbeat_task: Optional[asyncio.Task] = None
        self._cancel_event = asyncio.Event()
        report = RunReport(run_id=run_id, trigger=trigger)

        try:
            async with self.session_factory() as db:
                run = ReconciliationRun(
                    run_id=run_id,
                    trigger=trigger,
                    status="running",
                    started_at=report.started_at,
                )
                db.add(run)
                await db.commit()
                await db.refresh(run)
                run_pk = run.id

            heartbeat_task = asyncio.create_task(self.lock_manager.heartbeat(run_id, lock_token))

            reconciler = self._reconciler()

            try:
                due_items = await self._load_due_items()
                # run_batch fills report in place; its counts survive a timeout
                await asyncio.wait_for(
                    reconciler.run_batch(
                        due_items,
                        max_items=settings.max_items_per_run,
                        inter_request_delay=settings.inter_request_delay_seconds,
                        max_retries_per_item=settings.max_retries_per_item,
                        max_workers=settings.max_workers,
                        cancel_event=self._cancel_event,
                        report=report,
                    ),
                    timeout=settings.max_run_duration_seconds,
                )
                await self._update_run(run_pk, report)

            except asyncio.TimeoutError:
                message = f"Reconciliation timed out after {settings.max_run_duration_seconds} seconds"
                logger.error(
                    f"{message} (run_id: {run_id[:16]}...): "
                    f"{report.successful}/{report.total} items done before the timeout"
                )
                report.finish("failed")
                report.errors.append(message)
                await self._update_run(run_pk, report, error_message=message)

            except Exception as e:
                logger.error(f"Reconciliation failed: {e}", exc_info=True)
                report.finish("failed")
                report.errors.append(str(e))
                await self._update_run(run_pk, report, error_message=str(e))

        finally:
            self._cancel_event = None
            if heartbeat_task and not heartbeat_task.done():
                heartbeat_task.cancel()
                try:
                    await heartbeat_task
                except asyncio.CancelledError:
                    pass

            try:
                await self.lock_manager.release(run_id, lock_token)
            except Exception as e:
                logger.warning(f"Failed to release run lock for run_id {run_id[:16]}...: {e}")

        metrics.record_reconciliation_run(trigger, report.status)
        logger.info(
            f"Reconciliation {report.status} (run_id: {run_id[:16]}...): "
            f"{report.successful}/{report.total} items ok, {report.alerts_sent} alerts"
        )
        return report


# Global task runner instance
task_runner = TaskRunner()
