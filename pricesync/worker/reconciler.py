"""Batch reconciliation of tracked item prices across marketplaces."""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Iterable, Optional
from urllib.parse import urlparse
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from pricesync.ai.product_matcher import MatchVerdict, ProductInfo, ProductMatcher
from pricesync.config import settings
from pricesync.db import ledger
from pricesync.db.models import MarketplaceListing, PriceAlert, TrackedItem, utcnow
from pricesync.logging_config import get_logger
from pricesync.detect.alert_policy import AlertChannel, build_alert_request, should_alert
from pricesync.detect.consensus import resolve
from pricesync.ingest.registry import marketplace_search_url
from pricesync.ingest.sources import (
    FetchResult,
    PriceReference,
    PriceSource,
    ReferenceRejectedError,
)
from pricesync.metrics import (
    record_fetch_error,
    record_fetch_success,
    record_item_outcome,
    record_price_change,
)
from pricesync.utils.retry import retry_with_backoff

logger = logging.getLogger(__name__)

DEFAULT_STALE_AFTER = timedelta(hours=24)


class InvariantViolation(ValueError):
    """An observation or reference that must never reach stored state."""
    pass


class StoreError(RuntimeError):
    """The store failed mid-batch; the rest of the batch is abandoned."""
    pass


@dataclass
class RunReport:
    """Summary of one reconciliation batch."""

    run_id: str
    trigger: str = "manual"
    status: str = "running"  # running | completed | failed | cancelled | skipped
    total: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    alerts_sent: int = 0
    errors: list[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    def finish(self, status: Optional[str] = None):
        if status:
            self.status = status
        elif self.status == "running":
            self.status = "completed"
        self.completed_at = utcnow()

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "trigger": self.trigger,
            "status": self.status,
            "total": self.total,
            "successful": self.successful,
            "failed": self.failed,
            "skipped": self.skipped,
            "alerts_sent": self.alerts_sent,
            "errors": list(self.errors),
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
        }


def has_reference(item: TrackedItem) -> bool:
    """True if the item can be priced: a non-blank URL or an active listing."""
    if item.url and item.url.strip():
        return True
    return bool(item.active_listings)


def select_due(
    items: Iterable[TrackedItem],
    now: Optional[datetime] = None,
    stale_after: timedelta = DEFAULT_STALE_AFTER,
) -> list[TrackedItem]:
    """
    Select the items due for a price check, oldest check first.

    An item is due when tracking is enabled, it is not purchased, it has a
    reference to price, and it was never checked or was last checked at
    least ``stale_after`` ago. Never-checked items come first.

    Args:
        items: Candidate items (listings must be loaded)
        now: Current time (naive UTC, defaults to now)
        stale_after: Minimum age of the last check

    Returns:
        Due items in processing order
    """
    now = now or utcnow()
    due = [
        item for item in items
        if item.tracking_enabled
        and not item.is_purchased
        and has_reference(item)
        and (item.last_price_check is None or now - item.last_price_check >= stale_after)
    ]
    due.sort(key=lambda i: (i.last_price_check is not None, i.last_price_check or now, i.id))
    return due


def validate_url(url: Optional[str]) -> str:
    """Return a stripped http(s) URL or raise InvariantViolation."""
    if not url or not url.strip():
        raise InvariantViolation("reference URL is empty")
    url = url.strip()
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise InvariantViolation(f"malformed reference URL: {url[:100]}")
    return url


def validate_price(price) -> Optional[Decimal]:
    """Coerce an observed price to Decimal, rejecting negative and non-finite values."""
    if price is None:
        return None
    if isinstance(price, bool):
        raise InvariantViolation(f"invalid price: {price!r}")
    try:
        value = price if isinstance(price, Decimal) else Decimal(str(price))
    except (InvalidOperation, ValueError):
        raise InvariantViolation(f"invalid price: {price!r}") from None
    if not value.is_finite():
        raise InvariantViolation(f"non-finite price: {price!r}")
    if value < 0:
        raise InvariantViolation(f"negative price: {price!r}")
    return value


def listing_reference(item: TrackedItem, listing: MarketplaceListing) -> PriceReference:
    """Fresh reference for a listing: its URL, or a marketplace search for a search key."""
    ref = (listing.listing_ref or "").strip()
    if "://" in ref:
        url = validate_url(ref)
    elif ref:
        url = marketplace_search_url(listing.marketplace, ref)
    else:
        url = marketplace_search_url(listing.marketplace, item.name)
    return PriceReference(name=item.name, url=url, marketplace=listing.marketplace)


@dataclass
class _Observation:
    listing: Optional[MarketplaceListing]
    source: str
    price: Optional[Decimal] = None
    in_stock: bool = True
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.price is not None


class _Pacer:
    """Per-worker courtesy delay between consecutive fetches."""

    def __init__(self, delay: float, sleep):
        self.delay = delay
        self._sleep = sleep
        self._fetched = False

    async def wait(self):
        if self._fetched and self.delay > 0:
            await self._sleep(self.delay)
        self._fetched = True


class Reconciler:
    """
    Re-checks prices of due items and folds the observations into item state.

    Each item is processed in its own session and committed in one
    transaction; alerts are evaluated after that commit.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        source: PriceSource,
        matcher: Optional[ProductMatcher] = None,
        alert_channel: Optional[AlertChannel] = None,
        sleep=asyncio.sleep,
        match_titles: Optional[bool] = None,
    ):
        self.session_factory = session_factory
        self.source = source
        self.matcher = matcher
        self.alert_channel = alert_channel
        self._sleep = sleep
        self.match_titles = (
            match_titles if match_titles is not None else settings.match_observation_titles
        )

    async def run_batch(
        self,
        due_items: list[TrackedItem],
        max_items: Optional[int] = None,
        inter_request_delay: Optional[float] = None,
        max_retries_per_item: Optional[int] = None,
        max_workers: Optional[int] = None,
        cancel_event: Optional[asyncio.Event] = None,
        run_id: Optional[str] = None,
        trigger: str = "manual",
        report: Optional[RunReport] = None,
    ) -> RunReport:
        """
        Process up to ``max_items`` due items.

        Per-item failures are recorded and never stop the batch; a store
        failure aborts the remaining items and marks the report failed.

        Args:
            due_items: Items in processing order (see ``select_due``)
            max_items: Upper bound on items processed in this batch
            inter_request_delay: Seconds between consecutive fetches of a worker
            max_retries_per_item: Attempts per fetch
            max_workers: Concurrent workers (1 = sequential)
            cancel_event: Set to stop before the next item
            run_id: Run identifier for the report
            trigger: Trigger label for the report
            report: Report to fill in place; the caller keeps the counts if the
                batch is interrupted

        Returns:
            RunReport
        """
        max_items = max_items if max_items is not None else settings.max_items_per_run
        delay = (
            inter_request_delay
            if inter_request_delay is not None
            else settings.inter_request_delay_seconds
        )
        attempts = (
            max_retries_per_item
            if max_retries_per_item is not None
            else settings.max_retries_per_item
        )
        workers = max(1, max_workers or settings.max_workers)

        if report is None:
            report = RunReport(run_id=run_id or uuid4().hex, trigger=trigger)
        batch = list(due_items)[:max(0, max_items)]

        queue: asyncio.Queue[int] = asyncio.Queue()
        for item in batch:
            queue.put_nowait(item.id)

        abort = asyncio.Event()
        run_log = get_logger(__name__, run_id=report.run_id, trigger=report.trigger)

        async def worker():
            pacer = _Pacer(delay, self._sleep)
            while not abort.is_set():
                if cancel_event is not None and cancel_event.is_set():
                    report.status = "cancelled"
                    return
                try:
                    item_id = queue.get_nowait()
                except asyncio.QueueEmpty:
                    return
                try:
                    await self._process_item(item_id, report, pacer, attempts)
                except StoreError as e:
                    run_log.error(f"Store failure on item {item_id}, aborting batch: {e}")
                    report.errors.append(f"item {item_id}: store failure: {e}")
                    report.status = "failed"
                    abort.set()
                    return

        run_log.info(
            f"Reconciling {len(batch)} of {len(due_items)} due items "
            f"(workers={workers}, delay={delay}s)"
        )
        await asyncio.gather(*(worker() for _ in range(min(workers, max(1, len(batch))))))

        report.finish()
        run_log.info(
            f"Reconciliation {report.status}: {report.successful} ok, {report.failed} failed, "
            f"{report.skipped} skipped, {report.alerts_sent} alerts"
        )
        return report

    async def _fetch(self, reference: PriceReference, pacer: _Pacer, attempts: int) -> FetchResult:
        await pacer.wait()
        marketplace = reference.marketplace or "direct"
        started = time.monotonic()
        try:
            result = await retry_with_backoff(
                lambda: self.source.fetch_price(reference),
                max_attempts=attempts,
                base_delay=settings.price_source_base_delay_seconds,
                timeout=settings.price_source_timeout_seconds,
                give_up_on=(ReferenceRejectedError,),
                name=f"fetch {marketplace}",
                sleep=self._sleep,
            )
        except Exception as e:
            record_fetch_error(marketplace, type(e).__name__, time.monotonic() - started)
            raise

        if result.success:
            record_fetch_success(marketplace, time.monotonic() - started)
        else:
            record_fetch_error(marketplace, "no_price", time.monotonic() - started)
        return result

    async def _gate(
        self,
        item: TrackedItem,
        listing: MarketplaceListing,
        result: FetchResult,
        price: Decimal,
    ) -> Optional[str]:
        """Return a rejection reason if the observed listing no longer matches the item."""
        if not (self.match_titles and self.matcher and result.title):
            return None

        decision = await self.matcher.match(
            ProductInfo(
                title=item.name,
                price=item.current_price,
                url=item.url,
                image_url=item.image_url,
            ),
            ProductInfo(
                title=result.title,
                price=price,
                marketplace=listing.marketplace,
                image_url=result.image_url,
            ),
        )
        if decision.verdict == MatchVerdict.AUTO_REJECT:
            return f"listing no longer matches ({decision.confidence:.2f}): {decision.reasoning}"
        return None

    async def _observe(
        self, item: TrackedItem, pacer: _Pacer, attempts: int
    ) -> list[_Observation]:
        """
        Fetch every observation for an item.

        Raises:
            InvariantViolation: If a reference or observed price is invalid
        """
        listings = item.active_listings
        observations = []

        if not listings:
            reference = PriceReference(name=item.name, url=validate_url(item.url))
            try:
                result = await self._fetch(reference, pacer, attempts)
            except Exception as e:
                return [_Observation(listing=None, source="direct", error=f"{type(e).__name__}: {e}")]
            price = validate_price(result.price) if result.success else None
            return [_Observation(
                listing=None,
                source=result.source or "direct",
                price=price,
                in_stock=result.in_stock,
                error=None if price is not None else (result.error or "no price found"),
            )]

        for listing in listings:
            reference = listing_reference(item, listing)
            try:
                result = await self._fetch(reference, pacer, attempts)
            except Exception as e:
                observations.append(_Observation(
                    listing=listing,
                    source=listing.marketplace,
                    error=f"{type(e).__name__}: {e}",
                ))
                continue

            price = validate_price(result.price) if result.success else None
            error = None if price is not None else (result.error or "no price found")
            if price is not None:
                error = await self._gate(item, listing, result, price)
                if error:
                    price = None

            observations.append(_Observation(
                listing=listing,
                source=listing.marketplace,
                price=price,
                in_stock=result.in_stock,
                error=error,
            ))

        return observations

    async def _process_item(self, item_id: int, report: RunReport, pacer: _Pacer, attempts: int):
        """
        Check one item and commit the outcome.

        Raises:
            StoreError: If reading or writing the store failed
        """
        report.total += 1
        try:
            async with self.session_factory() as db:
                item = await db.scalar(
                    select(TrackedItem)
                    .options(selectinload(TrackedItem.listings))
                    .where(TrackedItem.id == item_id)
                )
                if item is None:
                    report.skipped += 1
                    report.errors.append(f"item {item_id}: no longer exists")
                    record_item_outcome("skipped")
                    return

                try:
                    observations = await self._observe(item, pacer, attempts)
                except InvariantViolation as e:
                    logger.warning(f"Skipping item {item_id}: {e}")
                    report.skipped += 1
                    report.errors.append(f"item {item_id}: {e}")
                    record_item_outcome("skipped")
                    return

                old_price = item.current_price
                succeeded = await self._apply(db, item, observations)
                await db.commit()

                for obs in observations:
                    if obs.error:
                        report.errors.append(f"item {item_id} ({obs.source}): {obs.error}")

                if not succeeded:
                    report.failed += 1
                    record_item_outcome("failed")
                    return

                report.successful += 1
                record_item_outcome("success")
                record_price_change(old_price, item.current_price)

                if await self._maybe_alert(db, item, old_price):
                    report.alerts_sent += 1

        except SQLAlchemyError as e:
            raise StoreError(str(e)) from e

    async def _apply(self, db: AsyncSession, item: TrackedItem, observations: list[_Observation]) -> bool:
        """Fold observations into item state (not committed). Returns True if any price was observed."""
        now = utcnow()
        item.last_price_check = now

        succeeded = [o for o in observations if o.success]
        if not succeeded:
            return False

        direct_price = None
        direct_source = None
        for obs in succeeded:
            if obs.listing is None:
                direct_price = obs.price
                direct_source = obs.source
            else:
                obs.listing.current_price = obs.price
                obs.listing.in_stock = obs.in_stock
                obs.listing.last_price_check = now

        if any(o.listing is not None for o in succeeded):
            item.last_marketplace_sync = now

        resolution = resolve(item, item.listings, direct_price=direct_price)
        if resolution.authoritative_price is None:
            return False

        item.current_price = resolution.authoritative_price
        item.primary_marketplace = resolution.primary_marketplace
        item.lowest_price_ever = resolution.lowest_ever
        item.highest_price_ever = resolution.highest_ever

        await ledger.append_price(
            db,
            item.id,
            resolution.authoritative_price,
            source=resolution.primary_marketplace or direct_source or "direct",
            checked_at=now,
        )
        return True

    async def _maybe_alert(self, db: AsyncSession, item: TrackedItem, old_price: Optional[Decimal]) -> bool:
        """Send and record an alert if the new price crossed the target. Returns True if delivered."""
        new_price = item.current_price
        if not should_alert(old_price, new_price, item.target_price):
            return False

        request = build_alert_request(item, old_price, new_price)
        if self.alert_channel is None:
            delivered, error = False, "no alert channel configured"
            logger.warning(f"Alert for item {item.id} not sent: {error}")
        else:
            try:
                result = await self.alert_channel.send_price_alert(request)
                delivered, error = result.success, result.error
            except Exception as e:
                logger.error(f"Alert channel failed for item {item.id}: {e}", exc_info=True)
                delivered, error = False, str(e)

        db.add(PriceAlert(
            item_id=item.id,
            old_price=old_price,
            new_price=new_price,
            target_price=request.target_price,
            savings=request.savings,
            recipient=request.recipient,
            delivered=delivered,
            error=error,
        ))
        await db.commit()
        return delivered
