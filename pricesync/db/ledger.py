"""Append-only ledgers: price history and match audit records."""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from pricesync.db.models import MatchHistory, PriceHistory, utcnow

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 30


async def append_price(
    db: AsyncSession,
    item_id: int,
    price: Decimal,
    source: str,
    checked_at: Optional[datetime] = None,
) -> PriceHistory:
    """
    Append a price observation to an item's history.

    Identical prices are appended too; the ledger is never deduplicated.
    The timestamp is clamped to the item's latest entry so that insertion
    order and timestamp order never disagree, even across a clock step back.

    Args:
        db: Database session (caller owns the transaction)
        item_id: Tracked item ID
        price: Observed price
        source: Source tag (marketplace or source name)
        checked_at: Observation time (defaults to now)

    Returns:
        The new PriceHistory row (flushed, not committed)
    """
    checked_at = checked_at or utcnow()

    latest = await db.scalar(
        select(func.max(PriceHistory.checked_at)).where(PriceHistory.item_id == item_id)
    )
    if latest is not None and checked_at < latest:
        logger.debug(
            f"Clamping history timestamp for item {item_id}: {checked_at} -> {latest}"
        )
        checked_at = latest

    entry = PriceHistory(
        item_id=item_id,
        price=price,
        source=source,
        checked_at=checked_at,
    )
    db.add(entry)
    await db.flush()
    return entry


async def get_price_history(
    db: AsyncSession,
    item_id: int,
    limit: int = DEFAULT_HISTORY_LIMIT,
) -> list[PriceHistory]:
    """Most recent price history entries for an item, newest first."""
    result = await db.execute(
        select(PriceHistory)
        .where(PriceHistory.item_id == item_id)
        .order_by(PriceHistory.checked_at.desc(), PriceHistory.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def record_match(
    db: AsyncSession,
    item_id: int,
    marketplace: str,
    listing_ref: str,
    decision: str,
    confidence: Optional[float] = None,
    reasoning: Optional[str] = None,
) -> MatchHistory:
    """Append a match audit record (flushed, not committed)."""
    record = MatchHistory(
        item_id=item_id,
        marketplace=marketplace,
        listing_ref=listing_ref,
        confidence=confidence,
        decision=decision,
        reasoning=reasoning,
    )
    db.add(record)
    await db.flush()
    return record


async def get_match_history(db: AsyncSession, item_id: int) -> list[MatchHistory]:
    """All match audit records for an item, newest first."""
    result = await db.execute(
        select(MatchHistory)
        .where(MatchHistory.item_id == item_id)
        .order_by(MatchHistory.created_at.desc(), MatchHistory.id.desc())
    )
    return list(result.scalars().all())
