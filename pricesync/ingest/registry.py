"""Marketplace listing registry for tracked items."""

import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Optional
from urllib.parse import quote_plus

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from pricesync.ai.product_matcher import (
    MatchDecision,
    MatchVerdict,
    ProductInfo,
    ProductMatcher,
)
from pricesync.db import ledger
from pricesync.db.models import (
    ListingStatus,
    Marketplace,
    MarketplaceListing,
    MatchHistory,
    TrackedItem,
    utcnow,
)
from pricesync.metrics import record_match_decision

logger = logging.getLogger(__name__)


SEARCH_URLS = {
    Marketplace.AMAZON.value: "https://www.amazon.com/s?k=",
    Marketplace.WALMART.value: "https://www.walmart.com/search?q=",
    Marketplace.TARGET.value: "https://www.target.com/s?searchTerm=",
    Marketplace.BESTBUY.value: "https://www.bestbuy.com/site/searchpage.jsp?st=",
}
FALLBACK_SEARCH_URL = "https://www.google.com/search?q="


def marketplace_search_url(marketplace: Optional[str], name: str) -> str:
    """Build the search URL used to look a product up on a marketplace."""
    base = SEARCH_URLS.get((marketplace or "").lower(), FALLBACK_SEARCH_URL)
    return f"{base}{quote_plus(name.strip())}"


class RegistryError(ValueError):
    """Invalid registry operation."""
    pass


class ListingNotFoundError(RegistryError):
    """The listing an operation refers to does not exist."""
    pass


class RegistrationOutcome(str, Enum):
    ACCEPTED = "accepted"
    PENDING = "pending"
    REJECTED = "rejected"


@dataclass
class CandidateListing:
    """A listing found by marketplace search, not yet matched."""

    marketplace: str
    listing_ref: str
    title: str
    price: Optional[Decimal] = None
    image_url: Optional[str] = None


@dataclass
class DiscoveryResult:
    candidate: CandidateListing
    decision: MatchDecision
    outcome: RegistrationOutcome


def _validate_marketplace(marketplace: str) -> str:
    try:
        return Marketplace(marketplace.lower()).value
    except ValueError:
        raise RegistryError(
            f"Unknown marketplace: {marketplace}. "
            f"Available: {[m.value for m in Marketplace]}"
        ) from None


class MarketplaceRegistry:
    """
    Owns the per-marketplace listings of tracked items.

    At most one active and one pending listing exist per (item, marketplace).
    Every registration outcome and review action is appended to match history.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _get_listing(
        self, item_id: int, marketplace: str, status: ListingStatus
    ) -> Optional[MarketplaceListing]:
        result = await self.db.execute(
            select(MarketplaceListing).where(
                MarketplaceListing.item_id == item_id,
                MarketplaceListing.marketplace == marketplace,
                MarketplaceListing.status == status.value,
            )
        )
        return result.scalar_one_or_none()

    async def _listings(self, item_id: int, status: ListingStatus) -> list[MarketplaceListing]:
        result = await self.db.execute(
            select(MarketplaceListing)
            .where(
                MarketplaceListing.item_id == item_id,
                MarketplaceListing.status == status.value,
            )
            .order_by(MarketplaceListing.marketplace)
        )
        return list(result.scalars().all())

    async def active_listings(self, item_id: int) -> list[MarketplaceListing]:
        return await self._listings(item_id, ListingStatus.ACTIVE)

    async def pending_listings(self, item_id: int) -> list[MarketplaceListing]:
        return await self._listings(item_id, ListingStatus.PENDING)

    async def match_history(self, item_id: int) -> list[MatchHistory]:
        return await ledger.get_match_history(self.db, item_id)

    async def register_candidate(
        self,
        item: TrackedItem,
        marketplace: str,
        listing_ref: str,
        decision: MatchDecision,
        title: Optional[str] = None,
        price: Optional[Decimal] = None,
    ) -> RegistrationOutcome:
        """
        Register a matched candidate listing according to its verdict.

        Auto-accepted candidates replace the active listing for the
        marketplace, review candidates replace the pending one, and rejected
        candidates are only recorded in match history. A decision made while
        matching was unavailable is queued for review, never rejected.

        Args:
            item: Tracked item
            marketplace: Marketplace identifier
            listing_ref: Listing URL or search key
            decision: Match decision for the candidate
            title: Listing title
            price: Listing price when known

        Returns:
            RegistrationOutcome
        """
        marketplace = _validate_marketplace(marketplace)
        if not listing_ref or not listing_ref.strip():
            raise RegistryError("listing_ref must not be empty")

        verdict = decision.verdict
        record_match_decision(verdict.value)

        if verdict == MatchVerdict.AUTO_ACCEPT:
            listing = await self._get_listing(item.id, marketplace, ListingStatus.ACTIVE)
            if listing is None:
                listing = MarketplaceListing(
                    item_id=item.id,
                    marketplace=marketplace,
                    status=ListingStatus.ACTIVE.value,
                )
                self.db.add(listing)
            listing.listing_ref = listing_ref
            listing.title = title
            listing.current_price = price
            listing.last_price_check = utcnow() if price is not None else None
            listing.confidence = decision.confidence
            listing.proposed_confidence = None

            # A pending proposal for the same listing is settled by the accept
            pending = await self._get_listing(item.id, marketplace, ListingStatus.PENDING)
            if pending is not None and pending.listing_ref == listing_ref:
                await self.db.delete(pending)

            item.last_marketplace_sync = utcnow()
            outcome = RegistrationOutcome.ACCEPTED

        elif verdict == MatchVerdict.REVIEW:
            listing = await self._get_listing(item.id, marketplace, ListingStatus.PENDING)
            if listing is None:
                listing = MarketplaceListing(
                    item_id=item.id,
                    marketplace=marketplace,
                    status=ListingStatus.PENDING.value,
                )
                self.db.add(listing)
            listing.listing_ref = listing_ref
            listing.title = title
            listing.current_price = price
            listing.confidence = None
            listing.proposed_confidence = decision.confidence
            outcome = RegistrationOutcome.PENDING

        else:
            outcome = RegistrationOutcome.REJECTED

        await ledger.record_match(
            self.db,
            item_id=item.id,
            marketplace=marketplace,
            listing_ref=listing_ref,
            decision=outcome.value,
            confidence=decision.confidence,
            reasoning=decision.reasoning,
        )
        await self.db.commit()

        logger.info(
            f"Registered {marketplace} candidate for item {item.id}: {outcome.value} "
            f"(confidence={decision.confidence:.2f})"
        )
        return outcome

    async def confirm_listing(self, item: TrackedItem, marketplace: str) -> MarketplaceListing:
        """
        Promote the pending listing to active, superseding any active one.

        Raises:
            ListingNotFoundError: If there is no pending listing
        """
        marketplace = _validate_marketplace(marketplace)
        pending = await self._get_listing(item.id, marketplace, ListingStatus.PENDING)
        if pending is None:
            raise ListingNotFoundError(
                f"No pending {marketplace} listing for item {item.id}"
            )

        current = await self._get_listing(item.id, marketplace, ListingStatus.ACTIVE)
        if current is not None:
            await self.db.delete(current)
            await self.db.flush()

        pending.status = ListingStatus.ACTIVE.value
        pending.confidence = pending.proposed_confidence
        pending.proposed_confidence = None
        item.last_marketplace_sync = utcnow()

        await ledger.record_match(
            self.db,
            item_id=item.id,
            marketplace=marketplace,
            listing_ref=pending.listing_ref,
            decision="confirmed",
            confidence=pending.confidence,
            reasoning="Confirmed by owner",
        )
        await self.db.commit()
        logger.info(f"Confirmed {marketplace} listing for item {item.id}")
        return pending

    async def reject_listing(self, item: TrackedItem, marketplace: str) -> None:
        """
        Discard the pending listing.

        Raises:
            ListingNotFoundError: If there is no pending listing
        """
        marketplace = _validate_marketplace(marketplace)
        pending = await self._get_listing(item.id, marketplace, ListingStatus.PENDING)
        if pending is None:
            raise ListingNotFoundError(
                f"No pending {marketplace} listing for item {item.id}"
            )

        await ledger.record_match(
            self.db,
            item_id=item.id,
            marketplace=marketplace,
            listing_ref=pending.listing_ref,
            decision="manual_rejected",
            confidence=pending.proposed_confidence,
            reasoning="Rejected by owner",
        )
        await self.db.delete(pending)
        await self.db.commit()
        logger.info(f"Rejected pending {marketplace} listing for item {item.id}")

    async def set_primary(self, item: TrackedItem, marketplace: str) -> None:
        """
        Pin the marketplace whose price is authoritative for the item.

        Only the pin is stored. The item's price, extremes and primary
        marketplace move on the next reconciliation run, together with the
        price history entry for the change.

        Raises:
            ListingNotFoundError: If the item has no active listing there
        """
        marketplace = _validate_marketplace(marketplace)
        listing = await self._get_listing(item.id, marketplace, ListingStatus.ACTIVE)
        if listing is None:
            raise ListingNotFoundError(
                f"No active {marketplace} listing for item {item.id}"
            )

        item.pinned_marketplace = marketplace
        await self.db.commit()
        logger.info(f"Pinned {marketplace} as primary for item {item.id}")

    async def remove(self, item: TrackedItem, marketplace: str) -> None:
        """
        Remove the active listing for a marketplace.

        A pin or primary pointing at it is cleared; the next reconciliation
        run elects a new primary, or checks the item URL directly when no
        listings remain.

        Raises:
            ListingNotFoundError: If the item has no active listing there
        """
        marketplace = _validate_marketplace(marketplace)
        listing = await self._get_listing(item.id, marketplace, ListingStatus.ACTIVE)
        if listing is None:
            raise ListingNotFoundError(
                f"No active {marketplace} listing for item {item.id}"
            )

        if item.pinned_marketplace == marketplace:
            item.pinned_marketplace = None
        if item.primary_marketplace == marketplace:
            item.primary_marketplace = None

        await ledger.record_match(
            self.db,
            item_id=item.id,
            marketplace=marketplace,
            listing_ref=listing.listing_ref,
            decision="removed",
            confidence=listing.confidence,
            reasoning="Removed by owner",
        )
        await self.db.delete(listing)
        await self.db.commit()
        logger.info(f"Removed {marketplace} listing for item {item.id}")

    async def discover(
        self,
        item: TrackedItem,
        candidates: list[CandidateListing],
        matcher: ProductMatcher,
    ) -> list[DiscoveryResult]:
        """
        Match candidate listings against the item and register each outcome.

        Args:
            item: Tracked item (its name and current price form the reference)
            candidates: Listings found by marketplace search
            matcher: Matching engine

        Returns:
            One DiscoveryResult per candidate, in input order
        """
        if not candidates:
            return []

        for candidate in candidates:
            _validate_marketplace(candidate.marketplace)

        reference = ProductInfo(
            title=item.name,
            price=item.current_price,
            url=item.url,
            image_url=item.image_url,
        )
        decisions = await matcher.match_batch(
            reference,
            [
                ProductInfo(
                    title=c.title,
                    price=c.price,
                    marketplace=c.marketplace,
                    url=c.listing_ref,
                    image_url=c.image_url,
                )
                for c in candidates
            ],
        )

        results = []
        for candidate, decision in zip(candidates, decisions, strict=True):
            outcome = await self.register_candidate(
                item,
                candidate.marketplace,
                candidate.listing_ref,
                decision,
                title=candidate.title,
                price=candidate.price,
            )
            results.append(DiscoveryResult(candidate=candidate, decision=decision, outcome=outcome))
        return results
