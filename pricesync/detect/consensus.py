"""Consensus resolution of marketplace observations into one authoritative price."""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Optional

from pricesync.db.models import ListingStatus, MarketplaceListing, TrackedItem


@dataclass(frozen=True)
class Resolution:
    """Authoritative price view of a tracked item."""

    authoritative_price: Optional[Decimal]
    primary_marketplace: Optional[str]
    lowest_ever: Optional[Decimal]
    highest_ever: Optional[Decimal]


def _check_key(listing: MarketplaceListing) -> datetime:
    return listing.last_price_check or datetime.min


def resolve(
    item: TrackedItem,
    listings: Iterable[MarketplaceListing],
    direct_price: Optional[Decimal] = None,
) -> Resolution:
    """
    Compute the authoritative price, primary marketplace and lifetime extremes.

    Pure: reads ``item`` and ``listings`` without mutating them, so calling it
    twice on the same state gives the same result.

    Among active listings with a price, the owner's pinned marketplace wins
    when it has one; otherwise the cheapest listing wins, ties going to the
    most recently checked. Without priced listings ``direct_price`` is
    authoritative. With no price at all the item's current values are kept.

    Args:
        item: Tracked item (current price, extremes and pin are read)
        listings: The item's listings (non-active ones are ignored)
        direct_price: Price observed on the item URL when it has no listings

    Returns:
        Resolution
    """
    priced = [
        l for l in listings
        if l.status == ListingStatus.ACTIVE.value and l.current_price is not None
    ]

    price: Optional[Decimal] = None
    primary: Optional[str] = None

    if priced:
        pinned = [l for l in priced if l.marketplace == item.pinned_marketplace]
        if pinned:
            chosen = pinned[0]
        else:
            cheapest = min(l.current_price for l in priced)
            chosen = max(
                (l for l in priced if l.current_price == cheapest),
                key=_check_key,
            )
        price = chosen.current_price
        primary = chosen.marketplace
    elif direct_price is not None:
        price = direct_price
        primary = None

    if price is None:
        return Resolution(
            authoritative_price=item.current_price,
            primary_marketplace=item.primary_marketplace,
            lowest_ever=item.lowest_price_ever,
            highest_ever=item.highest_price_ever,
        )

    lowest = item.lowest_price_ever
    highest = item.highest_price_ever

    return Resolution(
        authoritative_price=price,
        primary_marketplace=primary,
        lowest_ever=price if lowest is None else min(lowest, price),
        highest_ever=price if highest is None else max(highest, price),
    )
