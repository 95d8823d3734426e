"""Tests for consensus price resolution."""

from datetime import datetime, timedelta
from decimal import Decimal

from pricesync.db.models import ListingStatus, MarketplaceListing, TrackedItem
from pricesync.detect.consensus import resolve

NOW = datetime(2026, 3, 1, 12, 0, 0)


def make_item(**kwargs) -> TrackedItem:
    defaults = dict(
        owner_id="u1",
        name="Wireless Headphones X200",
        target_price=Decimal("70.00"),
        current_price=None,
        lowest_price_ever=None,
        highest_price_ever=None,
        primary_marketplace=None,
        pinned_marketplace=None,
    )
    defaults.update(kwargs)
    return TrackedItem(**defaults)


def listing(marketplace, price, checked=NOW, status=ListingStatus.ACTIVE.value):
    return MarketplaceListing(
        marketplace=marketplace,
        listing_ref=f"https://{marketplace}.example/x200",
        status=status,
        current_price=Decimal(price) if price is not None else None,
        last_price_check=checked,
    )


def test_cheapest_active_listing_wins():
    item = make_item()
    listings = [listing("amazon", "89.99"), listing("walmart", "84.50"), listing("target", "92.00")]

    resolution = resolve(item, listings)

    assert resolution.authoritative_price == Decimal("84.50")
    assert resolution.primary_marketplace == "walmart"


def test_tie_goes_to_most_recently_checked():
    item = make_item()
    listings = [
        listing("amazon", "80.00", checked=NOW - timedelta(hours=2)),
        listing("bestbuy", "80.00", checked=NOW),
        listing("walmart", "80.00", checked=None),
    ]

    assert resolve(item, listings).primary_marketplace == "bestbuy"


def test_pinned_marketplace_wins_over_cheaper():
    item = make_item(pinned_marketplace="amazon")
    listings = [listing("amazon", "89.99"), listing("walmart", "84.50")]

    resolution = resolve(item, listings)

    assert resolution.authoritative_price == Decimal("89.99")
    assert resolution.primary_marketplace == "amazon"


def test_pin_without_priced_listing_is_ignored():
    item = make_item(pinned_marketplace="target")
    listings = [listing("target", None), listing("walmart", "84.50")]

    assert resolve(item, listings).primary_marketplace == "walmart"


def test_pending_listings_are_ignored():
    item = make_item()
    listings = [
        listing("amazon", "89.99"),
        listing("walmart", "10.00", status=ListingStatus.PENDING.value),
    ]

    assert resolve(item, listings).authoritative_price == Decimal("89.99")


def test_direct_price_without_listings():
    item = make_item()

    resolution = resolve(item, [], direct_price=Decimal("79.99"))

    assert resolution.authoritative_price == Decimal("79.99")
    assert resolution.primary_marketplace is None
    assert resolution.lowest_ever == Decimal("79.99")
    assert resolution.highest_ever == Decimal("79.99")


def test_no_price_keeps_current_values():
    item = make_item(
        current_price=Decimal("75.00"),
        lowest_price_ever=Decimal("70.00"),
        highest_price_ever=Decimal("90.00"),
        primary_marketplace="amazon",
    )

    resolution = resolve(item, [listing("amazon", None)])

    assert resolution.authoritative_price == Decimal("75.00")
    assert resolution.primary_marketplace == "amazon"
    assert resolution.lowest_ever == Decimal("70.00")
    assert resolution.highest_ever == Decimal("90.00")


def test_resolution_does_not_mutate_inputs():
    item = make_item(current_price=Decimal("90.00"))
    listings = [listing("amazon", "85.00")]

    first = resolve(item, listings)
    second = resolve(item, listings)

    assert first == second
    assert item.current_price == Decimal("90.00")
    assert item.primary_marketplace is None


def test_extremes_bracket_current_price_across_observations():
    item = make_item()

    for price in ["80.00", "95.00", "72.50", "88.00", "72.50"]:
        resolution = resolve(item, [], direct_price=Decimal(price))
        item.current_price = resolution.authoritative_price
        item.lowest_price_ever = resolution.lowest_ever
        item.highest_price_ever = resolution.highest_ever

        assert item.lowest_price_ever <= item.current_price <= item.highest_price_ever

    assert item.lowest_price_ever == Decimal("72.50")
    assert item.highest_price_ever == Decimal("95.00")
