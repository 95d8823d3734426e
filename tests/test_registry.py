"""Tests for the marketplace listing registry."""

from decimal import Decimal

import pytest

from pricesync.ai.product_matcher import MatchDecision, ProductMatcher, RuleComparator
from pricesync.db.ledger import get_price_history
from pricesync.db.models import TrackedItem
from pricesync.detect.consensus import resolve
from pricesync.ingest.registry import (
    CandidateListing,
    ListingNotFoundError,
    MarketplaceRegistry,
    RegistrationOutcome,
    RegistryError,
    marketplace_search_url,
)


def decision(confidence: float) -> MatchDecision:
    return MatchDecision(
        is_match=confidence >= 0.70,
        confidence=confidence,
        reasoning=f"scored {confidence}",
    )


async def create_item(db, **kwargs) -> TrackedItem:
    item = TrackedItem(
        owner_id="u1",
        name="Wireless Headphones X200",
        url="https://www.amazon.com/dp/B0X200",
        target_price=Decimal("70.00"),
        current_price=Decimal("79.99"),
        **kwargs,
    )
    db.add(item)
    await db.commit()
    return item


@pytest.mark.asyncio
async def test_auto_accept_creates_active_listing(db_session):
    item = await create_item(db_session)
    registry = MarketplaceRegistry(db_session)

    outcome = await registry.register_candidate(
        item, "walmart", "https://www.walmart.com/ip/1", decision(0.92),
        title="Wireless Headphones X200 (Black)", price=Decimal("82.00"),
    )

    assert outcome == RegistrationOutcome.ACCEPTED
    active = await registry.active_listings(item.id)
    assert len(active) == 1
    assert active[0].confidence == 0.92
    assert active[0].current_price == Decimal("82.00")
    assert await registry.pending_listings(item.id) == []


@pytest.mark.asyncio
async def test_accept_replaces_existing_active_listing(db_session):
    item = await create_item(db_session)
    registry = MarketplaceRegistry(db_session)

    await registry.register_candidate(item, "walmart", "https://www.walmart.com/ip/1", decision(0.9))
    await registry.register_candidate(item, "walmart", "https://www.walmart.com/ip/2", decision(0.95))

    active = await registry.active_listings(item.id)
    assert [l.listing_ref for l in active] == ["https://www.walmart.com/ip/2"]


@pytest.mark.asyncio
async def test_review_creates_pending_listing_without_confidence(db_session):
    item = await create_item(db_session)
    registry = MarketplaceRegistry(db_session)

    outcome = await registry.register_candidate(
        item, "target", "https://www.target.com/p/1", decision(0.75)
    )

    assert outcome == RegistrationOutcome.PENDING
    pending = await registry.pending_listings(item.id)
    assert len(pending) == 1
    assert pending[0].confidence is None
    assert pending[0].proposed_confidence == 0.75
    assert await registry.active_listings(item.id) == []


@pytest.mark.asyncio
async def test_reject_only_records_history(db_session):
    item = await create_item(db_session)
    registry = MarketplaceRegistry(db_session)

    outcome = await registry.register_candidate(
        item, "bestbuy", "https://www.bestbuy.com/site/1", decision(0.4)
    )

    assert outcome == RegistrationOutcome.REJECTED
    assert await registry.active_listings(item.id) == []
    assert await registry.pending_listings(item.id) == []
    history = await registry.match_history(item.id)
    assert [(h.decision, h.confidence) for h in history] == [("rejected", 0.4)]


@pytest.mark.asyncio
async def test_confirm_promotes_pending_and_supersedes_active(db_session):
    item = await create_item(db_session)
    registry = MarketplaceRegistry(db_session)
    await registry.register_candidate(item, "walmart", "https://www.walmart.com/ip/old", decision(0.9))
    await registry.register_candidate(item, "walmart", "https://www.walmart.com/ip/new", decision(0.72))

    confirmed = await registry.confirm_listing(item, "walmart")

    assert confirmed.listing_ref == "https://www.walmart.com/ip/new"
    assert confirmed.confidence == 0.72
    assert confirmed.proposed_confidence is None
    active = await registry.active_listings(item.id)
    assert [l.listing_ref for l in active] == ["https://www.walmart.com/ip/new"]
    assert await registry.pending_listings(item.id) == []
    history = await registry.match_history(item.id)
    assert [h.decision for h in history] == ["confirmed", "pending", "accepted"]


@pytest.mark.asyncio
async def test_confirm_without_pending_raises(db_session):
    item = await create_item(db_session)

    with pytest.raises(ListingNotFoundError):
        await MarketplaceRegistry(db_session).confirm_listing(item, "walmart")


@pytest.mark.asyncio
async def test_reject_listing_discards_pending(db_session):
    item = await create_item(db_session)
    registry = MarketplaceRegistry(db_session)
    await registry.register_candidate(item, "target", "https://www.target.com/p/1", decision(0.8))

    await registry.reject_listing(item, "target")

    assert await registry.pending_listings(item.id) == []
    history = await registry.match_history(item.id)
    assert history[0].decision == "manual_rejected"


@pytest.mark.asyncio
async def test_set_primary_requires_active_listing(db_session):
    item = await create_item(db_session)
    registry = MarketplaceRegistry(db_session)

    with pytest.raises(ListingNotFoundError):
        await registry.set_primary(item, "amazon")

    await registry.register_candidate(
        item, "amazon", "https://www.amazon.com/dp/B0X200", decision(0.99), price=Decimal("78.00")
    )
    await registry.set_primary(item, "amazon")

    assert item.pinned_marketplace == "amazon"


@pytest.mark.asyncio
async def test_set_primary_leaves_price_to_next_resolution(db_session):
    item = await create_item(
        db_session, lowest_price_ever=Decimal("80.00"), highest_price_ever=Decimal("100.00")
    )
    item.current_price = Decimal("90.00")
    await db_session.commit()
    registry = MarketplaceRegistry(db_session)
    await registry.register_candidate(
        item, "walmart", "https://www.walmart.com/ip/1", decision(0.95), price=Decimal("50.00")
    )

    await registry.set_primary(item, "walmart")

    assert item.pinned_marketplace == "walmart"
    assert (item.current_price, item.lowest_price_ever, item.highest_price_ever) == (
        Decimal("90.00"), Decimal("80.00"), Decimal("100.00"),
    )
    assert await get_price_history(db_session, item.id) == []

    resolution = resolve(item, await registry.active_listings(item.id))
    assert resolution.authoritative_price == Decimal("50.00")
    assert resolution.primary_marketplace == "walmart"
    assert resolution.lowest_ever <= resolution.authoritative_price <= resolution.highest_ever


@pytest.mark.asyncio
async def test_remove_clears_pin(db_session):
    item = await create_item(db_session)
    registry = MarketplaceRegistry(db_session)
    await registry.register_candidate(item, "amazon", "https://www.amazon.com/dp/B0X200", decision(0.99))
    await registry.set_primary(item, "amazon")

    await registry.remove(item, "amazon")

    assert item.pinned_marketplace is None
    assert item.primary_marketplace is None
    assert await registry.active_listings(item.id) == []
    assert (await registry.match_history(item.id))[0].decision == "removed"


@pytest.mark.asyncio
async def test_unknown_marketplace_is_rejected(db_session):
    item = await create_item(db_session)

    with pytest.raises(RegistryError):
        await MarketplaceRegistry(db_session).register_candidate(
            item, "ebay", "https://www.ebay.com/itm/1", decision(0.9)
        )


@pytest.mark.asyncio
async def test_discover_registers_every_candidate(db_session, sleep_recorder):
    item = await create_item(db_session)
    registry = MarketplaceRegistry(db_session)
    matcher = ProductMatcher(comparator=RuleComparator(), base_delay=0, sleep=sleep_recorder)

    results = await registry.discover(
        item,
        [
            CandidateListing("walmart", "https://www.walmart.com/ip/1",
                             "Wireless Headphones X200 (Black)", Decimal("82.00")),
            CandidateListing("target", "https://www.target.com/p/2",
                             "Wireless Headphones X200 PRO (512GB)", Decimal("84.00")),
        ],
        matcher,
    )

    assert [r.outcome for r in results] == [RegistrationOutcome.ACCEPTED, RegistrationOutcome.REJECTED]
    active = await registry.active_listings(item.id)
    assert [l.marketplace for l in active] == ["walmart"]
    assert len(await registry.match_history(item.id)) == 2


class BrokenComparator(RuleComparator):
    async def compare(self, reference, candidate):
        raise ConnectionError("comparator offline")

    async def compare_batch(self, reference, candidates):
        raise ConnectionError("comparator offline")


@pytest.mark.asyncio
async def test_matcher_outage_queues_candidates_for_review(db_session, sleep_recorder):
    item = await create_item(db_session)
    registry = MarketplaceRegistry(db_session)
    matcher = ProductMatcher(comparator=BrokenComparator(), base_delay=0, sleep=sleep_recorder)

    results = await registry.discover(
        item,
        [CandidateListing("walmart", "https://www.walmart.com/ip/1",
                          "Wireless Headphones X200 (Black)", Decimal("82.00"))],
        matcher,
    )

    assert [r.outcome for r in results] == [RegistrationOutcome.PENDING]
    assert results[0].decision.available is False
    pending = await registry.pending_listings(item.id)
    assert [(l.marketplace, l.confidence, l.proposed_confidence) for l in pending] == [
        ("walmart", None, 0.5)
    ]
    assert await registry.active_listings(item.id) == []
    assert (await registry.match_history(item.id))[0].decision == "pending"


def test_marketplace_search_url():
    assert marketplace_search_url("walmart", "Wireless Headphones X200") == (
        "https://www.walmart.com/search?q=Wireless+Headphones+X200"
    )
    assert marketplace_search_url("unknown", "Kettle").startswith("https://www.google.com/search?q=")
