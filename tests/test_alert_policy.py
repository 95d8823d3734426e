"""Tests for the price-drop alert decision."""

from decimal import Decimal

from pricesync.config import settings
from pricesync.db.models import TrackedItem
from pricesync.detect.alert_policy import build_alert_request, dashboard_link, should_alert


def d(value):
    return Decimal(value) if value is not None else None


def test_alert_sequence_fires_only_on_crossing():
    """Target 100: 80 alerts, 80 again does not, 120 does not, 70 alerts."""
    target = d("100")
    steps = [(None, "80", True), ("80", "80", False), ("80", "120", False), ("120", "70", True)]

    for old, new, expected in steps:
        assert should_alert(d(old), d(new), target) is expected, (old, new)


def test_first_price_above_target_does_not_alert():
    assert should_alert(None, d("120"), d("100")) is False


def test_price_at_target_alerts():
    assert should_alert(d("110"), d("100"), d("100")) is True


def test_drop_while_already_below_target_does_not_alert():
    assert should_alert(d("90"), d("85"), d("100")) is False


def test_missing_new_price_does_not_alert():
    assert should_alert(d("120"), None, d("100")) is False


def test_build_alert_request():
    item = TrackedItem(
        id=7,
        owner_id="owner-1",
        owner_email="owner@example.com",
        name="Wireless Headphones X200",
        url="https://www.amazon.com/dp/B0X200",
        target_price=Decimal("100.00"),
        primary_marketplace="amazon",
    )

    request = build_alert_request(item, Decimal("120.00"), Decimal("70.00"))

    assert request.recipient == "owner@example.com"
    assert request.savings == Decimal("30.00")
    assert request.marketplace == "amazon"
    assert request.deep_link == dashboard_link(7)
    assert request.deep_link.startswith(settings.public_base_url.rstrip("/"))
    assert request.deep_link.endswith("item=7")


def test_recipient_falls_back_to_owner_id():
    item = TrackedItem(id=3, owner_id="owner-3", name="Kettle", target_price=Decimal("20"))

    request = build_alert_request(item, None, Decimal("19.99"))

    assert request.recipient == "owner-3"
    assert request.old_price is None
