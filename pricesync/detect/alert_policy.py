"""Edge-triggered price-drop alert decision."""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Protocol

from pricesync.config import settings
from pricesync.db.models import TrackedItem


def should_alert(
    old_price: Optional[Decimal],
    new_price: Optional[Decimal],
    target_price: Decimal,
) -> bool:
    """
    Decide whether a price change crosses the owner's target.

    Fires only on the transition into "at or below target": the first
    observed price at or below target, or a drop below the previous price
    when that price was above target. A flat or rising price never re-alerts.
    """
    if new_price is None or target_price is None:
        return False
    if new_price > target_price:
        return False
    if old_price is None:
        return True
    return old_price > target_price and new_price < old_price


@dataclass
class PriceAlertRequest:
    """Everything a channel needs to notify an owner of a price drop."""

    recipient: Optional[str]
    item_id: int
    item_name: str
    old_price: Optional[Decimal]
    new_price: Decimal
    target_price: Decimal
    savings: Decimal
    url: Optional[str]
    deep_link: str
    image_url: Optional[str] = None
    marketplace: Optional[str] = None


@dataclass
class DeliveryResult:
    success: bool
    error: Optional[str] = None


class AlertChannel(Protocol):
    """Notification transport for price alerts."""

    async def send_price_alert(self, request: PriceAlertRequest) -> DeliveryResult:
        ...


def dashboard_link(item_id: int) -> str:
    return f"{settings.public_base_url.rstrip('/')}/dashboard?item={item_id}"


def build_alert_request(
    item: TrackedItem,
    old_price: Optional[Decimal],
    new_price: Decimal,
) -> PriceAlertRequest:
    """Build the alert payload for an item whose price crossed its target."""
    target = Decimal(item.target_price)
    return PriceAlertRequest(
        recipient=item.owner_email or item.owner_id,
        item_id=item.id,
        item_name=item.name,
        old_price=old_price,
        new_price=new_price,
        target_price=target,
        savings=target - new_price,
        url=item.url,
        deep_link=dashboard_link(item.id),
        image_url=item.image_url,
        marketplace=item.primary_marketplace,
    )
