"""Tests for webhook alert delivery."""

import json
from decimal import Decimal

import httpx
import pytest

from pricesync.detect.alert_policy import PriceAlertRequest
from pricesync.notify.webhook import NotificationError, WebhookAlertChannel


def alert_request(**kwargs) -> PriceAlertRequest:
    fields = dict(
        recipient="owner@example.com",
        item_id=7,
        item_name="Wireless Headphones X200",
        old_price=Decimal("120.00"),
        new_price=Decimal("70.00"),
        target_price=Decimal("100.00"),
        savings=Decimal("30.00"),
        url="https://www.amazon.com/dp/B0X200",
        deep_link="http://localhost:3000/dashboard?item=7",
        marketplace="amazon",
    )
    fields.update(kwargs)
    return PriceAlertRequest(**fields)


def channel_with(handler) -> tuple[WebhookAlertChannel, list]:
    requests = []

    def record(request):
        requests.append(request)
        return handler(request)

    channel = WebhookAlertChannel(
        webhook_url="https://hooks.example/alerts", max_attempts=2, base_delay=0
    )
    channel._http_client = httpx.AsyncClient(transport=httpx.MockTransport(record))
    return channel, requests


def test_payload_contains_prices_and_link():
    payload = WebhookAlertChannel(webhook_url="https://hooks.example").build_payload(alert_request())

    embed = payload["embeds"][0]
    values = {f["name"]: f["value"] for f in embed["fields"]}
    assert embed["url"] == "http://localhost:3000/dashboard?item=7"
    assert values["Current Price"] == "$70.00"
    assert values["Was"] == "$120.00"
    assert values["You Save"] == "$30.00"
    assert values["Marketplace"] == "amazon"


@pytest.mark.asyncio
async def test_send_price_alert_posts_payload():
    channel, requests = channel_with(lambda r: httpx.Response(204))

    result = await channel.send_price_alert(alert_request())

    assert result.success
    assert len(requests) == 1
    body = json.loads(requests[0].content)
    assert "Wireless Headphones X200" in body["embeds"][0]["title"]
    await channel.close()


@pytest.mark.asyncio
async def test_failed_delivery_is_reported_not_raised():
    channel, requests = channel_with(lambda r: httpx.Response(500))

    result = await channel.send_price_alert(alert_request())

    assert not result.success
    assert result.error
    assert len(requests) == 2
    await channel.close()


@pytest.mark.asyncio
async def test_deliver_without_webhook_raises():
    channel = WebhookAlertChannel(webhook_url="")

    with pytest.raises(NotificationError):
        await channel.deliver(alert_request())

    result = await channel.send_price_alert(alert_request())
    assert not result.success
