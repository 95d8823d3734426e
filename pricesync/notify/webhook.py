"""Webhook delivery of price alerts (Discord-compatible embeds)."""

import logging
from typing import Optional

import httpx

from pricesync.config import settings
from pricesync.db.models import utcnow
from pricesync.detect.alert_policy import DeliveryResult, PriceAlertRequest
from pricesync.metrics import record_alert_sent
from pricesync.utils.retry import RetryExhaustedError, retry_with_backoff

logger = logging.getLogger(__name__)


class NotificationError(RuntimeError):
    """Raised when an alert could not be delivered."""
    pass


class WebhookAlertChannel:
    """Alert channel posting Discord-style embeds to a webhook URL."""

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
    ):
        self.webhook_url = webhook_url if webhook_url is not None else settings.alert_webhook_url
        self.timeout = timeout or settings.notification_timeout_seconds
        self.max_attempts = max_attempts or settings.notification_max_attempts
        self.base_delay = (
            base_delay if base_delay is not None else settings.notification_base_delay_seconds
        )
        self._http_client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout)
        return self._http_client

    async def close(self):
        """Close HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    def build_payload(self, request: PriceAlertRequest) -> dict:
        """Build the webhook payload for an alert."""
        embed = {
            "title": f"💰 Price Drop Alert: {request.item_name}",
            "url": request.deep_link,
            "color": 0x00FF00,
            "fields": [
                {
                    "name": "Current Price",
                    "value": f"${request.new_price:.2f}",
                    "inline": True,
                },
                {
                    "name": "Target",
                    "value": f"${request.target_price:.2f}",
                    "inline": True,
                },
                {
                    "name": "You Save",
                    "value": f"${request.savings:.2f}",
                    "inline": True,
                },
            ],
            "footer": {"text": f"Item {request.item_id} | for {request.recipient or 'owner'}"},
            "timestamp": utcnow().isoformat(),
        }

        if request.old_price is not None:
            embed["fields"].insert(1, {
                "name": "Was",
                "value": f"${request.old_price:.2f}",
                "inline": True,
            })

        if request.marketplace:
            embed["fields"].append({
                "name": "Marketplace",
                "value": request.marketplace,
                "inline": True,
            })

        if request.url:
            embed["fields"].append({
                "name": "Product",
                "value": request.url,
                "inline": False,
            })

        if request.image_url:
            embed["image"] = {"url": request.image_url}

        return {
            "embeds": [embed],
            "username": "pricesync",
        }

    async def _post(self, payload: dict):
        client = await self._get_client()
        response = await client.post(self.webhook_url, json=payload)
        response.raise_for_status()

    async def deliver(self, request: PriceAlertRequest):
        """
        Post an alert, retrying transient HTTP failures.

        Raises:
            NotificationError: If no webhook is configured or all attempts failed
        """
        if not self.webhook_url:
            raise NotificationError("alert webhook not configured")

        try:
            await retry_with_backoff(
                lambda: self._post(self.build_payload(request)),
                max_attempts=self.max_attempts,
                base_delay=self.base_delay,
                timeout=self.timeout,
                retry_on=(httpx.HTTPError,),
                name=f"alert webhook (item {request.item_id})",
            )
        except RetryExhaustedError as e:
            raise NotificationError(str(e)) from e

    async def send_price_alert(self, request: PriceAlertRequest) -> DeliveryResult:
        """
        Deliver a price alert.

        Delivery failures are reported in the result, never raised.
        """
        try:
            await self.deliver(request)
        except NotificationError as e:
            logger.error(f"Failed to send alert for item {request.item_id}: {e}")
            record_alert_sent(False)
            return DeliveryResult(success=False, error=str(e))

        logger.info(
            f"Sent price alert for item {request.item_id}: "
            f"${request.new_price:.2f} (target ${request.target_price:.2f})"
        )
        record_alert_sent(True)
        return DeliveryResult(success=True)
