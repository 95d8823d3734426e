"""Price observation sources.

The engine does not extract prices itself. A source turns a product reference
into at most one observed price; the bundled ``HttpPriceSource`` delegates to an
external extraction service over HTTP.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional, Protocol

import httpx

from pricesync.config import settings
from pricesync.utils.retry import RetryExhaustedError, retry_with_backoff

logger = logging.getLogger(__name__)


class SourceUnavailableError(RuntimeError):
    """Raised when a source fetch failed or timed out after retries."""
    pass


class ReferenceRejectedError(SourceUnavailableError):
    """The source refused the reference itself; retrying will not help."""
    pass


@dataclass(frozen=True)
class PriceReference:
    """What to look up: a product name plus the URL to fetch."""

    name: str
    url: Optional[str] = None
    marketplace: Optional[str] = None


@dataclass
class FetchResult:
    """Outcome of one source fetch (a PriceObservation when successful)."""

    success: bool
    source: str
    price: Optional[Decimal] = None
    error: Optional[str] = None
    title: Optional[str] = None  # Listing title, when the source reports one
    image_url: Optional[str] = None
    in_stock: bool = True


class PriceSource(Protocol):
    """Anything that can fetch a price for a reference."""

    async def fetch_price(self, reference: PriceReference) -> FetchResult:
        ...


def parse_price(value) -> Optional[Decimal]:
    """Parse a price from a number or a string like "$1,299.99"."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            return None
        return Decimal(str(value))
    text = str(value).strip().replace(",", "").lstrip("$").strip()
    if not text:
        return None
    try:
        return Decimal(text)
    except InvalidOperation:
        return None


class HttpPriceSource:
    """
    Price source backed by an HTTP extraction service.

    Request: ``POST {price_source_url}`` with ``{"url": ..., "name": ...}``.
    Response: ``{"success": bool, "price": number|null, "source": str,
    "title": str|null, "image_url": str|null, "in_stock": bool,
    "error": str|null}``.
    """

    def __init__(
        self,
        endpoint: Optional[str] = None,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
    ):
        self.endpoint = endpoint or settings.price_source_url
        self.timeout = timeout or settings.price_source_timeout_seconds
        self.max_attempts = max_attempts or settings.max_retries_per_item
        self.base_delay = (
            base_delay if base_delay is not None else settings.price_source_base_delay_seconds
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

    async def _request(self, reference: PriceReference) -> dict:
        client = await self._get_client()
        response = await client.post(
            self.endpoint,
            json={"url": reference.url, "name": reference.name},
        )
        if 400 <= response.status_code < 500 and response.status_code != 429:
            raise ReferenceRejectedError(
                f"extraction service rejected {reference.url}: HTTP {response.status_code}"
            )
        response.raise_for_status()
        return response.json()

    async def fetch_price(self, reference: PriceReference) -> FetchResult:
        """
        Fetch a price for a reference.

        Raises:
            SourceUnavailableError: If the service failed or timed out after retries
        """
        source_tag = reference.marketplace or "direct"

        try:
            data = await retry_with_backoff(
                lambda: self._request(reference),
                max_attempts=self.max_attempts,
                base_delay=self.base_delay,
                timeout=self.timeout,
                retry_on=(httpx.HTTPError, ValueError),
                give_up_on=(SourceUnavailableError,),
                name=f"price source ({source_tag})",
            )
        except RetryExhaustedError as e:
            raise SourceUnavailableError(str(e)) from e

        if not isinstance(data, dict):
            raise SourceUnavailableError(f"malformed response from extraction service: {data!r:.100}")

        price = parse_price(data.get("price"))
        success = bool(data.get("success", price is not None)) and price is not None

        return FetchResult(
            success=success,
            source=data.get("source") or source_tag,
            price=price if success else None,
            error=None if success else (data.get("error") or "No price found"),
            title=data.get("title"),
            image_url=data.get("image_url"),
            in_stock=bool(data.get("in_stock", True)),
        )
