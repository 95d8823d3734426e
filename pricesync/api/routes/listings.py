"""Marketplace listing review and match audit routes."""

import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from pricesync.ai.product_matcher import product_matcher
from pricesync.api.deps import get_database, get_item
from pricesync.db.models import Marketplace, TrackedItem
from pricesync.ingest.registry import (
    CandidateListing,
    ListingNotFoundError,
    MarketplaceRegistry,
    RegistryError,
    marketplace_search_url,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/items", tags=["listings"])


class ListingResponse(BaseModel):
    id: int
    marketplace: str
    listing_ref: str
    title: Optional[str]
    status: str
    current_price: Optional[float]
    last_price_check: Optional[datetime]
    in_stock: bool
    confidence: Optional[float]
    proposed_confidence: Optional[float]

    class Config:
        from_attributes = True


class ListingsResponse(BaseModel):
    active: List[ListingResponse]
    pending: List[ListingResponse]


class CandidateRequest(BaseModel):
    marketplace: str
    listing_ref: str = Field(..., min_length=1)
    title: str = Field(..., min_length=1)
    price: Optional[Decimal] = Field(None, ge=0)
    image_url: Optional[str] = None


class DiscoverRequest(BaseModel):
    candidates: List[CandidateRequest] = Field(..., min_length=1, max_length=50)


class CandidateResultResponse(BaseModel):
    marketplace: str
    listing_ref: str
    title: str
    outcome: str
    is_match: bool
    confidence: float
    reasoning: str
    available: bool


class MatchHistoryResponse(BaseModel):
    id: int
    marketplace: str
    listing_ref: str
    confidence: Optional[float]
    decision: str
    reasoning: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


def _registry_http_error(e: RegistryError) -> HTTPException:
    if isinstance(e, ListingNotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    return HTTPException(status_code=400, detail=str(e))


@router.get("/{item_id}/listings", response_model=ListingsResponse)
async def list_listings(
    item: TrackedItem = Depends(get_item),
    db: AsyncSession = Depends(get_database),
):
    """Active and pending listings for an item."""
    registry = MarketplaceRegistry(db)
    active = await registry.active_listings(item.id)
    pending = await registry.pending_listings(item.id)
    return ListingsResponse(
        active=[ListingResponse.model_validate(l) for l in active],
        pending=[ListingResponse.model_validate(l) for l in pending],
    )


@router.get("/{item_id}/search-urls")
async def get_search_urls(item: TrackedItem = Depends(get_item)):
    """Marketplace search URLs for finding candidate listings."""
    return {m.value: marketplace_search_url(m.value, item.name) for m in Marketplace}


@router.post("/{item_id}/candidates", response_model=List[CandidateResultResponse])
async def discover_candidates(
    request: DiscoverRequest,
    item: TrackedItem = Depends(get_item),
    db: AsyncSession = Depends(get_database),
):
    """Match candidate listings against the item and register the outcomes."""
    registry = MarketplaceRegistry(db)
    candidates = [
        CandidateListing(
            marketplace=c.marketplace,
            listing_ref=c.listing_ref,
            title=c.title,
            price=c.price,
            image_url=c.image_url,
        )
        for c in request.candidates
    ]
    try:
        results = await registry.discover(item, candidates, product_matcher)
    except RegistryError as e:
        raise _registry_http_error(e)

    return [
        CandidateResultResponse(
            marketplace=r.candidate.marketplace,
            listing_ref=r.candidate.listing_ref,
            title=r.candidate.title,
            outcome=r.outcome.value,
            is_match=r.decision.is_match,
            confidence=r.decision.confidence,
            reasoning=r.decision.reasoning,
            available=r.decision.available,
        )
        for r in results
    ]


@router.post("/{item_id}/listings/{marketplace}/confirm", response_model=ListingResponse)
async def confirm_listing(
    marketplace: str,
    item: TrackedItem = Depends(get_item),
    db: AsyncSession = Depends(get_database),
):
    """Confirm a pending listing, making it active."""
    try:
        return await MarketplaceRegistry(db).confirm_listing(item, marketplace)
    except RegistryError as e:
        raise _registry_http_error(e)


@router.post("/{item_id}/listings/{marketplace}/reject", status_code=204)
async def reject_listing(
    marketplace: str,
    item: TrackedItem = Depends(get_item),
    db: AsyncSession = Depends(get_database),
):
    """Reject a pending listing."""
    try:
        await MarketplaceRegistry(db).reject_listing(item, marketplace)
    except RegistryError as e:
        raise _registry_http_error(e)


@router.post("/{item_id}/listings/{marketplace}/primary", status_code=204)
async def set_primary(
    marketplace: str,
    item: TrackedItem = Depends(get_item),
    db: AsyncSession = Depends(get_database),
):
    """Pin the marketplace whose price is authoritative."""
    try:
        await MarketplaceRegistry(db).set_primary(item, marketplace)
    except RegistryError as e:
        raise _registry_http_error(e)


@router.delete("/{item_id}/listings/{marketplace}", status_code=204)
async def remove_listing(
    marketplace: str,
    item: TrackedItem = Depends(get_item),
    db: AsyncSession = Depends(get_database),
):
    """Remove the active listing for a marketplace."""
    try:
        await MarketplaceRegistry(db).remove(item, marketplace)
    except RegistryError as e:
        raise _registry_http_error(e)


@router.get("/{item_id}/match-history", response_model=List[MatchHistoryResponse])
async def get_match_history(
    item: TrackedItem = Depends(get_item),
    db: AsyncSession = Depends(get_database),
):
    """Match decisions and review actions for an item, newest first."""
    return await MarketplaceRegistry(db).match_history(item.id)
