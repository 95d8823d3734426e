"""Tracked item routes."""

import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, field_validator
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from pricesync.api.deps import get_database, get_item, get_task_runner
from pricesync.api.routes.reconciliation import RunReportResponse
from pricesync.db import ledger
from pricesync.db.models import PriceAlert, TrackedItem
from pricesync.worker.tasks import TaskRunner

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/items", tags=["items"])


def _check_url(v: Optional[str]) -> Optional[str]:
    if v is None or not v.strip():
        return None
    v = v.strip()
    if not v.startswith(("http://", "https://")):
        raise ValueError("url must start with http:// or https://")
    return v


class ItemCreate(BaseModel):
    owner_id: str = Field(..., min_length=1, max_length=64)
    owner_email: Optional[str] = None
    name: str = Field(..., min_length=1)
    url: Optional[str] = None
    image_url: Optional[str] = None
    target_price: Decimal = Field(..., ge=0)

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: Optional[str]) -> Optional[str]:
        return _check_url(v)


class ItemUpdate(BaseModel):
    """Owner-editable fields; prices are written only by reconciliation."""

    name: Optional[str] = Field(None, min_length=1)
    url: Optional[str] = None
    owner_email: Optional[str] = None
    target_price: Optional[Decimal] = Field(None, ge=0)
    tracking_enabled: Optional[bool] = None
    is_purchased: Optional[bool] = None

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: Optional[str]) -> Optional[str]:
        return _check_url(v)


class CheckRequest(BaseModel):
    item_ids: List[int] = Field(..., min_length=1, max_length=50)


class ItemResponse(BaseModel):
    id: int
    owner_id: str
    owner_email: Optional[str]
    name: str
    url: Optional[str]
    image_url: Optional[str]
    target_price: float
    tracking_enabled: bool
    is_purchased: bool
    current_price: Optional[float]
    lowest_price_ever: Optional[float]
    highest_price_ever: Optional[float]
    last_price_check: Optional[datetime]
    primary_marketplace: Optional[str]
    pinned_marketplace: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


class PriceHistoryResponse(BaseModel):
    id: int
    price: float
    source: str
    checked_at: datetime

    class Config:
        from_attributes = True


class PriceAlertResponse(BaseModel):
    id: int
    old_price: Optional[float]
    new_price: float
    target_price: float
    savings: float
    recipient: Optional[str]
    delivered: bool
    error: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


@router.get("", response_model=List[ItemResponse])
async def list_items(
    owner_id: Optional[str] = None,
    db: AsyncSession = Depends(get_database),
):
    """List tracked items, optionally for one owner."""
    query = select(TrackedItem).order_by(TrackedItem.created_at.desc())
    if owner_id:
        query = query.where(TrackedItem.owner_id == owner_id)
    result = await db.execute(query)
    return result.scalars().all()


@router.post("", response_model=ItemResponse, status_code=201)
async def create_item(item_data: ItemCreate, db: AsyncSession = Depends(get_database)):
    """Start tracking an item."""
    item = TrackedItem(**item_data.model_dump())
    db.add(item)
    await db.commit()
    await db.refresh(item)
    logger.info(f"Created tracked item {item.id} for owner {item.owner_id}")
    return item


@router.get("/{item_id}", response_model=ItemResponse)
async def get_item_route(item: TrackedItem = Depends(get_item)):
    return item


@router.patch("/{item_id}", response_model=ItemResponse)
async def update_item(
    update: ItemUpdate,
    item: TrackedItem = Depends(get_item),
    db: AsyncSession = Depends(get_database),
):
    """Update owner-controlled fields of an item."""
    for key, value in update.model_dump(exclude_unset=True).items():
        setattr(item, key, value)
    await db.commit()
    await db.refresh(item)
    return item


@router.delete("/{item_id}", status_code=204)
async def delete_item(
    item: TrackedItem = Depends(get_item),
    db: AsyncSession = Depends(get_database),
):
    """Delete an item along with its listings, history and alerts."""
    # Children must be loaded for the ORM cascade under asyncio
    item = await db.scalar(
        select(TrackedItem)
        .options(
            selectinload(TrackedItem.listings),
            selectinload(TrackedItem.price_history),
            selectinload(TrackedItem.match_history),
            selectinload(TrackedItem.alerts),
        )
        .where(TrackedItem.id == item.id)
        .execution_options(populate_existing=True)
    )
    await db.delete(item)
    await db.commit()
    logger.info(f"Deleted tracked item {item.id}")


@router.get("/{item_id}/history", response_model=List[PriceHistoryResponse])
async def get_price_history(
    limit: int = Query(ledger.DEFAULT_HISTORY_LIMIT, ge=1, le=1000),
    item: TrackedItem = Depends(get_item),
    db: AsyncSession = Depends(get_database),
):
    """Price history for an item, newest first."""
    return await ledger.get_price_history(db, item.id, limit=limit)


@router.get("/{item_id}/alerts", response_model=List[PriceAlertResponse])
async def get_alerts(
    item: TrackedItem = Depends(get_item),
    db: AsyncSession = Depends(get_database),
):
    """Alerts sent for an item, newest first."""
    result = await db.execute(
        select(PriceAlert)
        .where(PriceAlert.item_id == item.id)
        .order_by(PriceAlert.created_at.desc(), PriceAlert.id.desc())
    )
    return result.scalars().all()


@router.post("/check", response_model=RunReportResponse)
async def check_items_now(
    request: CheckRequest,
    runner: TaskRunner = Depends(get_task_runner),
):
    """Re-check several items now, whether or not they are due."""
    report = await runner.check_items(request.item_ids)
    return report.to_dict()


@router.post("/{item_id}/check", response_model=RunReportResponse)
async def check_item_now(
    item: TrackedItem = Depends(get_item),
    runner: TaskRunner = Depends(get_task_runner),
):
    """Re-check one item's price now and return the report."""
    report = await runner.check_items([item.id])
    return report.to_dict()
