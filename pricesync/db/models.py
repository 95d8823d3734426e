"""SQLAlchemy database models."""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    """Naive UTC timestamp, the format every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Marketplace(str, Enum):
    """Marketplaces a tracked item can be listed on."""

    AMAZON = "amazon"
    WALMART = "walmart"
    TARGET = "target"
    BESTBUY = "bestbuy"


class ListingStatus(str, Enum):
    ACTIVE = "active"
    PENDING = "pending"


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class TrackedItem(Base):
    """Wishlist entry whose price is reconciled across marketplaces."""

    __tablename__ = "tracked_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    owner_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    image_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    target_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    tracking_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_purchased: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Written only by the reconciliation pipeline
    current_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    lowest_price_ever: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    highest_price_ever: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    last_price_check: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    primary_marketplace: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    last_marketplace_sync: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Owner's explicit choice of price source (validated by the resolver every run)
    pinned_marketplace: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    # Relationships
    listings: Mapped[list["MarketplaceListing"]] = relationship(
        "MarketplaceListing", back_populates="item", cascade="all, delete-orphan"
    )
    price_history: Mapped[list["PriceHistory"]] = relationship(
        "PriceHistory", back_populates="item", cascade="all, delete-orphan"
    )
    match_history: Mapped[list["MatchHistory"]] = relationship(
        "MatchHistory", back_populates="item", cascade="all, delete-orphan"
    )
    alerts: Mapped[list["PriceAlert"]] = relationship(
        "PriceAlert", back_populates="item", cascade="all, delete-orphan"
    )

    __table_args__ = (
        CheckConstraint("target_price >= 0", name="ck_item_target_price_non_negative"),
    )

    @property
    def active_listings(self) -> list["MarketplaceListing"]:
        return [l for l in self.listings if l.status == ListingStatus.ACTIVE.value]


class MarketplaceListing(Base):
    """A marketplace's listing believed (or proposed) to be the tracked item."""

    __tablename__ = "marketplace_listings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    item_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("tracked_items.id", ondelete="CASCADE"), nullable=False
    )
    marketplace: Mapped[str] = mapped_column(String(32), nullable=False)
    listing_ref: Mapped[str] = mapped_column(Text, nullable=False)  # URL or search key
    title: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        String(16), default=ListingStatus.ACTIVE.value, nullable=False
    )
    current_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    last_price_check: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    in_stock: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # Null until matched/confirmed; pending listings keep the matcher score aside
    confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    proposed_confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )

    item: Mapped["TrackedItem"] = relationship("TrackedItem", back_populates="listings")

    __table_args__ = (
        UniqueConstraint("item_id", "marketplace", "status", name="uq_listing_item_marketplace_status"),
        CheckConstraint(
            "confidence IS NULL OR (confidence >= 0 AND confidence <= 1)",
            name="ck_listing_confidence_range",
        ),
        CheckConstraint(
            "proposed_confidence IS NULL OR (proposed_confidence >= 0 AND proposed_confidence <= 1)",
            name="ck_listing_proposed_confidence_range",
        ),
    )

    @property
    def is_active(self) -> bool:
        return self.status == ListingStatus.ACTIVE.value


class PriceHistory(Base):
    """Append-only price ledger for tracked items."""

    __tablename__ = "price_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    item_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("tracked_items.id", ondelete="CASCADE"), nullable=False, index=True
    )
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    source: Mapped[str] = mapped_column(String(64), nullable=False)
    checked_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    item: Mapped["TrackedItem"] = relationship("TrackedItem", back_populates="price_history")


class MatchHistory(Base):
    """Audit trail of every match decision and review action."""

    __tablename__ = "match_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    item_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("tracked_items.id", ondelete="CASCADE"), nullable=False, index=True
    )
    marketplace: Mapped[str] = mapped_column(String(32), nullable=False)
    listing_ref: Mapped[str] = mapped_column(Text, nullable=False)
    confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    # accepted | pending | rejected | confirmed | manual_rejected | removed
    decision: Mapped[str] = mapped_column(String(32), nullable=False)
    reasoning: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    item: Mapped["TrackedItem"] = relationship("TrackedItem", back_populates="match_history")


class PriceAlert(Base):
    """Price-drop alerts the engine decided to send (delivered or not)."""

    __tablename__ = "price_alerts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    item_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("tracked_items.id", ondelete="CASCADE"), nullable=False
    )
    old_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    new_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    target_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    savings: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    recipient: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    delivered: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    item: Mapped["TrackedItem"] = relationship("TrackedItem", back_populates="alerts")


class ReconciliationRun(Base):
    """One invocation of the reconciliation entry point."""

    __tablename__ = "reconciliation_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    run_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    trigger: Mapped[str] = mapped_column(String(32), default="scheduled", nullable=False)
    # running | completed | failed | cancelled | skipped
    status: Mapped[str] = mapped_column(String(32), default="running", nullable=False)
    total_items: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    success_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    alerts_sent: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    started_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
