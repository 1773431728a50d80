# /backend/models/package.py
from datetime import datetime
from typing import Optional
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Integer, Text, JSON, DateTime, Boolean

from backend.core.database import Base, utcnow


class Package(Base):
    """Offer definitions users can buy."""
    __tablename__ = "packages"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)

    # Package slug: free, starter, pro, agency
    slug: Mapped[str] = mapped_column(String(100), unique=True)

    # Display name
    name: Mapped[str] = mapped_column(String(255))
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    currency: Mapped[str] = mapped_column(String(10), default="USD")

    # Per-period pricing:
    # {"monthly": {"regular_price": 29.99, "promo_price": 19.99, "gateway_price_id": "price_..."}, "annual": {...}}
    pricing_tiers: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    # Quota limits, -1 means unlimited
    daily_quota: Mapped[int] = mapped_column(Integer, default=100)
    max_concurrent_jobs: Mapped[int] = mapped_column(Integer, default=1)
    max_tracked_items: Mapped[int] = mapped_column(Integer, default=10)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    is_popular: Mapped[bool] = mapped_column(Boolean, default=False)
    sort_order: Mapped[int] = mapped_column(Integer, default=0)

    # Soft delete marker; packages referenced by transactions are never removed
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
