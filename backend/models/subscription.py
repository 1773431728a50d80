# /backend/models/subscription.py
from datetime import datetime
from typing import Optional
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Boolean, ForeignKey, DateTime

from backend.core.database import Base, utcnow


class Subscription(Base):
    """Recurring agreement, 1:1 with a gateway subscription. Kept for history."""
    __tablename__ = "subscriptions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id", ondelete="CASCADE"), index=True)
    package_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("packages.id"), nullable=True)

    gateway_subscription_id: Mapped[str] = mapped_column(String(100), unique=True)
    billing_period: Mapped[str] = mapped_column(String(20), default="monthly")

    # Status: active, paused, cancelled
    status: Mapped[str] = mapped_column(String(20), default="active")

    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, default=False)
    canceled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    paused_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    current_period_end: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Refund window anchor
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
