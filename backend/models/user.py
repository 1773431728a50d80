# /backend/models/user.py
from datetime import date, datetime
from typing import Optional
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Integer, Boolean, Date, DateTime, ForeignKey

from backend.core.database import Base, utcnow


class User(Base):
    """Account plus the entitlement fields billing is allowed to touch."""
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    email: Mapped[str] = mapped_column(String(190), unique=True, index=True)
    name: Mapped[str] = mapped_column(String(120), default="")
    country: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Entitlement: current package and its validity window
    package_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("packages.id"), nullable=True, index=True)
    subscription_start_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    subscription_end_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True, index=True)

    # Quota usage counters
    daily_quota_used: Mapped[int] = mapped_column(Integer, default=0)
    quota_reset_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

    trial_used: Mapped[bool] = mapped_column(Boolean, default=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
