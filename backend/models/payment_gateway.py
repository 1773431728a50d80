# /backend/models/payment_gateway.py
from datetime import datetime
from typing import Optional
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, JSON, DateTime, Boolean

from backend.core.database import Base, utcnow


class PaymentGateway(Base):
    """Gateway configuration. Credentials are read from here, not from env vars."""
    __tablename__ = "payment_gateways"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(100))
    slug: Mapped[str] = mapped_column(String(50), unique=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=False)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False)

    # Fernet-encrypted values: {"secret_key": "...", "webhook_secret": "..."}
    api_credentials: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    # {"environment": "sandbox" | "production", "success_url": ..., "cancel_url": ...}
    configuration: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
