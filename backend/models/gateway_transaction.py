# /backend/models/gateway_transaction.py
from datetime import datetime
from decimal import Decimal
from typing import Optional, Any
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Numeric, ForeignKey, DateTime, JSON

from backend.core.database import Base, utcnow


class GatewayTransaction(Base):
    """Mirror of the gateway's own charge records (renewals). Not authoritative for entitlement."""
    __tablename__ = "gateway_transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)

    # Internal transaction this charge renews
    transaction_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("transactions.id", ondelete="CASCADE"), nullable=True, index=True
    )
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id", ondelete="CASCADE"), index=True)
    subscription_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("subscriptions.id"), nullable=True)

    gateway_transaction_id: Mapped[str] = mapped_column(String(100), index=True)
    gateway_subscription_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    currency: Mapped[str] = mapped_column(String(10), default="USD")

    # Gateway vocabulary: paid, open, draft, void, uncollectible, refunded
    status: Mapped[str] = mapped_column(String(30), index=True)

    payment_method: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    receipt_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    invoice_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    metadata_: Mapped[Optional[Any]] = mapped_column("metadata", JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
