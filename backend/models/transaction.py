# /backend/models/transaction.py
from datetime import datetime
from decimal import Decimal
from typing import Optional, Any
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy import String, Text, Numeric, ForeignKey, DateTime, JSON

from backend.core.database import Base, utcnow


class Transaction(Base):
    """Ledger row: one checkout attempt and its outcome. Never deleted."""
    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(36), ForeignKey("users.id", ondelete="CASCADE"), index=True)
    package_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("packages.id"), nullable=True)
    gateway_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("payment_gateways.id"), nullable=True)
    subscription_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("subscriptions.id"), nullable=True, index=True
    )

    # METH_userprefix_timestamp, minted before the gateway is called
    order_id: Mapped[str] = mapped_column(String(64), index=True)

    # payment, subscription, trial
    transaction_type: Mapped[str] = mapped_column(String(30), default="payment")

    # Captured at creation, never recomputed from the package
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2))
    currency: Mapped[str] = mapped_column(String(10), default="USD")

    # Status: pending, proof_uploaded, completed, failed, cancelled, refunded
    status: Mapped[str] = mapped_column(String(20), default="pending", index=True)

    payment_method: Mapped[str] = mapped_column(String(50))

    # Gateway-side id, null until the gateway responds
    external_transaction_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)

    # Envelope: billing period, original/promo amount, customer snapshot, trial flag, gateway events
    metadata_: Mapped[Optional[Any]] = mapped_column("metadata", JSON, nullable=True)

    # Last raw gateway payload
    gateway_response: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)

    proof_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
