# FILE: backend/schemas/billing.py
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

NAME_PATTERN = r"^[a-zA-Z\s'-]+$"
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"
PHONE_PATTERN = r"^\+?[\d\s\-\(\)]{7,20}$"


# ─────────────────────────────────────────────
# CHECKOUT
# ─────────────────────────────────────────────

class CustomerInfo(BaseModel):
    first_name: str = Field(..., min_length=1, max_length=50, pattern=NAME_PATTERN)
    last_name: str = Field(..., min_length=1, max_length=50, pattern=NAME_PATTERN)
    email: str = Field(..., min_length=5, max_length=255, pattern=EMAIL_PATTERN)
    phone: Optional[str] = Field(None, pattern=PHONE_PATTERN)
    address: Optional[str] = Field(None, max_length=200)
    city: Optional[str] = Field(None, max_length=100)
    state: Optional[str] = Field(None, max_length=100)
    zip_code: Optional[str] = Field(None, max_length=20)
    country: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(None, max_length=500)

    @field_validator("first_name", "last_name", "country", "address", "city", "state", "description")
    @classmethod
    def strip_markup(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        return v.strip().replace("<", "").replace(">", "")


class CheckoutRequest(BaseModel):
    package_id: str
    billing_period: Literal["monthly", "annual"] = "monthly"
    payment_method: str = "stripe"
    customer_info: CustomerInfo
    is_trial: bool = False


class CheckoutResponse(BaseModel):
    transaction_id: str
    order_id: str
    status: str
    amount: Decimal
    currency: str
    payment_method: str
    requires_redirect: bool = False
    redirect_url: Optional[str] = None
    message: Optional[str] = None


# ─────────────────────────────────────────────
# PACKAGES
# ─────────────────────────────────────────────

class PricingTierResponse(BaseModel):
    regular_price: Optional[Decimal] = None
    promo_price: Optional[Decimal] = None


class PackageResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str
    slug: str
    name: str
    description: Optional[str] = None
    currency: str
    pricing_tiers: Dict[str, PricingTierResponse] = Field(default_factory=dict)
    daily_quota: int
    max_concurrent_jobs: int
    max_tracked_items: int
    is_popular: bool = False
    sort_order: int = 0


# ─────────────────────────────────────────────
# TRANSACTIONS / HISTORY
# ─────────────────────────────────────────────

class NormalizedTransaction(BaseModel):
    id: str
    order_id: Optional[str] = None
    source: Literal["ledger", "gateway"]
    transaction_type: str
    status: str
    amount: Decimal
    currency: str
    payment_method: Optional[str] = None
    package_name: Optional[str] = None
    gateway_name: Optional[str] = None
    billing_period: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None


class HistorySummary(BaseModel):
    total_transactions: int = 0
    completed_transactions: int = 0
    failed_transactions: int = 0
    pending_transactions: int = 0
    cancelled_transactions: int = 0
    refunded_transactions: int = 0
    total_amount_spent: Decimal = Decimal("0.00")


class HistoryPagination(BaseModel):
    current_page: int
    total_pages: int
    total_items: int
    items_per_page: int
    has_next: bool
    has_prev: bool
    capped: bool = False
    actual_total: Optional[int] = None
    cap_message: Optional[str] = None


class HistoryResponse(BaseModel):
    transactions: List[NormalizedTransaction]
    summary: HistorySummary
    pagination: HistoryPagination


class TransactionHistoryEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    old_status: Optional[str] = None
    new_status: str
    changed_by: Optional[str] = None
    reason: Optional[str] = None
    created_at: datetime


class TransactionDetail(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: str
    order_id: str
    package_id: Optional[str] = None
    subscription_id: Optional[str] = None
    transaction_type: str
    amount: Decimal
    currency: str
    status: str
    payment_method: str
    external_transaction_id: Optional[str] = None
    proof_url: Optional[str] = None
    error_message: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None
    history: List[TransactionHistoryEntry] = Field(default_factory=list)


class ProofUploadResponse(BaseModel):
    transaction_id: str
    proof_url: str
    status: str
    message: str = "Payment proof uploaded successfully"


class BillingCycleResponse(BaseModel):
    package_id: str
    billing_period: str
    current_period_start: Optional[datetime] = None
    current_period_end: datetime
    next_billing_date: datetime
    amount: Optional[Decimal] = None
    currency: str
    is_active: bool


# ─────────────────────────────────────────────
# SUBSCRIPTIONS
# ─────────────────────────────────────────────

class SubscriptionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)
    id: str
    package_id: Optional[str] = None
    gateway_subscription_id: str
    billing_period: str
    status: str
    cancel_at_period_end: bool
    canceled_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    created_at: datetime


class RefundWindowResponse(BaseModel):
    days_active: int
    days_remaining: int
    is_eligible: bool
    refund_window_days: int
    created_at: datetime


class CancelRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class CancellationResponse(BaseModel):
    subscription_id: str
    action: Literal["immediate_with_refund", "scheduled_no_refund"]
    days_active: int
    refund_processed: bool
    refund: Optional[Decimal] = None
    refund_error: Optional[str] = None
    effective_date: Optional[datetime] = None
    message: str


class WebhookAck(BaseModel):
    received: bool = True
    duplicate: bool = False
    event_type: Optional[str] = None
    detail: Optional[Dict[str, Any]] = None
