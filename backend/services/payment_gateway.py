# FILE: backend/services/payment_gateway.py
"""
Gateway abstraction shared by the processor, the cancellation engine and the
webhook endpoint.

The registry is created once per application (see server.py) and handed to
request handlers through a dependency, so tests can install a fake gateway
and reset it between runs.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol

from cryptography.fernet import InvalidToken
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.core.errors import ExternalGatewayError, NotFoundError
from backend.models.payment_gateway import PaymentGateway as PaymentGatewayRow
from backend.services.encryption_service import decrypt_token

logger = logging.getLogger("billing.gateway")


class GatewayStatus(str, Enum):
    """Status words the ledger knows how to reconcile."""
    CAPTURE = "capture"
    SETTLEMENT = "settlement"
    PENDING = "pending"
    DENY = "deny"
    CANCEL = "cancel"
    EXPIRE = "expire"
    FAILURE = "failure"
    UNRECOGNIZED = "unrecognized"

    @classmethod
    def parse(cls, raw: Optional[str]) -> "GatewayStatus":
        word = (raw or "").strip().lower()
        if word and word != cls.UNRECOGNIZED.value and word in cls._value2member_map_:
            return cls(word)
        return cls.UNRECOGNIZED


@dataclass(frozen=True)
class GatewayOutcome:
    status: GatewayStatus
    raw_status: Optional[str]
    payload: Dict[str, Any] = field(default_factory=dict)
    gateway_transaction_id: Optional[str] = None

    @classmethod
    def from_raw(
        cls,
        raw_status: Optional[str],
        payload: Optional[Dict[str, Any]] = None,
        gateway_transaction_id: Optional[str] = None,
    ) -> "GatewayOutcome":
        return cls(
            status=GatewayStatus.parse(raw_status),
            raw_status=raw_status,
            payload=dict(payload or {}),
            gateway_transaction_id=gateway_transaction_id,
        )


class CancelEffect(str, Enum):
    IMMEDIATELY = "immediately"
    NEXT_BILLING_PERIOD = "next_billing_period"


@dataclass
class CheckoutParams:
    transaction_id: str
    order_id: str
    user_id: str
    customer_email: str
    package_id: str
    package_name: str
    billing_period: str
    amount: Decimal
    currency: str
    gateway_price_id: Optional[str] = None
    is_trial: bool = False
    trial_days: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CheckoutSession:
    session_id: str
    checkout_url: Optional[str]
    outcome: GatewayOutcome


@dataclass
class GatewaySubscription:
    id: str
    status: str
    customer_id: Optional[str] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RefundResult:
    id: str
    status: str
    amount: Optional[Decimal]
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class GatewayCharge:
    id: str
    status: str
    amount: Decimal
    currency: str
    subscription_id: Optional[str] = None
    customer_id: Optional[str] = None
    receipt_url: Optional[str] = None
    invoice_number: Optional[str] = None
    created_at: Optional[datetime] = None
    raw: Dict[str, Any] = field(default_factory=dict)


class PaymentGateway(Protocol):
    slug: str
    gateway_id: Optional[str]

    async def create_subscription_checkout(self, params: CheckoutParams) -> CheckoutSession: ...

    async def get_subscription(self, subscription_id: str) -> GatewaySubscription: ...

    async def cancel_subscription(self, subscription_id: str, effective_from: CancelEffect) -> GatewaySubscription: ...

    async def pause_subscription(self, subscription_id: str) -> GatewaySubscription: ...

    async def resume_subscription(self, subscription_id: str) -> GatewaySubscription: ...

    async def create_refund_adjustment(
        self,
        external_transaction_id: str,
        reason: str,
        amount: Optional[Decimal] = None,
    ) -> RefundResult: ...

    async def get_transaction(self, external_transaction_id: str) -> GatewayCharge: ...

    async def list_transactions(
        self,
        subscription_id: Optional[str] = None,
        customer_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[GatewayCharge]: ...

    def construct_webhook_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]: ...


# ================== CREDENTIALS ==================

@dataclass(frozen=True)
class GatewayCredentials:
    gateway_id: str
    slug: str
    secret_key: str
    webhook_secret: Optional[str]
    environment: str = "sandbox"
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None

    @property
    def is_sandbox(self) -> bool:
        return self.environment != "production"


def _decrypt(value: Optional[str], slug: str, name: str) -> Optional[str]:
    if not value:
        return None
    try:
        return decrypt_token(value)
    except InvalidToken:
        raise ExternalGatewayError(
            f"Stored {name} for gateway '{slug}' could not be decrypted",
            metadata={"gateway": slug},
        )


async def load_credentials(db: AsyncSession, slug: Optional[str] = None) -> GatewayCredentials:
    """
    Read credentials for one active gateway. Without a slug the default
    gateway is used.
    """
    stmt = select(PaymentGatewayRow).where(PaymentGatewayRow.is_active.is_(True))
    if slug:
        stmt = stmt.where(PaymentGatewayRow.slug == slug)
    else:
        stmt = stmt.order_by(PaymentGatewayRow.is_default.desc(), PaymentGatewayRow.created_at)

    row = (await db.execute(stmt.limit(1))).scalar_one_or_none()
    if not row:
        raise NotFoundError(f"No active payment gateway configured{f' for {slug}' if slug else ''}")

    creds = row.api_credentials or {}
    conf = row.configuration or {}

    secret_key = _decrypt(creds.get("secret_key"), row.slug, "secret key")
    if not secret_key:
        raise ExternalGatewayError(f"Gateway '{row.slug}' has no secret key", metadata={"gateway": row.slug})

    return GatewayCredentials(
        gateway_id=row.id,
        slug=row.slug,
        secret_key=secret_key,
        webhook_secret=_decrypt(creds.get("webhook_secret"), row.slug, "webhook secret"),
        environment=conf.get("environment") or "sandbox",
        success_url=conf.get("success_url"),
        cancel_url=conf.get("cancel_url"),
    )


# ================== REGISTRY ==================

GatewayFactory = Callable[[GatewayCredentials], PaymentGateway]


class GatewayRegistry:
    """Builds gateway clients from stored credentials and caches them per slug."""

    def __init__(self, factories: Optional[Dict[str, GatewayFactory]] = None):
        self._factories: Dict[str, GatewayFactory] = dict(factories or {})
        self._instances: Dict[str, PaymentGateway] = {}
        self._default_slug: Optional[str] = None

    def register(self, slug: str, factory: GatewayFactory) -> None:
        self._factories[slug] = factory
        self._instances.pop(slug, None)

    def install(self, gateway: PaymentGateway, default: bool = True) -> None:
        """Put a ready-made client in place (used by tests and scripts)."""
        self._instances[gateway.slug] = gateway
        if default:
            self._default_slug = gateway.slug

    async def get(self, db: AsyncSession, slug: Optional[str] = None) -> PaymentGateway:
        key = slug or self._default_slug
        if key and key in self._instances:
            return self._instances[key]

        creds = await load_credentials(db, key)
        if creds.slug in self._instances:
            return self._instances[creds.slug]

        factory = self._factories.get(creds.slug)
        if factory is None:
            raise NotFoundError(f"No client available for gateway '{creds.slug}'")

        gateway = factory(creds)
        self._instances[creds.slug] = gateway
        if not slug:
            self._default_slug = creds.slug
        logger.info("Initialized %s gateway (%s)", creds.slug, creds.environment)
        return gateway

    def reset(self) -> None:
        """Drop cached clients so the next call re-reads credentials."""
        self._instances.clear()
        self._default_slug = None
