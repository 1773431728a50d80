"""
Shared fixtures: a throwaway SQLite database per test, seeded packages and
users, and an in-memory gateway that records every call.
"""

import json
import os
import tempfile
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from cryptography.fernet import Fernet

os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="billing-logs-"))
os.environ.setdefault("ENCRYPTION_KEY", Fernet.generate_key().decode())
os.environ.setdefault("JWT_SECRET", "test-secret")

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import backend.models  # noqa: F401
from backend.core.database import Base
from backend.core.errors import ValidationError
from backend.models.package import Package
from backend.models.subscription import Subscription
from backend.models.transaction import Transaction
from backend.models.user import User
from backend.services.payment_gateway import (
    CancelEffect,
    CheckoutParams,
    CheckoutSession,
    GatewayCharge,
    GatewayOutcome,
    GatewaySubscription,
    RefundResult,
)

NOW = datetime(2024, 6, 15, 12, 0, 0)


class FakeGateway:
    slug = "stripe"

    def __init__(self, gateway_id: Optional[str] = None):
        self.gateway_id = gateway_id
        self.checkout_status = "pending"
        self.checkout_error: Optional[Exception] = None
        self.refund_error: Optional[Exception] = None
        self.period_end: Optional[datetime] = datetime(2024, 7, 15, 12, 0, 0)
        self.checkouts: List[CheckoutParams] = []
        self.cancellations: List[tuple] = []
        self.refunds: List[tuple] = []
        self.paused: List[str] = []
        self.resumed: List[str] = []

    async def create_subscription_checkout(self, params: CheckoutParams) -> CheckoutSession:
        self.checkouts.append(params)
        if self.checkout_error:
            raise self.checkout_error
        session_id = f"cs_test_{len(self.checkouts)}"
        payload = {"id": session_id, "status": "open", "amount_total": int(params.amount * 100)}
        return CheckoutSession(
            session_id=session_id,
            checkout_url=f"https://checkout.test/{session_id}",
            outcome=GatewayOutcome.from_raw(self.checkout_status, payload, session_id),
        )

    async def get_subscription(self, subscription_id: str) -> GatewaySubscription:
        return GatewaySubscription(id=subscription_id, status="active", current_period_end=self.period_end)

    async def cancel_subscription(self, subscription_id: str, effective_from: CancelEffect) -> GatewaySubscription:
        self.cancellations.append((subscription_id, CancelEffect(effective_from)))
        status = "canceled" if effective_from == CancelEffect.IMMEDIATELY else "active"
        return GatewaySubscription(
            id=subscription_id,
            status=status,
            current_period_end=self.period_end,
            cancel_at_period_end=effective_from == CancelEffect.NEXT_BILLING_PERIOD,
        )

    async def pause_subscription(self, subscription_id: str) -> GatewaySubscription:
        self.paused.append(subscription_id)
        return GatewaySubscription(id=subscription_id, status="paused")

    async def resume_subscription(self, subscription_id: str) -> GatewaySubscription:
        self.resumed.append(subscription_id)
        return GatewaySubscription(id=subscription_id, status="active", current_period_end=self.period_end)

    async def create_refund_adjustment(
        self, external_transaction_id: str, reason: str, amount: Optional[Decimal] = None
    ) -> RefundResult:
        self.refunds.append((external_transaction_id, reason, amount))
        if self.refund_error:
            raise self.refund_error
        return RefundResult(id=f"re_{len(self.refunds)}", status="succeeded", amount=amount, raw={})

    async def get_transaction(self, external_transaction_id: str) -> GatewayCharge:
        return GatewayCharge(id=external_transaction_id, status="paid", amount=Decimal("19.99"), currency="USD")

    async def list_transactions(self, subscription_id=None, customer_id=None, limit=100) -> List[GatewayCharge]:
        return []

    def construct_webhook_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        if signature != "valid":
            raise ValidationError("Invalid webhook signature")
        return json.loads(payload)


# ================== DATABASE ==================

@pytest.fixture
async def engine(tmp_path):
    eng = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}")
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def gateway():
    return FakeGateway()


# ================== SEED DATA ==================

def make_package(slug: str, pricing: Optional[dict], **kwargs) -> Package:
    return Package(
        id=str(uuid.uuid4()),
        slug=slug,
        name=slug.title(),
        currency="USD",
        pricing_tiers=pricing,
        is_active=kwargs.pop("is_active", True),
        sort_order=kwargs.pop("sort_order", 0),
        **kwargs,
    )


@pytest.fixture
async def packages(db) -> Dict[str, Package]:
    pkgs = {
        "free": make_package("free", None, sort_order=0),
        "pro": make_package(
            "pro",
            {
                "monthly": {"regular_price": 29.99, "promo_price": 19.99},
                "annual": {"regular_price": 299.99},
            },
            sort_order=1,
        ),
        "starter": make_package("starter", {"monthly": {"regular_price": 9.99, "promo_price": 0}}, sort_order=2),
        "unpriced": make_package("unpriced", {}, sort_order=3),
        "retired": make_package("retired", {"monthly": {"regular_price": 5}}, is_active=False),
    }
    db.add_all(pkgs.values())
    await db.commit()
    return pkgs


def make_user(email: str = "jane@example.com", **kwargs) -> User:
    return User(id=str(uuid.uuid4()), email=email, name="Jane Doe", **kwargs)


@pytest.fixture
async def user(db) -> User:
    u = make_user()
    db.add(u)
    await db.commit()
    return u


def make_transaction(user_id: str, **kwargs) -> Transaction:
    defaults = dict(
        id=str(uuid.uuid4()),
        order_id=f"STRIPE_{user_id[:8]}_{uuid.uuid4().hex[:6]}",
        transaction_type="subscription",
        amount=Decimal("19.99"),
        currency="USD",
        status="completed",
        payment_method="stripe",
        metadata_={"billing_period": "monthly"},
        created_at=NOW,
        updated_at=NOW,
    )
    defaults.update(kwargs)
    return Transaction(user_id=user_id, **defaults)


def make_subscription(user_id: str, package_id: str, created_at: datetime, **kwargs) -> Subscription:
    defaults = dict(
        id=str(uuid.uuid4()),
        gateway_subscription_id=f"sub_{uuid.uuid4().hex[:12]}",
        billing_period="monthly",
        status="active",
        cancel_at_period_end=False,
        current_period_end=datetime(2024, 7, 15, 12, 0, 0),
        created_at=created_at,
        updated_at=created_at,
    )
    defaults.update(kwargs)
    return Subscription(user_id=user_id, package_id=package_id, **defaults)


def customer_info(**overrides) -> dict:
    info = {
        "first_name": "Jane",
        "last_name": "Doe",
        "email": "jane@example.com",
        "country": "United States",
    }
    info.update(overrides)
    return info
