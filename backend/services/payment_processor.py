# FILE: backend/services/payment_processor.py
"""
Checkout orchestration.

Each payment channel implements the same four capabilities (validate,
compute_amount, create_pending_record, charge) and is picked from CHANNELS by
payment-method slug. The pending ledger row is always written before any
gateway call so a crash in between leaves a recoverable record.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.core.config import DEFAULT_CURRENCY, TRIAL_PERIOD_DAYS, TRIAL_PLACEHOLDER_AMOUNT
from backend.core.database import utcnow
from backend.core.errors import BusinessRuleError, ExternalGatewayError, NotFoundError, ValidationError
from backend.models.package import Package
from backend.models.payment_gateway import PaymentGateway as PaymentGatewayRow
from backend.models.transaction import Transaction
from backend.models.user import User
from backend.schemas.billing import CheckoutRequest
from backend.services import audit_service, transaction_ledger
from backend.services.billing_cycle import activate_entitlement, amount_for_period
from backend.services.package_catalog import get_active_package, pricing_tier
from backend.services.payment_gateway import (
    CheckoutParams,
    GatewayOutcome,
    GatewayRegistry,
    PaymentGateway,
)
from backend.services.payment_validation import validate_checkout

logger = logging.getLogger("billing.payments")

SOURCE = "billing.payment_processor"


@dataclass
class AmountBreakdown:
    original_amount: Decimal
    final_amount: Decimal
    recurring_amount: Decimal
    currency: str
    is_placeholder: bool = False


@dataclass
class CheckoutContext:
    db: AsyncSession
    user: User
    request: CheckoutRequest
    now: datetime
    package: Optional[Package] = None
    gateway: Optional[PaymentGateway] = None
    gateway_id: Optional[str] = None


@dataclass
class ChargeResult:
    outcome: Optional[GatewayOutcome]
    redirect_url: Optional[str] = None
    message: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CheckoutResult:
    transaction: Transaction
    redirect_url: Optional[str]
    message: Optional[str]

    @property
    def requires_redirect(self) -> bool:
        return bool(self.redirect_url)


class PaymentChannel(Protocol):
    slug: str
    gateway_slug: Optional[str]

    async def validate(self, ctx: CheckoutContext) -> None: ...

    def compute_amount(self, ctx: CheckoutContext) -> AmountBreakdown: ...

    async def create_pending_record(self, ctx: CheckoutContext, amount: AmountBreakdown) -> Transaction: ...

    async def charge(self, ctx: CheckoutContext, txn: Transaction, amount: AmountBreakdown) -> ChargeResult: ...


class BaseChannel(ABC):
    """Behaviour shared by every channel; subclasses only decide how to charge."""
    slug = ""
    gateway_slug: Optional[str] = None

    async def validate(self, ctx: CheckoutContext) -> None:
        validate_checkout(ctx.request, ctx.user)
        package = await get_active_package(ctx.db, ctx.request.package_id)
        if not package:
            raise NotFoundError("Package not found or inactive")
        ctx.package = package

    def compute_amount(self, ctx: CheckoutContext) -> AmountBreakdown:
        req = ctx.request
        amount = amount_for_period(ctx.package, req.billing_period, is_trial=req.is_trial)
        tier = pricing_tier(ctx.package, req.billing_period)
        original = (tier.regular_price if tier and tier.regular_price else amount)
        if req.is_trial:
            # Nothing is collected until the trial ends; the gateway bills `amount` from then on
            return AmountBreakdown(
                original_amount=original,
                final_amount=TRIAL_PLACEHOLDER_AMOUNT,
                recurring_amount=amount,
                currency=DEFAULT_CURRENCY,
                is_placeholder=True,
            )
        return AmountBreakdown(
            original_amount=original,
            final_amount=amount,
            recurring_amount=amount,
            currency=DEFAULT_CURRENCY,
        )

    async def create_pending_record(self, ctx: CheckoutContext, amount: AmountBreakdown) -> Transaction:
        req = ctx.request
        metadata = {
            "billing_period": req.billing_period,
            "original_amount": str(amount.original_amount),
            "final_amount": str(amount.final_amount),
            "recurring_amount": str(amount.recurring_amount),
            "promo_applied": amount.recurring_amount < amount.original_amount,
            "customer_info": req.customer_info.model_dump(),
            "user_email": ctx.user.email,
            "package_id": ctx.package.id,
            "package_name": ctx.package.name,
            "payment_type": "trial_payment" if req.is_trial else "regular_payment",
        }
        return await transaction_ledger.create_pending(
            ctx.db,
            user_id=ctx.user.id,
            package_id=ctx.package.id,
            gateway_id=ctx.gateway_id,
            amount=amount.final_amount,
            currency=amount.currency,
            payment_method=self.slug,
            metadata=metadata,
            transaction_type="trial" if req.is_trial else "subscription",
            is_trial=req.is_trial,
            now=ctx.now,
        )

    @abstractmethod
    async def charge(self, ctx: CheckoutContext, txn: Transaction, amount: AmountBreakdown) -> ChargeResult:
        ...


class StripeChannel(BaseChannel):
    """Hosted subscription checkout. The webhook confirms the payment later."""
    slug = "stripe"
    gateway_slug = "stripe"

    async def charge(self, ctx: CheckoutContext, txn: Transaction, amount: AmountBreakdown) -> ChargeResult:
        req = ctx.request
        tier = pricing_tier(ctx.package, req.billing_period)
        session = await ctx.gateway.create_subscription_checkout(CheckoutParams(
            transaction_id=txn.id,
            order_id=txn.order_id,
            user_id=ctx.user.id,
            customer_email=req.customer_info.email,
            package_id=ctx.package.id,
            package_name=ctx.package.name,
            billing_period=req.billing_period,
            amount=amount.recurring_amount,
            currency=amount.currency,
            gateway_price_id=tier.gateway_price_id if tier else None,
            is_trial=req.is_trial,
            trial_days=TRIAL_PERIOD_DAYS if req.is_trial else 0,
        ))
        return ChargeResult(
            outcome=session.outcome,
            redirect_url=session.checkout_url,
            message="Redirecting to secure checkout",
            extra={"checkout_session_id": session.session_id},
        )


class BankTransferChannel(BaseChannel):
    """Manual transfer: nothing to call, the row waits for a proof upload."""
    slug = "bank_transfer"
    gateway_slug = None

    async def validate(self, ctx: CheckoutContext) -> None:
        if ctx.request.is_trial:
            raise BusinessRuleError("Free trials require card checkout")
        await super().validate(ctx)

    async def charge(self, ctx: CheckoutContext, txn: Transaction, amount: AmountBreakdown) -> ChargeResult:
        return ChargeResult(
            outcome=None,
            message=(
                f"Transfer {amount.final_amount} {amount.currency} quoting {txn.order_id}, "
                "then upload your payment proof"
            ),
        )


CHANNELS: Dict[str, PaymentChannel] = {
    StripeChannel.slug: StripeChannel(),
    BankTransferChannel.slug: BankTransferChannel(),
}


def get_channel(payment_method: str) -> PaymentChannel:
    channel = CHANNELS.get(payment_method)
    if channel is None:
        raise ValidationError(f"Unsupported payment method: {payment_method}", field="payment_method")
    return channel


def is_manual_method(payment_method: Optional[str]) -> bool:
    """True for channels an operator settles instead of a gateway."""
    channel = CHANNELS.get(payment_method or "")
    return channel is not None and channel.gateway_slug is None


async def _manual_gateway_id(db: AsyncSession, slug: str) -> Optional[str]:
    return (
        await db.execute(
            select(PaymentGatewayRow.id).where(PaymentGatewayRow.slug == slug, PaymentGatewayRow.is_active.is_(True))
        )
    ).scalar_one_or_none()


# ================== SETTLEMENT ==================

async def settle_transaction(
    db: AsyncSession,
    transaction_id: str,
    outcome: GatewayOutcome,
    *,
    changed_by: str = audit_service.SYSTEM_ACTOR,
    now: Optional[datetime] = None,
) -> transaction_ledger.ReconcileResult:
    """
    Reconcile a ledger row and, when it has just become completed, grant the
    package in the same commit. Safe to call again with the same outcome.
    """
    now = now or utcnow()
    result = await transaction_ledger.reconcile(
        db, transaction_id, outcome, changed_by=changed_by, now=now, commit=False
    )
    txn = result.transaction

    if result.newly_completed:
        user = await db.get(User, txn.user_id)
        meta = txn.metadata_ or {}
        if user and txn.package_id:
            activate_entitlement(
                user,
                txn.package_id,
                meta.get("billing_period") or "monthly",
                now,
                is_trial=bool(meta.get("is_trial")),
            )
            logger.info("Activated package %s for user %s via %s", txn.package_id, user.id, txn.id)

    await transaction_ledger.commit_ledger(db, f"settle {txn.id}")

    audit_service.record(
        "settle_transaction",
        txn.user_id,
        "Applying gateway result to ledger and entitlement",
        SOURCE,
        {
            "transaction_id": txn.id,
            "gateway_status": outcome.raw_status,
            "from": result.previous_status,
            "to": txn.status,
            "entitlement_activated": result.newly_completed,
        },
    )
    return result


# ================== CHECKOUT ==================

async def process_checkout(
    db: AsyncSession,
    registry: GatewayRegistry,
    user_id: str,
    req: CheckoutRequest,
    now: Optional[datetime] = None,
) -> CheckoutResult:
    now = now or utcnow()
    channel = get_channel(req.payment_method)

    user = await db.get(User, user_id)
    if not user:
        raise NotFoundError("User not found")

    ctx = CheckoutContext(db=db, user=user, request=req, now=now)

    async with audit_service.audited(
        "validate_checkout", user_id, "Validating checkout request and package", SOURCE,
        package_id=req.package_id, billing_period=req.billing_period, payment_method=channel.slug,
    ):
        await channel.validate(ctx)

    async with audit_service.audited(
        "compute_amount", user_id, "Computing amount from package pricing", SOURCE,
        package_id=req.package_id, billing_period=req.billing_period, is_trial=req.is_trial,
    ) as audit:
        amount = channel.compute_amount(ctx)
        audit["amount"] = str(amount.final_amount)
        audit["currency"] = amount.currency

    if channel.gateway_slug:
        ctx.gateway = await registry.get(db, channel.gateway_slug)
        ctx.gateway_id = ctx.gateway.gateway_id
    else:
        ctx.gateway_id = await _manual_gateway_id(db, channel.slug)

    async with audit_service.audited(
        "create_pending_transaction", user_id, "Recording pending transaction before charging", SOURCE,
        package_id=req.package_id, gateway_id=ctx.gateway_id, amount=str(amount.final_amount),
    ) as audit:
        txn = await channel.create_pending_record(ctx, amount)
        audit["transaction_id"] = txn.id
        audit["order_id"] = txn.order_id

    try:
        async with audit_service.audited(
            "gateway_charge", user_id, "Calling payment channel", SOURCE,
            transaction_id=txn.id, payment_method=channel.slug,
        ):
            charge = await channel.charge(ctx, txn, amount)
    except ExternalGatewayError as exc:
        if exc.ambiguous:
            await transaction_ledger.record_gateway_error(db, txn.id, str(exc))
        else:
            await transaction_ledger.reconcile(
                db,
                txn.id,
                GatewayOutcome.from_raw("failure", {"error": str(exc), **exc.metadata}),
                changed_by=user_id,
                error_message=str(exc),
            )
        logger.error("Checkout %s failed at gateway: %s", txn.order_id, exc)
        raise

    if charge.outcome is not None:
        async with audit_service.audited(
            "reconcile_transaction", user_id, "Reconciling ledger with gateway response", SOURCE,
            transaction_id=txn.id, gateway_status=charge.outcome.raw_status,
        ):
            result = await settle_transaction(db, txn.id, charge.outcome, changed_by=user_id, now=now)
            txn = result.transaction

    if charge.extra:
        meta = dict(txn.metadata_ or {})
        meta.update(charge.extra)
        txn.metadata_ = meta
        await transaction_ledger.commit_ledger(db, f"checkout extras {txn.id}")

    logger.info("Checkout %s via %s is %s", txn.order_id, channel.slug, txn.status)
    return CheckoutResult(transaction=txn, redirect_url=charge.redirect_url, message=charge.message)
