# FILE: backend/services/cancellation_service.py
"""
Cancellation and refund policy.

Within the refund window (days active <= REFUND_WINDOW_DAYS) a cancellation
is immediate and the last completed payment is refunded in full. After it,
the subscription runs to the end of the paid period and nothing is refunded.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.core.config import REFUND_WINDOW_DAYS
from backend.core.database import utcnow
from backend.core.errors import BusinessRuleError, ExternalGatewayError, NotFoundError
from backend.models.subscription import Subscription
from backend.models.user import User
from backend.services import audit_service, transaction_ledger
from backend.services.billing_cycle import clear_entitlement
from backend.services.payment_gateway import CancelEffect, PaymentGateway

logger = logging.getLogger("billing.cancellation")

SOURCE = "billing.cancellation_service"

IMMEDIATE_WITH_REFUND = "immediate_with_refund"
SCHEDULED_NO_REFUND = "scheduled_no_refund"


def days_active(created_at: datetime, now: datetime) -> int:
    """Whole days elapsed, rounded down."""
    return max(0, (now - created_at).days)


@dataclass
class RefundWindow:
    days_active: int
    days_remaining: int
    is_eligible: bool
    refund_window_days: int
    created_at: datetime


def refund_window(created_at: datetime, now: datetime) -> RefundWindow:
    days = days_active(created_at, now)
    return RefundWindow(
        days_active=days,
        days_remaining=max(0, REFUND_WINDOW_DAYS - days),
        is_eligible=days <= REFUND_WINDOW_DAYS,
        refund_window_days=REFUND_WINDOW_DAYS,
        created_at=created_at,
    )


@dataclass
class CancellationResult:
    subscription_id: str
    action: str
    days_active: int
    refund_processed: bool
    refund: Optional[Decimal]
    effective_date: Optional[datetime]
    message: str
    refund_error: Optional[str] = None


async def get_user_subscription(db: AsyncSession, user_id: str) -> Optional[Subscription]:
    """The caller's live subscription, falling back to the most recent one."""
    rows = (
        await db.execute(
            select(Subscription)
            .where(Subscription.user_id == user_id)
            .order_by(Subscription.created_at.desc())
        )
    ).scalars().all()
    for sub in rows:
        if sub.status != "cancelled":
            return sub
    return rows[0] if rows else None


async def get_owned_subscription(db: AsyncSession, user_id: str, subscription_id: str) -> Subscription:
    sub = (
        await db.execute(
            select(Subscription).where(Subscription.id == subscription_id, Subscription.user_id == user_id)
        )
    ).scalar_one_or_none()
    if not sub:
        raise NotFoundError("Subscription not found")
    return sub


async def get_refund_window_info(
    db: AsyncSession,
    user_id: str,
    subscription_id: str,
    now: Optional[datetime] = None,
) -> RefundWindow:
    sub = await get_owned_subscription(db, user_id, subscription_id)
    return refund_window(sub.created_at, now or utcnow())


async def cancel_subscription(
    db: AsyncSession,
    gateway: PaymentGateway,
    user_id: str,
    subscription_id: str,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> CancellationResult:
    now = now or utcnow()
    sub = await get_owned_subscription(db, user_id, subscription_id)

    if sub.status == "cancelled":
        raise BusinessRuleError("Subscription is already cancelled")
    if sub.cancel_at_period_end:
        raise BusinessRuleError("Subscription is already scheduled to cancel at the end of the period")

    days = days_active(sub.created_at, now)
    if days <= REFUND_WINDOW_DAYS:
        return await _cancel_immediately(db, gateway, sub, user_id, days, reason, now)
    return await _cancel_at_period_end(db, gateway, sub, user_id, days, reason, now)


async def _cancel_immediately(
    db: AsyncSession,
    gateway: PaymentGateway,
    sub: Subscription,
    user_id: str,
    days: int,
    reason: Optional[str],
    now: datetime,
) -> CancellationResult:
    async with audit_service.audited(
        "cancel_subscription_immediate", user_id,
        "Cancelling within the refund window with a full refund", SOURCE,
        subscription_id=sub.id, gateway_subscription_id=sub.gateway_subscription_id, days_active=days,
    ) as audit:
        await gateway.cancel_subscription(sub.gateway_subscription_id, CancelEffect.IMMEDIATELY)

        refund_amount = Decimal("0.00")
        refund_processed = False
        refund_error = None

        txn = await transaction_ledger.latest_completed_for_subscription(db, sub.id)
        if txn is None:
            logger.warning("No completed transaction found to refund for subscription %s", sub.id)
        elif transaction_ledger.amount_of(txn) == 0:
            # Trial checkout: nothing was collected, so there is nothing to refund
            logger.info("Transaction %s charged nothing, skipping refund for subscription %s", txn.id, sub.id)
        elif not txn.external_transaction_id:
            refund_error = f"Transaction {txn.id} has no gateway id to refund against"
            logger.error(refund_error)
        else:
            try:
                refund = await gateway.create_refund_adjustment(
                    txn.external_transaction_id,
                    reason or f"Cancelled within {REFUND_WINDOW_DAYS}-day refund window",
                )
            except ExternalGatewayError as exc:
                # The subscription is already cancelled at the gateway; finish locally and flag the refund
                refund_error = str(exc)
                logger.critical(
                    "Refund failed for transaction %s (subscription %s): %s",
                    txn.id, sub.id, exc, exc_info=exc,
                )
            else:
                refund_amount = refund.amount if refund.amount is not None else transaction_ledger.amount_of(txn)
                refund_processed = True
                await transaction_ledger.mark_refunded(
                    db,
                    txn.id,
                    {"refund_id": refund.id, "status": refund.status, "amount": str(refund_amount), "raw": refund.raw},
                    changed_by=user_id,
                    reason="Refunded on cancellation within refund window",
                    now=now,
                    commit=False,
                )

        sub.status = "cancelled"
        sub.cancel_at_period_end = False
        sub.canceled_at = now
        sub.updated_at = now

        user = await db.get(User, sub.user_id)
        if user:
            clear_entitlement(user, now)

        await transaction_ledger.commit_ledger(db, f"cancel subscription {sub.id}")

        audit["refund_processed"] = refund_processed
        audit["refund_amount"] = str(refund_amount)
        if refund_error:
            audit["refund_error"] = refund_error

    message = "Subscription cancelled immediately."
    if refund_processed:
        message += f" A refund of {refund_amount} has been issued."
    elif refund_error:
        message += " The refund could not be processed automatically; our team has been notified."

    return CancellationResult(
        subscription_id=sub.id,
        action=IMMEDIATE_WITH_REFUND,
        days_active=days,
        refund_processed=refund_processed,
        refund=refund_amount if refund_processed else None,
        effective_date=now,
        message=message,
        refund_error=refund_error,
    )


async def _cancel_at_period_end(
    db: AsyncSession,
    gateway: PaymentGateway,
    sub: Subscription,
    user_id: str,
    days: int,
    reason: Optional[str],
    now: datetime,
) -> CancellationResult:
    async with audit_service.audited(
        "cancel_subscription_scheduled", user_id,
        "Scheduling cancellation at the end of the billing period", SOURCE,
        subscription_id=sub.id, gateway_subscription_id=sub.gateway_subscription_id, days_active=days,
        reason=reason,
    ):
        remote = await gateway.cancel_subscription(sub.gateway_subscription_id, CancelEffect.NEXT_BILLING_PERIOD)

        sub.cancel_at_period_end = True
        sub.canceled_at = now
        sub.updated_at = now
        if remote.current_period_end:
            sub.current_period_end = remote.current_period_end
        await transaction_ledger.commit_ledger(db, f"schedule cancel {sub.id}")

    effective = sub.current_period_end
    return CancellationResult(
        subscription_id=sub.id,
        action=SCHEDULED_NO_REFUND,
        days_active=days,
        refund_processed=False,
        refund=None,
        effective_date=effective,
        message=(
            f"Your subscription will end on {effective.date().isoformat()}." if effective
            else "Your subscription will end at the close of the current billing period."
        ),
    )


async def pause_subscription(
    db: AsyncSession,
    gateway: PaymentGateway,
    user_id: str,
    subscription_id: str,
    now: Optional[datetime] = None,
) -> Subscription:
    now = now or utcnow()
    sub = await get_owned_subscription(db, user_id, subscription_id)
    if sub.status != "active":
        raise BusinessRuleError(f"Only active subscriptions can be paused (status: {sub.status})")

    async with audit_service.audited(
        "pause_subscription", user_id, "Pausing subscription collection", SOURCE, subscription_id=sub.id,
    ):
        await gateway.pause_subscription(sub.gateway_subscription_id)
        sub.status = "paused"
        sub.paused_at = now
        sub.updated_at = now
        await transaction_ledger.commit_ledger(db, f"pause {sub.id}")
    return sub


async def resume_subscription(
    db: AsyncSession,
    gateway: PaymentGateway,
    user_id: str,
    subscription_id: str,
    now: Optional[datetime] = None,
) -> Subscription:
    now = now or utcnow()
    sub = await get_owned_subscription(db, user_id, subscription_id)
    if sub.status != "paused":
        raise BusinessRuleError(f"Only paused subscriptions can be resumed (status: {sub.status})")

    async with audit_service.audited(
        "resume_subscription", user_id, "Resuming subscription collection", SOURCE, subscription_id=sub.id,
    ):
        remote = await gateway.resume_subscription(sub.gateway_subscription_id)
        sub.status = "active"
        sub.paused_at = None
        sub.updated_at = now
        if remote.current_period_end:
            sub.current_period_end = remote.current_period_end
        await transaction_ledger.commit_ledger(db, f"resume {sub.id}")
    return sub
