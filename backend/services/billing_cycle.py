# FILE: backend/services/billing_cycle.py
"""
Billing cycle calculator.

Date arithmetic is calendar aware: adding a month to Jan 31 lands on the last
day of February (clamped), never spills over into March. The same applies to
Feb 29 + 1 year.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from dateutil.relativedelta import relativedelta
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from backend.core.config import DEFAULT_CURRENCY, FREE_PACKAGE_SLUG, TRIAL_PERIOD_DAYS
from backend.core.database import utcnow
from backend.core.errors import BusinessRuleError, NotFoundError, ValidationError
from backend.models.package import Package
from backend.models.subscription import Subscription
from backend.models.transaction import Transaction
from backend.models.user import User
from backend.services import audit_service
from backend.services.package_catalog import get_package_by_slug, pricing_tier

logger = logging.getLogger("billing.cycle")


class BillingPeriod(str, Enum):
    MONTHLY = "monthly"
    ANNUAL = "annual"


def parse_period(value: str) -> BillingPeriod:
    try:
        return BillingPeriod(value)
    except ValueError:
        raise ValidationError(f"Unsupported billing period: {value}", field="billing_period")


def next_billing_date(start: datetime, period: str) -> datetime:
    if parse_period(period) is BillingPeriod.MONTHLY:
        return start + relativedelta(months=1)
    return start + relativedelta(years=1)


def amount_for_period(package: Package, period: str, is_trial: bool = False) -> Decimal:
    """Promo price when set and nonzero, else the regular price."""
    tier = pricing_tier(package, period)
    if tier is not None:
        if tier.promo_price:
            return tier.promo_price
        if tier.regular_price:
            return tier.regular_price
    if is_trial:
        return Decimal("0.00")
    raise BusinessRuleError(f"No pricing found for {period} billing period")


@dataclass
class BillingCycle:
    user_id: str
    package_id: str
    current_period_start: Optional[datetime]
    current_period_end: datetime
    next_billing_date: datetime
    billing_period: str
    amount: Optional[Decimal]
    currency: str
    is_active: bool


async def _billing_period_for(db: AsyncSession, user: User) -> str:
    sub = (
        await db.execute(
            select(Subscription)
            .where(Subscription.user_id == user.id, Subscription.status != "cancelled")
            .order_by(Subscription.created_at.desc())
            .limit(1)
        )
    ).scalar_one_or_none()
    if sub and sub.billing_period:
        return sub.billing_period

    txn = (
        await db.execute(
            select(Transaction)
            .where(Transaction.user_id == user.id, Transaction.status == "completed")
            .order_by(Transaction.created_at.desc())
            .limit(1)
        )
    ).scalar_one_or_none()
    period = ((txn.metadata_ or {}).get("billing_period") if txn else None) or BillingPeriod.MONTHLY.value
    return period if period in BillingPeriod._value2member_map_ else BillingPeriod.MONTHLY.value


def _cycle_for(user: User, package: Optional[Package], period: str, now: datetime, active: Optional[bool] = None) -> BillingCycle:
    start = user.subscription_start_date
    end = user.subscription_end_date
    anchor = start or now

    amount = None
    if package is not None:
        try:
            amount = amount_for_period(package, period)
        except BusinessRuleError:
            amount = None

    return BillingCycle(
        user_id=user.id,
        package_id=user.package_id,
        current_period_start=start,
        current_period_end=end or next_billing_date(anchor, period),
        next_billing_date=end or next_billing_date(anchor, period),
        billing_period=period,
        amount=amount,
        currency=(package.currency if package else None) or DEFAULT_CURRENCY,
        is_active=active if active is not None else (end is None or end > now),
    )


async def get_current_billing_cycle(db: AsyncSession, user_id: str, now: Optional[datetime] = None) -> Optional[BillingCycle]:
    now = now or utcnow()
    user = await db.get(User, user_id)
    if not user or not user.package_id:
        return None
    package = await db.get(Package, user.package_id)
    period = await _billing_period_for(db, user)
    return _cycle_for(user, package, period, now)


async def _profiles_with_package(db: AsyncSession, *conditions) -> List[tuple]:
    rows = (
        await db.execute(
            select(User, Package)
            .join(Package, Package.id == User.package_id)
            .where(User.package_id.is_not(None), *conditions)
            .order_by(User.subscription_end_date)
        )
    ).all()
    return [(u, p) for u, p in rows]


async def get_upcoming_renewals(db: AsyncSession, days_ahead: int = 3, now: Optional[datetime] = None) -> List[BillingCycle]:
    now = now or utcnow()
    horizon = now + timedelta(days=days_ahead)
    rows = await _profiles_with_package(
        db,
        User.subscription_end_date >= now,
        User.subscription_end_date <= horizon,
    )
    return [_cycle_for(u, p, await _billing_period_for(db, u), now, active=True) for u, p in rows]


async def get_expired_subscriptions(db: AsyncSession, now: Optional[datetime] = None) -> List[BillingCycle]:
    now = now or utcnow()
    rows = await _profiles_with_package(db, User.subscription_end_date < now)
    return [_cycle_for(u, p, await _billing_period_for(db, u), now, active=False) for u, p in rows]


async def suspend_expired_subscriptions(db: AsyncSession, now: Optional[datetime] = None) -> int:
    """
    Move every expired entitlement to the free package and clear its end date.
    Re-running is a no-op: downgraded users no longer have an end date.
    """
    now = now or utcnow()
    free = await get_package_by_slug(db, FREE_PACKAGE_SLUG)
    if not free:
        raise NotFoundError(f"Free package '{FREE_PACKAGE_SLUG}' not found")

    async with audit_service.audited(
        "suspend_expired_subscriptions",
        None,
        "Downgrading expired entitlements to the free package",
        "billing_cycle.suspend_expired_subscriptions",
        free_package_id=free.id,
        cutoff=now.isoformat(),
    ) as audit:
        user_ids = (
            await db.execute(
                select(User.id).where(
                    User.package_id.is_not(None),
                    User.subscription_end_date < now,
                )
            )
        ).scalars().all()

        if user_ids:
            await db.execute(
                update(User)
                .where(User.id.in_(user_ids))
                .values(package_id=free.id, subscription_end_date=None, updated_at=now)
            )

        # Scheduled cancellations whose period has elapsed are now final
        await db.execute(
            update(Subscription)
            .where(
                Subscription.status == "active",
                Subscription.cancel_at_period_end.is_(True),
                Subscription.current_period_end < now,
            )
            .values(status="cancelled", updated_at=now)
        )
        await db.commit()
        audit["affected_users"] = len(user_ids)

    if user_ids:
        logger.info("Suspended %d expired subscriptions", len(user_ids))
    return len(user_ids)


def activate_entitlement(user: User, package_id: str, period: str, now: datetime, is_trial: bool = False) -> None:
    """
    Grant a package after a confirmed payment. Caller commits.
    """
    user.package_id = package_id
    user.subscription_start_date = now
    if is_trial:
        user.subscription_end_date = now + timedelta(days=TRIAL_PERIOD_DAYS)
        user.trial_used = True
    else:
        user.subscription_end_date = next_billing_date(now, period)
    user.updated_at = now


def cycle_end_after(anchor: datetime, period: str, after: datetime) -> datetime:
    """
    First cycle boundary counted from `anchor` that falls after `after`.
    Counting from the anchor keeps month-end days: Jan 31 -> Feb 29 -> Mar 31.
    """
    step = relativedelta(months=1) if parse_period(period) is BillingPeriod.MONTHLY else relativedelta(years=1)
    cycles = 1
    while anchor + step * cycles <= after:
        cycles += 1
    return anchor + step * cycles


def extend_entitlement(user: User, period: str, now: datetime, period_end: Optional[datetime] = None) -> None:
    """
    Push the end date one cycle forward after a confirmed renewal charge. Caller commits.

    The gateway's own period end wins when it is known.
    """
    current = user.subscription_end_date
    anchor = user.subscription_start_date
    if period_end is not None:
        user.subscription_end_date = max(period_end, current) if current else period_end
    elif current is None or current < now:
        # lapsed: the new cycle starts today
        user.subscription_end_date = next_billing_date(now, period)
    elif anchor is not None and cycle_end_after(anchor, period, current - timedelta(seconds=1)) == current:
        user.subscription_end_date = cycle_end_after(anchor, period, current)
    else:
        # trial or off-cycle end date
        user.subscription_end_date = next_billing_date(current, period)
    user.updated_at = now


def clear_entitlement(user: User, now: datetime) -> None:
    """Drop the package immediately after a confirmed cancellation. Caller commits."""
    user.package_id = None
    user.subscription_end_date = now
    user.updated_at = now
