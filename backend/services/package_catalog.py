# FILE: backend/services/package_catalog.py
"""Read-only lookups over the package catalog."""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.models.package import Package

CENTS = Decimal("0.01")


def to_money(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value)).quantize(CENTS)
    except (InvalidOperation, ValueError):
        return None


@dataclass(frozen=True)
class PricingTier:
    billing_period: str
    regular_price: Optional[Decimal]
    promo_price: Optional[Decimal] = None
    gateway_price_id: Optional[str] = None


def pricing_tier(package: Package, billing_period: str) -> Optional[PricingTier]:
    """
    Returns the tier for one billing period, or None.

    pricing_tiers is normally a dict keyed by period; older rows store a list
    of {"billing_period": ..., "price": ...} entries.
    """
    tiers = package.pricing_tiers
    if not tiers:
        return None

    if isinstance(tiers, list):
        for t in tiers:
            if isinstance(t, dict) and t.get("billing_period") == billing_period:
                return PricingTier(
                    billing_period=billing_period,
                    regular_price=to_money(t.get("regular_price", t.get("price"))),
                    promo_price=to_money(t.get("promo_price")),
                    gateway_price_id=t.get("gateway_price_id"),
                )
        return None

    data = tiers.get(billing_period)
    if not isinstance(data, dict):
        return None
    return PricingTier(
        billing_period=billing_period,
        regular_price=to_money(data.get("regular_price")),
        promo_price=to_money(data.get("promo_price")),
        gateway_price_id=data.get("gateway_price_id"),
    )


def _active():
    return (Package.is_active.is_(True), Package.deleted_at.is_(None))


async def get_active_package(db: AsyncSession, package_id: str) -> Optional[Package]:
    return (
        await db.execute(
            select(Package).where(Package.id == package_id, *_active())
        )
    ).scalar_one_or_none()


async def get_package_by_slug(db: AsyncSession, slug: str) -> Optional[Package]:
    return (
        await db.execute(
            select(Package).where(Package.slug == slug, *_active())
        )
    ).scalar_one_or_none()


async def list_active_packages(db: AsyncSession) -> List[Package]:
    rows = (
        await db.execute(
            select(Package)
            .where(*_active())
            .order_by(Package.sort_order, Package.name)
        )
    ).scalars().all()
    return list(rows)
