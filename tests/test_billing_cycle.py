from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from dateutil.relativedelta import relativedelta

from backend.core.errors import BusinessRuleError, NotFoundError, ValidationError
from backend.services import billing_cycle
from backend.services.billing_cycle import amount_for_period, next_billing_date
from conftest import NOW, make_package, make_subscription, make_transaction, make_user


def test_monthly_from_month_end_clamps_to_leap_day():
    assert next_billing_date(datetime(2024, 1, 31), "monthly") == datetime(2024, 2, 29)


def test_monthly_from_month_end_clamps_in_common_year():
    assert next_billing_date(datetime(2023, 1, 31), "monthly") == datetime(2023, 2, 28)


def test_annual_from_leap_day():
    assert next_billing_date(datetime(2024, 2, 29), "annual") == datetime(2025, 2, 28)


def test_monthly_keeps_time_of_day():
    assert next_billing_date(datetime(2024, 3, 15, 9, 30), "monthly") == datetime(2024, 4, 15, 9, 30)


def test_unknown_period_is_rejected():
    with pytest.raises(ValidationError):
        next_billing_date(datetime(2024, 1, 1), "weekly")


def test_amount_prefers_promo_price():
    pkg = make_package("pro", {"monthly": {"regular_price": 29.99, "promo_price": 19.99}})
    assert amount_for_period(pkg, "monthly") == Decimal("19.99")


def test_amount_ignores_zero_promo():
    pkg = make_package("starter", {"monthly": {"regular_price": 9.99, "promo_price": 0}})
    assert amount_for_period(pkg, "monthly") == Decimal("9.99")


def test_amount_missing_tier_raises():
    pkg = make_package("pro", {"monthly": {"regular_price": 29.99}})
    with pytest.raises(BusinessRuleError, match="No pricing found for annual"):
        amount_for_period(pkg, "annual")


def test_amount_missing_tier_is_zero_for_trials():
    pkg = make_package("pro", None)
    assert amount_for_period(pkg, "monthly", is_trial=True) == Decimal("0.00")


def test_amount_accepts_list_shaped_tiers():
    pkg = make_package("legacy", [{"billing_period": "annual", "price": "99.00"}])
    assert amount_for_period(pkg, "annual") == Decimal("99.00")


def test_activate_and_extend_entitlement():
    user = make_user()
    billing_cycle.activate_entitlement(user, "pkg-1", "monthly", datetime(2024, 1, 31))
    assert user.package_id == "pkg-1"
    assert user.subscription_end_date == datetime(2024, 2, 29)

    # renewal arrives before the end date: the Jan 31 anchor is kept
    billing_cycle.extend_entitlement(user, "monthly", datetime(2024, 2, 28))
    assert user.subscription_end_date == datetime(2024, 3, 31)
    billing_cycle.extend_entitlement(user, "monthly", datetime(2024, 3, 30))
    assert user.subscription_end_date == datetime(2024, 4, 30)

    # renewal arrives after a lapse: extend from now
    billing_cycle.extend_entitlement(user, "monthly", datetime(2024, 5, 3))
    assert user.subscription_end_date == datetime(2024, 6, 3)


def test_trial_activation_marks_trial_used():
    user = make_user(trial_used=False)
    billing_cycle.activate_entitlement(user, "pkg-1", "monthly", NOW, is_trial=True)
    assert user.trial_used is True
    assert user.subscription_end_date == NOW + timedelta(days=3)


def test_renewal_after_trial_counts_from_trial_end():
    user = make_user(trial_used=False)
    billing_cycle.activate_entitlement(user, "pkg-1", "monthly", NOW, is_trial=True)
    billing_cycle.extend_entitlement(user, "monthly", NOW + timedelta(days=3))
    assert user.subscription_end_date == NOW + timedelta(days=3) + relativedelta(months=1)


def test_gateway_period_end_wins():
    user = make_user(subscription_start_date=datetime(2024, 1, 31), subscription_end_date=datetime(2024, 2, 29))
    billing_cycle.extend_entitlement(user, "monthly", datetime(2024, 2, 29), period_end=datetime(2024, 3, 31, 8, 0))
    assert user.subscription_end_date == datetime(2024, 3, 31, 8, 0)


@pytest.mark.parametrize("period,after,expected", [
    ("monthly", datetime(2024, 2, 29), datetime(2024, 3, 31)),
    ("monthly", datetime(2024, 4, 1), datetime(2024, 4, 30)),
    ("annual", datetime(2025, 1, 31), datetime(2026, 1, 31)),
])
def test_cycle_end_after_keeps_anchor(period, after, expected):
    assert billing_cycle.cycle_end_after(datetime(2024, 1, 31), period, after) == expected


async def test_current_cycle_uses_subscription_period(db, packages, user):
    user.package_id = packages["pro"].id
    user.subscription_start_date = NOW
    user.subscription_end_date = datetime(2025, 6, 15, 12, 0, 0)
    db.add(make_subscription(user.id, packages["pro"].id, NOW, billing_period="annual"))
    await db.commit()

    cycle = await billing_cycle.get_current_billing_cycle(db, user.id, now=NOW)

    assert cycle.billing_period == "annual"
    assert cycle.amount == Decimal("299.99")
    assert cycle.next_billing_date == datetime(2025, 6, 15, 12, 0, 0)
    assert cycle.is_active


async def test_current_cycle_falls_back_to_last_payment(db, packages, user):
    user.package_id = packages["pro"].id
    user.subscription_end_date = NOW + timedelta(days=10)
    db.add(make_transaction(user.id, package_id=packages["pro"].id, metadata_={"billing_period": "annual"}))
    await db.commit()

    cycle = await billing_cycle.get_current_billing_cycle(db, user.id, now=NOW)
    assert cycle.billing_period == "annual"


async def test_current_cycle_none_without_package(db, user):
    assert await billing_cycle.get_current_billing_cycle(db, user.id, now=NOW) is None


async def test_upcoming_and_expired(db, packages):
    soon = make_user("soon@example.com", package_id=packages["pro"].id, subscription_end_date=NOW + timedelta(days=2))
    later = make_user("later@example.com", package_id=packages["pro"].id, subscription_end_date=NOW + timedelta(days=20))
    gone = make_user("gone@example.com", package_id=packages["pro"].id, subscription_end_date=NOW - timedelta(days=1))
    db.add_all([soon, later, gone])
    await db.commit()

    upcoming = await billing_cycle.get_upcoming_renewals(db, days_ahead=3, now=NOW)
    expired = await billing_cycle.get_expired_subscriptions(db, now=NOW)

    assert [c.user_id for c in upcoming] == [soon.id]
    assert [c.user_id for c in expired] == [gone.id]
    assert expired[0].is_active is False


async def test_suspend_expired_is_idempotent(db, packages):
    gone = make_user("gone@example.com", package_id=packages["pro"].id, subscription_end_date=NOW - timedelta(days=1))
    active = make_user("active@example.com", package_id=packages["pro"].id, subscription_end_date=NOW + timedelta(days=5))
    db.add_all([gone, active])
    await db.commit()

    assert await billing_cycle.suspend_expired_subscriptions(db, now=NOW) == 1
    assert await billing_cycle.suspend_expired_subscriptions(db, now=NOW) == 0

    await db.refresh(gone)
    await db.refresh(active)
    assert gone.package_id == packages["free"].id
    assert gone.subscription_end_date is None
    assert active.package_id == packages["pro"].id


async def test_suspend_finalizes_scheduled_cancellations(db, packages, user):
    sub = make_subscription(
        user.id, packages["pro"].id, NOW - timedelta(days=40),
        cancel_at_period_end=True, current_period_end=NOW - timedelta(hours=1),
    )
    db.add(sub)
    await db.commit()

    await billing_cycle.suspend_expired_subscriptions(db, now=NOW)

    await db.refresh(sub)
    assert sub.status == "cancelled"


async def test_suspend_without_free_package(db):
    with pytest.raises(NotFoundError):
        await billing_cycle.suspend_expired_subscriptions(db, now=NOW)
