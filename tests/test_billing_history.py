import uuid
from datetime import timedelta
from decimal import Decimal

import pytest

from backend.models.gateway_transaction import GatewayTransaction
from backend.services import billing_history
from backend.services.billing_history import HistoryQuery, get_billing_history
from conftest import NOW, make_subscription, make_transaction, make_user


def _mirror_row(user_id, subscription_id, created_at, status="paid", amount="19.99"):
    return GatewayTransaction(
        id=str(uuid.uuid4()),
        user_id=user_id,
        subscription_id=subscription_id,
        gateway_transaction_id=f"in_{uuid.uuid4().hex[:10]}",
        amount=Decimal(amount),
        currency="USD",
        status=status,
        created_at=created_at,
        updated_at=created_at,
    )


@pytest.fixture
async def mixed_history(db, packages, user):
    sub = make_subscription(user.id, packages["pro"].id, NOW - timedelta(days=90), billing_period="annual")
    db.add(sub)
    ledger_statuses = ["completed", "failed", "pending", "proof_uploaded", "cancelled", "refunded", "completed"]
    for i, status in enumerate(ledger_statuses):
        db.add(make_transaction(
            user.id,
            package_id=packages["pro"].id,
            status=status,
            created_at=NOW - timedelta(days=2 * i),
            transaction_type="trial" if i == 6 else "subscription",
        ))
    for i, status in enumerate(["paid", "paid", "open", "void", "uncollectible"]):
        db.add(_mirror_row(user.id, sub.id, NOW - timedelta(days=2 * i + 1), status=status))

    # someone else's rows never leak in
    other = make_user("other@example.com")
    db.add(other)
    db.add(make_transaction(other.id, created_at=NOW))
    await db.commit()
    return sub


async def test_every_page_matches_global_order(session_factory, user, mixed_history):
    full = await get_billing_history(session_factory, HistoryQuery(user.id, page=1, limit=100))
    expected = [t.id for t in full.transactions]
    assert len(expected) == 12

    created = [t.created_at for t in full.transactions]
    assert created == sorted(created, reverse=True)

    seen = []
    for page in range(1, 5):
        resp = await get_billing_history(session_factory, HistoryQuery(user.id, page=page, limit=3))
        assert resp.pagination.total_pages == 4
        assert resp.pagination.has_prev is (page > 1)
        assert resp.pagination.has_next is (page < 4)
        seen.extend(t.id for t in resp.transactions)
    assert seen == expected


async def test_sources_are_normalized(session_factory, user, mixed_history):
    resp = await get_billing_history(session_factory, HistoryQuery(user.id, limit=100))
    mirror = [t for t in resp.transactions if t.source == "gateway"]

    assert {t.status for t in mirror} == {"completed", "pending", "cancelled", "failed"}
    assert all(t.billing_period == "annual" for t in mirror)
    assert all(t.package_name == "Pro" for t in mirror)
    assert all(t.amount == Decimal("19.99") for t in resp.transactions)


async def test_summary_covers_everything(session_factory, user, mixed_history):
    resp = await get_billing_history(session_factory, HistoryQuery(user.id, page=2, limit=2, status="failed"))
    summary = resp.summary

    assert summary.total_transactions == 12
    assert summary.completed_transactions == 4
    assert summary.failed_transactions == 2
    assert summary.pending_transactions == 3
    assert summary.cancelled_transactions == 2
    assert summary.refunded_transactions == 1
    assert summary.total_amount_spent == Decimal("79.96")


async def test_status_filter_applies_to_both_sources(session_factory, user, mixed_history):
    resp = await get_billing_history(session_factory, HistoryQuery(user.id, status="completed", limit=100))
    assert len(resp.transactions) == 4
    assert {t.source for t in resp.transactions} == {"ledger", "gateway"}
    assert all(t.status == "completed" for t in resp.transactions)


async def test_type_filter_drops_mirror(session_factory, user, mixed_history):
    resp = await get_billing_history(session_factory, HistoryQuery(user.id, transaction_type="trial", limit=100))
    assert len(resp.transactions) == 1
    assert resp.transactions[0].source == "ledger"
    assert resp.transactions[0].transaction_type == "trial"


async def test_cap_is_reported(session_factory, user, mixed_history, monkeypatch):
    monkeypatch.setattr(billing_history, "HISTORY_MAX_RECORDS_PER_SOURCE", 3)

    resp = await get_billing_history(session_factory, HistoryQuery(user.id, limit=100))

    assert len(resp.transactions) == 6
    assert resp.pagination.capped is True
    assert resp.pagination.actual_total == 12
    assert "12" in resp.pagination.cap_message
    assert resp.summary.total_transactions == 12


async def test_uncapped_has_no_cap_fields(session_factory, user, mixed_history):
    resp = await get_billing_history(session_factory, HistoryQuery(user.id))
    assert resp.pagination.capped is False
    assert resp.pagination.actual_total is None
    assert resp.pagination.cap_message is None


def test_query_clamps_paging():
    q = HistoryQuery("u", page=0, limit=500)
    assert q.page == 1
    assert q.limit == 100


async def test_empty_history(session_factory, user):
    resp = await get_billing_history(session_factory, HistoryQuery(user.id))
    assert resp.transactions == []
    assert resp.pagination.total_pages == 0
    assert resp.pagination.has_next is False
    assert resp.summary.total_amount_spent == Decimal("0.00")
