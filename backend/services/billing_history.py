# FILE: backend/services/billing_history.py
"""
Billing history across the internal ledger and the gateway mirror.

The two tables are fetched independently (bounded per source), normalized into
one shape, merged newest first and paginated over the merged sequence. Summary
numbers come from aggregate queries so they do not depend on the caps.
"""

import asyncio
import logging
import math
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from backend.core.config import (
    DEFAULT_CURRENCY,
    HISTORY_DEFAULT_PAGE_SIZE,
    HISTORY_MAX_PAGE_SIZE,
    HISTORY_MAX_RECORDS_PER_SOURCE,
)
from backend.models.gateway_transaction import GatewayTransaction
from backend.models.package import Package
from backend.models.payment_gateway import PaymentGateway as PaymentGatewayRow
from backend.models.subscription import Subscription
from backend.models.transaction import Transaction
from backend.schemas.billing import (
    HistoryPagination,
    HistoryResponse,
    HistorySummary,
    NormalizedTransaction,
)
from backend.services import audit_service
from backend.services.package_catalog import to_money

logger = logging.getLogger("billing.history")

SOURCE = "billing.billing_history"

# Gateway invoice vocabulary -> ledger vocabulary
MIRROR_STATUS_MAP = {
    "paid": "completed",
    "completed": "completed",
    "open": "pending",
    "draft": "pending",
    "uncollectible": "failed",
    "failed": "failed",
    "void": "cancelled",
    "refunded": "refunded",
}

MIRROR_TRANSACTION_TYPE = "subscription"


def mirror_statuses_for(status: str) -> List[str]:
    return [raw for raw, internal in MIRROR_STATUS_MAP.items() if internal == status]


@dataclass
class HistoryQuery:
    user_id: str
    page: int = 1
    limit: int = HISTORY_DEFAULT_PAGE_SIZE
    status: Optional[str] = None
    transaction_type: Optional[str] = None

    def __post_init__(self):
        self.page = max(1, int(self.page or 1))
        self.limit = max(1, min(int(self.limit or HISTORY_DEFAULT_PAGE_SIZE), HISTORY_MAX_PAGE_SIZE))

    @property
    def includes_mirror(self) -> bool:
        return not self.transaction_type or self.transaction_type == MIRROR_TRANSACTION_TYPE


@dataclass
class SourceStats:
    total: int = 0
    by_status: Dict[str, int] = field(default_factory=dict)
    completed_amount: Decimal = Decimal("0.00")


# ================== LEDGER SOURCE ==================

def _ledger_filters(q: HistoryQuery) -> list:
    conds = [Transaction.user_id == q.user_id]
    if q.status:
        conds.append(Transaction.status == q.status)
    if q.transaction_type:
        conds.append(Transaction.transaction_type == q.transaction_type)
    return conds


async def _fetch_ledger(session_factory: async_sessionmaker, q: HistoryQuery) -> Tuple[List[NormalizedTransaction], int]:
    conds = _ledger_filters(q)
    async with session_factory() as db:
        rows = (
            await db.execute(
                select(Transaction, Package.name, PaymentGatewayRow.name)
                .outerjoin(Package, Package.id == Transaction.package_id)
                .outerjoin(PaymentGatewayRow, PaymentGatewayRow.id == Transaction.gateway_id)
                .where(*conds)
                .order_by(Transaction.created_at.desc())
                .limit(HISTORY_MAX_RECORDS_PER_SOURCE)
            )
        ).all()
        count = (
            await db.execute(select(func.count()).select_from(Transaction).where(*conds))
        ).scalar_one()

    items = [
        NormalizedTransaction(
            id=txn.id,
            order_id=txn.order_id,
            source="ledger",
            transaction_type=txn.transaction_type,
            status=txn.status,
            amount=to_money(txn.amount) or Decimal("0.00"),
            currency=txn.currency or DEFAULT_CURRENCY,
            payment_method=txn.payment_method,
            package_name=package_name or "Unknown Package",
            gateway_name=gateway_name or txn.payment_method,
            billing_period=(txn.metadata_ or {}).get("billing_period") or "monthly",
            created_at=txn.created_at,
            updated_at=txn.updated_at,
        )
        for txn, package_name, gateway_name in rows
    ]
    return items, count


# ================== MIRROR SOURCE ==================

def _mirror_filters(q: HistoryQuery) -> list:
    conds = [GatewayTransaction.user_id == q.user_id]
    if q.status:
        conds.append(GatewayTransaction.status.in_(mirror_statuses_for(q.status)))
    return conds


async def _fetch_mirror(session_factory: async_sessionmaker, q: HistoryQuery) -> Tuple[List[NormalizedTransaction], int]:
    if not q.includes_mirror:
        return [], 0

    conds = _mirror_filters(q)
    async with session_factory() as db:
        rows = (
            await db.execute(
                select(GatewayTransaction, Package.name, Subscription.billing_period)
                .outerjoin(Subscription, Subscription.id == GatewayTransaction.subscription_id)
                .outerjoin(Package, Package.id == Subscription.package_id)
                .where(*conds)
                .order_by(GatewayTransaction.created_at.desc())
                .limit(HISTORY_MAX_RECORDS_PER_SOURCE)
            )
        ).all()
        count = (
            await db.execute(select(func.count()).select_from(GatewayTransaction).where(*conds))
        ).scalar_one()

    items = [
        NormalizedTransaction(
            id=gt.id,
            order_id=gt.invoice_number or gt.gateway_transaction_id,
            source="gateway",
            transaction_type=MIRROR_TRANSACTION_TYPE,
            status=MIRROR_STATUS_MAP.get(gt.status, "pending"),
            amount=to_money(gt.amount) or Decimal("0.00"),
            currency=gt.currency or DEFAULT_CURRENCY,
            payment_method=gt.payment_method or "card",
            package_name=package_name or "Subscription renewal",
            gateway_name="Stripe",
            billing_period=billing_period or "monthly",
            created_at=gt.created_at,
            updated_at=gt.updated_at,
        )
        for gt, package_name, billing_period in rows
    ]
    return items, count


# ================== STATISTICS ==================

async def _scalar(session_factory: async_sessionmaker, stmt):
    async with session_factory() as db:
        return (await db.execute(stmt)).scalar()


async def _grouped(session_factory: async_sessionmaker, stmt) -> Dict[str, int]:
    async with session_factory() as db:
        return {status: int(n) for status, n in (await db.execute(stmt)).all()}


async def _ledger_stats(session_factory: async_sessionmaker, user_id: str) -> SourceStats:
    total, by_status, spent = await asyncio.gather(
        _scalar(session_factory, select(func.count()).select_from(Transaction).where(Transaction.user_id == user_id)),
        _grouped(
            session_factory,
            select(Transaction.status, func.count())
            .where(Transaction.user_id == user_id)
            .group_by(Transaction.status),
        ),
        _scalar(
            session_factory,
            select(func.coalesce(func.sum(Transaction.amount), 0))
            .where(Transaction.user_id == user_id, Transaction.status == "completed"),
        ),
    )
    return SourceStats(total=int(total or 0), by_status=by_status, completed_amount=to_money(spent) or Decimal("0.00"))


async def _mirror_stats(session_factory: async_sessionmaker, user_id: str) -> SourceStats:
    completed_words = mirror_statuses_for("completed")
    total, raw_by_status, spent = await asyncio.gather(
        _scalar(
            session_factory,
            select(func.count()).select_from(GatewayTransaction).where(GatewayTransaction.user_id == user_id),
        ),
        _grouped(
            session_factory,
            select(GatewayTransaction.status, func.count())
            .where(GatewayTransaction.user_id == user_id)
            .group_by(GatewayTransaction.status),
        ),
        _scalar(
            session_factory,
            select(func.coalesce(func.sum(GatewayTransaction.amount), 0))
            .where(GatewayTransaction.user_id == user_id, GatewayTransaction.status.in_(completed_words)),
        ),
    )
    by_status: Dict[str, int] = {}
    for raw, n in raw_by_status.items():
        internal = MIRROR_STATUS_MAP.get(raw, "pending")
        by_status[internal] = by_status.get(internal, 0) + n
    return SourceStats(total=int(total or 0), by_status=by_status, completed_amount=to_money(spent) or Decimal("0.00"))


def _summary(*sources: SourceStats) -> HistorySummary:
    def count(status: str) -> int:
        return sum(s.by_status.get(status, 0) for s in sources)

    return HistorySummary(
        total_transactions=sum(s.total for s in sources),
        completed_transactions=count("completed"),
        failed_transactions=count("failed"),
        pending_transactions=count("pending") + count("proof_uploaded"),
        cancelled_transactions=count("cancelled"),
        refunded_transactions=count("refunded"),
        total_amount_spent=sum((s.completed_amount for s in sources), Decimal("0.00")),
    )


# ================== MERGE ==================

def merge_and_paginate(
    ledger: List[NormalizedTransaction],
    mirror: List[NormalizedTransaction],
    page: int,
    limit: int,
) -> Tuple[List[NormalizedTransaction], int]:
    merged = sorted(ledger + mirror, key=lambda t: (t.created_at, t.id), reverse=True)
    start = (page - 1) * limit
    return merged[start:start + limit], len(merged)


async def get_billing_history(session_factory: async_sessionmaker, q: HistoryQuery) -> HistoryResponse:
    async with audit_service.audited(
        "get_billing_history", q.user_id, "User fetching merged billing history", SOURCE,
        page=q.page, limit=q.limit, status=q.status, type=q.transaction_type,
    ) as audit:
        (ledger, ledger_count), (mirror, mirror_count), ledger_stats, mirror_stats = await asyncio.gather(
            _fetch_ledger(session_factory, q),
            _fetch_mirror(session_factory, q),
            _ledger_stats(session_factory, q.user_id),
            _mirror_stats(session_factory, q.user_id),
        )
        audit["ledger_rows"] = len(ledger)
        audit["mirror_rows"] = len(mirror)

    page_items, total_items = merge_and_paginate(ledger, mirror, q.page, q.limit)
    total_pages = math.ceil(total_items / q.limit) if total_items else 0

    actual_total = ledger_count + mirror_count
    capped = ledger_count > HISTORY_MAX_RECORDS_PER_SOURCE or mirror_count > HISTORY_MAX_RECORDS_PER_SOURCE
    if capped:
        logger.info(
            "History for %s capped at %d per source (ledger=%d, mirror=%d)",
            q.user_id, HISTORY_MAX_RECORDS_PER_SOURCE, ledger_count, mirror_count,
        )

    return HistoryResponse(
        transactions=page_items,
        summary=_summary(ledger_stats, mirror_stats),
        pagination=HistoryPagination(
            current_page=q.page,
            total_pages=total_pages,
            total_items=total_items,
            items_per_page=q.limit,
            has_next=q.page < total_pages,
            has_prev=q.page > 1,
            capped=capped,
            actual_total=actual_total if capped else None,
            cap_message=(
                f"Showing the most recent {HISTORY_MAX_RECORDS_PER_SOURCE} records per source "
                f"out of {actual_total} transactions"
            ) if capped else None,
        ),
    )
