# FILE: backend/services/transaction_ledger.py
"""
Transaction ledger and its state machine.

    pending -> completed | failed | cancelled | refunded | proof_uploaded
    proof_uploaded -> completed | failed
    completed -> refunded (explicit refund paths only)

Every status change appends a TransactionHistory row.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from backend.core.config import STALE_PENDING_HOURS
from backend.core.database import utcnow
from backend.core.errors import BusinessRuleError, DatabaseError, NotFoundError, ValidationError
from backend.models.transaction import Transaction
from backend.models.transaction_history import TransactionHistory
from backend.services.audit_service import SYSTEM_ACTOR
from backend.services.package_catalog import to_money
from backend.services.payment_gateway import GatewayOutcome, GatewayStatus

logger = logging.getLogger("billing.ledger")

PENDING = "pending"
PROOF_UPLOADED = "proof_uploaded"
COMPLETED = "completed"
FAILED = "failed"
CANCELLED = "cancelled"
REFUNDED = "refunded"

STATUSES = (PENDING, PROOF_UPLOADED, COMPLETED, FAILED, CANCELLED, REFUNDED)
TERMINAL = (COMPLETED, FAILED, CANCELLED, REFUNDED)

ALLOWED_TRANSITIONS = {
    PENDING: {COMPLETED, FAILED, CANCELLED, REFUNDED, PROOF_UPLOADED},
    PROOF_UPLOADED: {COMPLETED, FAILED},
    COMPLETED: {REFUNDED},
    FAILED: set(),
    CANCELLED: set(),
    REFUNDED: set(),
}

GATEWAY_STATUS_MAP = {
    GatewayStatus.CAPTURE: COMPLETED,
    GatewayStatus.SETTLEMENT: COMPLETED,
    GatewayStatus.PENDING: PENDING,
    GatewayStatus.DENY: FAILED,
    GatewayStatus.CANCEL: FAILED,
    GatewayStatus.EXPIRE: FAILED,
    GatewayStatus.FAILURE: FAILED,
    GatewayStatus.UNRECOGNIZED: PENDING,
}


@dataclass
class ReconcileResult:
    transaction: Transaction
    previous_status: str
    changed: bool

    @property
    def newly_completed(self) -> bool:
        return self.changed and self.transaction.status == COMPLETED


def new_order_id(payment_method: str, user_id: str, now: Optional[datetime] = None) -> str:
    """METHOD_userprefix_timestampms. Readable, not unique under concurrent retries."""
    now = now or utcnow()
    prefix = (payment_method or "PAY").replace("-", "_").upper()
    ms = int((now - datetime(1970, 1, 1)).total_seconds() * 1000)
    return f"{prefix}_{user_id.replace('-', '')[:8]}_{ms}"


def _append_event(txn: Transaction, kind: str, payload: Dict[str, Any], now: datetime) -> None:
    meta = dict(txn.metadata_ or {})
    events = list(meta.get("gateway_events") or [])
    events.append({"type": kind, "received_at": now.isoformat(), "payload": payload})
    meta["gateway_events"] = events
    txn.metadata_ = meta


def _transition(
    db: AsyncSession,
    txn: Transaction,
    new_status: str,
    changed_by: str,
    reason: str,
    now: datetime,
) -> None:
    old_status = txn.status
    if new_status not in ALLOWED_TRANSITIONS.get(old_status, set()):
        raise BusinessRuleError(
            f"Transaction {txn.id} cannot move from {old_status} to {new_status}",
            metadata={"transaction_id": txn.id, "from": old_status, "to": new_status},
        )
    txn.status = new_status
    txn.updated_at = now
    db.add(TransactionHistory(
        transaction_id=txn.id,
        old_status=old_status,
        new_status=new_status,
        changed_by=changed_by,
        reason=reason,
        created_at=now,
    ))
    logger.info("Transaction %s: %s -> %s (%s)", txn.id, old_status, new_status, reason)


async def commit_ledger(db: AsyncSession, what: str) -> None:
    try:
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.error("Ledger write failed: %s", what, exc_info=exc)
        raise DatabaseError(f"Ledger write failed: {what}: {exc}") from exc


# ================== CREATE / READ ==================

async def create_pending(
    db: AsyncSession,
    *,
    user_id: str,
    package_id: Optional[str],
    gateway_id: Optional[str],
    amount: Any,
    currency: str,
    payment_method: str,
    metadata: Optional[Dict[str, Any]] = None,
    transaction_type: str = "payment",
    subscription_id: Optional[str] = None,
    is_trial: bool = False,
    order_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Transaction:
    """Write the pending row. Must happen before the gateway is called."""
    now = now or utcnow()
    value = to_money(amount)
    if value is None or value < 0:
        raise ValidationError("Amount must be a non-negative number", field="amount")
    if value == 0 and not is_trial:
        raise ValidationError("Amount must be greater than zero", field="amount")

    order_id = order_id or new_order_id(payment_method, user_id, now)
    meta = dict(metadata or {})
    meta.setdefault("order_id", order_id)
    meta.setdefault("is_trial", is_trial)

    txn = Transaction(
        id=str(uuid.uuid4()),
        user_id=user_id,
        package_id=package_id,
        gateway_id=gateway_id,
        subscription_id=subscription_id,
        order_id=order_id,
        transaction_type=transaction_type,
        amount=value,
        currency=currency,
        status=PENDING,
        payment_method=payment_method,
        metadata_=meta,
        created_at=now,
        updated_at=now,
    )
    db.add(txn)
    db.add(TransactionHistory(
        transaction_id=txn.id,
        old_status=None,
        new_status=PENDING,
        changed_by=user_id,
        reason="Checkout started",
        created_at=now,
    ))
    await commit_ledger(db, f"create pending {order_id}")
    logger.info("Created pending transaction %s (%s %s %s)", txn.id, order_id, value, currency)
    return txn


async def get_transaction(db: AsyncSession, transaction_id: str) -> Transaction:
    txn = await db.get(Transaction, transaction_id)
    if not txn:
        raise NotFoundError("Transaction not found")
    return txn


async def get_user_transaction(db: AsyncSession, user_id: str, transaction_id: str) -> Transaction:
    txn = (
        await db.execute(
            select(Transaction).where(Transaction.id == transaction_id, Transaction.user_id == user_id)
        )
    ).scalar_one_or_none()
    if not txn:
        raise NotFoundError("Transaction not found")
    return txn


async def get_history(db: AsyncSession, transaction_id: str) -> List[TransactionHistory]:
    rows = (
        await db.execute(
            select(TransactionHistory)
            .where(TransactionHistory.transaction_id == transaction_id)
            .order_by(TransactionHistory.created_at, TransactionHistory.id)
        )
    ).scalars().all()
    return list(rows)


async def find_by_external_id(db: AsyncSession, external_id: str) -> Optional[Transaction]:
    return (
        await db.execute(
            select(Transaction)
            .where(Transaction.external_transaction_id == external_id)
            .order_by(Transaction.created_at.desc())
            .limit(1)
        )
    ).scalar_one_or_none()


async def latest_completed_for_subscription(db: AsyncSession, subscription_id: str) -> Optional[Transaction]:
    return (
        await db.execute(
            select(Transaction)
            .where(Transaction.subscription_id == subscription_id, Transaction.status == COMPLETED)
            .order_by(Transaction.created_at.desc())
            .limit(1)
        )
    ).scalar_one_or_none()


# ================== TRANSITIONS ==================

async def reconcile(
    db: AsyncSession,
    transaction_id: str,
    outcome: GatewayOutcome,
    gateway_transaction_id: Optional[str] = None,
    *,
    changed_by: str = SYSTEM_ACTOR,
    error_message: Optional[str] = None,
    now: Optional[datetime] = None,
    commit: bool = True,
) -> ReconcileResult:
    """
    Apply a gateway result to a ledger row.

    Same status on a terminal row is a no-op. A different status on a row
    that no longer accepts it raises BusinessRuleError.
    """
    now = now or utcnow()
    txn = await get_transaction(db, transaction_id)
    previous = txn.status
    target = GATEWAY_STATUS_MAP[outcome.status]

    if outcome.status is GatewayStatus.UNRECOGNIZED:
        logger.warning(
            "Unrecognized gateway status %r for transaction %s, keeping it pending",
            outcome.raw_status, txn.id,
        )

    # proof_uploaded is still waiting on the operator
    if target == PENDING and previous == PROOF_UPLOADED:
        target = PROOF_UPLOADED

    if target == previous and previous in TERMINAL:
        logger.info("Transaction %s already %s, ignoring duplicate reconcile", txn.id, previous)
        return ReconcileResult(txn, previous, False)

    if target != previous and target not in ALLOWED_TRANSITIONS.get(previous, set()):
        if target == COMPLETED and previous in (FAILED, CANCELLED):
            logger.critical(
                "Gateway confirmed payment for transaction %s (user %s) but the row is %s; needs manual review",
                txn.id, txn.user_id, previous,
            )
        raise BusinessRuleError(
            f"Transaction {txn.id} is {previous} and cannot be reconciled to {target}",
            metadata={"transaction_id": txn.id, "from": previous, "to": target, "gateway_status": outcome.raw_status},
        )

    ext_id = gateway_transaction_id or outcome.gateway_transaction_id
    if ext_id:
        txn.external_transaction_id = ext_id
    _append_event(txn, outcome.raw_status or outcome.status.value, outcome.payload, now)
    txn.gateway_response = outcome.payload
    if error_message:
        txn.error_message = error_message

    changed = target != previous
    if changed:
        _transition(db, txn, target, changed_by, f"Gateway status {outcome.raw_status}", now)
    else:
        txn.updated_at = now

    if commit:
        await commit_ledger(db, f"reconcile {txn.id}")
    return ReconcileResult(txn, previous, changed)


async def record_gateway_error(
    db: AsyncSession,
    transaction_id: str,
    error_message: str,
    *,
    now: Optional[datetime] = None,
) -> Transaction:
    """Keep the row pending but remember why: the gateway may still have acted."""
    now = now or utcnow()
    txn = await get_transaction(db, transaction_id)
    txn.error_message = error_message
    txn.updated_at = now
    await commit_ledger(db, f"record gateway error {txn.id}")
    logger.warning("Transaction %s left pending after ambiguous gateway error: %s", txn.id, error_message)
    return txn


async def mark_refunded(
    db: AsyncSession,
    transaction_id: str,
    refund_payload: Dict[str, Any],
    *,
    changed_by: str = SYSTEM_ACTOR,
    reason: str = "Refund processed",
    now: Optional[datetime] = None,
    commit: bool = True,
) -> ReconcileResult:
    now = now or utcnow()
    txn = await get_transaction(db, transaction_id)
    previous = txn.status
    if previous == REFUNDED:
        return ReconcileResult(txn, previous, False)

    _transition(db, txn, REFUNDED, changed_by, reason, now)
    _append_event(txn, "refund", refund_payload, now)
    meta = dict(txn.metadata_ or {})
    meta["refund"] = refund_payload
    txn.metadata_ = meta
    if commit:
        await commit_ledger(db, f"mark refunded {txn.id}")
    return ReconcileResult(txn, previous, True)


async def attach_proof(
    db: AsyncSession,
    transaction_id: str,
    proof_url: str,
    *,
    changed_by: str,
    now: Optional[datetime] = None,
) -> Transaction:
    now = now or utcnow()
    txn = await get_transaction(db, transaction_id)
    txn.proof_url = proof_url
    if txn.status == PROOF_UPLOADED:
        txn.updated_at = now
    else:
        _transition(db, txn, PROOF_UPLOADED, changed_by, "Payment proof uploaded", now)
    await commit_ledger(db, f"attach proof {txn.id}")
    return txn


async def set_status(
    db: AsyncSession,
    transaction_id: str,
    new_status: str,
    *,
    changed_by: str,
    reason: str,
    now: Optional[datetime] = None,
) -> Transaction:
    """Direct transition for operator actions (e.g. approving a bank transfer proof)."""
    if new_status not in STATUSES:
        raise ValidationError(f"Unknown status: {new_status}", field="status")
    now = now or utcnow()
    txn = await get_transaction(db, transaction_id)
    if txn.status == new_status:
        return txn
    _transition(db, txn, new_status, changed_by, reason, now)
    await commit_ledger(db, f"set status {txn.id}")
    return txn


async def cancel_stale_pending(
    db: AsyncSession,
    older_than: Optional[timedelta] = None,
    now: Optional[datetime] = None,
) -> int:
    """
    Cancel pending rows nobody came back for.

    Rows the gateway already knows about (a checkout session, a subscription or
    a gateway id) are left alone: the gateway reports their outcome itself.
    """
    now = now or utcnow()
    cutoff = now - (older_than or timedelta(hours=STALE_PENDING_HOURS))
    candidates = (
        await db.execute(
            select(Transaction).where(
                Transaction.status == PENDING,
                Transaction.created_at < cutoff,
                Transaction.subscription_id.is_(None),
                Transaction.external_transaction_id.is_(None),
            )
        )
    ).scalars().all()
    stale = [txn for txn in candidates if not (txn.metadata_ or {}).get("checkout_session_id")]

    for txn in stale:
        _transition(db, txn, CANCELLED, SYSTEM_ACTOR, "Pending payment expired", now)
        txn.notes = ((txn.notes + "\n") if txn.notes else "") + "Auto-cancelled: payment not completed in time"

    if stale:
        await commit_ledger(db, "cancel stale pending")
        logger.info("Auto-cancelled %d stale pending transactions", len(stale))
    return len(stale)


def amount_of(txn: Transaction) -> Decimal:
    return to_money(txn.amount) or Decimal("0.00")
