# FILE: backend/services/webhook_service.py
"""
Stripe webhook dispatch.

The endpoint only verifies and records the event; every state change goes
through the same ledger / settlement functions the synchronous paths use.
Events are stored by id so re-deliveries are acknowledged without replaying.
"""

import logging
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from backend.core.config import TRIAL_PERIOD_DAYS
from backend.core.database import utcnow
from backend.core.errors import BillingError, BusinessRuleError
from backend.models.gateway_transaction import GatewayTransaction
from backend.models.subscription import Subscription
from backend.models.user import User
from backend.models.webhook_event import WebhookEvent
from backend.services import transaction_ledger
from backend.services.billing_cycle import extend_entitlement, next_billing_date
from backend.services.package_catalog import to_money
from backend.services.payment_gateway import GatewayOutcome
from backend.services.payment_processor import settle_transaction
from backend.services.stripe_gateway import StripeGateway, checkout_status_word, from_timestamp

logger = logging.getLogger("billing.webhooks")

RENEWAL_REASONS = {"subscription_cycle"}


async def _subscription_by_gateway_id(db: AsyncSession, gateway_subscription_id: Optional[str]) -> Optional[Subscription]:
    if not gateway_subscription_id:
        return None
    return (
        await db.execute(
            select(Subscription).where(Subscription.gateway_subscription_id == gateway_subscription_id)
        )
    ).scalar_one_or_none()


# ================== HANDLERS ==================

async def handle_checkout_completed(db: AsyncSession, obj: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    meta = obj.get("metadata") or {}
    txn_id = meta.get("transaction_id") or obj.get("client_reference_id")
    if not txn_id:
        return {"ignored": "checkout session without transaction reference"}

    txn = await transaction_ledger.get_transaction(db, txn_id)
    txn_meta = txn.metadata_ or {}
    period = txn_meta.get("billing_period") or meta.get("billing_period") or "monthly"

    gateway_sub_id = obj.get("subscription")
    sub = await _subscription_by_gateway_id(db, gateway_sub_id)
    if gateway_sub_id and sub is None:
        sub = Subscription(
            id=str(uuid.uuid4()),
            user_id=txn.user_id,
            package_id=txn.package_id,
            gateway_subscription_id=gateway_sub_id,
            billing_period=period,
            status="active",
            cancel_at_period_end=False,
            current_period_end=(
                now + timedelta(days=TRIAL_PERIOD_DAYS) if txn_meta.get("is_trial") else next_billing_date(now, period)
            ),
            created_at=now,
            updated_at=now,
        )
        db.add(sub)
    if sub is not None:
        txn.subscription_id = sub.id

    external_id = obj.get("payment_intent") or obj.get("invoice") or obj.get("id")
    outcome = GatewayOutcome.from_raw(checkout_status_word(obj), obj, external_id)
    result = await settle_transaction(db, txn.id, outcome, now=now)
    return {
        "transaction_id": txn.id,
        "status": result.transaction.status,
        "subscription_id": sub.id if sub else None,
    }


async def handle_checkout_expired(db: AsyncSession, obj: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    meta = obj.get("metadata") or {}
    txn_id = meta.get("transaction_id") or obj.get("client_reference_id")
    if not txn_id:
        return {"ignored": "checkout session without transaction reference"}
    outcome = GatewayOutcome.from_raw(checkout_status_word(obj), obj, obj.get("id"))
    result = await transaction_ledger.reconcile(db, txn_id, outcome, error_message="Checkout session expired", now=now)
    return {"transaction_id": txn_id, "status": result.transaction.status}


async def _mirror_invoice(
    db: AsyncSession, obj: Dict[str, Any], sub: Subscription, now: datetime
) -> Tuple[GatewayTransaction, Optional[str]]:
    """Upsert the mirror row. Returns it with the status it had before this event."""
    existing = (
        await db.execute(
            select(GatewayTransaction).where(GatewayTransaction.gateway_transaction_id == obj.get("id"))
        )
    ).scalar_one_or_none()
    previous_status = existing.status if existing else None

    original = await transaction_ledger.latest_completed_for_subscription(db, sub.id)
    amount_cents = obj.get("amount_paid") if obj.get("status") == "paid" else obj.get("amount_due")

    row = existing or GatewayTransaction(id=str(uuid.uuid4()), created_at=now)
    row.transaction_id = original.id if original else None
    row.user_id = sub.user_id
    row.subscription_id = sub.id
    row.gateway_transaction_id = obj.get("id")
    row.gateway_subscription_id = sub.gateway_subscription_id
    row.amount = to_money(Decimal(amount_cents or 0) / 100)
    row.currency = (obj.get("currency") or "usd").upper()
    row.status = obj.get("status") or "open"
    row.payment_method = "card"
    row.receipt_url = obj.get("hosted_invoice_url")
    row.invoice_number = obj.get("number")
    row.metadata_ = {"billing_reason": obj.get("billing_reason"), "payload": obj}
    row.updated_at = now
    if existing is None:
        db.add(row)
    return row, previous_status


def _invoice_period_end(obj: Dict[str, Any]) -> Optional[datetime]:
    """End of the service period the invoice bills for, from its line items."""
    ends = [(line.get("period") or {}).get("end") for line in ((obj.get("lines") or {}).get("data") or [])]
    ends = [end for end in ends if end]
    return from_timestamp(max(ends)) if ends else None


async def handle_invoice_event(db: AsyncSession, obj: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    """Renewal charges only. The first invoice belongs to the checkout's ledger row."""
    if obj.get("billing_reason") not in RENEWAL_REASONS:
        return {"ignored": f"billing_reason {obj.get('billing_reason')}"}

    sub = await _subscription_by_gateway_id(db, obj.get("subscription"))
    if sub is None:
        logger.warning("Invoice %s for unknown subscription %s", obj.get("id"), obj.get("subscription"))
        return {"ignored": "unknown subscription"}

    row, previous_status = await _mirror_invoice(db, obj, sub, now)

    extended = False
    if row.status == "paid" and previous_status != "paid":
        user = await db.get(User, sub.user_id)
        if user and user.package_id == sub.package_id:
            extend_entitlement(user, sub.billing_period, now, period_end=_invoice_period_end(obj))
            sub.current_period_end = user.subscription_end_date
            sub.updated_at = now
            extended = True

    await transaction_ledger.commit_ledger(db, f"mirror invoice {row.gateway_transaction_id}")
    return {"gateway_transaction_id": row.gateway_transaction_id, "status": row.status, "entitlement_extended": extended}


async def _sync_subscription(db: AsyncSession, obj: Dict[str, Any], now: datetime, status: Optional[str]) -> Dict[str, Any]:
    sub = await _subscription_by_gateway_id(db, obj.get("id"))
    if sub is None:
        return {"ignored": "unknown subscription"}

    remote = StripeGateway.parse_subscription(obj)
    if status:
        sub.status = status
    if status == "cancelled" and sub.canceled_at is None:
        sub.canceled_at = now
    if status == "paused":
        sub.paused_at = now
    elif status == "active":
        sub.paused_at = None
    sub.cancel_at_period_end = remote.cancel_at_period_end if status != "cancelled" else False
    if remote.current_period_end:
        sub.current_period_end = remote.current_period_end
    sub.updated_at = now
    await transaction_ledger.commit_ledger(db, f"sync subscription {sub.id}")
    return {"subscription_id": sub.id, "status": sub.status}


async def handle_subscription_deleted(db: AsyncSession, obj: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    return await _sync_subscription(db, obj, now, "cancelled")


async def handle_subscription_paused(db: AsyncSession, obj: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    return await _sync_subscription(db, obj, now, "paused")


async def handle_subscription_resumed(db: AsyncSession, obj: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    return await _sync_subscription(db, obj, now, "active")


async def handle_subscription_updated(db: AsyncSession, obj: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    return await _sync_subscription(db, obj, now, None)


async def handle_charge_refunded(db: AsyncSession, obj: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    txn = None
    for ref in (obj.get("payment_intent"), obj.get("id"), obj.get("invoice")):
        if ref:
            txn = await transaction_ledger.find_by_external_id(db, ref)
            if txn:
                break
    if txn is None:
        return {"ignored": "no ledger transaction for refunded charge"}
    if txn.status == transaction_ledger.REFUNDED:
        return {"transaction_id": txn.id, "status": txn.status}

    await transaction_ledger.mark_refunded(
        db, txn.id,
        {"charge_id": obj.get("id"), "amount_refunded": obj.get("amount_refunded")},
        reason="Refund reported by gateway",
        now=now,
    )
    return {"transaction_id": txn.id, "status": transaction_ledger.REFUNDED}


EventHandler = Callable[[AsyncSession, Dict[str, Any], datetime], Awaitable[Dict[str, Any]]]

HANDLERS: Dict[str, EventHandler] = {
    "checkout.session.completed": handle_checkout_completed,
    "checkout.session.async_payment_succeeded": handle_checkout_completed,
    "checkout.session.async_payment_failed": handle_checkout_expired,
    "checkout.session.expired": handle_checkout_expired,
    "invoice.paid": handle_invoice_event,
    "invoice.payment_failed": handle_invoice_event,
    "customer.subscription.deleted": handle_subscription_deleted,
    "customer.subscription.paused": handle_subscription_paused,
    "customer.subscription.resumed": handle_subscription_resumed,
    "customer.subscription.updated": handle_subscription_updated,
    "charge.refunded": handle_charge_refunded,
}


# ================== ENTRY POINT ==================

async def process_event(db: AsyncSession, event: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or utcnow()
    event_id = event.get("id")
    event_type = event.get("type") or ""

    record = (
        await db.execute(select(WebhookEvent).where(WebhookEvent.event_id == event_id))
    ).scalar_one_or_none()
    if record and record.processed:
        logger.info("Skipping already processed event %s (%s)", event_id, event_type)
        return {"duplicate": True, "event_type": event_type}

    if record is None:
        record = WebhookEvent(event_id=event_id, event_type=event_type, payload=event, created_at=now)
        db.add(record)
        try:
            await db.commit()
        except IntegrityError:
            # Concurrent delivery of the same event
            await db.rollback()
            return {"duplicate": True, "event_type": event_type}
    record_pk = record.id

    handler = HANDLERS.get(event_type)
    if handler is None:
        record.processed = True
        record.processed_at = now
        await db.commit()
        return {"duplicate": False, "event_type": event_type, "detail": {"ignored": "unhandled event type"}}

    obj = ((event.get("data") or {}).get("object")) or {}
    try:
        detail = await handler(db, obj, now)
    except BusinessRuleError as exc:
        # Out-of-order or stale event against a row that has moved on
        await db.rollback()
        record = await db.get(WebhookEvent, record_pk)
        logger.error("Webhook %s (%s) conflicts with ledger state: %s", event_id, event_type, exc)
        detail = {"ignored": exc.message}
    except BillingError as exc:
        await db.rollback()
        record = await db.get(WebhookEvent, record_pk)
        record.error_message = str(exc)
        await db.commit()
        logger.error("Webhook %s (%s) failed: %s", event_id, event_type, exc)
        raise

    record.processed = True
    record.processed_at = now
    record.error_message = detail.get("ignored")
    await db.commit()
    logger.info("Processed webhook %s (%s): %s", event_id, event_type, detail)
    return {"duplicate": False, "event_type": event_type, "detail": detail}
