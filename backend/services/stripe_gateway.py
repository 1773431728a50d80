# FILE: backend/services/stripe_gateway.py
"""Stripe implementation of the payment gateway interface."""

import asyncio
import logging
import os
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import stripe

from backend.core.config import FRONTEND_URL, LOG_DIR
from backend.core.errors import ExternalGatewayError, ValidationError
from backend.services.payment_gateway import (
    CancelEffect,
    CheckoutParams,
    CheckoutSession,
    GatewayCharge,
    GatewayCredentials,
    GatewayOutcome,
    GatewaySubscription,
    RefundResult,
)

os.makedirs(LOG_DIR, exist_ok=True)
stripe_logger = logging.getLogger("billing.gateway.stripe")
if not stripe_logger.handlers:
    handler = logging.FileHandler(os.path.join(LOG_DIR, "gateway.log"))
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s")
    handler.setFormatter(formatter)
    stripe_logger.setLevel(logging.INFO)
    stripe_logger.addHandler(handler)

PERIOD_INTERVALS = {"monthly": "month", "annual": "year"}


def _as_dict(obj: Any) -> Dict[str, Any]:
    if obj is None:
        return {}
    if isinstance(obj, dict) and not hasattr(obj, "to_dict"):
        return dict(obj)
    return obj.to_dict()


def _to_cents(amount: Decimal) -> int:
    return int((amount * 100).to_integral_value())


def _from_cents(value: Optional[int]) -> Decimal:
    return (Decimal(value or 0) / 100).quantize(Decimal("0.01"))


def from_timestamp(value: Optional[int]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)


def checkout_status_word(session: Dict[str, Any]) -> str:
    """Translate a Checkout Session into the ledger's status vocabulary."""
    status = session.get("status")
    if status == "expired":
        return "expire"
    if status == "complete":
        if session.get("payment_status") in {"paid", "no_payment_required"}:
            return "settlement"
        return "pending"
    if status == "open":
        return "pending"
    return status or "pending"


def _map_error(exc: Exception, operation: str) -> ExternalGatewayError:
    meta = {"operation": operation, "stripe_error": type(exc).__name__}
    code = getattr(exc, "code", None)
    if code:
        meta["code"] = code

    if isinstance(exc, stripe.APIConnectionError):
        return ExternalGatewayError(
            f"Stripe {operation} connection failed: {exc}", retryable=True, ambiguous=True, metadata=meta
        )
    if isinstance(exc, stripe.RateLimitError):
        return ExternalGatewayError(f"Stripe {operation} rate limited: {exc}", retryable=True, metadata=meta)
    if isinstance(exc, (stripe.CardError, stripe.InvalidRequestError, stripe.AuthenticationError, stripe.PermissionError)):
        return ExternalGatewayError(f"Stripe {operation} rejected: {exc}", retryable=False, metadata=meta)
    return ExternalGatewayError(f"Stripe {operation} failed: {exc}", retryable=True, metadata=meta)


class StripeGateway:
    slug = "stripe"

    def __init__(self, credentials: GatewayCredentials):
        self.credentials = credentials
        self.gateway_id: Optional[str] = credentials.gateway_id
        self._api_key = credentials.secret_key

        live_key = self._api_key.startswith(("sk_live_", "rk_live_"))
        if credentials.is_sandbox and live_key:
            stripe_logger.warning("Gateway %s is marked sandbox but has a live key", credentials.gateway_id)
        elif not credentials.is_sandbox and not live_key:
            stripe_logger.warning("Gateway %s is marked production but has a test key", credentials.gateway_id)

    async def _call(self, operation: str, fn, *args, **kwargs):
        try:
            return await asyncio.to_thread(fn, *args, api_key=self._api_key, **kwargs)
        except stripe.StripeError as exc:
            stripe_logger.error("Stripe %s failed", operation, exc_info=exc)
            raise _map_error(exc, operation) from exc

    # ─────────────────────────────────────────────
    # CHECKOUT
    # ─────────────────────────────────────────────

    async def create_subscription_checkout(self, params: CheckoutParams) -> CheckoutSession:
        if params.gateway_price_id:
            line_item = {"price": params.gateway_price_id, "quantity": 1}
        else:
            line_item = {
                "price_data": {
                    "currency": params.currency.lower(),
                    "product_data": {"name": params.package_name},
                    "unit_amount": _to_cents(params.amount),
                    "recurring": {"interval": PERIOD_INTERVALS.get(params.billing_period, "month")},
                },
                "quantity": 1,
            }

        metadata = {
            "transaction_id": params.transaction_id,
            "order_id": params.order_id,
            "user_id": params.user_id,
            "package_id": params.package_id,
            "billing_period": params.billing_period,
            "is_trial": "true" if params.is_trial else "false",
        }
        subscription_data: Dict[str, Any] = {"metadata": metadata}
        if params.is_trial and params.trial_days > 0:
            subscription_data["trial_period_days"] = params.trial_days

        success_url = self.credentials.success_url or f"{FRONTEND_URL}/billing?success=1"
        cancel_url = self.credentials.cancel_url or f"{FRONTEND_URL}/billing?canceled=1"

        session = await self._call(
            "checkout",
            stripe.checkout.Session.create,
            mode="subscription",
            line_items=[line_item],
            customer_email=params.customer_email,
            client_reference_id=params.transaction_id,
            success_url=f"{success_url}{'&' if '?' in success_url else '?'}transaction_id={params.transaction_id}",
            cancel_url=cancel_url,
            metadata=metadata,
            subscription_data=subscription_data,
        )
        data = _as_dict(session)
        stripe_logger.info("Created checkout session %s for transaction %s", data.get("id"), params.transaction_id)

        return CheckoutSession(
            session_id=data.get("id"),
            checkout_url=data.get("url"),
            outcome=GatewayOutcome.from_raw(checkout_status_word(data), data, data.get("id")),
        )

    # ─────────────────────────────────────────────
    # SUBSCRIPTIONS
    # ─────────────────────────────────────────────

    @staticmethod
    def parse_subscription(data: Dict[str, Any]) -> GatewaySubscription:
        period_end = data.get("current_period_end")
        if period_end is None:
            items = (data.get("items") or {}).get("data") or []
            if items:
                period_end = items[0].get("current_period_end")
        return GatewaySubscription(
            id=data.get("id"),
            status=data.get("status") or "",
            customer_id=data.get("customer"),
            current_period_end=from_timestamp(period_end),
            cancel_at_period_end=bool(data.get("cancel_at_period_end")),
            raw=data,
        )

    async def get_subscription(self, subscription_id: str) -> GatewaySubscription:
        sub = await self._call("get_subscription", stripe.Subscription.retrieve, subscription_id)
        return self.parse_subscription(_as_dict(sub))

    async def cancel_subscription(self, subscription_id: str, effective_from: CancelEffect) -> GatewaySubscription:
        if CancelEffect(effective_from) is CancelEffect.IMMEDIATELY:
            sub = await self._call("cancel_subscription", stripe.Subscription.cancel, subscription_id)
        else:
            sub = await self._call(
                "cancel_subscription", stripe.Subscription.modify, subscription_id, cancel_at_period_end=True
            )
        stripe_logger.info("Cancelled subscription %s (%s)", subscription_id, effective_from)
        return self.parse_subscription(_as_dict(sub))

    async def pause_subscription(self, subscription_id: str) -> GatewaySubscription:
        sub = await self._call(
            "pause_subscription", stripe.Subscription.modify, subscription_id,
            pause_collection={"behavior": "void"},
        )
        return self.parse_subscription(_as_dict(sub))

    async def resume_subscription(self, subscription_id: str) -> GatewaySubscription:
        sub = await self._call(
            "resume_subscription", stripe.Subscription.modify, subscription_id, pause_collection=""
        )
        return self.parse_subscription(_as_dict(sub))

    # ─────────────────────────────────────────────
    # REFUNDS
    # ─────────────────────────────────────────────

    async def _refund_target(self, external_transaction_id: str) -> Dict[str, str]:
        if external_transaction_id.startswith("ch_"):
            return {"charge": external_transaction_id}
        if external_transaction_id.startswith("in_"):
            invoice = _as_dict(await self._call("get_invoice", stripe.Invoice.retrieve, external_transaction_id))
            if invoice.get("payment_intent"):
                return {"payment_intent": invoice["payment_intent"]}
            if invoice.get("charge"):
                return {"charge": invoice["charge"]}
            raise ExternalGatewayError(
                f"Invoice {external_transaction_id} has no payment to refund",
                metadata={"invoice": external_transaction_id},
            )
        return {"payment_intent": external_transaction_id}

    async def create_refund_adjustment(
        self,
        external_transaction_id: str,
        reason: str,
        amount: Optional[Decimal] = None,
    ) -> RefundResult:
        kwargs: Dict[str, Any] = await self._refund_target(external_transaction_id)
        if amount is not None:
            kwargs["amount"] = _to_cents(amount)

        refund = await self._call(
            "refund",
            stripe.Refund.create,
            reason="requested_by_customer",
            metadata={"reason": reason[:500], "external_transaction_id": external_transaction_id},
            **kwargs,
        )
        data = _as_dict(refund)
        stripe_logger.info("Refund %s created for %s", data.get("id"), external_transaction_id)
        return RefundResult(
            id=data.get("id"),
            status=data.get("status") or "",
            amount=_from_cents(data.get("amount")) if data.get("amount") is not None else None,
            raw=data,
        )

    # ─────────────────────────────────────────────
    # TRANSACTIONS
    # ─────────────────────────────────────────────

    @staticmethod
    def _charge(data: Dict[str, Any]) -> GatewayCharge:
        return GatewayCharge(
            id=data.get("id"),
            status=data.get("status") or "",
            amount=_from_cents(data.get("amount_paid", data.get("amount_due"))),
            currency=(data.get("currency") or "usd").upper(),
            subscription_id=data.get("subscription"),
            customer_id=data.get("customer"),
            receipt_url=data.get("hosted_invoice_url"),
            invoice_number=data.get("number"),
            created_at=from_timestamp(data.get("created")),
            raw=data,
        )

    async def get_transaction(self, external_transaction_id: str) -> GatewayCharge:
        invoice = await self._call("get_transaction", stripe.Invoice.retrieve, external_transaction_id)
        return self._charge(_as_dict(invoice))

    async def list_transactions(
        self,
        subscription_id: Optional[str] = None,
        customer_id: Optional[str] = None,
        limit: int = 100,
    ) -> List[GatewayCharge]:
        filters: Dict[str, Any] = {"limit": min(limit, 100)}
        if subscription_id:
            filters["subscription"] = subscription_id
        if customer_id:
            filters["customer"] = customer_id
        page = _as_dict(await self._call("list_transactions", stripe.Invoice.list, **filters))
        return [self._charge(_as_dict(item)) for item in page.get("data") or []]

    # ─────────────────────────────────────────────
    # WEBHOOKS
    # ─────────────────────────────────────────────

    def construct_webhook_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        if not self.credentials.webhook_secret:
            raise ExternalGatewayError("Stripe webhook secret is not configured")
        try:
            event = stripe.Webhook.construct_event(
                payload=payload, sig_header=signature, secret=self.credentials.webhook_secret
            )
        except (ValueError, stripe.SignatureVerificationError) as exc:
            stripe_logger.warning("Rejected webhook: %s", exc)
            raise ValidationError("Invalid webhook signature")
        return _as_dict(event)
