# /backend/api/subscriptions.py
"""Subscription lookup, refund window and cancellation endpoints."""

from typing import Optional

from fastapi import APIRouter, Body, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from backend.api.deps import get_current_user, get_gateway
from backend.core.database import get_db
from backend.schemas.billing import (
    CancellationResponse,
    CancelRequest,
    RefundWindowResponse,
    SubscriptionResponse,
)
from backend.services import cancellation_service
from backend.services.payment_gateway import PaymentGateway

router = APIRouter(prefix="/api/subscriptions", tags=["subscriptions"])


@router.get("/me", response_model=SubscriptionResponse)
async def my_subscription(
        user=Depends(get_current_user),
        db: AsyncSession = Depends(get_db),
):
    sub = await cancellation_service.get_user_subscription(db, user["id"])
    if not sub:
        raise HTTPException(status_code=404, detail="No subscription found")
    return SubscriptionResponse.model_validate(sub)


@router.get("/{subscription_id}/refund-window", response_model=RefundWindowResponse)
async def refund_window(
        subscription_id: str,
        user=Depends(get_current_user),
        db: AsyncSession = Depends(get_db),
):
    info = await cancellation_service.get_refund_window_info(db, user["id"], subscription_id)
    return RefundWindowResponse(**info.__dict__)


@router.post("/{subscription_id}/cancel", response_model=CancellationResponse)
async def cancel(
        subscription_id: str,
        body: Optional[CancelRequest] = Body(None),
        user=Depends(get_current_user),
        db: AsyncSession = Depends(get_db),
        gateway: PaymentGateway = Depends(get_gateway),
):
    result = await cancellation_service.cancel_subscription(
        db, gateway, user["id"], subscription_id, reason=body.reason if body else None
    )
    return CancellationResponse(**result.__dict__)


@router.post("/{subscription_id}/pause", response_model=SubscriptionResponse)
async def pause(
        subscription_id: str,
        user=Depends(get_current_user),
        db: AsyncSession = Depends(get_db),
        gateway: PaymentGateway = Depends(get_gateway),
):
    sub = await cancellation_service.pause_subscription(db, gateway, user["id"], subscription_id)
    return SubscriptionResponse.model_validate(sub)


@router.post("/{subscription_id}/resume", response_model=SubscriptionResponse)
async def resume(
        subscription_id: str,
        user=Depends(get_current_user),
        db: AsyncSession = Depends(get_db),
        gateway: PaymentGateway = Depends(get_gateway),
):
    sub = await cancellation_service.resume_subscription(db, gateway, user["id"], subscription_id)
    return SubscriptionResponse.model_validate(sub)
