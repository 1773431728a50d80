# /backend/api/webhooks.py
"""Gateway webhook trigger."""

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from backend.api.deps import get_gateway
from backend.core.database import get_db
from backend.schemas.billing import WebhookAck
from backend.services import webhook_service
from backend.services.payment_gateway import PaymentGateway

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


@router.post("/stripe", response_model=WebhookAck)
async def stripe_webhook(
        request: Request,
        db: AsyncSession = Depends(get_db),
        gateway: PaymentGateway = Depends(get_gateway),
):
    payload = await request.body()
    event = gateway.construct_webhook_event(payload, request.headers.get("stripe-signature"))
    result = await webhook_service.process_event(db, event)
    return WebhookAck(
        received=True,
        duplicate=result.get("duplicate", False),
        event_type=result.get("event_type"),
        detail=result.get("detail"),
    )
