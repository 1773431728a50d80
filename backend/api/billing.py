# /backend/api/billing.py
"""Packages, checkout, history and proof upload endpoints."""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.api.deps import get_current_user, get_gateway_registry, get_sessions
from backend.core.config import HISTORY_DEFAULT_PAGE_SIZE, HISTORY_MAX_PAGE_SIZE, MAX_PROOF_FILE_SIZE
from backend.core.database import get_db
from backend.core.errors import NotFoundError
from backend.models.package import Package
from backend.schemas.billing import (
    BillingCycleResponse,
    CheckoutRequest,
    CheckoutResponse,
    HistoryResponse,
    PackageResponse,
    PricingTierResponse,
    ProofUploadResponse,
    TransactionDetail,
    TransactionHistoryEntry,
)
from backend.services import billing_cycle, proof_service, transaction_ledger
from backend.services.billing_history import HistoryQuery, get_billing_history
from backend.services.package_catalog import get_active_package, list_active_packages, pricing_tier
from backend.services.payment_gateway import GatewayRegistry
from backend.services.payment_processor import process_checkout

router = APIRouter(prefix="/api/billing", tags=["billing"])
logger = logging.getLogger("billing.api")


def _package_response(p: Package) -> PackageResponse:
    tiers = {}
    for period in ("monthly", "annual"):
        tier = pricing_tier(p, period)
        if tier:
            tiers[period] = PricingTierResponse(regular_price=tier.regular_price, promo_price=tier.promo_price)
    return PackageResponse(
        id=p.id,
        slug=p.slug,
        name=p.name,
        description=p.description,
        currency=p.currency,
        pricing_tiers=tiers,
        daily_quota=p.daily_quota,
        max_concurrent_jobs=p.max_concurrent_jobs,
        max_tracked_items=p.max_tracked_items,
        is_popular=p.is_popular,
        sort_order=p.sort_order,
    )


# ─────────────────────────────────────────────
# PACKAGES
# ─────────────────────────────────────────────

@router.get("/packages", response_model=List[PackageResponse])
async def packages(db: AsyncSession = Depends(get_db)):
    return [_package_response(p) for p in await list_active_packages(db)]


@router.get("/packages/{package_id}", response_model=PackageResponse)
async def package(package_id: str, db: AsyncSession = Depends(get_db)):
    p = await get_active_package(db, package_id)
    if not p:
        raise NotFoundError("Package not found or inactive")
    return _package_response(p)


# ─────────────────────────────────────────────
# CHECKOUT
# ─────────────────────────────────────────────

@router.post("/checkout", response_model=CheckoutResponse)
async def checkout(
        req: CheckoutRequest,
        user=Depends(get_current_user),
        db: AsyncSession = Depends(get_db),
        registry: GatewayRegistry = Depends(get_gateway_registry),
):
    result = await process_checkout(db, registry, user["id"], req)
    txn = result.transaction
    return CheckoutResponse(
        transaction_id=txn.id,
        order_id=txn.order_id,
        status=txn.status,
        amount=txn.amount,
        currency=txn.currency,
        payment_method=txn.payment_method,
        requires_redirect=result.requires_redirect,
        redirect_url=result.redirect_url,
        message=result.message,
    )


# ─────────────────────────────────────────────
# HISTORY
# ─────────────────────────────────────────────

@router.get("/history", response_model=HistoryResponse)
async def history(
        page: int = Query(1, ge=1),
        limit: int = Query(HISTORY_DEFAULT_PAGE_SIZE, ge=1),
        status: Optional[str] = None,
        type: Optional[str] = None,
        user=Depends(get_current_user),
        sessions: async_sessionmaker = Depends(get_sessions),
):
    q = HistoryQuery(
        user_id=user["id"],
        page=page,
        limit=min(limit, HISTORY_MAX_PAGE_SIZE),
        status=status,
        transaction_type=type,
    )
    return await get_billing_history(sessions, q)


@router.get("/transactions/{transaction_id}", response_model=TransactionDetail)
async def transaction(
        transaction_id: str,
        user=Depends(get_current_user),
        db: AsyncSession = Depends(get_db),
):
    txn = await transaction_ledger.get_user_transaction(db, user["id"], transaction_id)
    detail = TransactionDetail.model_validate(txn)
    detail.history = [
        TransactionHistoryEntry.model_validate(h)
        for h in await transaction_ledger.get_history(db, txn.id)
    ]
    return detail


# ─────────────────────────────────────────────
# PROOF OF PAYMENT
# ─────────────────────────────────────────────

@router.post("/upload-proof", response_model=ProofUploadResponse)
async def upload_proof(
        transaction_id: str = Form(...),
        proof_file: UploadFile = File(...),
        user=Depends(get_current_user),
        db: AsyncSession = Depends(get_db),
):
    if not transaction_id.strip():
        raise HTTPException(status_code=400, detail="Missing required field: transaction_id")

    # One byte past the limit is enough to detect an oversize file
    data = await proof_file.read(MAX_PROOF_FILE_SIZE + 1)

    txn = await proof_service.upload_payment_proof(
        db,
        user["id"],
        transaction_id.strip(),
        proof_file.filename,
        proof_file.content_type,
        data,
    )
    return ProofUploadResponse(transaction_id=txn.id, proof_url=txn.proof_url, status=txn.status)


# ─────────────────────────────────────────────
# BILLING CYCLE
# ─────────────────────────────────────────────

@router.get("/cycle", response_model=BillingCycleResponse)
async def cycle(
        user=Depends(get_current_user),
        db: AsyncSession = Depends(get_db),
):
    current = await billing_cycle.get_current_billing_cycle(db, user["id"])
    if not current:
        raise HTTPException(status_code=404, detail="No active package")
    return BillingCycleResponse(
        package_id=current.package_id,
        billing_period=current.billing_period,
        current_period_start=current.current_period_start,
        current_period_end=current.current_period_end,
        next_billing_date=current.next_billing_date,
        amount=current.amount,
        currency=current.currency,
        is_active=current.is_active,
    )
