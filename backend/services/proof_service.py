# FILE: backend/services/proof_service.py
"""Proof-of-payment uploads for manual payment channels."""

import asyncio
import logging
import os
import time
from pathlib import Path
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from backend.core import config
from backend.core.errors import BillingError, BusinessRuleError, ValidationError
from backend.models.transaction import Transaction
from backend.services import audit_service, transaction_ledger
from backend.services.payment_processor import is_manual_method

logger = logging.getLogger("billing.proofs")

SOURCE = "billing.proof_service"

ALLOWED_EXTENSIONS = {".jpg", ".jpeg", ".png", ".webp", ".pdf"}
LOCKED_STATUSES = {transaction_ledger.COMPLETED, transaction_ledger.REFUNDED}


def validate_proof_file(filename: Optional[str], content_type: Optional[str], size: int) -> str:
    """Returns the extension the stored file will get."""
    if content_type not in config.ALLOWED_PROOF_CONTENT_TYPES:
        raise ValidationError(
            "Invalid file type. Only JPEG, PNG, WebP and PDF files are allowed", field="proof_file"
        )

    ext = os.path.splitext(filename or "")[1].lower()
    if ext and ext not in ALLOWED_EXTENSIONS:
        raise ValidationError(f"Files with extension {ext} are not allowed", field="proof_file")

    if size <= 0:
        raise ValidationError("Uploaded file is empty", field="proof_file")
    if size > config.MAX_PROOF_FILE_SIZE:
        raise ValidationError(
            f"File too large. Maximum size is {config.MAX_PROOF_FILE_SIZE // (1024 * 1024)}MB", field="proof_file"
        )

    return ext if ext in ALLOWED_EXTENSIONS else config.ALLOWED_PROOF_CONTENT_TYPES[content_type]


def _check_status(txn: Transaction) -> None:
    if not is_manual_method(txn.payment_method):
        raise BusinessRuleError(f"Payment proof is only accepted for manual payments, not {txn.payment_method}")
    if txn.status in LOCKED_STATUSES:
        raise BusinessRuleError("Cannot upload proof for a completed or refunded transaction")
    if txn.status not in {transaction_ledger.PENDING, transaction_ledger.PROOF_UPLOADED}:
        raise BusinessRuleError(f"Cannot upload proof for a {txn.status} transaction")


def _write(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(data)


async def upload_payment_proof(
    db: AsyncSession,
    user_id: str,
    transaction_id: str,
    filename: Optional[str],
    content_type: Optional[str],
    data: bytes,
) -> Transaction:
    ext = validate_proof_file(filename, content_type, len(data))

    txn = await transaction_ledger.get_user_transaction(db, user_id, transaction_id)
    _check_status(txn)

    stored_name = f"payment-proof-{txn.id}-{int(time.time() * 1000)}{ext}"
    relative = f"{user_id}/{stored_name}"
    target = Path(config.PROOF_UPLOAD_DIR) / user_id / stored_name

    async with audit_service.audited(
        "upload_payment_proof", user_id, "User uploading payment proof and updating transaction status", SOURCE,
        transaction_id=txn.id, file_name=stored_name, file_size=len(data), file_type=content_type,
    ):
        await asyncio.to_thread(_write, target, data)
        try:
            txn = await transaction_ledger.attach_proof(db, txn.id, relative, changed_by=user_id)
        except BillingError:
            target.unlink(missing_ok=True)
            raise

    logger.info("Stored payment proof for %s at %s", txn.id, target)
    return txn
