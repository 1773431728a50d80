import pytest

from backend.core import config
from backend.core.errors import BusinessRuleError, NotFoundError, ValidationError
from backend.services import proof_service, transaction_ledger
from conftest import make_transaction

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


@pytest.fixture
def upload_dir(tmp_path, monkeypatch):
    target = tmp_path / "proofs"
    monkeypatch.setattr(config, "PROOF_UPLOAD_DIR", target)
    return target


async def _bank_transfer(db, user, status="pending"):
    txn = make_transaction(user.id, status=status, payment_method="bank_transfer")
    db.add(txn)
    await db.commit()
    return txn


async def test_upload_moves_to_proof_uploaded(db, user, upload_dir):
    txn = await _bank_transfer(db, user)

    updated = await proof_service.upload_payment_proof(db, user.id, txn.id, "receipt.PNG", "image/png", PNG)

    assert updated.status == "proof_uploaded"
    assert updated.proof_url.startswith(f"{user.id}/payment-proof-{txn.id}-")
    assert updated.proof_url.endswith(".png")
    stored = upload_dir / updated.proof_url
    assert stored.read_bytes() == PNG

    history = await transaction_ledger.get_history(db, txn.id)
    assert history[-1].new_status == "proof_uploaded"
    assert history[-1].changed_by == user.id


async def test_second_upload_replaces_proof(db, user, upload_dir):
    txn = await _bank_transfer(db, user, status="proof_uploaded")
    updated = await proof_service.upload_payment_proof(db, user.id, txn.id, "scan.pdf", "application/pdf", b"%PDF-1.4")
    assert updated.status == "proof_uploaded"
    assert updated.proof_url.endswith(".pdf")


@pytest.mark.parametrize("status", ["completed", "refunded", "failed", "cancelled"])
async def test_closed_transactions_reject_proof(db, user, upload_dir, status):
    txn = await _bank_transfer(db, user, status=status)
    with pytest.raises(BusinessRuleError):
        await proof_service.upload_payment_proof(db, user.id, txn.id, "receipt.png", "image/png", PNG)
    assert not upload_dir.exists()


async def test_other_users_transaction(db, user, upload_dir):
    txn = await _bank_transfer(db, user)
    with pytest.raises(NotFoundError):
        await proof_service.upload_payment_proof(db, "someone-else", txn.id, "receipt.png", "image/png", PNG)


def test_oversized_file_rejected():
    with pytest.raises(ValidationError, match="too large"):
        proof_service.validate_proof_file("big.jpg", "image/jpeg", 6 * 1024 * 1024)


def test_executable_extension_rejected():
    with pytest.raises(ValidationError, match=".exe"):
        proof_service.validate_proof_file("payload.exe", "image/png", 100)


def test_unknown_content_type_rejected():
    with pytest.raises(ValidationError, match="Invalid file type"):
        proof_service.validate_proof_file("notes.txt", "text/plain", 100)


def test_empty_file_rejected():
    with pytest.raises(ValidationError, match="empty"):
        proof_service.validate_proof_file("receipt.png", "image/png", 0)


def test_extension_falls_back_to_content_type():
    assert proof_service.validate_proof_file("receipt", "image/webp", 10) == ".webp"
    assert proof_service.validate_proof_file("photo.JPEG", "image/jpeg", 10) == ".jpeg"


async def test_card_checkout_rejects_proof(db, user, upload_dir):
    txn = make_transaction(user.id, status="pending", payment_method="stripe")
    db.add(txn)
    await db.commit()

    with pytest.raises(BusinessRuleError, match="manual payments"):
        await proof_service.upload_payment_proof(db, user.id, txn.id, "receipt.png", "image/png", PNG)

    assert txn.status == "pending"
    assert not upload_dir.exists()
