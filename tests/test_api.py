import json
from datetime import timedelta

import httpx
import pytest

from backend.api.deps import get_sessions
from backend.core import config
from backend.core.database import get_db, utcnow
from backend.core.errors import ExternalGatewayError
from backend.models.transaction import Transaction
from backend.server import app
from backend.services.auth_service import create_token
from backend.services.payment_gateway import GatewayRegistry
from conftest import customer_info, make_subscription, make_transaction


@pytest.fixture
async def client(session_factory, gateway):
    async def override_db():
        async with session_factory() as session:
            yield session

    registry = GatewayRegistry()
    registry.install(gateway)
    previous = app.state.gateways
    app.state.gateways = registry
    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_sessions] = lambda: session_factory

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c

    app.dependency_overrides.clear()
    app.state.gateways = previous


@pytest.fixture
def auth(user):
    return {"Authorization": f"Bearer {create_token(user.id, user.email)}"}


async def test_health(client):
    resp = await client.get("/api/health")
    assert resp.status_code == 200
    assert resp.json() == {"status": "ok"}


async def test_packages_listing_hides_inactive(client, packages):
    resp = await client.get("/api/billing/packages")
    assert resp.status_code == 200
    slugs = [p["slug"] for p in resp.json()]
    assert slugs == ["free", "pro", "starter", "unpriced"]

    pro = resp.json()[1]
    assert pro["pricing_tiers"]["monthly"]["promo_price"] == "19.99"


async def test_unknown_package_is_404(client, packages):
    resp = await client.get(f"/api/billing/packages/{packages['retired'].id}")
    assert resp.status_code == 404
    assert resp.json() == {"detail": "Package not found or inactive", "error": "not_found"}


async def test_checkout_requires_auth(client, packages):
    body = {"package_id": packages["pro"].id, "customer_info": customer_info()}
    resp = await client.post("/api/billing/checkout", json=body)
    assert resp.status_code == 401


async def test_checkout_flow(client, packages, auth, gateway):
    body = {"package_id": packages["pro"].id, "billing_period": "monthly", "customer_info": customer_info()}

    resp = await client.post("/api/billing/checkout", json=body, headers=auth)

    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "pending"
    assert data["amount"] == "19.99"
    assert data["currency"] == "USD"
    assert data["requires_redirect"] is True
    assert data["redirect_url"] == "https://checkout.test/cs_test_1"
    assert len(gateway.checkouts) == 1

    detail = await client.get(f"/api/billing/transactions/{data['transaction_id']}", headers=auth)
    assert detail.status_code == 200
    assert [h["new_status"] for h in detail.json()["history"]] == ["pending"]


async def test_checkout_rejects_bad_input(client, packages, auth):
    body = {"package_id": packages["pro"].id, "billing_period": "weekly", "customer_info": customer_info()}
    resp = await client.post("/api/billing/checkout", json=body, headers=auth)
    assert resp.status_code == 422


async def test_checkout_business_rule_error(client, packages, auth):
    body = {"package_id": packages["starter"].id, "billing_period": "annual", "customer_info": customer_info()}

    resp = await client.post("/api/billing/checkout", json=body, headers=auth)

    assert resp.status_code == 400
    assert resp.json() == {"detail": "No pricing found for annual billing period", "error": "business_rule"}


async def test_gateway_failure_hides_details(client, packages, auth, gateway):
    gateway.checkout_error = ExternalGatewayError("sk_live_secret leaked in message", retryable=True, ambiguous=True)
    body = {"package_id": packages["pro"].id, "billing_period": "monthly", "customer_info": customer_info()}

    resp = await client.post("/api/billing/checkout", json=body, headers=auth)

    assert resp.status_code == 502
    assert "sk_live" not in resp.text
    assert resp.json()["error"] == "gateway_error"


async def test_history_endpoint(client, db, user, packages, auth):
    now = utcnow()
    for i in range(5):
        db.add(make_transaction(user.id, package_id=packages["pro"].id, created_at=now - timedelta(days=i)))
    await db.commit()

    resp = await client.get("/api/billing/history", params={"page": 2, "limit": 2}, headers=auth)

    assert resp.status_code == 200
    data = resp.json()
    assert len(data["transactions"]) == 2
    assert data["pagination"]["total_pages"] == 3
    assert data["pagination"]["has_prev"] is True
    assert data["summary"]["completed_transactions"] == 5
    assert data["summary"]["total_amount_spent"] == "99.95"


async def test_upload_proof_endpoint(client, db, user, auth, tmp_path, monkeypatch):
    monkeypatch.setattr(config, "PROOF_UPLOAD_DIR", tmp_path / "proofs")
    txn = make_transaction(user.id, status="pending", payment_method="bank_transfer")
    db.add(txn)
    await db.commit()

    resp = await client.post(
        "/api/billing/upload-proof",
        data={"transaction_id": txn.id},
        files={"proof_file": ("receipt.png", b"\x89PNG....", "image/png")},
        headers=auth,
    )

    assert resp.status_code == 200
    assert resp.json()["status"] == "proof_uploaded"
    assert (tmp_path / "proofs" / resp.json()["proof_url"]).exists()


async def test_upload_proof_rejects_executable(client, db, user, auth, tmp_path, monkeypatch):
    monkeypatch.setattr(config, "PROOF_UPLOAD_DIR", tmp_path / "proofs")
    txn = make_transaction(user.id, status="pending", payment_method="bank_transfer")
    db.add(txn)
    await db.commit()

    resp = await client.post(
        "/api/billing/upload-proof",
        data={"transaction_id": txn.id},
        files={"proof_file": ("receipt.exe", b"MZ....", "image/png")},
        headers=auth,
    )

    assert resp.status_code == 400
    assert resp.json()["field"] == "proof_file"


async def test_cancel_endpoint_refunds_inside_window(client, db, user, packages, auth, gateway, session_factory):
    sub = make_subscription(user.id, packages["pro"].id, utcnow() - timedelta(days=2))
    db.add(sub)
    txn = make_transaction(user.id, package_id=packages["pro"].id, subscription_id=sub.id, external_transaction_id="pi_1")
    db.add(txn)
    await db.commit()

    window = await client.get(f"/api/subscriptions/{sub.id}/refund-window", headers=auth)
    assert window.json()["is_eligible"] is True

    resp = await client.post(f"/api/subscriptions/{sub.id}/cancel", json={"reason": "Too expensive"}, headers=auth)

    assert resp.status_code == 200
    data = resp.json()
    assert data["action"] == "immediate_with_refund"
    assert data["days_active"] == 2
    assert data["refund_processed"] is True
    assert data["refund"] == "19.99"
    assert gateway.refunds == [("pi_1", "Too expensive", None)]

    async with session_factory() as fresh:
        assert (await fresh.get(Transaction, txn.id)).status == "refunded"

    again = await client.post(f"/api/subscriptions/{sub.id}/cancel", headers=auth)
    assert again.status_code == 400


async def test_my_subscription(client, db, user, packages, auth):
    assert (await client.get("/api/subscriptions/me", headers=auth)).status_code == 404

    sub = make_subscription(user.id, packages["pro"].id, utcnow())
    db.add(sub)
    await db.commit()

    resp = await client.get("/api/subscriptions/me", headers=auth)
    assert resp.json()["id"] == sub.id


async def test_webhook_signature_checked(client, gateway):
    payload = json.dumps({"id": "evt_1", "type": "customer.created", "data": {"object": {}}})

    bad = await client.post("/api/webhooks/stripe", content=payload, headers={"stripe-signature": "forged"})
    assert bad.status_code == 400

    ok = await client.post("/api/webhooks/stripe", content=payload, headers={"stripe-signature": "valid"})
    assert ok.status_code == 200
    assert ok.json()["received"] is True

    dup = await client.post("/api/webhooks/stripe", content=payload, headers={"stripe-signature": "valid"})
    assert dup.json()["duplicate"] is True
