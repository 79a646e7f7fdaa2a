import pytest
from fastapi.testclient import TestClient

from storefront.domain.models import OrderStatus, new_id
from storefront.infrastructure.override_guard import OverrideGuard
from storefront.main import create_app

from conftest import BUYER


@pytest.fixture
def client(database, notifier, ledger):
    app = create_app(database, notifier=notifier, ledger_client=ledger,
                     override_guard=OverrideGuard(redis_url=None))
    with TestClient(app) as test_client:
        yield test_client


def checkout(client, lines=None, rail="card", payer=None):
    response = client.post("/checkouts", json={
        "lines": lines or [{"product": "Sourdough", "amount": "4.5"}],
        "rail": rail,
        "payer_identity": payer,
    })
    assert response.status_code == 201
    return response.json()


def test_health(client):
    response = client.get("/")

    assert response.status_code == 200
    assert response.json()["status"] == "active"


def test_checkout_then_confirm(client):
    order_id = checkout(client)["orders"][0]["id"]

    first = client.post("/payments/confirm", json={"target_id": order_id, "payment_reference": "pi_1", "rail": "card"})
    again = client.post("/payments/confirm", json={"target_id": order_id, "payment_reference": "pi_1"})

    assert first.status_code == 200
    assert first.json()["status"] == "confirmed"
    assert again.status_code == 200
    assert again.json()["status"] == "already_confirmed"


def test_conflicting_reference_is_409(client):
    order_id = checkout(client)["orders"][0]["id"]
    client.post("/payments/confirm", json={"target_id": order_id, "payment_reference": "pi_A"})

    response = client.post("/payments/confirm", json={"target_id": order_id, "payment_reference": "pi_B"})

    assert response.status_code == 409
    assert response.json()["error"]["existing_reference"] == "pi_A"


def test_confirm_unknown_order_is_404(client):
    response = client.post("/payments/confirm", json={"target_id": "nope", "payment_reference": "pi_1"})

    assert response.status_code == 404


def test_confirm_with_unknown_rail_is_422(client):
    order_id = checkout(client)["orders"][0]["id"]

    response = client.post("/payments/confirm", json={"target_id": order_id, "payment_reference": "pi_1", "rail": "iou"})

    assert response.status_code == 422
    assert response.json()["error"]["code"] == "unknown_rail"


def test_checkout_with_unknown_rail_is_422(client):
    response = client.post("/checkouts", json={"lines": [{"amount": "1"}], "rail": "iou"})

    assert response.status_code == 422


def test_batch_confirm_and_lookup(client):
    body = checkout(client, lines=[{"product": "A", "amount": "1"}, {"product": "B", "amount": "2"}])

    confirmed = client.post(f"/batches/{body['batch_id']}/confirm", json={"payment_reference": "pi_batch"})
    lookup = client.get("/payments/pi_batch/order")

    assert confirmed.status_code == 200
    assert confirmed.json()["fully_confirmed"] is True
    assert lookup.status_code == 200
    assert len(lookup.json()["orders"]) == 2


def test_lookup_unknown_reference_is_404(client):
    assert client.get("/payments/pi_missing/order").status_code == 404


def test_status_updates(client):
    order_id = checkout(client)["orders"][0]["id"]
    client.post("/payments/confirm", json={"target_id": order_id, "payment_reference": "pi_1"})

    ok = client.post(f"/orders/{order_id}/status", json={"status": "preparing"})
    backwards = client.post(f"/orders/{order_id}/status", json={"status": "confirmed"})
    missing = client.post("/orders/missing/status", json={"status": "shipped"})

    assert ok.status_code == 200
    assert ok.json()["status"] == "preparing"
    assert backwards.status_code == 422
    assert missing.status_code == 404


def test_recover_cancel(client, make_order):
    order = make_order(status=OrderStatus.PENDING_PAYMENT.value, payment_reference="pi_1", age_hours=30)

    response = client.post(f"/orders/{order.id}/recover", json={"action": "cancel"})

    assert response.status_code == 200
    assert response.json()["status"] == OrderStatus.CANCELLED.value


def test_sweeps(client, make_order, ledger):
    stale = make_order(age_hours=48)
    make_order(status=OrderStatus.PENDING_PAYMENT.value, rail="card", payment_reference="pi_old", age_hours=30)
    make_order(status=OrderStatus.PENDING_PAYMENT.value, rail="blockchain", payment_reference="sig_1",
               amount="1.5", payer=BUYER)
    ledger.add_transfer("sig_1", "1.5")

    preview = client.post("/sweeps/stale-drafts", json={"dry_run": True})
    report = client.get("/sweeps/pending-payments", params={"threshold_hours": 24})
    verify = client.post("/sweeps/verify-transactions", json={})

    assert preview.status_code == 200
    assert preview.json()["order_ids"] == [stale.id]
    assert report.json()["by_rail"]["card"]["count"] == 1
    assert verify.json()["verified"] == 1


def test_confirm_with_cancelled_sibling_is_207(client, make_order):
    batch_id = new_id()
    live = make_order(batch_id=batch_id)
    cancelled = make_order(status=OrderStatus.CANCELLED.value, batch_id=batch_id)

    response = client.post("/payments/confirm", json={"target_id": live.id, "payment_reference": "pi_1"})

    assert response.status_code == 207
    body = response.json()
    assert body["status"] == "partial"
    outcomes = {o["order_id"]: o["outcome"] for o in body["orders"]}
    assert outcomes == {live.id: "confirmed", cancelled.id: "cancelled"}


def test_blockchain_confirm_is_accepted_until_verified(client):
    body = checkout(client, rail="blockchain", payer=BUYER)
    order_id = body["orders"][0]["id"]

    response = client.post("/payments/confirm", json={"target_id": order_id, "payment_reference": "sig_1"})
    lookup = client.get("/payments/sig_1/order")

    assert response.status_code == 202
    assert response.json()["status"] == "pending_verification"
    assert lookup.json()["orders"][0]["status"] == OrderStatus.PENDING_PAYMENT.value
    assert lookup.json()["orders"][0]["pending_since"] is not None


def test_submit_then_verify_sweep_confirms(client, ledger):
    body = checkout(client, lines=[{"amount": "1"}, {"amount": "0.5"}], rail="blockchain", payer=BUYER)
    ledger.add_transfer("sig_paid", "1.5")

    submitted = client.post("/payments/submit", json={"target_id": body["batch_id"], "payment_reference": "sig_paid"})
    verify = client.post("/sweeps/verify-transactions", json={})
    lookup = client.get("/payments/sig_paid/order")

    assert submitted.status_code == 202
    assert submitted.json()["pending_count"] == 2
    assert verify.json()["verified"] == 1
    assert {o["status"] for o in lookup.json()["orders"]} == {OrderStatus.CONFIRMED.value}


def test_payment_failure_is_recorded(client):
    order_id = checkout(client)["orders"][0]["id"]
    client.post("/payments/submit", json={"target_id": order_id, "payment_reference": "pi_fail"})

    response = client.post("/payments/pi_fail/failure", json={
        "code": "insufficient_funds", "message": "Not enough money", "payment_method_type": "card",
    })
    missing = client.post("/payments/pi_nobody/failure", json={"code": "card_declined"})
    lookup = client.get("/payments/pi_fail/order")

    assert response.status_code == 200
    assert response.json()["retry_eligible"] is True
    assert response.json()["updated_order_ids"] == [order_id]
    assert missing.status_code == 404
    stored = lookup.json()["orders"][0]
    assert stored["status"] == OrderStatus.PENDING_PAYMENT.value
    assert stored["payment_metadata"]["payment_error"]["code"] == "insufficient_funds"
