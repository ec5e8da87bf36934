import requests
import pytest

import payments
from conftest import phone_login, sign


def _checkout(client, buyer, crop, quantity=10, address="12 Market Road, Pune"):
    return client.post(
        "/api/orders/checkout",
        json={"crop_id": crop["id"], "quantity_kg": quantity, "delivery_address": address},
        headers=buyer["headers"],
    )


def _pay(client, buyer, razorpay_order_id, payment_id="pay_test_1", signature=None):
    return client.post(
        "/api/orders/verify-payment",
        json={
            "razorpay_order_id": razorpay_order_id,
            "razorpay_payment_id": payment_id,
            "razorpay_signature": signature or sign(razorpay_order_id, payment_id),
        },
        headers=buyer["headers"],
    )


def test_checkout_creates_gateway_and_pending_order(client, buyer, crop, fake_gateway):
    response = _checkout(client, buyer, crop, quantity=2.5)
    assert response.status_code == 201, response.text
    body = response.json()

    assert fake_gateway == [{"amount": 100.0, "crop_id": crop["id"], "quantity_kg": 2.5}]
    assert body["key_id"] == "rzp_test_key"
    assert body["razorpay_order_id"] == "order_test_1"
    assert body["amount"] == 10000
    assert body["currency"] == "INR"
    assert body["description"] == "Purchase: Tomato"
    assert body["order"]["status"] == "pending"
    assert body["order"]["total_price"] == 100.0
    assert body["order"]["farmer_id"] == crop["farmer_id"]

    # Stock is untouched until payment is verified
    assert client.get(f"/api/crops/{crop['id']}").json()["quantity_kg"] == 100


def test_checkout_validation(client, buyer, farmer, crop, fake_gateway):
    assert _checkout(client, buyer, crop, address="   ").status_code == 422
    assert _checkout(client, buyer, crop, quantity=0).status_code == 422

    too_much = _checkout(client, buyer, crop, quantity=101)
    assert too_much.status_code == 409
    assert too_much.json()["detail"] == "Insufficient stock"

    own = _checkout(client, farmer, crop)
    assert own.status_code == 400
    assert fake_gateway == []


def test_checkout_requires_login(client, crop):
    response = client.post(
        "/api/orders/checkout",
        json={"crop_id": crop["id"], "quantity_kg": 1, "delivery_address": "Pune"},
    )
    assert response.status_code == 401


def test_checkout_gateway_failure(client, buyer, crop, monkeypatch):
    def _boom(*args, **kwargs):
        raise payments.PaymentGatewayError("Failed to create Razorpay order")

    monkeypatch.setattr(payments, "create_gateway_order", _boom)
    response = _checkout(client, buyer, crop)
    assert response.status_code == 502
    assert client.get("/api/orders", headers=buyer["headers"]).json() == []


def test_verify_payment_marks_paid_and_decrements_stock(client, buyer, farmer, crop, fake_gateway):
    checkout = _checkout(client, buyer, crop, quantity=40).json()
    response = _pay(client, buyer, checkout["razorpay_order_id"])
    assert response.status_code == 200, response.text
    order = response.json()
    assert order["status"] == "paid"
    assert order["razorpay_payment_id"] == "pay_test_1"

    stock = client.get(f"/api/crops/{crop['id']}").json()
    assert stock["quantity_kg"] == 60
    assert stock["available"] is True

    # Both parties see the order
    assert [o["id"] for o in client.get("/api/orders", headers=buyer["headers"]).json()] == [order["id"]]
    assert [o["id"] for o in client.get("/api/orders", headers=farmer["headers"]).json()] == [order["id"]]


def test_buying_all_stock_makes_crop_unavailable(client, buyer, crop, fake_gateway):
    checkout = _checkout(client, buyer, crop, quantity=100).json()
    _pay(client, buyer, checkout["razorpay_order_id"])
    stock = client.get(f"/api/crops/{crop['id']}").json()
    assert stock["quantity_kg"] == 0
    assert stock["available"] is False
    assert client.get("/api/crops").json() == []


def test_verify_payment_is_idempotent(client, buyer, crop, fake_gateway):
    checkout = _checkout(client, buyer, crop, quantity=10).json()
    first = _pay(client, buyer, checkout["razorpay_order_id"])
    second = _pay(client, buyer, checkout["razorpay_order_id"])
    assert first.status_code == second.status_code == 200
    assert first.json() == second.json()
    assert client.get(f"/api/crops/{crop['id']}").json()["quantity_kg"] == 90


def test_verify_payment_rejects_bad_signature(client, buyer, crop, fake_gateway):
    checkout = _checkout(client, buyer, crop).json()
    response = _pay(client, buyer, checkout["razorpay_order_id"], signature="forged")
    assert response.status_code == 400
    assert client.get(f"/api/orders/{checkout['order']['id']}", headers=buyer["headers"]).json()["status"] == "pending"


def test_verify_payment_other_buyer(client, buyer, crop, fake_gateway):
    checkout = _checkout(client, buyer, crop).json()
    other_headers, _ = phone_login(client, "9876500009", role="buyer")
    response = _pay(client, {"headers": other_headers}, checkout["razorpay_order_id"])
    assert response.status_code == 404


def test_verify_payment_when_stock_sold_out_meanwhile(client, buyer, crop, fake_gateway):
    first = _checkout(client, buyer, crop, quantity=80).json()
    second = _checkout(client, buyer, crop, quantity=80).json()
    assert _pay(client, buyer, first["razorpay_order_id"], payment_id="pay_a").status_code == 200

    late = _pay(client, buyer, second["razorpay_order_id"], payment_id="pay_b")
    assert late.status_code == 409
    order = client.get(f"/api/orders/{second['order']['id']}", headers=buyer["headers"]).json()
    assert order["status"] == "pending"
    assert client.get(f"/api/crops/{crop['id']}").json()["quantity_kg"] == 20


def test_order_visibility(client, buyer, crop, fake_gateway, admin):
    checkout = _checkout(client, buyer, crop).json()
    order_id = checkout["order"]["id"]
    stranger, _ = phone_login(client, "9876500009", role="buyer")
    assert client.get(f"/api/orders/{order_id}", headers=stranger).status_code == 404
    assert client.get(f"/api/orders/{order_id}", headers=admin["headers"]).status_code == 200


def test_farmer_delivers_paid_order(client, buyer, farmer, crop, fake_gateway):
    checkout = _checkout(client, buyer, crop).json()
    order_id = _pay(client, buyer, checkout["razorpay_order_id"]).json()["id"]

    by_buyer = client.patch(f"/api/orders/{order_id}/status", json={"status": "delivered"}, headers=buyer["headers"])
    assert by_buyer.status_code == 403

    delivered = client.patch(f"/api/orders/{order_id}/status", json={"status": "delivered"}, headers=farmer["headers"])
    assert delivered.status_code == 200
    assert delivered.json()["status"] == "delivered"

    reopen = client.patch(f"/api/orders/{order_id}/status", json={"status": "paid"}, headers=farmer["headers"])
    assert reopen.status_code == 409


def test_buyer_cancels_pending_order(client, buyer, farmer, crop, fake_gateway):
    order_id = _checkout(client, buyer, crop).json()["order"]["id"]
    by_farmer = client.patch(f"/api/orders/{order_id}/status", json={"status": "cancelled"}, headers=farmer["headers"])
    assert by_farmer.status_code == 403

    cancelled = client.patch(f"/api/orders/{order_id}/status", json={"status": "cancelled"}, headers=buyer["headers"])
    assert cancelled.json()["status"] == "cancelled"


def test_cancelling_paid_order_restores_stock(client, buyer, farmer, crop, fake_gateway):
    checkout = _checkout(client, buyer, crop, quantity=100).json()
    order_id = _pay(client, buyer, checkout["razorpay_order_id"]).json()["id"]
    assert client.get(f"/api/crops/{crop['id']}").json()["available"] is False

    response = client.patch(f"/api/orders/{order_id}/status", json={"status": "cancelled"}, headers=farmer["headers"])
    assert response.status_code == 200
    stock = client.get(f"/api/crops/{crop['id']}").json()
    assert stock["quantity_kg"] == 100
    assert stock["available"] is True


def test_crop_with_open_order_cannot_be_deleted(client, buyer, farmer, crop, fake_gateway):
    _checkout(client, buyer, crop)
    response = client.delete(f"/api/crops/{crop['id']}", headers=farmer["headers"])
    assert response.status_code == 409


def test_crop_with_closed_orders_is_retired(client, buyer, farmer, crop, fake_gateway):
    order_id = _checkout(client, buyer, crop).json()["order"]["id"]
    client.patch(f"/api/orders/{order_id}/status", json={"status": "cancelled"}, headers=buyer["headers"])

    assert client.delete(f"/api/crops/{crop['id']}", headers=farmer["headers"]).status_code == 204
    retired = client.get(f"/api/crops/{crop['id']}").json()
    assert retired["available"] is False
    assert retired["quantity_kg"] == 0


class _FakeResponse:
    def __init__(self, status_code, payload):
        self.status_code = status_code
        self.ok = status_code < 400
        self._payload = payload
        self.text = str(payload)

    def json(self):
        return self._payload


def test_create_gateway_order_request(monkeypatch):
    captured = {}

    def _post(url, json, auth, timeout):
        captured.update(url=url, json=json, auth=auth)
        return _FakeResponse(200, {"id": "order_abc", "amount": json["amount"], "currency": "INR"})

    monkeypatch.setattr(payments.requests, "post", _post)
    order = payments.create_gateway_order(123.45, "crop-1", 3)

    assert order["id"] == "order_abc"
    assert captured["url"] == "https://api.razorpay.com/v1/orders"
    assert captured["auth"] == ("rzp_test_key", "rzp_test_secret")
    assert captured["json"]["amount"] == 12345
    assert captured["json"]["currency"] == "INR"
    assert captured["json"]["receipt"].startswith("order_")
    assert captured["json"]["notes"] == {"cropId": "crop-1", "quantity": 3}


def test_create_gateway_order_errors(monkeypatch):
    monkeypatch.setattr(payments.requests, "post", lambda *a, **kw: _FakeResponse(401, {"error": "bad key"}))
    with pytest.raises(payments.PaymentGatewayError):
        payments.create_gateway_order(10, "crop-1", 1)

    def _offline(*args, **kwargs):
        raise requests.exceptions.ConnectionError("offline")

    monkeypatch.setattr(payments.requests, "post", _offline)
    with pytest.raises(payments.PaymentGatewayError):
        payments.create_gateway_order(10, "crop-1", 1)


def test_create_gateway_order_without_credentials(monkeypatch):
    monkeypatch.setattr(payments, "RAZORPAY_KEY_SECRET", None)
    with pytest.raises(payments.PaymentGatewayError, match="not configured"):
        payments.create_gateway_order(10, "crop-1", 1)


def test_payment_signature_check():
    good = sign("order_1", "pay_1")
    assert payments.verify_payment_signature("order_1", "pay_1", good)
    assert not payments.verify_payment_signature("order_1", "pay_2", good)


def test_payment_id_cannot_pay_two_orders(client, buyer, crop, fake_gateway):
    first = _checkout(client, buyer, crop, quantity=1).json()
    second = _checkout(client, buyer, crop, quantity=1).json()
    assert _pay(client, buyer, first["razorpay_order_id"], payment_id="pay_shared").status_code == 200

    reused = _pay(client, buyer, second["razorpay_order_id"], payment_id="pay_shared")
    assert reused.status_code == 409
    assert client.get(f"/api/crops/{crop['id']}").json()["quantity_kg"] == 99
    order = client.get(f"/api/orders/{second['order']['id']}", headers=buyer["headers"]).json()
    assert order["status"] == "pending"
    assert order["razorpay_payment_id"] is None


def test_paid_order_rejects_a_different_payment(client, buyer, crop, fake_gateway):
    checkout = _checkout(client, buyer, crop, quantity=10).json()
    _pay(client, buyer, checkout["razorpay_order_id"], payment_id="pay_a")

    again = _pay(client, buyer, checkout["razorpay_order_id"], payment_id="pay_b")
    assert again.status_code == 409
    assert client.get(f"/api/crops/{crop['id']}").json()["quantity_kg"] == 90


def test_replay_after_cancellation_conflicts(client, buyer, farmer, crop, fake_gateway):
    checkout = _checkout(client, buyer, crop, quantity=10).json()
    order_id = _pay(client, buyer, checkout["razorpay_order_id"]).json()["id"]
    client.patch(f"/api/orders/{order_id}/status", json={"status": "cancelled"}, headers=farmer["headers"])

    replay = _pay(client, buyer, checkout["razorpay_order_id"])
    assert replay.status_code == 409
    assert replay.json()["detail"] == "Order is already cancelled"
    assert client.get(f"/api/crops/{crop['id']}").json()["quantity_kg"] == 100
