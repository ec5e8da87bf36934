import os

# App modules read configuration at import time
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["RAZORPAY_KEY_ID"] = "rzp_test_key"
os.environ["RAZORPAY_KEY_SECRET"] = "rzp_test_secret"
os.environ["ADMIN_PHONES"] = "+919000000001"
os.environ["ADMIN_EMAILS"] = "admin@farm2market.in"
os.environ.pop("TWOFACTOR_API_KEY", None)

import pytest
from fastapi.testclient import TestClient

import main
import models
import otp
import payments
from database import engine


@pytest.fixture
def client():
    models.Base.metadata.drop_all(bind=engine)
    models.Base.metadata.create_all(bind=engine)
    otp.otp_store.clear()
    with TestClient(main.app) as c:
        yield c


def phone_login(client, phone, role=None):
    """Runs the OTP flow and returns (auth headers, session body)."""
    client.post("/api/auth/send-otp", json={"phone": phone})
    normalized = phone if phone.startswith("+") else f"+91{phone}"
    code = otp.otp_store.peek(normalized)
    body = {"phone": phone, "otp": code}
    if role:
        body["role"] = role
    response = client.post("/api/auth/verify-otp", json=body)
    assert response.status_code == 200, response.text
    session = response.json()
    client.cookies.clear()
    return {"Authorization": f"Bearer {session['access_token']}"}, session


@pytest.fixture
def farmer(client):
    headers, session = phone_login(client, "9876500001", role="farmer")
    return {"headers": headers, "id": session["profile"]["id"]}


@pytest.fixture
def buyer(client):
    headers, session = phone_login(client, "9876500002", role="buyer")
    return {"headers": headers, "id": session["profile"]["id"]}


@pytest.fixture
def admin(client):
    headers, session = phone_login(client, "+919000000001")
    return {"headers": headers, "id": session["profile"]["id"]}


@pytest.fixture
def crop(client, farmer):
    response = client.post(
        "/api/crops",
        json={
            "name": "Tomato",
            "description": "Fresh hybrid tomatoes",
            "price_per_kg": 40.0,
            "quantity_kg": 100,
            "location": "Nashik",
        },
        headers=farmer["headers"],
    )
    assert response.status_code == 201, response.text
    return response.json()


@pytest.fixture
def fake_gateway(monkeypatch):
    """Replaces the Razorpay Orders API call; records each request."""
    calls = []

    def _create(amount, crop_id, quantity_kg):
        calls.append({"amount": amount, "crop_id": crop_id, "quantity_kg": quantity_kg})
        return {"id": f"order_test_{len(calls)}", "amount": payments.to_paise(amount), "currency": "INR"}

    monkeypatch.setattr(payments, "create_gateway_order", _create)
    return calls


def sign(order_id, payment_id):
    return payments.payment_signature(order_id, payment_id, "rzp_test_secret")
