# backend/payments.py
"""
Razorpay integration.

Creates gateway orders through the Razorpay Orders REST API and verifies
the signature the checkout widget hands back after a successful payment.
"""

import os
import hmac
import time
import hashlib
import logging

import requests

log = logging.getLogger(__name__)

RAZORPAY_API_URL = "https://api.razorpay.com/v1/orders"
RAZORPAY_KEY_ID = os.getenv("RAZORPAY_KEY_ID")
RAZORPAY_KEY_SECRET = os.getenv("RAZORPAY_KEY_SECRET")
CURRENCY = "INR"
MERCHANT_NAME = "Farm2Market"

if not (RAZORPAY_KEY_ID and RAZORPAY_KEY_SECRET):
    log.warning("RAZORPAY_KEY_ID/RAZORPAY_KEY_SECRET not set. Checkout will be unavailable.")


class PaymentGatewayError(Exception):
    """Raised when a gateway order can't be created."""


def to_paise(amount: float) -> int:
    """Razorpay expects amounts in the smallest currency unit."""
    return int(round(amount * 100))


def create_gateway_order(amount: float, crop_id: str, quantity_kg: float) -> dict:
    """
    Creates a Razorpay order for `amount` rupees and returns the gateway's JSON.

    Raises PaymentGatewayError when credentials are missing or the call fails.
    """
    if not (RAZORPAY_KEY_ID and RAZORPAY_KEY_SECRET):
        raise PaymentGatewayError("Razorpay credentials not configured")

    order_data = {
        "amount": to_paise(amount),
        "currency": CURRENCY,
        "receipt": f"order_{int(time.time() * 1000)}",
        "notes": {
            "cropId": crop_id,
            "quantity": quantity_kg,
        },
    }
    log.info(f"Creating Razorpay order: receipt={order_data['receipt']}, amount={order_data['amount']} paise")

    try:
        response = requests.post(
            RAZORPAY_API_URL,
            json=order_data,
            auth=(RAZORPAY_KEY_ID, RAZORPAY_KEY_SECRET),
            timeout=15,
        )
    except requests.exceptions.RequestException as e:
        log.error(f"Network error contacting Razorpay: {e}")
        raise PaymentGatewayError("Failed to create Razorpay order") from e

    if not response.ok:
        log.error(f"Razorpay error {response.status_code}: {response.text}")
        raise PaymentGatewayError("Failed to create Razorpay order")

    try:
        order = response.json()
    except ValueError as e:
        log.error(f"Unreadable Razorpay response: {e}")
        raise PaymentGatewayError("Failed to create Razorpay order") from e

    if "id" not in order:
        log.error(f"Razorpay response missing order id: {order}")
        raise PaymentGatewayError("Failed to create Razorpay order")

    log.info(f"Razorpay order created: {order['id']}")
    return order


def payment_signature(order_id: str, payment_id: str, secret: str) -> str:
    message = f"{order_id}|{payment_id}".encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


def verify_payment_signature(order_id: str, payment_id: str, signature: str) -> bool:
    """Checks the checkout widget's razorpay_signature for this order/payment pair."""
    if not RAZORPAY_KEY_SECRET:
        log.error("Cannot verify payment signature: RAZORPAY_KEY_SECRET not set.")
        return False
    expected = payment_signature(order_id, payment_id, RAZORPAY_KEY_SECRET)
    return hmac.compare_digest(expected, signature)
