# backend/otp.py
"""
One-time passwords for phone sign-in.

OTPs live in an in-process dict with an expiry and are delivered by SMS
through the 2Factor API. Without TWOFACTOR_API_KEY delivery is simulated.
"""

import os
import secrets
import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, NamedTuple, Optional

import requests

from auth_utils import mask_phone

log = logging.getLogger(__name__)

TWOFACTOR_API_KEY = os.getenv("TWOFACTOR_API_KEY")
TWOFACTOR_TEMPLATE = os.getenv("TWOFACTOR_TEMPLATE") or None
OTP_EXPIRE_MINUTES = int(os.getenv("OTP_EXPIRE_MINUTES", 5))
OTP_LENGTH = 6
OTP_MAX_ATTEMPTS = int(os.getenv("OTP_MAX_ATTEMPTS", 5))

if not TWOFACTOR_API_KEY:
    log.warning("TWOFACTOR_API_KEY env var not set. OTP SMS sending is disabled.")


class _PendingOtp(NamedTuple):
    code: str
    expires_at: datetime
    failed_attempts: int = 0


class OtpStore:
    """In-memory OTP store. Codes are lost on restart and not shared between workers."""

    def __init__(self, ttl: timedelta):
        self.ttl = ttl
        self._pending: Dict[str, _PendingOtp] = {}

    def issue(self, phone: str) -> str:
        code = ''.join(secrets.choice("0123456789") for _ in range(OTP_LENGTH))
        self._pending[phone] = _PendingOtp(code, datetime.now(timezone.utc) + self.ttl)
        return code

    def peek(self, phone: str) -> Optional[str]:
        """Returns the live code for `phone`, dropping it if expired."""
        pending = self._pending.get(phone)
        if pending is None:
            return None
        if pending.expires_at <= datetime.now(timezone.utc):
            self._pending.pop(phone, None)
            return None
        return pending.code

    def record_failure(self, phone: str) -> int:
        """Counts a wrong guess; the code is dropped once OTP_MAX_ATTEMPTS is reached."""
        pending = self._pending.get(phone)
        if pending is None:
            return 0
        failed = pending.failed_attempts + 1
        if failed >= OTP_MAX_ATTEMPTS:
            self._pending.pop(phone, None)
        else:
            self._pending[phone] = pending._replace(failed_attempts=failed)
        return failed

    def consume(self, phone: str) -> None:
        self._pending.pop(phone, None)

    def clear(self) -> None:
        self._pending.clear()


otp_store = OtpStore(ttl=timedelta(minutes=OTP_EXPIRE_MINUTES))


class OtpError(Exception):
    """Raised when a submitted OTP is missing, expired or wrong."""


def verify_otp(phone: str, submitted: str) -> None:
    """Checks `submitted` against the stored code and consumes it on success."""
    stored = otp_store.peek(phone)
    if stored is None:
        raise OtpError("OTP invalid or expired. Please request again.")
    if not secrets.compare_digest(stored, submitted):
        if otp_store.record_failure(phone) >= OTP_MAX_ATTEMPTS:
            log.warning(f"Too many wrong OTPs for {mask_phone(phone)}; code discarded")
            raise OtpError("Too many incorrect attempts. Please request a new OTP.")
        raise OtpError("Invalid OTP provided.")
    otp_store.consume(phone)


def send_sms_otp(phone: str, code: str) -> bool:
    """Requests SMS delivery via 2Factor. Returns True when the provider accepted it."""
    masked = mask_phone(phone)
    # 2Factor takes the number without the leading '+'
    base_url = f"https://2factor.in/API/V1/{TWOFACTOR_API_KEY}/SMS/{phone.lstrip('+')}/{code}"
    request_url = f"{base_url}/{TWOFACTOR_TEMPLATE}" if TWOFACTOR_TEMPLATE else base_url

    log.info(f"Attempting SMS via 2Factor for {masked} using template: {TWOFACTOR_TEMPLATE or '(No Template Used)'}...")
    try:
        response = requests.get(request_url, timeout=15)
        response.raise_for_status()
        response_json = response.json()
    except requests.exceptions.Timeout:
        log.error(f"Timeout contacting 2Factor API for {masked}.")
        return False
    except requests.exceptions.HTTPError as e:
        log.error(f"HTTP error from 2Factor API for {masked}: {e.response.status_code} {e.response.text}")
        return False
    except requests.exceptions.RequestException as e:
        log.error(f"Network error contacting 2Factor API for {masked}: {e}")
        return False
    except ValueError as e:
        log.error(f"Unreadable 2Factor response for {masked}: {e}")
        return False

    log.info(f"2Factor API response for {masked}: Status='{response_json.get('Status')}', Details='{response_json.get('Details')}'")
    if response_json.get("Status") == "Success":
        return True
    log.error(f"2Factor reported SMS failure for {masked}: {response_json.get('Details', 'No details provided')}")
    return False


def dispatch_otp(phone: str) -> dict:
    """Issues a fresh OTP for `phone` and delivers it. Returns the {Status, Details} body."""
    masked = mask_phone(phone)
    code = otp_store.issue(phone)
    log.info(f"Generated and stored OTP for {masked} (expires in {OTP_EXPIRE_MINUTES} min)")
    log.debug(f"OTP for {masked}: {code}")

    if not TWOFACTOR_API_KEY:
        log.warning(f"SMS sending skipped for {masked} (NO API KEY)")
        return {"Status": "Success (Simulation)", "Details": f"OTP generated for {masked}. SMS sending skipped (No API Key)."}

    if send_sms_otp(phone, code):
        return {"Status": "Success", "Details": f"OTP sent successfully via SMS provider to {masked}."}
    return {"Status": "Success", "Details": f"OTP generated for {masked}. Problem encountered sending SMS (see server logs)."}
