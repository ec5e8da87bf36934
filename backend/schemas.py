# backend/schemas.py
import os
import re
from pydantic import BaseModel, ConfigDict, Field, field_validator, EmailStr
from typing import Optional, Literal
from datetime import datetime

DEFAULT_COUNTRY_CODE = os.getenv("DEFAULT_COUNTRY_CODE", "+91")

RoleName = Literal["farmer", "buyer", "admin"]
SelectableRole = Literal["farmer", "buyer"]
LanguageCode = Literal["en", "hi", "te"]
OrderStatus = Literal["pending", "paid", "delivered", "cancelled"]

_PHONE_SEPARATORS = re.compile(r'[\s\-\(\)]')


def normalize_phone(raw: str) -> str:
    """
    Normalizes a phone number to E.164.

    '9876543210' becomes '+919876543210' (DEFAULT_COUNTRY_CODE prefixed);
    numbers already starting with '+' must carry 10-15 digits.
    """
    phone = _PHONE_SEPARATORS.sub('', raw or '')
    if phone.startswith('+'):
        if not re.fullmatch(r'\+\d{10,15}', phone):
            raise ValueError("Phone number must be '+' followed by 10-15 digits")
        return phone
    if not re.fullmatch(r'\d{10}', phone):
        raise ValueError("Phone number must have exactly 10 digits")
    return f"{DEFAULT_COUNTRY_CODE}{phone}"


# --- Base Schemas ---
class SuccessResponse(BaseModel):
    Status: str
    Details: str

class MessageResponse(BaseModel):
    message: str

# --- Token Schemas ---
class TokenData(BaseModel):
    sub: Optional[str] = None # Profile id
    type: Optional[str] = None # Sign-in method: 'phone' or 'email'

# --- Auth Request Schemas ---
class PhoneRequest(BaseModel):
    phone: str

    @field_validator('phone')
    @classmethod
    def _normalize_phone(cls, v: str) -> str:
        return normalize_phone(v)

class OtpVerify(PhoneRequest):
    otp: str = Field(..., min_length=6, max_length=6, pattern=r'^\d{6}$')
    role: Optional[SelectableRole] = None

class EmailSignup(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=6, max_length=72)
    role: SelectableRole
    full_name: Optional[str] = Field(None, max_length=100)

class EmailLogin(BaseModel):
    email: EmailStr
    password: str

class RoleSelection(BaseModel):
    role: SelectableRole

class AdminRoleUpdate(BaseModel):
    role: RoleName

class ProfileUpdate(BaseModel):
    full_name: Optional[str] = Field(None, min_length=2, max_length=100)
    language: Optional[LanguageCode] = None

# --- Profile Schemas ---
class ProfileOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    phone: Optional[str] = None
    email: Optional[str] = None
    full_name: Optional[str] = None
    role: Optional[RoleName] = None
    language: str
    needs_role_selection: bool
    created_at: datetime
    last_login_at: Optional[datetime] = None

class SessionResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    needs_role_selection: bool
    profile: ProfileOut

# --- Crop Schemas ---
def _clean_crop_name(v: str) -> str:
    v = v.strip()
    if len(v) < 2:
        raise ValueError("Crop name must be at least 2 characters")
    return v

class CropCreate(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    description: str = Field("", max_length=2000)
    price_per_kg: float = Field(..., gt=0)
    quantity_kg: float = Field(..., ge=0)
    image_url: Optional[str] = Field(None, max_length=500)
    location: Optional[str] = Field(None, max_length=100)

    @field_validator('name')
    @classmethod
    def _strip_name(cls, v: str) -> str:
        return _clean_crop_name(v)

class CropUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=100)
    description: Optional[str] = Field(None, max_length=2000)
    price_per_kg: Optional[float] = Field(None, gt=0)
    quantity_kg: Optional[float] = Field(None, ge=0)
    image_url: Optional[str] = Field(None, max_length=500)
    location: Optional[str] = Field(None, max_length=100)
    available: Optional[bool] = None

    @field_validator('name')
    @classmethod
    def _strip_name(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        return _clean_crop_name(v)

class CropOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    farmer_id: str
    name: str
    description: str
    price_per_kg: float
    quantity_kg: float
    image_url: Optional[str] = None
    location: Optional[str] = None
    available: bool
    created_at: datetime
    updated_at: datetime

# --- Order & Payment Schemas ---
class CheckoutRequest(BaseModel):
    crop_id: str
    quantity_kg: float = Field(..., gt=0)
    delivery_address: str = Field(..., max_length=500)

    @field_validator('delivery_address')
    @classmethod
    def _address_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Delivery address is required")
        return v

class OrderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    buyer_id: str
    farmer_id: str
    crop_id: str
    quantity_kg: float
    total_price: float
    status: OrderStatus
    delivery_address: Optional[str] = None
    razorpay_order_id: str
    razorpay_payment_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime

class CheckoutResponse(BaseModel):
    """Everything the Razorpay checkout widget needs to open."""
    key_id: str
    razorpay_order_id: str
    amount: int # paise
    currency: str
    name: str
    description: str
    order: OrderOut

class PaymentVerification(BaseModel):
    razorpay_order_id: str
    razorpay_payment_id: str
    razorpay_signature: str

class OrderStatusUpdate(BaseModel):
    status: OrderStatus

# --- Chat Schemas ---
class ChatCreate(BaseModel):
    farmer_id: str
    crop_id: str

class ChatOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    buyer_id: str
    farmer_id: str
    crop_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime

class ChatSummary(ChatOut):
    counterpart_role: SelectableRole
    unread_count: int = 0

class MessageCreate(BaseModel):
    content: str = Field(..., max_length=2000)

    @field_validator('content')
    @classmethod
    def _content_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Message cannot be empty")
        return v

class MessageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    chat_id: str
    sender_id: str
    content: str
    read: bool
    created_at: datetime

class ReadReceipt(BaseModel):
    updated: int
