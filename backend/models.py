# models.py
"""
SQLAlchemy ORM Models for the Farm2Market application.

Defines the database table structures for profiles, crop listings,
orders and buyer/farmer chats.
"""

import uuid
import logging
from datetime import datetime, timezone
from sqlalchemy import (
    Column, String, Text, Float, Boolean, DateTime, ForeignKey,
    UniqueConstraint
)
from sqlalchemy.orm import relationship

from database import Base

log = logging.getLogger(__name__)


def generate_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# --- Profile Model (Phone OTP or Email/Password) ---
class Profile(Base):
    """Identity record mapping a sign-in subject to a marketplace role."""
    __tablename__ = 'profiles'

    id = Column(String, primary_key=True, index=True, default=generate_id)
    phone = Column(String(20), unique=True, index=True, nullable=True, comment="E.164 phone number (phone sign-in)")
    email = Column(String(255), unique=True, index=True, nullable=True, comment="Login email (email sign-in)")
    hashed_password = Column(String, nullable=True, comment="bcrypt hash, email accounts only")
    full_name = Column(String(100), nullable=True)
    role = Column(String(20), nullable=True, comment="farmer, buyer or admin; NULL until selected")
    language = Column(String(5), nullable=False, default="en")

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    last_login_at = Column(DateTime(timezone=True), nullable=True)

    crops = relationship("Crop", back_populates="farmer")

    @property
    def needs_role_selection(self) -> bool:
        return self.role is None

    def __repr__(self):
        return f"<Profile(id={self.id}, role='{self.role}')>"


# --- Crop Listing Model ---
class Crop(Base):
    """A crop listed on the marketplace by a farmer."""
    __tablename__ = 'crops'

    id = Column(String, primary_key=True, index=True, default=generate_id)
    farmer_id = Column(String, ForeignKey('profiles.id'), nullable=False, index=True)
    name = Column(String(100), nullable=False, index=True)
    description = Column(Text, nullable=False, default="")
    price_per_kg = Column(Float, nullable=False)
    quantity_kg = Column(Float, nullable=False, default=0)
    image_url = Column(String(500), nullable=True)
    location = Column(String(100), nullable=True)
    available = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    farmer = relationship("Profile", back_populates="crops")

    def __repr__(self):
        return f"<Crop(id={self.id}, name='{self.name}', quantity_kg={self.quantity_kg})>"


# --- Order Model ---
class Order(Base):
    """A buyer's order for a crop, paid through Razorpay."""
    __tablename__ = 'orders'

    id = Column(String, primary_key=True, index=True, default=generate_id)
    buyer_id = Column(String, ForeignKey('profiles.id'), nullable=False, index=True)
    farmer_id = Column(String, ForeignKey('profiles.id'), nullable=False, index=True)
    crop_id = Column(String, ForeignKey('crops.id'), nullable=False, index=True)
    quantity_kg = Column(Float, nullable=False)
    total_price = Column(Float, nullable=False)
    status = Column(String(20), nullable=False, default="pending", comment="pending, paid, delivered or cancelled")
    delivery_address = Column(Text, nullable=True)

    razorpay_order_id = Column(String(100), unique=True, index=True, nullable=False)
    razorpay_payment_id = Column(String(100), unique=True, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    crop = relationship("Crop")

    def __repr__(self):
        return f"<Order(id={self.id}, status='{self.status}', total_price={self.total_price})>"


# --- Chat Models ---
class Chat(Base):
    """A conversation between one buyer and one farmer about a crop."""
    __tablename__ = 'chats'
    __table_args__ = (
        UniqueConstraint('buyer_id', 'farmer_id', 'crop_id', name='uq_chat_participants_crop'),
    )

    id = Column(String, primary_key=True, index=True, default=generate_id)
    buyer_id = Column(String, ForeignKey('profiles.id'), nullable=False, index=True)
    farmer_id = Column(String, ForeignKey('profiles.id'), nullable=False, index=True)
    crop_id = Column(String, ForeignKey('crops.id', ondelete='SET NULL'), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    messages = relationship("Message", back_populates="chat", order_by="Message.created_at", cascade="all, delete-orphan")

    def has_participant(self, profile_id: str) -> bool:
        return profile_id in (self.buyer_id, self.farmer_id)

    def __repr__(self):
        return f"<Chat(id={self.id}, buyer_id={self.buyer_id}, farmer_id={self.farmer_id})>"


class Message(Base):
    __tablename__ = 'messages'

    id = Column(String, primary_key=True, index=True, default=generate_id)
    chat_id = Column(String, ForeignKey('chats.id'), nullable=False, index=True)
    sender_id = Column(String, ForeignKey('profiles.id'), nullable=False)
    content = Column(Text, nullable=False)
    read = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    chat = relationship("Chat", back_populates="messages")

    def __repr__(self):
        return f"<Message(id={self.id}, chat_id={self.chat_id}, sender_id={self.sender_id})>"


log.info("SQLAlchemy marketplace models defined (Profile, Crop, Order, Chat, Message).")
