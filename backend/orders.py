# backend/orders.py
"""
Checkout and order lifecycle.

Checkout creates a Razorpay order and a matching `pending` order row.
Once the checkout widget reports success, `verify-payment` checks the
signature, marks the order `paid` and decrements crop stock in the same
transaction.
"""

import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import or_
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError, IntegrityError

import schemas
import auth_utils
import payments
from crops import get_crop_or_404
from database import get_db
from models import Crop, Order, Profile

log = logging.getLogger(__name__)

router = APIRouter(prefix="/api/orders", tags=["Orders & Payments"])

# (from_status, to_status) -> roles allowed to make the change
STATUS_TRANSITIONS = {
    ("pending", "cancelled"): {"buyer", "admin"},
    ("paid", "delivered"): {"farmer", "admin"},
    ("paid", "cancelled"): {"farmer", "admin"},
}


def _party_role(order: Order, profile: Profile) -> str:
    """The capacity in which `profile` acts on `order`: admin, buyer or farmer."""
    if profile.role == "admin":
        return "admin"
    if order.buyer_id == profile.id:
        return "buyer"
    if order.farmer_id == profile.id:
        return "farmer"
    return ""


def get_order_for(db: Session, order_id: str, profile: Profile) -> Order:
    order = db.get(Order, order_id)
    if order is None or not _party_role(order, profile):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")
    return order


@router.post("/checkout", response_model=schemas.CheckoutResponse, status_code=status.HTTP_201_CREATED)
async def checkout(
    data: schemas.CheckoutRequest,
    buyer: Profile = Depends(auth_utils.get_member_profile),
    db: Session = Depends(get_db),
):
    """Creates the Razorpay order the checkout widget opens with."""
    crop = get_crop_or_404(db, data.crop_id)

    if crop.farmer_id == buyer.id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="You cannot buy your own crop")
    if not crop.available:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Crop is not available")
    if data.quantity_kg > crop.quantity_kg:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Insufficient stock")

    total_price = round(crop.price_per_kg * data.quantity_kg, 2)
    log.info(f"Checkout: buyer {buyer.id}, crop {crop.id}, {data.quantity_kg} kg, total {total_price}")

    try:
        gateway_order = payments.create_gateway_order(total_price, crop.id, data.quantity_kg)
    except payments.PaymentGatewayError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))

    order = Order(
        buyer_id=buyer.id,
        farmer_id=crop.farmer_id,
        crop_id=crop.id,
        quantity_kg=data.quantity_kg,
        total_price=total_price,
        status="pending",
        delivery_address=data.delivery_address,
        razorpay_order_id=gateway_order["id"],
    )
    try:
        db.add(order)
        db.commit()
        db.refresh(order)
    except SQLAlchemyError as e:
        db.rollback()
        log.error(f"Could not store pending order for Razorpay order {gateway_order['id']}: {e}", exc_info=True)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Could not create order.")

    return {
        "key_id": payments.RAZORPAY_KEY_ID,
        "razorpay_order_id": gateway_order["id"],
        "amount": gateway_order.get("amount", payments.to_paise(total_price)),
        "currency": gateway_order.get("currency", payments.CURRENCY),
        "name": payments.MERCHANT_NAME,
        "description": f"Purchase: {crop.name}",
        "order": schemas.OrderOut.model_validate(order),
    }


@router.post("/verify-payment", response_model=schemas.OrderOut)
async def verify_payment(
    data: schemas.PaymentVerification,
    buyer: Profile = Depends(auth_utils.get_member_profile),
    db: Session = Depends(get_db),
):
    """Records a completed checkout: order -> paid and stock decremented, atomically."""
    # Row lock on the order so overlapping verifications see each other's result
    order = (
        db.query(Order)
        .filter(Order.razorpay_order_id == data.razorpay_order_id, Order.buyer_id == buyer.id)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if order is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")

    if not payments.verify_payment_signature(data.razorpay_order_id, data.razorpay_payment_id, data.razorpay_signature):
        db.rollback()
        log.warning(f"Invalid payment signature for Razorpay order {data.razorpay_order_id} (buyer {buyer.id})")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payment signature")

    if order.status == "paid" and order.razorpay_payment_id == data.razorpay_payment_id:
        log.info(f"Payment {data.razorpay_payment_id} already recorded for order {order.id}")
        return order
    if order.status != "pending":
        db.rollback()
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"Order is already {order.status}")

    crop = db.query(Crop).filter(Crop.id == order.crop_id).with_for_update().first()
    if crop is None or order.quantity_kg > crop.quantity_kg:
        db.rollback()
        log.error(
            f"RECONCILE: payment {data.razorpay_payment_id} captured for order {order.id} "
            f"but stock is insufficient; order left pending"
        )
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Insufficient stock")

    order.status = "paid"
    order.razorpay_payment_id = data.razorpay_payment_id
    crop.quantity_kg = crop.quantity_kg - order.quantity_kg
    crop.available = crop.quantity_kg > 0
    try:
        db.commit()
        db.refresh(order)
    except IntegrityError as e:
        db.rollback()
        log.warning(f"Payment {data.razorpay_payment_id} already used: {e.orig}")
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Payment already recorded")
    except SQLAlchemyError as e:
        db.rollback()
        log.error(
            f"RECONCILE: payment {data.razorpay_payment_id} captured for order {order.id} "
            f"but could not be recorded: {e}", exc_info=True
        )
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Could not record payment.")

    log.info(f"Order {order.id} paid (payment {order.razorpay_payment_id}); crop {crop.id} stock now {crop.quantity_kg}")
    return order


@router.get("", response_model=List[schemas.OrderOut])
async def list_my_orders(
    profile: Profile = Depends(auth_utils.get_current_profile),
    db: Session = Depends(get_db),
):
    """Orders where the current profile is the buyer or the farmer, newest first."""
    return (
        db.query(Order)
        .filter(or_(Order.buyer_id == profile.id, Order.farmer_id == profile.id))
        .order_by(Order.created_at.desc())
        .all()
    )


@router.get("/{order_id}", response_model=schemas.OrderOut)
async def get_order(
    order_id: str,
    profile: Profile = Depends(auth_utils.get_current_profile),
    db: Session = Depends(get_db),
):
    return get_order_for(db, order_id, profile)


@router.patch("/{order_id}/status", response_model=schemas.OrderOut)
async def update_order_status(
    order_id: str,
    data: schemas.OrderStatusUpdate,
    profile: Profile = Depends(auth_utils.get_member_profile),
    db: Session = Depends(get_db),
):
    order = get_order_for(db, order_id, profile)
    allowed_roles = STATUS_TRANSITIONS.get((order.status, data.status))
    if allowed_roles is None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Cannot change order from {order.status} to {data.status}",
        )
    if _party_role(order, profile) not in allowed_roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not allowed to make this change")

    previous = order.status
    if previous == "paid" and data.status == "cancelled":
        crop = db.query(Crop).filter(Crop.id == order.crop_id).with_for_update().first()
        if crop is not None:
            crop.quantity_kg = crop.quantity_kg + order.quantity_kg
            crop.available = crop.quantity_kg > 0
    order.status = data.status

    try:
        db.commit()
        db.refresh(order)
    except SQLAlchemyError as e:
        db.rollback()
        log.error(f"Order {order.id} status update failed: {e}", exc_info=True)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Could not update order.")

    log.info(f"Order {order.id}: {previous} -> {order.status} by {profile.id}")
    return order
