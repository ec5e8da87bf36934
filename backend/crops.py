# backend/crops.py
"""
Crop listings: the public marketplace and farmers' own listings.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError

import schemas
import auth_utils
from database import get_db
from models import Crop, Order, Profile

log = logging.getLogger(__name__)

router = APIRouter(prefix="/api/crops", tags=["Crops"])

# Nullable columns a PATCH may clear with an explicit null
CLEARABLE_FIELDS = {"image_url", "location"}


def get_crop_or_404(db: Session, crop_id: str) -> Crop:
    crop = db.get(Crop, crop_id)
    if crop is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Crop not found")
    return crop


def _ensure_can_manage(crop: Crop, profile: Profile) -> None:
    if crop.farmer_id != profile.id and profile.role != "admin":
        log.warning(f"Profile {profile.id} tried to modify crop {crop.id} owned by {crop.farmer_id}")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="You can only manage your own crops")


def _commit(db: Session, action: str) -> None:
    try:
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        log.error(f"Database error while trying to {action}: {e}", exc_info=True)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=f"Could not {action}.")


@router.get("", response_model=List[schemas.CropOut], summary="Browse the marketplace")
async def list_marketplace(
    search: Optional[str] = Query(None, max_length=100),
    location: Optional[str] = Query(None, max_length=100),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
):
    """Available crops with stock left, newest first."""
    query = db.query(Crop).filter(Crop.available.is_(True), Crop.quantity_kg > 0)
    if search and search.strip():
        query = query.filter(Crop.name.ilike(f"%{search.strip()}%"))
    if location and location.strip():
        query = query.filter(Crop.location.ilike(f"%{location.strip()}%"))
    return query.order_by(Crop.created_at.desc()).offset(offset).limit(limit).all()


@router.get("/mine", response_model=List[schemas.CropOut], summary="List the current farmer's crops")
async def list_my_crops(
    farmer: Profile = Depends(auth_utils.get_current_farmer),
    db: Session = Depends(get_db),
):
    return (
        db.query(Crop)
        .filter(Crop.farmer_id == farmer.id)
        .order_by(Crop.created_at.desc())
        .all()
    )


@router.get("/{crop_id}", response_model=schemas.CropOut)
async def get_crop(crop_id: str, db: Session = Depends(get_db)):
    return get_crop_or_404(db, crop_id)


@router.post("", response_model=schemas.CropOut, status_code=status.HTTP_201_CREATED)
async def create_crop(
    data: schemas.CropCreate,
    farmer: Profile = Depends(auth_utils.get_current_farmer),
    db: Session = Depends(get_db),
):
    crop = Crop(farmer_id=farmer.id, available=data.quantity_kg > 0, **data.model_dump())
    db.add(crop)
    _commit(db, "create crop")
    db.refresh(crop)
    log.info(f"Crop listed: {crop.id} '{crop.name}' by farmer {farmer.id}")
    return crop


@router.patch("/{crop_id}", response_model=schemas.CropOut)
async def update_crop(
    crop_id: str,
    data: schemas.CropUpdate,
    profile: Profile = Depends(auth_utils.get_member_profile),
    db: Session = Depends(get_db),
):
    crop = get_crop_or_404(db, crop_id)
    _ensure_can_manage(crop, profile)

    changes = {
        field: value
        for field, value in data.model_dump(exclude_unset=True).items()
        if value is not None or field in CLEARABLE_FIELDS
    }
    for field, value in changes.items():
        setattr(crop, field, value)
    if "quantity_kg" in changes and "available" not in changes:
        crop.available = crop.quantity_kg > 0

    _commit(db, "update crop")
    db.refresh(crop)
    log.info(f"Crop {crop.id} updated by {profile.id}: {sorted(changes)}")
    return crop


@router.delete("/{crop_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_crop(
    crop_id: str,
    profile: Profile = Depends(auth_utils.get_member_profile),
    db: Session = Depends(get_db),
):
    crop = get_crop_or_404(db, crop_id)
    _ensure_can_manage(crop, profile)

    open_orders = (
        db.query(Order)
        .filter(Order.crop_id == crop.id, Order.status.in_(("pending", "paid")))
        .count()
    )
    if open_orders:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Crop has open orders and cannot be deleted")

    if db.query(Order).filter(Order.crop_id == crop.id).first():
        # Closed orders still reference the listing, so it is retired instead
        crop.available = False
        crop.quantity_kg = 0
        _commit(db, "retire crop")
        log.info(f"Crop {crop_id} retired by {profile.id} (has order history)")
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    db.delete(crop)
    _commit(db, "delete crop")
    log.info(f"Crop {crop_id} deleted by {profile.id}")
    return Response(status_code=status.HTTP_204_NO_CONTENT)
