# backend/admin.py
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError

import schemas
import auth_utils
from database import get_db
from models import Order, Profile

log = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["Admin"])


@router.get("/profiles", response_model=List[schemas.ProfileOut])
async def list_profiles(
    role: Optional[schemas.RoleName] = None,
    admin: Profile = Depends(auth_utils.get_current_admin),
    db: Session = Depends(get_db),
):
    query = db.query(Profile)
    if role:
        query = query.filter(Profile.role == role)
    return query.order_by(Profile.created_at.desc()).all()


@router.patch("/profiles/{profile_id}/role", response_model=schemas.ProfileOut)
async def change_role(
    profile_id: str,
    data: schemas.AdminRoleUpdate,
    admin: Profile = Depends(auth_utils.get_current_admin),
    db: Session = Depends(get_db),
):
    profile = db.get(Profile, profile_id)
    if profile is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Profile not found")
    if profile.id == admin.id and data.role != "admin":
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Admins cannot demote themselves")

    previous = profile.role
    profile.role = data.role
    try:
        db.commit()
        db.refresh(profile)
    except SQLAlchemyError as e:
        db.rollback()
        log.error(f"Role change failed for {profile_id}: {e}", exc_info=True)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Could not change role.")

    log.info(f"Admin {admin.id} changed role of {profile.id}: {previous} -> {profile.role}")
    return profile


@router.get("/orders", response_model=List[schemas.OrderOut])
async def list_all_orders(
    order_status: Optional[schemas.OrderStatus] = Query(None, alias="status"),
    admin: Profile = Depends(auth_utils.get_current_admin),
    db: Session = Depends(get_db),
):
    query = db.query(Order)
    if order_status:
        query = query.filter(Order.status == order_status)
    return query.order_by(Order.created_at.desc()).all()
