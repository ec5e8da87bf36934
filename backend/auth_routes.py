# backend/auth_routes.py
"""
Sign-in flows: phone OTP and email/password, plus profile and role selection.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError, IntegrityError

import schemas
import auth_utils
import otp
from database import get_db
from models import Profile

log = logging.getLogger(__name__)

router = APIRouter()


def _session_payload(profile: Profile, access_token: str) -> dict:
    return {
        "access_token": access_token,
        "token_type": "bearer",
        "needs_role_selection": profile.needs_role_selection,
        "profile": schemas.ProfileOut.model_validate(profile),
    }


def _resolve_phone_role(profile: Profile, requested: Optional[str]) -> None:
    """Admin phones are always admin; otherwise an assigned role is never overwritten."""
    if auth_utils.is_admin_phone(profile.phone):
        profile.role = "admin"
    elif profile.role is None and requested:
        profile.role = requested


# --- Send OTP ---
@router.post("/api/auth/send-otp", response_model=schemas.SuccessResponse, tags=["Phone Auth"])
async def send_otp_route(data: schemas.PhoneRequest):
    """Generates an OTP for the phone number and attempts SMS delivery via 2Factor."""
    log.info(f"OTP Request received for: {auth_utils.mask_phone(data.phone)}")
    return otp.dispatch_otp(data.phone)


# --- Verify OTP (sign in or sign up by phone) ---
@router.post(
    "/api/auth/verify-otp",
    response_model=schemas.SessionResponse,
    tags=["Phone Auth"],
    summary="Verify OTP, create the profile on first sign-in and set the auth cookie"
)
async def verify_otp_route(response: Response, data: schemas.OtpVerify, db: Session = Depends(get_db)):
    masked_phone = auth_utils.mask_phone(data.phone)
    log.info(f"Login Attempt: Verifying OTP for {masked_phone}")

    try:
        otp.verify_otp(data.phone, data.otp)
    except otp.OtpError as e:
        log.warning(f"Login Failure ({masked_phone}): {e}")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(e))

    try:
        profile = db.query(Profile).filter(Profile.phone == data.phone).first()
        if profile is None:
            profile = Profile(phone=data.phone)
            db.add(profile)
            log.info(f"New phone profile for {masked_phone}")
        _resolve_phone_role(profile, data.role)
        profile.last_login_at = datetime.now(timezone.utc)
        db.commit()
        db.refresh(profile)
    except SQLAlchemyError as e:
        db.rollback()
        log.error(f"Database error during phone sign-in ({masked_phone}): {e}", exc_info=True)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Database error during login.")

    access_token = auth_utils.start_session(response, profile, method="phone")
    log.info(f"Login Successful: Profile {profile.id} ({masked_phone}), role={profile.role}")
    return _session_payload(profile, access_token)


# --- Email Sign-up ---
@router.post(
    "/api/auth/signup",
    response_model=schemas.ProfileOut,
    status_code=status.HTTP_201_CREATED,
    tags=["Email Auth"],
    summary="Create an email/password account (sign in afterwards)"
)
async def signup(data: schemas.EmailSignup, db: Session = Depends(get_db)):
    email = data.email.lower()
    log.info(f"Signup Attempt: email={email}")

    if db.query(Profile).filter(Profile.email == email).first():
        log.warning(f"Signup Conflict: {email} already registered.")
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="This email is already registered.")

    profile = Profile(
        email=email,
        hashed_password=auth_utils.hash_password(data.password),
        full_name=data.full_name,
        role="admin" if auth_utils.is_admin_email(email) else data.role,
    )
    try:
        db.add(profile)
        db.commit()
        db.refresh(profile)
    except IntegrityError as e:
        db.rollback()
        log.warning(f"Database Integrity Error on signup ({email}): {e.orig}")
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="This email is already registered.")
    except SQLAlchemyError as e:
        db.rollback()
        log.error(f"Database Commit Error during signup ({email}): {e}", exc_info=True)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Database error during signup.")

    log.info(f"DATABASE: Email profile created. ID: {profile.id}, role={profile.role}")
    return profile


# --- Email Login ---
@router.post("/api/auth/login", response_model=schemas.SessionResponse, tags=["Email Auth"])
async def email_login(response: Response, form_data: schemas.EmailLogin, db: Session = Depends(get_db)):
    """Handles email/password login and sets HTTPOnly cookie."""
    email = form_data.email.lower()
    log.info(f"Email Login Attempt: email={email}")
    try:
        profile = db.query(Profile).filter(Profile.email == email).first()
    except SQLAlchemyError as e:
        log.error(f"Database error during login lookup ({email}): {e}", exc_info=True)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="DB error during login.")

    if not profile or not auth_utils.verify_password(form_data.password, profile.hashed_password):
        log.warning(f"Email Login Failed ({email}): Invalid credentials.")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Incorrect email or password")

    access_token = auth_utils.start_session(response, profile, method="email")

    # Update Last Login Time (non-critical)
    try:
        profile.last_login_at = datetime.now(timezone.utc)
        db.commit()
        db.refresh(profile)
    except SQLAlchemyError as e:
        db.rollback()
        log.error(f"Non-critical: Failed to update last_login_at for {email}: {e}")

    log.info(f"Login Successful: Profile {profile.id} ({email})")
    return _session_payload(profile, access_token)


# --- Logout ---
@router.post("/api/auth/logout", response_model=schemas.MessageResponse, tags=["Authentication"])
async def logout(response: Response):
    """Clears the authentication cookie."""
    log.info("Logout request received. Clearing authentication cookie.")
    auth_utils.end_session(response)
    return {"message": "Logout successful"}


# --- Current Profile ---
@router.get("/api/users/me", response_model=schemas.ProfileOut, tags=["Profile"])
async def read_users_me(current: Profile = Depends(auth_utils.get_current_profile)):
    return current


@router.patch("/api/users/me", response_model=schemas.ProfileOut, tags=["Profile"])
async def update_users_me(
    data: schemas.ProfileUpdate,
    current: Profile = Depends(auth_utils.get_current_profile),
    db: Session = Depends(get_db),
):
    for field, value in data.model_dump(exclude_unset=True).items():
        # full_name may be cleared; language always keeps a value
        if value is None and field != "full_name":
            continue
        setattr(current, field, value)
    try:
        db.commit()
        db.refresh(current)
    except SQLAlchemyError as e:
        db.rollback()
        log.error(f"Profile update failed for {current.id}: {e}", exc_info=True)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Could not update profile.")
    return current


@router.post("/api/users/me/role", response_model=schemas.ProfileOut, tags=["Profile"])
async def select_role(
    data: schemas.RoleSelection,
    current: Profile = Depends(auth_utils.get_current_profile),
    db: Session = Depends(get_db),
):
    """One-time role selection for profiles created without a role."""
    if current.role is not None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Role already assigned.")
    current.role = data.role
    try:
        db.commit()
        db.refresh(current)
    except SQLAlchemyError as e:
        db.rollback()
        log.error(f"Role selection failed for {current.id}: {e}", exc_info=True)
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Could not save role.")
    log.info(f"Profile {current.id} selected role '{current.role}'")
    return current
