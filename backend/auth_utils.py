# backend/auth_utils.py
import os
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt
from passlib.context import CryptContext # Needed for email/password accounts
from pydantic import ValidationError # For token data validation
from fastapi import Depends, HTTPException, status, Response, Cookie
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

# Project imports
import schemas
import models
from database import get_db
from sqlalchemy.orm import Session

log = logging.getLogger(__name__)

# --- Configuration ---
SECRET_KEY = os.getenv("SECRET_KEY")
ALGORITHM = os.getenv("ALGORITHM", "HS256")
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", 60)) # Default 1 hour
AUTH_COOKIE_NAME = "farm2market_auth_token" # Cookie name used for every sign-in method
PRODUCTION = os.getenv("PRODUCTION", "false").lower() == "true"

if not SECRET_KEY:
    log.critical("SECRET_KEY is not set; sessions cannot be signed.")
    raise ValueError("SECRET_KEY environment variable is required.")


def _csv_env(name: str) -> set:
    return {item.strip().lower() for item in os.getenv(name, "").split(",") if item.strip()}

ADMIN_PHONES = _csv_env("ADMIN_PHONES")
ADMIN_EMAILS = _csv_env("ADMIN_EMAILS")

bearer_scheme = HTTPBearer(auto_error=False)

# --- Password Hashing Setup (For email accounts) ---
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

def verify_password(plain_password: str, hashed_password: Optional[str]) -> bool:
    """Verifies a plain password against a stored hash."""
    # Phone-only profiles have no hash at all
    if not hashed_password:
        return False
    return pwd_context.verify(plain_password, hashed_password)

def hash_password(password: str) -> str:
    """bcrypt hash for storage on the profile."""
    return pwd_context.hash(password)

def is_admin_phone(phone: Optional[str]) -> bool:
    return bool(phone) and phone.lower() in ADMIN_PHONES

def is_admin_email(email: Optional[str]) -> bool:
    return bool(email) and email.lower() in ADMIN_EMAILS

def mask_phone(phone: Optional[str]) -> str:
    if not phone:
        return "<no phone>"
    return f"******{phone[-4:]}"

# --- Tokens ---
def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """Creates a JWT access token. Expects 'sub' and 'type' in data."""
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)

    to_encode.update({"exp": expire})
    if "sub" not in to_encode or "type" not in to_encode:
         log.error("Refusing to sign a token without sub and type.")
         raise ValueError("Token data must include 'sub' and 'type'")

    encoded_jwt = jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)
    log.debug(f"Issued {to_encode['type']} token for {to_encode['sub']}")
    return encoded_jwt

# --- Session Cookie Helpers ---
def start_session(response: Response, profile: models.Profile, method: str) -> str:
    """Issues a JWT for the profile, sets it as the HTTPOnly auth cookie and returns it."""
    expires_delta = timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    access_token = create_access_token(
        data={"sub": profile.id, "type": method},
        expires_delta=expires_delta,
    )
    response.set_cookie(
        key=AUTH_COOKIE_NAME,
        value=access_token,
        httponly=True,
        max_age=int(expires_delta.total_seconds()),
        expires=datetime.now(timezone.utc) + expires_delta,
        path="/",
        samesite="lax",
        secure=PRODUCTION,
    )
    log.info(f"Authentication cookie set for profile {profile.id} via {method}. Secure={PRODUCTION}")
    return access_token

def end_session(response: Response) -> None:
    response.delete_cookie(
        key=AUTH_COOKIE_NAME,
        path="/",
        secure=PRODUCTION,
        httponly=True,
        samesite="lax",
    )

# --- Token decoding ---
def _decode_token_payload(token: str) -> dict:
    """Decodes JWT, raises HTTPException on failure."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        token_data = schemas.TokenData(**payload)
        if token_data.sub is None or token_data.type is None:
             log.warning("Token payload missing 'sub' or 'type'.")
             raise credentials_exception
        return payload
    except JWTError as e:
        log.warning(f"Rejected token: {e}")
        raise credentials_exception from e
    except ValidationError as e:
        log.warning(f"Malformed token payload: {e}")
        raise credentials_exception from e


def profile_from_token(token: Optional[str], db: Session) -> models.Profile:
    """Resolves a raw JWT to its Profile row, raising 401 when it can't."""
    if token is None:
        log.debug("No bearer token or auth cookie on request.")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    payload = _decode_token_payload(token)
    profile = db.get(models.Profile, payload["sub"])
    if profile is None:
        log.warning(f"Profile '{payload['sub']}' from token not found.")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User associated with token no longer exists")
    return profile

# --- Dependency: Get Current Profile ---
async def get_current_profile(
    db: Session = Depends(get_db),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    cookie_token: Optional[str] = Cookie(None, alias=AUTH_COOKIE_NAME),
) -> models.Profile:
    """Dependency: Gets the signed-in profile. A bearer header wins over the cookie."""
    token = credentials.credentials if credentials else cookie_token
    profile = profile_from_token(token, db)
    log.debug(f"Authenticated profile retrieved: {profile.id} (role={profile.role})")
    return profile


def require_role(*roles: str):
    """Dependency factory: the current profile must hold one of `roles`."""
    async def _checker(profile: models.Profile = Depends(get_current_profile)) -> models.Profile:
        if profile.role is None:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Role selection required")
        if roles and profile.role not in roles:
            log.warning(f"Profile {profile.id} with role '{profile.role}' denied; requires {roles}")
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Operation not allowed for this role")
        return profile
    return _checker


get_member_profile = require_role()
get_current_farmer = require_role("farmer")
get_current_admin = require_role("admin")
