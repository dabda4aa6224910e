import logging
from datetime import timedelta
from typing import Any, Dict, Optional

import requests
from bson import ObjectId
from fastapi import APIRouter, Cookie, Depends, Header, HTTPException, Response
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, EmailStr, Field

import config
from database import as_utc, create_document, get_db, now_utc, serialize_doc
from schemas import User as UserSchema

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

GOOGLE_TOKENINFO_URL = "https://oauth2.googleapis.com/tokeninfo"

router = APIRouter()


# Utilities

def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: Optional[str]) -> bool:
    if not hashed_password:
        return False
    return pwd_context.verify(plain_password, hashed_password)


def create_auth_token(user_id: str, expires_delta: Optional[timedelta] = None) -> str:
    expire = now_utc() + (expires_delta or timedelta(days=config.AUTH_TOKEN_EXPIRE_DAYS))
    return jwt.encode({"uid": user_id, "exp": expire}, config.AUTH_JWT_SECRET, algorithm=config.JWT_ALGORITHM)


def verify_auth_token(token: str) -> Optional[dict]:
    try:
        return jwt.decode(token, config.AUTH_JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
    except JWTError:
        return None


def attach_auth_cookie(response: Response, user_id: str):
    response.set_cookie(
        key=config.AUTH_COOKIE_NAME,
        value=create_auth_token(user_id),
        max_age=config.AUTH_TOKEN_EXPIRE_DAYS * 24 * 60 * 60,
        httponly=True,
        secure=config.COOKIE_SECURE,
        samesite="lax",
        path="/",
    )


def clear_auth_cookie(response: Response):
    response.set_cookie(
        key=config.AUTH_COOKIE_NAME,
        value="",
        max_age=0,
        httponly=True,
        secure=config.COOKIE_SECURE,
        samesite="lax",
        path="/",
    )


def to_public_user(doc: Dict[str, Any]) -> Dict[str, Any]:
    user = serialize_doc(doc)
    # Never send password hash or pending codes
    for key in ("password_hash", "two_factor_code", "two_factor_expires_at"):
        user.pop(key, None)
    return user


def is_admin(user: Optional[dict]) -> bool:
    if not user:
        return False
    if user.get("role") == "admin":
        return True
    return (user.get("email") or "").lower() in config.admin_emails()


def _resolve_token(authorization: Optional[str], cookie_token: Optional[str]) -> Optional[str]:
    if authorization and authorization.startswith("Bearer "):
        return authorization.split(" ", 1)[1].strip()
    return cookie_token or None


def _load_user(token: Optional[str]) -> Optional[dict]:
    if not token:
        return None
    payload = verify_auth_token(token)
    if not payload:
        return None
    user_id = payload.get("uid")
    if not user_id or not ObjectId.is_valid(user_id):
        return None
    user = get_db()["user"].find_one({"_id": ObjectId(user_id)})
    if not user or user.get("status") == "inactive":
        return None
    user["id"] = str(user["_id"])
    return user


# Dependencies

def get_optional_user(
    authorization: Optional[str] = Header(default=None),
    auth_token: Optional[str] = Cookie(default=None),
) -> Optional[dict]:
    return _load_user(_resolve_token(authorization, auth_token))


def get_current_user(user: Optional[dict] = Depends(get_optional_user)) -> dict:
    if not user:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user


def require_admin_role(user: dict = Depends(get_current_user)) -> dict:
    if not is_admin(user):
        raise HTTPException(status_code=403, detail="Forbidden")
    return user


def require_admin(user: dict = Depends(require_admin_role)) -> dict:
    """Admin access, gated by a recent two-factor verification when enabled"""
    if user.get("two_factor_enabled"):
        verified_at = user.get("two_factor_verified_at")
        if verified_at is None:
            raise HTTPException(status_code=403, detail="Two-factor verification required")
        if now_utc() - as_utc(verified_at) > timedelta(hours=config.ADMIN_2FA_WINDOW_HOURS):
            raise HTTPException(status_code=403, detail="Two-factor verification expired")
    return user


# Request models

class SignupInput(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=8)
    marketing_email_opt_in: bool = False


class LoginInput(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class GoogleLoginInput(BaseModel):
    id_token: str = Field(..., min_length=1)


class ProfileUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    phone: Optional[str] = None
    default_address: Optional[str] = None
    marketing_email_opt_in: Optional[bool] = None
    marketing_sms_opt_in: Optional[bool] = None


def resolve_role(email: str) -> str:
    return "admin" if email.lower() in config.admin_emails() else "user"


def sync_oauth_profile(email: str, name: Optional[str] = None, image: Optional[str] = None) -> dict:
    """Create or refresh the local user behind an OAuth sign-in"""
    db = get_db()
    email = email.lower()
    role = resolve_role(email)
    existing = db["user"].find_one({"email": email})
    if existing:
        updates: Dict[str, Any] = {}
        if not existing.get("name") and name:
            updates["name"] = name
        if role == "admin" and existing.get("role") != "admin":
            updates["role"] = "admin"
        if existing.get("status") != "active":
            updates["status"] = "active"
        if image and not existing.get("image"):
            updates["image"] = image
        if updates:
            updates["updated_at"] = now_utc()
            db["user"].update_one({"_id": existing["_id"]}, {"$set": updates})
            existing.update(updates)
        return existing

    user = UserSchema(name=name or email.split("@")[0], email=email, password_hash=None, role=role, image=image)
    user_id = create_document("user", user)
    logger.info("Created user %s from OAuth sign-in", user_id)
    return db["user"].find_one({"_id": ObjectId(user_id)})


def fetch_google_profile(id_token: str) -> dict:
    if not config.GOOGLE_CLIENT_ID:
        raise HTTPException(status_code=503, detail="Google sign-in not configured")
    try:
        response = requests.get(GOOGLE_TOKENINFO_URL, params={"id_token": id_token}, timeout=10)
    except requests.RequestException as exc:
        logger.error("Google tokeninfo request failed: %s", exc)
        raise HTTPException(status_code=502, detail="Could not reach Google")
    if response.status_code != 200:
        raise HTTPException(status_code=401, detail="Invalid Google token")
    profile = response.json()
    if profile.get("aud") != config.GOOGLE_CLIENT_ID:
        raise HTTPException(status_code=401, detail="Invalid Google token audience")
    if not profile.get("email") or str(profile.get("email_verified")).lower() != "true":
        raise HTTPException(status_code=401, detail="Google account email not verified")
    return profile


# Routes

@router.post("/api/auth/signup", status_code=201)
def signup(payload: SignupInput, response: Response):
    db = get_db()
    email = payload.email.lower()
    if db["user"].find_one({"email": email}):
        raise HTTPException(status_code=409, detail="Email already registered")
    user_model = UserSchema(
        name=payload.name,
        email=email,
        password_hash=hash_password(payload.password),
        role=resolve_role(email),
        marketing_email_opt_in=payload.marketing_email_opt_in,
    )
    user_id = create_document("user", user_model)
    attach_auth_cookie(response, user_id)
    user = db["user"].find_one({"_id": ObjectId(user_id)})
    return {"user": to_public_user(user)}


@router.post("/api/auth/login")
def login(payload: LoginInput, response: Response):
    email = payload.email.lower()
    user = get_db()["user"].find_one({"email": email})
    if not user or not verify_password(payload.password, user.get("password_hash")):
        logger.warning("Login failed for %s", email)
        raise HTTPException(status_code=401, detail="Invalid credentials")
    if user.get("status") == "inactive":
        raise HTTPException(status_code=403, detail="Account is inactive")
    attach_auth_cookie(response, str(user["_id"]))
    return {"user": to_public_user(user)}


@router.post("/api/auth/oauth/google")
def google_login(payload: GoogleLoginInput, response: Response):
    profile = fetch_google_profile(payload.id_token)
    user = sync_oauth_profile(profile["email"], profile.get("name"), profile.get("picture"))
    attach_auth_cookie(response, str(user["_id"]))
    return {"user": to_public_user(user)}


@router.post("/api/auth/signout")
def signout(response: Response):
    clear_auth_cookie(response)
    return {"success": True}


@router.post("/api/auth/logout", status_code=410)
def legacy_logout():
    return {"error": "Legacy endpoint removed. Use POST /api/auth/signout instead."}


@router.get("/api/user/me")
def me(current_user: dict = Depends(get_current_user)):
    return {"user": to_public_user(current_user)}


@router.patch("/api/user/me")
def update_me(data: ProfileUpdate, current_user: dict = Depends(get_current_user)):
    updates = data.model_dump(exclude_unset=True)
    if not updates:
        return {"user": to_public_user(current_user)}
    updates["updated_at"] = now_utc()
    db = get_db()
    db["user"].update_one({"_id": current_user["_id"]}, {"$set": updates})
    user = db["user"].find_one({"_id": current_user["_id"]})
    return {"user": to_public_user(user)}
