import hashlib
import hmac
import logging
import os
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel, EmailStr, Field

from database import create_document, db, transaction
from errors import ConflictError, ValidationError
from outbox import enqueue_email
from schemas import PasswordReset as PasswordResetSchema, Session as SessionSchema, User as UserSchema
from utils import oid, serialize_doc

logger = logging.getLogger(__name__)

SESSION_TTL_HOURS = int(os.getenv("SESSION_TTL_HOURS", "24"))
PASSWORD_RESET_TTL_MINUTES = int(os.getenv("PASSWORD_RESET_TTL_MINUTES", "60"))
PASSWORD_RESET_URL = os.getenv("PASSWORD_RESET_URL", "http://localhost:5173/reset-password")
PBKDF2_ITERATIONS = 200_000

router = APIRouter(prefix="/auth", tags=["Auth"])


def _now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


# -------------------- Passwords & sessions --------------------

def hash_password(password: str) -> str:
    salt = secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), PBKDF2_ITERATIONS).hex()
    return f"{salt}${digest}"


def verify_password(password: str, stored: str) -> bool:
    salt, _, digest = (stored or "").partition("$")
    if not digest:
        return False
    candidate = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), PBKDF2_ITERATIONS).hex()
    return hmac.compare_digest(candidate, digest)


def create_session(user_id: str) -> str:
    token = uuid.uuid4().hex
    expires_at = _now() + timedelta(hours=SESSION_TTL_HOURS)
    create_document("session", SessionSchema(user_id=user_id, token=token, expires_at=expires_at))
    return token


def get_user_from_token(authorization: Optional[str] = Header(default=None)) -> Dict[str, Any]:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Missing or invalid token")
    token = authorization.split(" ")[-1].strip()
    sess = db["session"].find_one({"token": token})
    if not sess:
        raise HTTPException(status_code=401, detail="Invalid session")
    if sess.get("expires_at") and sess["expires_at"] < _now():
        raise HTTPException(status_code=401, detail="Session expired")
    user = db["users"].find_one({"_id": oid(sess["user_id"])})
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    user.pop("password_hash", None)
    return serialize_doc(user)


# -------------------- Models (request/response) --------------------

class RegisterRequest(BaseModel):
    email: EmailStr
    name: str = Field(..., min_length=1)
    password: str = Field(..., min_length=6)

class LoginRequest(BaseModel):
    email: EmailStr
    password: str

class AuthResponse(BaseModel):
    token: str
    user: Dict[str, Any]

class ResetRequest(BaseModel):
    email: EmailStr

class ResetConfirmRequest(BaseModel):
    token: str
    newPassword: str = Field(..., min_length=6)


def _public(user: Dict[str, Any]) -> Dict[str, Any]:
    out = serialize_doc(user)
    out.pop("password_hash", None)
    return out


# -------------------- Routes --------------------

@router.post("/register", response_model=AuthResponse, status_code=201)
def register(payload: RegisterRequest):
    if db["users"].find_one({"email": payload.email.lower()}):
        raise ConflictError("Email already registered")
    user = UserSchema(email=payload.email.lower(), name=payload.name.strip(), password_hash=hash_password(payload.password))
    user_id = create_document("users", user)
    logger.info("Registered user %s", user_id)
    token = create_session(user_id)
    return AuthResponse(token=token, user=_public(db["users"].find_one({"_id": oid(user_id)})))


@router.post("/login", response_model=AuthResponse)
def login(payload: LoginRequest):
    user = db["users"].find_one({"email": payload.email.lower()})
    if not user or not verify_password(payload.password, user.get("password_hash", "")):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    token = create_session(str(user["_id"]))
    return AuthResponse(token=token, user=_public(user))


@router.get("/me")
def me(current=Depends(get_user_from_token)):
    return current


@router.post("/reset-password")
def request_password_reset(payload: ResetRequest):
    user = db["users"].find_one({"email": payload.email.lower()})
    if user:
        token = secrets.token_hex(20)
        link = f"{PASSWORD_RESET_URL}?token={token}"
        html = (
            "<h2>Password Reset</h2>"
            "<p>Click the link below to reset your password:</p>"
            f"<a href=\"{link}\">Reset Password</a>"
            f"<p>This link will expire in {PASSWORD_RESET_TTL_MINUTES} minutes.</p>"
        )
        with transaction() as session:
            create_document(
                "password_reset",
                PasswordResetSchema(
                    user_id=str(user["_id"]),
                    token=token,
                    expires_at=_now() + timedelta(minutes=PASSWORD_RESET_TTL_MINUTES),
                ),
                session=session,
            )
            enqueue_email(user["email"], "Password Reset Request", html, session=session)
    else:
        logger.info("Password reset requested for unknown email")
    return {"message": "If the email is registered, a reset link has been sent"}


@router.post("/reset-password/confirm")
def confirm_password_reset(payload: ResetConfirmRequest):
    reset = db["password_reset"].find_one({"token": payload.token, "expires_at": {"$gt": _now()}})
    if not reset:
        raise ValidationError("Invalid or expired token")
    with transaction() as session:
        result = db["users"].update_one(
            {"_id": oid(reset["user_id"])},
            {"$set": {"password_hash": hash_password(payload.newPassword), "updated_at": _now()}},
            session=session,
        )
        if result.matched_count == 0:
            raise ValidationError("User not found")
        db["password_reset"].delete_one({"_id": reset["_id"]}, session=session)
        db["session"].delete_many({"user_id": reset["user_id"]}, session=session)
    return {"message": "Password reset successfully"}
