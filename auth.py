"""
Accounts, sessions and the page gate

Email + password accounts hashed with bcrypt, bearer-token sessions stored
in MongoDB, and the redirect rule that keeps signed-in and signed-out users
on the right pages.
"""
import os
import secrets
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
from bson import ObjectId
from email_validator import EmailNotValidError, validate_email
from fastapi import Cookie, Header, HTTPException
from pydantic import BaseModel
from pymongo.errors import DuplicateKeyError

from database import get_collection
from schemas import Session, User
from profiles import (
    UsernameTakenError,
    create_profile,
    delete_profile,
    is_username_available,
    normalize_username,
    validate_username,
)

logger = logging.getLogger(__name__)

SESSION_TTL_MINUTES = int(os.getenv("SESSION_TTL_MINUTES", 60 * 24))
SESSION_COOKIE = "session"
MIN_PASSWORD_LENGTH = 6

UNKNOWN_ERROR_MESSAGE = "An unknown error occurred. Please try again."
AUTH_ERROR_MESSAGES = {
    "auth/missing-fields": "Please fill in all fields.",
    "auth/missing-credentials": "Please enter your email and password.",
    "auth/weak-password": "Password must be at least 6 characters.",
    "auth/email-already-in-use": "This email is already registered.",
    "auth/invalid-email": "The email address is not valid.",
    "auth/username-taken": "This username is already taken. Choose something unique.",
    "auth/invalid-credentials": "Invalid credentials. Please check your email and password.",
}

PUBLIC_ENTRY_PAGES = ("/", "/login", "/register")
PROTECTED_PAGES = ("/dashboard",)


class AuthError(HTTPException):
    """Auth failure carrying a stable code; the message comes from the code table."""

    def __init__(self, code: str, status_code: int = 400):
        super().__init__(status_code=status_code, detail=AUTH_ERROR_MESSAGES.get(code, UNKNOWN_ERROR_MESSAGE))
        self.code = code


class AuthUser(BaseModel):
    id: str
    email: str


def hash_password(password: str) -> str:
    salt = bcrypt.gensalt()
    return bcrypt.hashpw(password.encode(), salt).decode()


def verify_password(password: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode(), hashed.encode())
    except ValueError:
        return False


def create_session(user_id: str, ttl_minutes: int = SESSION_TTL_MINUTES) -> str:
    token = secrets.token_urlsafe(32)
    get_collection("session").insert_one(Session(
        token=token,
        user_id=user_id,
        expires_at=datetime.now(timezone.utc) + timedelta(minutes=ttl_minutes),
    ).model_dump())
    return token


def _as_utc(value: datetime) -> datetime:
    # Mongo hands datetimes back naive unless the client is tz-aware.
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def token_from_header(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    parts = authorization.split()
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1]
    return authorization


def get_user_from_token(token: Optional[str]) -> Optional[AuthUser]:
    if not token:
        return None
    sessions = get_collection("session")
    sess = sessions.find_one({"token": token})
    if not sess:
        return None
    if sess.get("expires_at") and _as_utc(sess["expires_at"]) < datetime.now(timezone.utc):
        sessions.delete_one({"_id": sess["_id"]})
        return None
    users = get_collection("user")
    u = users.find_one({"_id": ObjectId(sess["user_id"])}) if ObjectId.is_valid(sess["user_id"]) else None
    if not u or not u.get("is_active", True):
        return None
    return AuthUser(id=str(u["_id"]), email=u.get("email"))


def request_token(authorization: Optional[str], session: Optional[str]) -> Optional[str]:
    return token_from_header(authorization) or session


async def get_optional_user(
    authorization: Optional[str] = Header(None),
    session: Optional[str] = Cookie(None),
) -> Optional[AuthUser]:
    return get_user_from_token(request_token(authorization, session))


async def get_current_user(
    authorization: Optional[str] = Header(None),
    session: Optional[str] = Cookie(None),
) -> AuthUser:
    user = get_user_from_token(request_token(authorization, session))
    if not user:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user


def register(email: str, password: str, username: str) -> dict:
    """Create the account and its profile, or neither."""
    username = normalize_username(username)
    email = (email or "").strip()
    if not username or not email or not password:
        raise AuthError("auth/missing-fields")
    try:
        email = validate_email(email, check_deliverability=False).normalized
    except EmailNotValidError:
        raise AuthError("auth/invalid-email")
    if len(password) < MIN_PASSWORD_LENGTH:
        raise AuthError("auth/weak-password")
    validate_username(username)
    if not is_username_available(username):
        raise AuthError("auth/username-taken", status_code=409)

    users = get_collection("user")
    now = datetime.now(timezone.utc)
    try:
        res = users.insert_one({
            **User(email=email, password_hash=hash_password(password)).model_dump(),
            "created_at": now,
            "updated_at": now,
        })
    except DuplicateKeyError:
        raise AuthError("auth/email-already-in-use", status_code=409)
    user_id = str(res.inserted_id)

    try:
        profile = create_profile(user_id, username)
    except UsernameTakenError:
        users.delete_one({"_id": res.inserted_id})
        logger.warning(f"Username @{username} was claimed concurrently; rolled back account {user_id}")
        raise AuthError("auth/username-taken", status_code=409)
    except Exception:
        users.delete_one({"_id": res.inserted_id})
        raise

    token = create_session(user_id)
    logger.info(f"Registered account {user_id} as @{username}")
    return {"token": token, "user": {"id": user_id, "email": email}, "profile": profile}


def login(email: str, password: str) -> dict:
    if not email or not password:
        raise AuthError("auth/missing-credentials")
    try:
        email = validate_email(email.strip(), check_deliverability=False).normalized
    except EmailNotValidError:
        raise AuthError("auth/invalid-credentials", status_code=401)
    u = get_collection("user").find_one({"email": email})
    if not u or not u.get("is_active", True) or not verify_password(password, u.get("password_hash", "")):
        logger.warning("Rejected sign-in attempt")
        raise AuthError("auth/invalid-credentials", status_code=401)
    token = create_session(str(u["_id"]))
    return {"token": token, "user": {"id": str(u["_id"]), "email": u.get("email")}}


def logout(token: Optional[str]) -> None:
    if token:
        get_collection("session").delete_one({"token": token})


def session_state(user: Optional[AuthUser]) -> dict:
    return {"signed_in": user is not None, "user": user.model_dump() if user else None}


def delete_account(user_id: str) -> None:
    delete_profile(user_id)
    for name in ("session", "providertoken", "pkcerequest", "playerdevice"):
        get_collection(name).delete_many({"user_id": user_id})
    get_collection("user").delete_one({"_id": ObjectId(user_id)})
    logger.info(f"Deleted account {user_id}")


def resolve_redirect(path: str, signed_in: bool) -> Optional[str]:
    """Where a request for ``path`` should go instead, or None to serve it."""
    path = path.rstrip("/") or "/"
    if signed_in and path in PUBLIC_ENTRY_PAGES:
        return "/dashboard"
    if not signed_in and path in PROTECTED_PAGES:
        return "/login"
    return None
