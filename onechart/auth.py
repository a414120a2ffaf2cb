from __future__ import annotations

import hashlib
import hmac
import logging
import re
import secrets
import time

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel

from onechart import config
from onechart.errors import PersistenceError, UserExists
from onechart.session_store import SqliteSessionStore

router = APIRouter()

logger = logging.getLogger("onechart.auth")

USERNAME_RE = re.compile(r"^[a-z0-9][a-z0-9._-]{2,31}$")
HASH_SCHEME = "pbkdf2_sha256"
HASH_ITERATIONS = 200_000


class SignupPayload(BaseModel):
    username: str
    password: str
    email: str


class LoginPayload(BaseModel):
    username: str
    password: str


class AuthUser(BaseModel):
    id: str
    username: str
    email: str
    created_at_utc: str = ""


class AuthResponse(BaseModel):
    token: str
    user: AuthUser


def get_store(request: Request) -> SqliteSessionStore:
    return request.app.state.store


def _clean_username(username: str) -> str:
    username = re.sub(r"\s+", "", (username or "").strip().lower())
    if not USERNAME_RE.match(username):
        raise HTTPException(
            status_code=400,
            detail="Username must be 3-32 chars and use letters, numbers, dot, dash, underscore.",
        )
    return username


def _clean_email(email: str) -> str:
    email = (email or "").strip().lower()
    local, _, domain = email.partition("@")
    if not local or "." not in domain:
        raise HTTPException(status_code=400, detail="Enter a valid email address.")
    return email


def hash_password(password: str) -> str:
    """Encoded as `scheme$iterations$salt$digest` so the cost can change later."""
    salt = secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), bytes.fromhex(salt), HASH_ITERATIONS)
    return f"{HASH_SCHEME}${HASH_ITERATIONS}${salt}${digest.hex()}"


def verify_password(password: str, encoded: str) -> bool:
    try:
        scheme, iterations, salt, expected = encoded.split("$")
        if scheme != HASH_SCHEME:
            return False
        digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), bytes.fromhex(salt), int(iterations))
    except ValueError:
        return False
    return hmac.compare_digest(digest.hex(), expected)


def _public_user(rec) -> AuthUser:
    return AuthUser(
        id=rec["id"],
        username=rec["username"],
        email=rec["email"],
        created_at_utc=rec.get("created_at") or "",
    )


def _issue_token(store: SqliteSessionStore, user_id: str) -> str:
    token = secrets.token_urlsafe(32)
    store.save_token(token, user_id, int(time.time()) + config.AUTH_TOKEN_TTL_SECONDS)
    return token


def _bearer(request: Request) -> str:
    header = request.headers.get("Authorization", "")
    if header.lower().startswith("bearer "):
        return header.split(None, 1)[1].strip()
    return request.headers.get("X-Auth-Token", "").strip()


def require_user(request: Request, store: SqliteSessionStore = Depends(get_store)) -> AuthUser:
    token = _bearer(request)
    if not token:
        raise HTTPException(status_code=401, detail="Not authenticated.")
    try:
        user_id = store.token_user_id(token, int(time.time()))
        rec = store.fetch_user(user_id) if user_id else None
    except PersistenceError as e:
        logger.error(f"Token lookup failed: {e}")
        raise HTTPException(status_code=503, detail="Authentication is temporarily unavailable.")
    if not rec:
        raise HTTPException(status_code=401, detail="Not authenticated.")
    return _public_user(rec)


@router.post("/auth/signup", response_model=AuthResponse)
def signup(payload: SignupPayload, store: SqliteSessionStore = Depends(get_store)):
    username = _clean_username(payload.username)
    email = _clean_email(payload.email)
    if not payload.password or len(payload.password) < 8:
        raise HTTPException(status_code=400, detail="Password must be at least 8 characters.")
    if not config.SIGNUP_OPEN:
        raise HTTPException(status_code=403, detail="Signups are closed.")

    try:
        rec = store.create_user(username, email, hash_password(payload.password))
    except UserExists as e:
        raise HTTPException(status_code=409, detail=str(e))
    # The profile shell carries the sign-up email into settings.
    store.fetch_profile(rec["id"], email)

    logger.info(f"User signed up: {username} (id={rec['id']})")
    return {"token": _issue_token(store, rec["id"]), "user": _public_user(rec)}


@router.post("/auth/login", response_model=AuthResponse)
def login(payload: LoginPayload, store: SqliteSessionStore = Depends(get_store)):
    username = re.sub(r"\s+", "", (payload.username or "").strip().lower())
    rec = store.fetch_user_by_username(username) if username else None
    if not rec or not verify_password(payload.password or "", rec["password_hash"]):
        raise HTTPException(status_code=401, detail="Invalid username or password.")
    return {"token": _issue_token(store, rec["id"]), "user": _public_user(rec)}


@router.get("/auth/me")
def me(user: AuthUser = Depends(require_user)):
    return {"user": user}


@router.post("/auth/logout")
def logout(request: Request, store: SqliteSessionStore = Depends(get_store)):
    token = _bearer(request)
    if token:
        store.delete_token(token)
    return {"ok": True}
