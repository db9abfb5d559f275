"""
Email/password login with opaque session tokens.

Passwords are stored as ``pbkdf2_sha256$<iterations>$<salt hex>$<hash hex>``.
Sessions live in the ``sessions`` table and expire after SESSION_TTL_SECONDS.
"""

import hashlib
import hmac
import logging
import secrets
from datetime import datetime, timedelta
from typing import Optional

from config import PASSWORD_HASH_ITERATIONS, SESSION_TTL_SECONDS
from database import (
    delete_session,
    get_session,
    get_user_by_email,
    get_user_by_id,
    insert_session,
    insert_user,
)

from .models import Session, User

logger = logging.getLogger("auth")

HASH_SCHEME = "pbkdf2_sha256"


class AuthError(Exception):
    """Invalid credentials or an unknown/expired session."""


def hash_password(password: str, iterations: int = PASSWORD_HASH_ITERATIONS, salt: Optional[bytes] = None) -> str:
    salt = salt or secrets.token_bytes(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iterations)
    return f"{HASH_SCHEME}${iterations}${salt.hex()}${digest.hex()}"


def verify_password(password: str, encoded: str) -> bool:
    try:
        scheme, iterations, salt_hex, digest_hex = encoded.split("$")
        if scheme != HASH_SCHEME:
            return False
        digest = hashlib.pbkdf2_hmac(
            "sha256", password.encode("utf-8"), bytes.fromhex(salt_hex), int(iterations)
        )
    except ValueError:
        return False
    return hmac.compare_digest(digest.hex(), digest_hex)


def create_user(email: str, password: str) -> User:
    if not email or not email.strip() or not password:
        raise AuthError("Email and password are required")
    if get_user_by_email(email) is not None:
        raise AuthError(f"User already exists: {email}")
    user_id = insert_user(email, hash_password(password))
    logger.info("Created user %s (id=%d)", email, user_id)
    return User(id=user_id, email=email.strip().lower())


def authenticate(email: str, password: str, now: Optional[datetime] = None) -> Session:
    """Check credentials and open a new session."""
    user = get_user_by_email(email or "")
    if user is None or not verify_password(password or "", user["password_hash"]):
        logger.warning("Failed login for %s", email)
        raise AuthError("Invalid email or password")

    token = secrets.token_urlsafe(32)
    expires_at = (now or datetime.now()) + timedelta(seconds=SESSION_TTL_SECONDS)
    insert_session(token, user["id"], expires_at)
    logger.info("User %s logged in", user["email"])
    return Session(token=token, user_id=user["id"], expires_at=expires_at)


def user_for_token(token: Optional[str], now: Optional[datetime] = None) -> User:
    if not token:
        raise AuthError("Missing session token")
    row = get_session(token)
    if row is None:
        raise AuthError("Unknown session")
    expires_at = datetime.fromisoformat(row["expires_at"])
    if (now or datetime.now()) >= expires_at:
        delete_session(token)
        raise AuthError("Session expired")
    user = get_user_by_id(row["user_id"])
    if user is None:
        raise AuthError("Unknown session")
    return User(id=user["id"], email=user["email"])


def logout(token: Optional[str]) -> None:
    if token:
        delete_session(token)
