"""Authentication helpers for the clinic queue service."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

import jwt
from fastapi import WebSocket
from passlib.context import CryptContext

from clinic_queue.db.models import User
from clinic_queue.errors import AuthenticationError
from clinic_queue.storage import QueueStorage
from clinic_queue.tenancy import TenantId

# Password hashing context using bcrypt
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

JWT_ALGORITHM = "HS256"
TOKEN_TYPE_ACCESS = "access"
TOKEN_TYPE_TV = "tv"


def hash_password(password: str) -> str:
    """Hash a plaintext password using a secure algorithm."""

    return pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    """Verify a plaintext password against a stored hash."""

    try:
        return pwd_context.verify(password, hashed)
    except (ValueError, TypeError):
        return False


def register_user(storage: QueueStorage, username: str, password: str, role: str = "user") -> User:
    """Create an account; the caller checks for duplicate usernames."""

    return storage.create_user(username.strip(), hash_password(password), role)


def authenticate_user(storage: QueueStorage, username: str, password: str) -> Optional[User]:
    """Return the active user matching the credentials or ``None``."""

    user = storage.get_user_by_username(username.strip())
    if user is None or not user.is_active:
        return None
    if not verify_password(password, user.password_hash):
        return None
    return user


def create_access_token(user: User, secret: str, *, expires_minutes: int) -> str:
    """Create a signed JWT access token for the given user."""

    payload = {
        "sub": user.username,
        "tenant": user.id,
        "role": user.role,
        "type": TOKEN_TYPE_ACCESS,
        "exp": datetime.now(timezone.utc) + timedelta(minutes=expires_minutes),
    }
    return jwt.encode(payload, secret, algorithm=JWT_ALGORITHM)


def create_tv_token(tenant: TenantId, secret: str) -> str:
    """Return the display token for ``tenant``.

    The token carries no expiry so a TV can stay paired indefinitely; it is
    revoked by deactivating the account.
    """

    return jwt.encode({"tenant": tenant, "type": TOKEN_TYPE_TV}, secret, algorithm=JWT_ALGORITHM)


def decode_token(token: str, secret: str, expected_type: str = TOKEN_TYPE_ACCESS) -> Dict[str, Any]:
    try:
        data = jwt.decode(token, secret, algorithms=[JWT_ALGORITHM])
    except jwt.PyJWTError:
        raise AuthenticationError("Invalid or expired token")
    if data.get("type") != expected_type or not data.get("tenant"):
        raise AuthenticationError("Invalid or expired token")
    return data


def extract_websocket_token(websocket: WebSocket) -> Tuple[Optional[str], Optional[str]]:
    """Return ``(token, subprotocol)`` offered by a websocket client.

    Browsers cannot set headers on websocket upgrades, so the token may also
    arrive as a ``token`` query parameter or a ``bearer <token>`` subprotocol.
    The subprotocol is echoed back on accept when it was used.
    """

    header = websocket.headers.get("authorization")
    if header and header.lower().startswith("bearer "):
        return header.split(" ", 1)[1].strip() or None, None
    query_token = websocket.query_params.get("token")
    if query_token:
        return query_token, None
    offered = websocket.headers.get("sec-websocket-protocol")
    if offered:
        for item in offered.split(","):
            candidate = item.strip()
            if candidate.lower().startswith("bearer "):
                return candidate.split(" ", 1)[1].strip() or None, candidate
    return None, None


__all__ = [
    "pwd_context",
    "hash_password",
    "verify_password",
    "register_user",
    "authenticate_user",
    "create_access_token",
    "create_tv_token",
    "decode_token",
    "extract_websocket_token",
    "TOKEN_TYPE_ACCESS",
    "TOKEN_TYPE_TV",
]
