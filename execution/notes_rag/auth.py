"""
Tenant Session Tokens

A session token is an HS256 JWT whose ``sub`` claim is the tenant id that
scopes notes, searches and chats. Tokens carry ``iss = "notes-rag"`` and an
expiry; anything else that fails to decode is treated as "no session" so the
API can fall back to API-key auth.
"""

import os
import logging
from dataclasses import dataclass
from typing import Optional
from datetime import datetime, timezone, timedelta

import jwt

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"
SESSION_ISSUER = "notes-rag"


@dataclass(frozen=True)
class SessionSettings:
    secret: str
    expiry_hours: int = 168

    @classmethod
    def from_env(cls) -> "SessionSettings":
        secret = os.getenv("JWT_SECRET", "")
        if not secret:
            raise RuntimeError("JWT_SECRET is not set; tenant sessions cannot be signed or checked")
        return cls(secret=secret, expiry_hours=int(os.getenv("JWT_EXPIRY_HOURS", "168")))


def create_session_jwt(tenant_id: str, email: str = "", name: str = "") -> str:
    """Sign a session token for ``tenant_id``. ``email`` and ``name`` are display-only."""
    if not tenant_id:
        raise ValueError("tenant_id is required")
    settings = SessionSettings.from_env()
    issued = datetime.now(timezone.utc)
    claims = {
        "iss": SESSION_ISSUER,
        "sub": tenant_id,
        "email": email,
        "name": name,
        "iat": issued,
        "exp": issued + timedelta(hours=settings.expiry_hours),
    }
    return jwt.encode(claims, settings.secret, algorithm=JWT_ALGORITHM)


def verify_session_jwt(token: str) -> Optional[dict]:
    """
    Resolve a session token to its tenant.

    Returns:
        ``{"tenant_id", "email", "name"}``, or None when the token is expired,
        forged, issued elsewhere or has no subject
    """
    settings = SessionSettings.from_env()
    try:
        claims = jwt.decode(
            token,
            settings.secret,
            algorithms=[JWT_ALGORITHM],
            issuer=SESSION_ISSUER,
            options={"require": ["iss", "sub", "exp"]},
        )
    except jwt.InvalidTokenError as e:
        logger.debug(f"Rejected session token: {type(e).__name__}: {e}")
        return None

    tenant_id = claims.get("sub")
    if not tenant_id:
        return None
    return {
        "tenant_id": str(tenant_id),
        "email": claims.get("email", ""),
        "name": claims.get("name", ""),
    }
