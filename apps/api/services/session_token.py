"""Signed session tokens carrying the caller's identity and role.

Tokens are issued by the auth frontend with the shared JWT secret; this API
only verifies them and trusts the ``sub``, ``email`` and ``role`` claims.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from config import settings


SESSION_TOKEN_TYPE = "cv_session"
ALLOWED_ROLES = ("user", "admin")


def create_session_token(
    user_id: str,
    email: Optional[str] = None,
    expires_hours: Optional[int] = None,
    role: str = "user",
) -> Dict[str, Any]:
    if role not in ALLOWED_ROLES:
        raise ValueError(f"Unsupported role: {role}")
    issued_at = datetime.now(timezone.utc)
    lifetime = timedelta(hours=max(int(expires_hours or settings.JWT_EXPIRATION_HOURS or 24), 1))
    expires_at = int((issued_at + lifetime).timestamp())
    claims: Dict[str, Any] = {
        "sub": user_id,
        "type": SESSION_TOKEN_TYPE,
        "role": role,
        "iat": int(issued_at.timestamp()),
        "exp": expires_at,
    }
    if email:
        claims["email"] = email
    return {
        "token": jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM),
        "expires_at": expires_at,
    }


def decode_session_token(token: str) -> Dict[str, Any]:
    """Verify signature and expiry; raise ValueError on any problem."""
    try:
        claims = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as exc:
        raise ValueError("Invalid or expired session token.") from exc

    if str(claims.get("type", "")).strip() != SESSION_TOKEN_TYPE:
        raise ValueError("Invalid session token type.")
    if not str(claims.get("sub", "")).strip():
        raise ValueError("Session token missing subject.")
    if str(claims.get("role") or "user") not in ALLOWED_ROLES:
        raise ValueError("Session token carries an unknown role.")
    return claims
