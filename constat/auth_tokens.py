from __future__ import annotations

import logging
import os
import time
from typing import Dict, Optional, Tuple

import jwt

log = logging.getLogger("uvicorn.error")

ALGORITHM = os.environ.get("JWT_ALGORITHM", "HS256")
DEFAULT_ACCESS_TTL = int(os.environ.get("JWT_ACCESS_TTL", "3600"))
DEFAULT_REFRESH_TTL = int(os.environ.get("JWT_REFRESH_TTL", str(60 * 60 * 24 * 30)))
ISSUER = os.environ.get("JWT_ISSUER", "constat-api")

ACCESS = "access"
REFRESH = "refresh"

_warned_default_secret = False


class TokenError(Exception):
    """Raised when a JWT token cannot be validated."""


def _now() -> int:
    return int(time.time())


def _secret() -> str:
    global _warned_default_secret
    secret = os.environ.get("JWT_SECRET") or os.environ.get("SESSION_SECRET")
    if secret:
        return secret
    if not _warned_default_secret:
        log.warning("JWT_SECRET not set; using insecure default. Set JWT_SECRET in production.")
        _warned_default_secret = True
    return "dev-secret-key"


def _issue(kind: str, *, user_id: str, session_token: str, role: Optional[str], ttl: int) -> Tuple[str, int]:
    issued_at = _now()
    payload: Dict[str, object] = {
        "sub": user_id,
        "iat": issued_at,
        "exp": issued_at + ttl,
        "iss": ISSUER,
        "stk": session_token,
        "typ": kind,
    }
    if role:
        payload["role"] = role
    token = jwt.encode(payload, _secret(), algorithm=ALGORITHM)
    return token, issued_at + ttl


def create_access_token(
    *,
    user_id: str,
    session_token: str,
    role: Optional[str] = None,
    ttl: Optional[int] = None,
) -> Tuple[str, int]:
    return _issue(ACCESS, user_id=user_id, session_token=session_token, role=role, ttl=ttl or DEFAULT_ACCESS_TTL)


def create_refresh_token(
    *,
    user_id: str,
    session_token: str,
    role: Optional[str] = None,
    ttl: Optional[int] = None,
) -> Tuple[str, int]:
    return _issue(REFRESH, user_id=user_id, session_token=session_token, role=role, ttl=ttl or DEFAULT_REFRESH_TTL)


def _decode(token: str, expected_type: str) -> Dict[str, object]:
    try:
        payload = jwt.decode(token, _secret(), algorithms=[ALGORITHM], issuer=ISSUER)
    except jwt.PyJWTError as exc:
        raise TokenError(str(exc)) from exc
    if payload.get("typ") != expected_type:
        raise TokenError(f"Invalid token type for {expected_type} token")
    if not isinstance(payload.get("sub"), str) or not isinstance(payload.get("stk"), str):
        raise TokenError("Token is missing subject or session claims")
    return payload


def decode_access_token(token: str) -> Dict[str, object]:
    return _decode(token, ACCESS)


def decode_refresh_token(token: str) -> Dict[str, object]:
    return _decode(token, REFRESH)
