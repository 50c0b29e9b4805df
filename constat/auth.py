from __future__ import annotations

import logging
import os
import time
from typing import Any, Dict, Iterable, Optional

from fastapi import HTTPException, Request

from constat import user_store
from constat.auth_tokens import TokenError, create_access_token, create_refresh_token, decode_access_token
from constat.roles import STAFF, SUPER_ADMIN, has_role, role_label
from constat.schemas import AuthResponse, UserOut

log = logging.getLogger("uvicorn.error")


def extract_bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("Authorization")
    if not header:
        return None
    parts = header.split(" ", 1)
    if len(parts) != 2:
        return None
    scheme, value = parts[0].strip(), parts[1].strip()
    if scheme.lower() != "bearer":
        return None
    return value or None


def user_out(record: Dict[str, Any]) -> UserOut:
    return UserOut(
        id=record["id"],
        email=record["email"],
        full_name=record.get("full_name") or "",
        phone=record.get("phone") or "",
        role=record["role"],
        role_label=role_label(record["role"]),
        is_active=bool(record.get("is_active")),
        created_by=record.get("created_by"),
        created_at=record["created_at"],
        updated_at=record["updated_at"],
    )


def resolve_session(user_id: Any, session_token: Any) -> Dict[str, Any]:
    """Active profile whose stored session token matches the token claims."""
    if not isinstance(user_id, str) or not isinstance(session_token, str):
        raise HTTPException(status_code=401, detail="Invalid authentication token")
    record = user_store.get_user_by_id(user_id)
    if not record or not record.get("is_active"):
        raise HTTPException(status_code=401, detail="Authentication required")
    stored_token = record.get("session_token")
    if not stored_token or stored_token != session_token:
        raise HTTPException(status_code=401, detail="Authentication required")
    return record


def require_user(request: Request) -> Dict[str, Any]:
    current = getattr(request.state, "current_user", None)
    if isinstance(current, dict):
        return current
    bearer = extract_bearer_token(request)
    if not bearer:
        raise HTTPException(status_code=401, detail="Authentication required")
    try:
        payload = decode_access_token(bearer)
    except TokenError as exc:
        raise HTTPException(status_code=401, detail="Invalid authentication token") from exc
    record = resolve_session(payload.get("sub"), payload.get("stk"))
    request.state.current_user = record
    return record


def require_roles(request: Request, roles: Iterable[str], detail: str) -> Dict[str, Any]:
    record = require_user(request)
    if not has_role(record, roles):
        raise HTTPException(status_code=403, detail=detail)
    return record


def require_staff(request: Request) -> Dict[str, Any]:
    return require_roles(request, STAFF, "Expert access required")


def issue_tokens(user: Dict[str, Any]) -> AuthResponse:
    session_token = user.get("session_token")
    if not session_token:
        session_token = user_store.set_session_token(user["id"])
        user["session_token"] = session_token
    access_token, access_exp = create_access_token(
        user_id=user["id"],
        session_token=session_token,
        role=user.get("role"),
    )
    refresh_token, refresh_exp = create_refresh_token(
        user_id=user["id"],
        session_token=session_token,
        role=user.get("role"),
    )
    now = int(time.time())
    return AuthResponse(
        access_token=access_token,
        expires_in=max(int(access_exp - now), 0),
        refresh_token=refresh_token,
        refresh_expires_in=max(int(refresh_exp - now), 0),
        role=user["role"],
        user=user_out(user),
    )


def bootstrap_admin_from_env() -> None:
    email = (os.environ.get("BOOTSTRAP_ADMIN_EMAIL") or "").strip().lower()
    password = os.environ.get("BOOTSTRAP_ADMIN_PASSWORD")
    if not email or not password:
        return
    full_name = (os.environ.get("BOOTSTRAP_ADMIN_NAME") or "Super Administrateur").strip()
    try:
        user = user_store.get_user_by_email(email)
        if user:
            user_store.set_password(user["id"], password)
            updates: Dict[str, Any] = {}
            if user.get("role") != SUPER_ADMIN:
                updates["role"] = SUPER_ADMIN
            if not user.get("is_active"):
                updates["is_active"] = True
            if updates:
                user_store.update_user(user["id"], **updates)
            log.warning("Bootstrap admin reset for '%s'. Remove BOOTSTRAP_ADMIN_* env vars after use.", email)
        else:
            user_store.create_user(
                email=email,
                password=password,
                full_name=full_name,
                role=SUPER_ADMIN,
                is_active=True,
            )
            log.warning("Bootstrap admin created for '%s'. Remove BOOTSTRAP_ADMIN_* env vars after use.", email)
    except ValueError:
        log.exception("Bootstrap admin routine failed for '%s'.", email)


__all__ = [
    "bootstrap_admin_from_env",
    "extract_bearer_token",
    "issue_tokens",
    "require_roles",
    "require_staff",
    "require_user",
    "resolve_session",
    "user_out",
]
