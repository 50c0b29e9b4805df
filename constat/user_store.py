from __future__ import annotations

import hashlib
import hmac
import logging
import secrets
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional
from uuid import uuid4

from constat import db
from constat.db import USE_POSTGRES, bool_column, get_conn, row_to_dict
from constat.roles import DEFAULT_ROLE, normalize_role

log = logging.getLogger("uvicorn.error")

PBKDF_ITERATIONS = 120_000
MIN_PASSWORD_LENGTH = 6


def _now() -> str:
    return datetime.utcnow().isoformat(timespec="seconds") + "Z"


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "t", "yes", "y", "on"}
    return bool(value)


def normalize_email(email: Optional[str]) -> str:
    cleaned = (email or "").strip().lower()
    if not cleaned or "@" not in cleaned or cleaned.startswith("@") or cleaned.endswith("@"):
        raise ValueError("A valid email address is required")
    return cleaned


def _check_password(password: Optional[str]) -> str:
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    return password


# ---------------------------------------------------------------------------
# Password helpers
# ---------------------------------------------------------------------------


def _hash_password(password: str, *, salt: bytes) -> bytes:
    return hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, PBKDF_ITERATIONS)


def hash_password_hex(password: str, *, salt: bytes) -> str:
    return _hash_password(password, salt=salt).hex()


# ---------------------------------------------------------------------------
# Database initialisation
# ---------------------------------------------------------------------------


def init_db() -> None:
    with get_conn() as conn:
        conn.execute(
            f"""
            CREATE TABLE IF NOT EXISTS profiles (
                id TEXT PRIMARY KEY,
                email TEXT NOT NULL UNIQUE,
                full_name TEXT NOT NULL DEFAULT '',
                phone TEXT NOT NULL DEFAULT '',
                role TEXT NOT NULL DEFAULT '{DEFAULT_ROLE}',
                is_active {bool_column(True)},
                created_by TEXT REFERENCES profiles(id) ON DELETE SET NULL,
                salt TEXT NOT NULL,
                password_hash TEXT NOT NULL,
                session_token TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_profiles_role ON profiles(role)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_profiles_created_by ON profiles(created_by)")
        if not USE_POSTGRES:
            _ensure_additional_profile_columns(conn)


def _ensure_additional_profile_columns(conn: Any) -> None:
    columns = {row["name"] for row in conn.execute("PRAGMA table_info(profiles)").fetchall()}
    if "session_token" not in columns:
        conn.execute("ALTER TABLE profiles ADD COLUMN session_token TEXT")
    if "phone" not in columns:
        conn.execute("ALTER TABLE profiles ADD COLUMN phone TEXT NOT NULL DEFAULT ''")


# ---------------------------------------------------------------------------
# Row helpers
# ---------------------------------------------------------------------------


def _row_to_dict(row: Any) -> Optional[Dict[str, Any]]:
    record = row_to_dict(row)
    if record is None:
        return None
    record["is_active"] = bool(record.get("is_active"))
    record["full_name"] = record.get("full_name") or ""
    record["phone"] = record.get("phone") or ""
    return record


def public_profile(user: Dict[str, Any]) -> Dict[str, Any]:
    hidden = {"salt", "password_hash", "session_token"}
    return {key: value for key, value in user.items() if key not in hidden}


# ---------------------------------------------------------------------------
# Profile operations
# ---------------------------------------------------------------------------


def get_user_by_id(user_id: Optional[str]) -> Optional[Dict[str, Any]]:
    if not user_id:
        return None
    with get_conn() as conn:
        row = conn.execute("SELECT * FROM profiles WHERE id = ?", (user_id,)).fetchone()
    return _row_to_dict(row)


def get_user_by_email(email: str) -> Optional[Dict[str, Any]]:
    cleaned = (email or "").strip().lower()
    if not cleaned:
        return None
    with get_conn() as conn:
        row = conn.execute("SELECT * FROM profiles WHERE email = ?", (cleaned,)).fetchone()
    return _row_to_dict(row)


def get_users_by_ids(user_ids: Iterable[Optional[str]]) -> Dict[str, Dict[str, Any]]:
    ids = sorted({user_id for user_id in user_ids if user_id})
    if not ids:
        return {}
    with get_conn() as conn:
        rows = conn.execute(
            f"SELECT * FROM profiles WHERE id IN ({db.placeholders(len(ids))})",
            tuple(ids),
        ).fetchall()
    records = [_row_to_dict(row) for row in rows]
    return {record["id"]: record for record in records if record}


def list_users(
    *,
    role: Optional[str] = None,
    created_by: Optional[str] = None,
    include_inactive: bool = True,
) -> List[Dict[str, Any]]:
    clauses: List[str] = []
    params: List[Any] = []
    if role:
        clauses.append("role = ?")
        params.append(normalize_role(role))
    if created_by:
        clauses.append("created_by = ?")
        params.append(created_by)
    if not include_inactive:
        clauses.append("is_active = ?")
        params.append(True)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    with get_conn() as conn:
        rows = conn.execute(
            f"SELECT * FROM profiles {where} ORDER BY created_at DESC, email ASC",
            tuple(params),
        ).fetchall()
    return [_row_to_dict(row) for row in rows]


def create_user(
    *,
    email: str,
    password: str,
    full_name: str = "",
    phone: str = "",
    role: Optional[str] = DEFAULT_ROLE,
    created_by: Optional[str] = None,
    is_active: bool = True,
) -> Dict[str, Any]:
    cleaned_email = normalize_email(email)
    _check_password(password)
    normalized_role = normalize_role(role)
    salt = secrets.token_bytes(16)
    password_hash = hash_password_hex(password, salt=salt)
    now = _now()
    user_id = str(uuid4())
    with get_conn() as conn:
        conn.execute(
            """
            INSERT INTO profiles (id, email, full_name, phone, role, is_active, created_by, salt, password_hash, session_token, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, NULL, ?, ?)
            """,
            (
                user_id,
                cleaned_email,
                (full_name or "").strip(),
                (phone or "").strip(),
                normalized_role,
                _coerce_bool(is_active),
                created_by,
                salt.hex(),
                password_hash,
                now,
                now,
            ),
        )
    record = get_user_by_id(user_id)
    if not record:
        raise RuntimeError("Failed to create user record")
    log.info("Created profile %s role=%s", cleaned_email, normalized_role)
    return record


def update_user(user_id: str, **fields: Any) -> Optional[Dict[str, Any]]:
    allowed = {"email", "full_name", "phone", "role", "is_active", "created_by"}
    updates: Dict[str, Any] = {}
    for key, value in fields.items():
        if key not in allowed:
            continue
        if key == "email":
            updates[key] = normalize_email(value)
        elif key == "role":
            updates[key] = normalize_role(value)
        elif key == "is_active":
            updates[key] = _coerce_bool(value)
        elif key in {"full_name", "phone"}:
            updates[key] = (value or "").strip()
        else:
            updates[key] = value
    if updates:
        if updates.get("is_active") is False:
            updates["session_token"] = None
        updates["updated_at"] = _now()
        columns = ", ".join(f"{key} = ?" for key in updates.keys())
        values: List[Any] = list(updates.values())
        values.append(user_id)
        with get_conn() as conn:
            conn.execute(f"UPDATE profiles SET {columns} WHERE id = ?", tuple(values))
    return get_user_by_id(user_id)


def set_password(user_id: str, password: str) -> None:
    """Store a new password hash and revoke issued tokens."""
    _check_password(password)
    salt = secrets.token_bytes(16)
    password_hash = hash_password_hex(password, salt=salt)
    with get_conn() as conn:
        conn.execute(
            "UPDATE profiles SET salt = ?, password_hash = ?, session_token = NULL, updated_at = ? WHERE id = ?",
            (salt.hex(), password_hash, _now(), user_id),
        )


def verify_credentials(email: str, password: str, *, include_disabled: bool = False) -> Optional[Dict[str, Any]]:
    user = get_user_by_email(email)
    if not user:
        return None
    if not user["is_active"] and not include_disabled:
        return None
    try:
        salt = bytes.fromhex(user["salt"])
        expected = bytes.fromhex(user["password_hash"])
    except ValueError:
        return None
    candidate = _hash_password(password or "", salt=salt)
    if not hmac.compare_digest(candidate, expected):
        return None
    return user


def set_session_token(user_id: str) -> str:
    token = secrets.token_urlsafe(32)
    with get_conn() as conn:
        conn.execute(
            "UPDATE profiles SET session_token = ?, updated_at = ? WHERE id = ?",
            (token, _now(), user_id),
        )
    return token


def clear_session_token(user_id: str) -> None:
    with get_conn() as conn:
        conn.execute(
            "UPDATE profiles SET session_token = NULL, updated_at = ? WHERE id = ?",
            (_now(), user_id),
        )


def disable_user(user_id: str) -> None:
    update_user(user_id, is_active=False)


def enable_user(user_id: str) -> None:
    update_user(user_id, is_active=True)


def delete_user(user_id: str) -> bool:
    with get_conn() as conn:
        cursor = conn.execute("DELETE FROM profiles WHERE id = ?", (user_id,))
        deleted = cursor.rowcount
    return bool(deleted)


init_db()


__all__ = [
    "clear_session_token",
    "create_user",
    "delete_user",
    "disable_user",
    "enable_user",
    "get_user_by_email",
    "get_user_by_id",
    "get_users_by_ids",
    "hash_password_hex",
    "init_db",
    "list_users",
    "normalize_email",
    "public_profile",
    "set_password",
    "set_session_token",
    "update_user",
    "verify_credentials",
]
