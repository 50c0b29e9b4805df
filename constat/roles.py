from __future__ import annotations

from typing import Any, Dict, Iterable, Optional

SUPER_ADMIN = "super_admin"
ADMIN = "admin"
EXPERT = "expert"
CONSTATEUR = "constateur"

DEFAULT_ROLE = CONSTATEUR

ROLE_LABELS: Dict[str, str] = {
    SUPER_ADMIN: "Super Administrateur",
    ADMIN: "Administrateur",
    EXPERT: "Expert",
    CONSTATEUR: "Constateur",
}

ROLE_RANK: Dict[str, int] = {
    CONSTATEUR: 1,
    EXPERT: 2,
    ADMIN: 3,
    SUPER_ADMIN: 4,
}

MANAGERS = frozenset({SUPER_ADMIN, ADMIN})
STAFF = frozenset({SUPER_ADMIN, ADMIN, EXPERT})


def normalize_role(value: Optional[str]) -> str:
    if value is None or not str(value).strip():
        return DEFAULT_ROLE
    key = str(value).strip().lower()
    if key not in ROLE_RANK:
        raise ValueError(f"Unknown role '{value}'")
    return key


def role_label(role: Optional[str]) -> str:
    return ROLE_LABELS.get(role or "", role or "-")


def is_active(user: Optional[Dict[str, Any]]) -> bool:
    return bool(user) and bool(user.get("is_active"))


def has_role(user: Optional[Dict[str, Any]], roles: Iterable[str]) -> bool:
    """Role check that never grants anything to a disabled profile."""
    if not is_active(user):
        return False
    return user.get("role") in set(roles)


def is_super_admin(user: Optional[Dict[str, Any]]) -> bool:
    return has_role(user, (SUPER_ADMIN,))


def is_admin(user: Optional[Dict[str, Any]]) -> bool:
    return has_role(user, MANAGERS)


def is_expert(user: Optional[Dict[str, Any]]) -> bool:
    return has_role(user, (EXPERT,))


def is_constateur(user: Optional[Dict[str, Any]]) -> bool:
    return has_role(user, (CONSTATEUR,))


def can_access_admin(user: Optional[Dict[str, Any]]) -> bool:
    return has_role(user, MANAGERS)


def can_manage_users(user: Optional[Dict[str, Any]]) -> bool:
    return has_role(user, MANAGERS)


def can_access_expert(user: Optional[Dict[str, Any]]) -> bool:
    return has_role(user, STAFF)


def can_manage_buildings(user: Optional[Dict[str, Any]]) -> bool:
    return has_role(user, STAFF)


def can_manage_missions(user: Optional[Dict[str, Any]]) -> bool:
    return has_role(user, STAFF)


def can_view_all_missions(user: Optional[Dict[str, Any]]) -> bool:
    return has_role(user, STAFF)


def can_assign_missions(user: Optional[Dict[str, Any]]) -> bool:
    return has_role(user, STAFF)


def permissions_for(user: Optional[Dict[str, Any]]) -> Dict[str, bool]:
    return {
        "can_access_admin": can_access_admin(user),
        "can_manage_users": can_manage_users(user),
        "can_access_expert": can_access_expert(user),
        "can_manage_buildings": can_manage_buildings(user),
        "can_manage_missions": can_manage_missions(user),
        "can_view_all_missions": can_view_all_missions(user),
        "can_assign_missions": can_assign_missions(user),
        "is_constateur": is_constateur(user),
        "is_expert": is_expert(user),
        "is_admin": is_admin(user),
        "is_super_admin": is_super_admin(user),
    }


__all__ = [
    "ADMIN",
    "CONSTATEUR",
    "DEFAULT_ROLE",
    "EXPERT",
    "MANAGERS",
    "ROLE_LABELS",
    "ROLE_RANK",
    "STAFF",
    "SUPER_ADMIN",
    "can_access_admin",
    "can_access_expert",
    "can_assign_missions",
    "can_manage_buildings",
    "can_manage_missions",
    "can_manage_users",
    "can_view_all_missions",
    "has_role",
    "is_admin",
    "is_constateur",
    "is_expert",
    "is_super_admin",
    "normalize_role",
    "permissions_for",
    "role_label",
]
