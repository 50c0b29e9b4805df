"""Row access rules for profiles, missions, buildings, materials and documents.

Each predicate takes the acting profile (as returned by ``user_store``) and the
target row. Disabled profiles never pass a predicate. The ``visible_*``
helpers return the rows a profile is allowed to list.
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional, Set

from constat import building_store, material_store, mission_store
from constat.mission_store import OPEN_STATUSES
from constat.roles import (
    ADMIN,
    CONSTATEUR,
    EXPERT,
    MANAGERS,
    STAFF,
    SUPER_ADMIN,
    has_role,
    is_active,
)

Profile = Optional[Dict[str, Any]]
Row = Dict[str, Any]


def _uid(user: Profile) -> Optional[str]:
    return user.get("id") if user else None


def _owns(user: Profile, row: Row) -> bool:
    return bool(row) and row.get("created_by") is not None and row.get("created_by") == _uid(user)


# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------


def creatable_roles(user: Profile) -> Set[str]:
    if has_role(user, (SUPER_ADMIN,)):
        return {ADMIN, EXPERT, CONSTATEUR}
    if has_role(user, (ADMIN,)):
        return {EXPERT, CONSTATEUR}
    if has_role(user, (EXPERT,)):
        return {CONSTATEUR}
    return set()


def can_create_user(user: Profile, role: str) -> bool:
    return role in creatable_roles(user)


def can_read_profile(user: Profile, target: Row) -> bool:
    if not is_active(user) or not target:
        return False
    if target.get("id") == _uid(user) or has_role(user, MANAGERS):
        return True
    return bool(target.get("is_active"))


def can_manage_profile(user: Profile, target: Row) -> bool:
    """Whether ``user`` may edit another profile's details, role or status."""
    if not is_active(user) or not target or target.get("id") == _uid(user):
        return False
    if has_role(user, (SUPER_ADMIN,)):
        return True
    if has_role(user, (ADMIN,)):
        return target.get("role") in {EXPERT, CONSTATEUR}
    if has_role(user, (EXPERT,)):
        return target.get("role") == CONSTATEUR and target.get("created_by") == _uid(user)
    return False


def can_update_profile(user: Profile, target: Row) -> bool:
    if is_active(user) and target and target.get("id") == _uid(user):
        return True
    return can_manage_profile(user, target)


def can_change_role(user: Profile, target: Row, new_role: str) -> bool:
    if target and target.get("role") == new_role:
        return True
    return can_manage_profile(user, target) and new_role in creatable_roles(user)


def can_delete_profile(user: Profile, target: Row) -> bool:
    return can_manage_profile(user, target)


def can_list_users(user: Profile) -> bool:
    return has_role(user, STAFF)


def visible_users(user: Profile, users: List[Row]) -> List[Row]:
    if has_role(user, MANAGERS):
        return users
    if has_role(user, (EXPERT,)):
        return [
            target
            for target in users
            if target.get("role") == CONSTATEUR and target.get("created_by") == _uid(user)
        ]
    return [target for target in users if target.get("id") == _uid(user)]


# ---------------------------------------------------------------------------
# Missions
# ---------------------------------------------------------------------------


def can_view_mission(user: Profile, mission: Row) -> bool:
    if not mission:
        return False
    if has_role(user, MANAGERS):
        return True
    if has_role(user, (EXPERT,)):
        return _owns(user, mission)
    if has_role(user, (CONSTATEUR,)):
        return mission.get("assigned_to") == _uid(user)
    return False


def can_create_mission(user: Profile) -> bool:
    return has_role(user, STAFF)


def can_update_mission(user: Profile, mission: Row) -> bool:
    if not mission:
        return False
    if has_role(user, MANAGERS):
        return True
    return has_role(user, (EXPERT,)) and _owns(user, mission)


def can_change_mission_status(user: Profile, mission: Row, new_status: str) -> bool:
    if can_update_mission(user, mission):
        return True
    return (
        has_role(user, (CONSTATEUR,))
        and mission.get("assigned_to") == _uid(user)
        and mission_store.is_field_transition(mission.get("status"), new_status)
    )


def can_delete_mission(user: Profile, mission: Row) -> bool:
    return can_update_mission(user, mission)


def mission_filters(user: Profile) -> Optional[Dict[str, Any]]:
    """Filters for ``mission_store.list_missions``; ``None`` means nothing is visible."""
    if has_role(user, MANAGERS):
        return {}
    if has_role(user, (EXPERT,)):
        return {"created_by": _uid(user)}
    if has_role(user, (CONSTATEUR,)):
        return {"assigned_to": _uid(user)}
    return None


def visible_missions(user: Profile, **filters: Any) -> List[Row]:
    scope = mission_filters(user)
    if scope is None:
        return []
    merged = dict(filters)
    merged.update(scope)
    return mission_store.list_missions(**merged)


def _is_open_assignee(user: Profile, mission: Row) -> bool:
    return (
        has_role(user, (CONSTATEUR,))
        and mission.get("assigned_to") == _uid(user)
        and mission.get("status") in OPEN_STATUSES
    )


def can_link_building(user: Profile, mission: Row) -> bool:
    if not mission:
        return False
    if has_role(user, MANAGERS):
        return True
    if has_role(user, (EXPERT,)):
        return _owns(user, mission)
    return _is_open_assignee(user, mission)


def can_unlink_building(user: Profile, mission: Row) -> bool:
    return can_link_building(user, mission)


# ---------------------------------------------------------------------------
# Buildings
# ---------------------------------------------------------------------------


def _building_in_assigned_mission(user: Profile, building_id: str, *, open_only: bool) -> bool:
    return bool(
        mission_store.list_mission_ids_for_building(
            building_id,
            assigned_to=_uid(user),
            statuses=OPEN_STATUSES if open_only else None,
        )
    )


def can_view_building(user: Profile, building: Row) -> bool:
    if not building:
        return False
    if has_role(user, MANAGERS):
        return True
    if has_role(user, (EXPERT,)):
        if _owns(user, building):
            return True
        return bool(mission_store.list_mission_ids_for_building(building["id"], created_by=_uid(user)))
    if has_role(user, (CONSTATEUR,)):
        return _building_in_assigned_mission(user, building["id"], open_only=False)
    return False


def can_create_building(user: Profile) -> bool:
    return is_active(user)


def can_update_building(user: Profile, building: Row) -> bool:
    if not building:
        return False
    if has_role(user, MANAGERS):
        return True
    if has_role(user, (EXPERT,)):
        return _owns(user, building)
    if has_role(user, (CONSTATEUR,)):
        return _owns(user, building) and _building_in_assigned_mission(user, building["id"], open_only=True)
    return False


def can_delete_building(user: Profile, building: Row) -> bool:
    return can_update_building(user, building)


def visible_building_ids(user: Profile) -> Optional[List[str]]:
    """Building ids ``user`` may list; ``None`` means every building."""
    if has_role(user, MANAGERS):
        return None
    if has_role(user, (EXPERT,)):
        owned = [building["id"] for building in building_store.list_buildings(created_by=_uid(user))]
        linked = mission_store.building_ids_for_user_missions(created_by=_uid(user))
        return list(dict.fromkeys(owned + linked))
    if has_role(user, (CONSTATEUR,)):
        return mission_store.building_ids_for_user_missions(assigned_to=_uid(user))
    return []


def visible_buildings(user: Profile, *, include_inactive: bool = True) -> List[Row]:
    ids = visible_building_ids(user)
    return building_store.list_buildings(ids=ids, include_inactive=include_inactive)


# ---------------------------------------------------------------------------
# Materials
# ---------------------------------------------------------------------------


def can_view_material(user: Profile, material: Row) -> bool:
    if not material or not is_active(user):
        return False
    if material.get("is_active") or has_role(user, STAFF):
        return True
    return _building_in_assigned_mission(user, material["building_id"], open_only=False)


def can_create_material(user: Profile, building_id: str) -> bool:
    if has_role(user, STAFF):
        return True
    return has_role(user, (CONSTATEUR,)) and _building_in_assigned_mission(user, building_id, open_only=True)


def can_update_material(user: Profile, material: Row) -> bool:
    if not material:
        return False
    if has_role(user, STAFF):
        return True
    return (
        has_role(user, (CONSTATEUR,))
        and _owns(user, material)
        and _building_in_assigned_mission(user, material["building_id"], open_only=True)
    )


def can_move_material(user: Profile, material: Row, building_id: str) -> bool:
    return can_update_material(user, material) and can_create_material(user, building_id)


def can_delete_material(user: Profile, material: Row) -> bool:
    if not material:
        return False
    if has_role(user, MANAGERS):
        return True
    if has_role(user, (EXPERT,)):
        return _owns(user, material)
    return (
        has_role(user, (CONSTATEUR,))
        and _owns(user, material)
        and _building_in_assigned_mission(user, material["building_id"], open_only=True)
    )


def visible_materials(user: Profile, *, building_ids: Optional[List[str]] = None) -> List[Row]:
    if not is_active(user):
        return []
    rows = material_store.list_materials(building_ids=building_ids)
    if has_role(user, STAFF):
        return rows
    assigned = set(mission_store.building_ids_for_user_missions(assigned_to=_uid(user)))
    return [row for row in rows if row.get("is_active") or row.get("building_id") in assigned]


# ---------------------------------------------------------------------------
# Mission documents
# ---------------------------------------------------------------------------


def can_manage_documents(user: Profile, mission: Row) -> bool:
    return has_role(user, STAFF) and can_update_mission(user, mission)


def can_read_documents(user: Profile, mission: Row) -> bool:
    return can_view_mission(user, mission)


__all__ = [
    "can_change_mission_status",
    "can_change_role",
    "can_create_building",
    "can_create_material",
    "can_create_mission",
    "can_create_user",
    "can_delete_building",
    "can_delete_material",
    "can_delete_mission",
    "can_delete_profile",
    "can_link_building",
    "can_list_users",
    "can_manage_documents",
    "can_manage_profile",
    "can_move_material",
    "can_read_documents",
    "can_read_profile",
    "can_unlink_building",
    "can_update_building",
    "can_update_material",
    "can_update_mission",
    "can_update_profile",
    "can_view_building",
    "can_view_material",
    "can_view_mission",
    "creatable_roles",
    "mission_filters",
    "visible_building_ids",
    "visible_buildings",
    "visible_materials",
    "visible_missions",
    "visible_users",
]
