from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence
from uuid import uuid4

from constat import building_store, db, user_store
from constat.db import get_conn, row_to_dict

log = logging.getLogger("uvicorn.error")

MISSION_TYPES = ("inspection", "maintenance", "audit", "emergency")
DEFAULT_MISSION_TYPE = "inspection"
MISSION_PRIORITIES = ("low", "medium", "high", "urgent")
DEFAULT_PRIORITY = "medium"
MISSION_STATUSES = ("draft", "assigned", "in_progress", "completed", "cancelled")
DEFAULT_STATUS = "draft"
OPEN_STATUSES = ("draft", "assigned", "in_progress")

# Status moves offered to the constateur working a mission.
FIELD_TRANSITIONS = {
    ("assigned", "in_progress"),
    ("in_progress", "assigned"),
    ("in_progress", "completed"),
}

PLAN_FIELDS = (
    "plan_de_masse_url",
    "plan_de_masse_path",
    "plan_de_masse_filename",
    "plan_de_masse_size",
    "plan_de_masse_uploaded_at",
)

_DATE_FIELDS = ("scheduled_start_date", "scheduled_end_date", "actual_start_date", "actual_end_date")
_EDITABLE_FIELDS = {
    "title",
    "description",
    "mission_type",
    "priority",
    "status",
    "assigned_to",
    "approved_by",
    "instructions",
    "report",
    "attachments",
    *_DATE_FIELDS,
}

# Columns an update may not clear; an explicit null leaves them unchanged
_NOT_NULL_FIELDS = {"title", "mission_type", "priority", "status", "attachments"}


def _now() -> str:
    return datetime.utcnow().isoformat(timespec="seconds") + "Z"


def init_db() -> None:
    with get_conn() as conn:
        conn.execute(
            f"""
            CREATE TABLE IF NOT EXISTS missions (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                description TEXT,
                mission_type TEXT NOT NULL DEFAULT '{DEFAULT_MISSION_TYPE}',
                priority TEXT NOT NULL DEFAULT '{DEFAULT_PRIORITY}',
                status TEXT NOT NULL DEFAULT '{DEFAULT_STATUS}',
                scheduled_start_date TEXT,
                scheduled_end_date TEXT,
                actual_start_date TEXT,
                actual_end_date TEXT,
                assigned_to TEXT REFERENCES profiles(id) ON DELETE SET NULL,
                created_by TEXT REFERENCES profiles(id) ON DELETE SET NULL,
                approved_by TEXT REFERENCES profiles(id) ON DELETE SET NULL,
                instructions TEXT,
                report TEXT,
                attachments TEXT NOT NULL DEFAULT '[]',
                plan_de_masse_url TEXT,
                plan_de_masse_path TEXT,
                plan_de_masse_filename TEXT,
                plan_de_masse_size INTEGER,
                plan_de_masse_uploaded_at TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_missions_created_by ON missions(created_by)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_missions_assigned_to ON missions(assigned_to)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_missions_status ON missions(status)")
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS mission_buildings (
                mission_id TEXT NOT NULL REFERENCES missions(id) ON DELETE CASCADE,
                building_id TEXT NOT NULL REFERENCES buildings(id) ON DELETE CASCADE,
                created_at TEXT NOT NULL,
                PRIMARY KEY (mission_id, building_id)
            )
            """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_mission_buildings_building ON mission_buildings(building_id)")


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _choice(value: Any, field: str, choices: Sequence[str], default: str) -> str:
    cleaned = str(value or default).strip().lower()
    if cleaned not in choices:
        raise ValueError(f"{field} must be one of: {', '.join(choices)}")
    return cleaned


def _optional_datetime(value: Any, field: str) -> Optional[str]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.isoformat()
    text = str(value).strip()
    try:
        datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        raise ValueError(f"{field} must be an ISO date or datetime")
    return text


def _optional_user(value: Any, field: str) -> Optional[str]:
    if not value:
        return None
    if not user_store.get_user_by_id(value):
        raise ValueError(f"Unknown user for {field}")
    return value


def _changes(fields: Dict[str, Any]) -> Dict[str, Any]:
    return {
        key: value
        for key, value in fields.items()
        if key in _EDITABLE_FIELDS and not (value is None and key in _NOT_NULL_FIELDS)
    }


def _prepare(values: Dict[str, Any]) -> Dict[str, Any]:
    prepared: Dict[str, Any] = {}
    for key, value in values.items():
        if key == "title":
            cleaned = (value or "").strip()
            if not cleaned:
                raise ValueError("title is required")
            prepared[key] = cleaned
        elif key in {"description", "instructions", "report"}:
            prepared[key] = (value or "").strip() or None
        elif key == "mission_type":
            prepared[key] = _choice(value, key, MISSION_TYPES, DEFAULT_MISSION_TYPE)
        elif key == "priority":
            prepared[key] = _choice(value, key, MISSION_PRIORITIES, DEFAULT_PRIORITY)
        elif key == "status":
            prepared[key] = _choice(value, key, MISSION_STATUSES, DEFAULT_STATUS)
        elif key in _DATE_FIELDS:
            prepared[key] = _optional_datetime(value, key)
        elif key in {"assigned_to", "approved_by"}:
            prepared[key] = _optional_user(value, key)
        elif key == "attachments":
            if value is None:
                value = []
            if not isinstance(value, list):
                raise ValueError("attachments must be a list")
            prepared[key] = value
    start = prepared.get("scheduled_start_date")
    end = prepared.get("scheduled_end_date")
    if start and end and end[:10] < start[:10]:
        raise ValueError("scheduled_end_date must not precede scheduled_start_date")
    return prepared


def _row_to_dict(row: Any) -> Optional[Dict[str, Any]]:
    record = row_to_dict(row)
    if record is None:
        return None
    raw = record.get("attachments")
    if isinstance(raw, str):
        try:
            record["attachments"] = json.loads(raw) if raw.strip() else []
        except ValueError:
            record["attachments"] = []
    elif raw is None:
        record["attachments"] = []
    return record


def _db_values(record: Dict[str, Any]) -> Dict[str, Any]:
    values = dict(record)
    if "attachments" in values:
        values["attachments"] = json.dumps(values["attachments"], ensure_ascii=False)
    return values


def _apply_status_dates(current: Dict[str, Any], updates: Dict[str, Any]) -> None:
    status = updates.get("status")
    if not status or status == current.get("status"):
        return
    today = _now()[:10]
    if status == "in_progress" and not current.get("actual_start_date") and not updates.get("actual_start_date"):
        updates["actual_start_date"] = today
    if status == "completed" and not current.get("actual_end_date") and not updates.get("actual_end_date"):
        updates["actual_end_date"] = today


# ---------------------------------------------------------------------------
# Mission operations
# ---------------------------------------------------------------------------


def create_mission(*, created_by: Optional[str], **fields: Any) -> Dict[str, Any]:
    payload = {key: value for key, value in fields.items() if key in _EDITABLE_FIELDS}
    if "title" not in payload:
        raise ValueError("title is required")
    record: Dict[str, Any] = {
        "mission_type": DEFAULT_MISSION_TYPE,
        "priority": DEFAULT_PRIORITY,
        "status": DEFAULT_STATUS,
        "attachments": [],
    }
    record.update(_prepare(payload))
    _apply_status_dates({}, record)
    now = _now()
    record.update({"id": str(uuid4()), "created_by": created_by, "created_at": now, "updated_at": now})
    values = _db_values(record)
    columns = list(values.keys())
    with get_conn() as conn:
        conn.execute(
            f"INSERT INTO missions ({', '.join(columns)}) VALUES ({db.placeholders(len(columns))})",
            tuple(values[column] for column in columns),
        )
    created = get_mission(record["id"])
    if not created:
        raise RuntimeError("Failed to create mission record")
    log.info("Mission %s created by %s", record["id"], created_by)
    return created


def get_mission(mission_id: str) -> Optional[Dict[str, Any]]:
    with get_conn() as conn:
        row = conn.execute("SELECT * FROM missions WHERE id = ?", (mission_id,)).fetchone()
    return _row_to_dict(row)


def list_missions(
    *,
    created_by: Optional[str] = None,
    assigned_to: Optional[str] = None,
    status: Optional[Iterable[str]] = None,
    query: Optional[str] = None,
    ids: Optional[Iterable[str]] = None,
    limit: Optional[int] = None,
) -> List[Dict[str, Any]]:
    clauses: List[str] = []
    params: List[Any] = []
    if created_by:
        clauses.append("created_by = ?")
        params.append(created_by)
    if assigned_to:
        clauses.append("assigned_to = ?")
        params.append(assigned_to)
    if status:
        statuses = [status] if isinstance(status, str) else list(status)
        clauses.append(f"status IN ({db.placeholders(len(statuses))})")
        params.extend(statuses)
    if ids is not None:
        id_list = sorted(set(ids))
        if not id_list:
            return []
        clauses.append(f"id IN ({db.placeholders(len(id_list))})")
        params.extend(id_list)
    if query and query.strip():
        like = f"%{query.strip().lower()}%"
        clauses.append("(lower(title) LIKE ? OR lower(COALESCE(description, '')) LIKE ?)")
        params.extend([like, like])
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    sql = f"SELECT * FROM missions {where} ORDER BY created_at DESC"
    if limit:
        sql += " LIMIT ?"
        params.append(int(limit))
    with get_conn() as conn:
        rows = conn.execute(sql, tuple(params)).fetchall()
    return [_row_to_dict(row) for row in rows]


def update_mission(mission_id: str, **fields: Any) -> Optional[Dict[str, Any]]:
    current = get_mission(mission_id)
    if not current:
        return None
    updates = _prepare(_changes(fields))
    start = updates.get("scheduled_start_date", current.get("scheduled_start_date"))
    end = updates.get("scheduled_end_date", current.get("scheduled_end_date"))
    if start and end and end[:10] < start[:10]:
        raise ValueError("scheduled_end_date must not precede scheduled_start_date")
    if not updates:
        return current
    _apply_status_dates(current, updates)
    updates["updated_at"] = _now()
    values = _db_values(updates)
    columns = ", ".join(f"{key} = ?" for key in values.keys())
    with get_conn() as conn:
        conn.execute(f"UPDATE missions SET {columns} WHERE id = ?", (*values.values(), mission_id))
    return get_mission(mission_id)


def set_status(mission_id: str, status: str) -> Optional[Dict[str, Any]]:
    return update_mission(mission_id, status=status)


def delete_mission(mission_id: str) -> bool:
    with get_conn() as conn:
        cursor = conn.execute("DELETE FROM missions WHERE id = ?", (mission_id,))
        deleted = cursor.rowcount
    return bool(deleted)


def is_field_transition(current_status: Optional[str], new_status: str) -> bool:
    return (current_status, new_status) in FIELD_TRANSITIONS


# ---------------------------------------------------------------------------
# Plan de masse
# ---------------------------------------------------------------------------


def set_plan_de_masse(
    mission_id: str,
    *,
    url: str,
    path: str,
    filename: str,
    size: int,
) -> Optional[Dict[str, Any]]:
    now = _now()
    with get_conn() as conn:
        conn.execute(
            """
            UPDATE missions
            SET plan_de_masse_url = ?, plan_de_masse_path = ?, plan_de_masse_filename = ?,
                plan_de_masse_size = ?, plan_de_masse_uploaded_at = ?, updated_at = ?
            WHERE id = ?
            """,
            (url, path, filename, int(size), now, now, mission_id),
        )
    return get_mission(mission_id)


def clear_plan_de_masse(mission_id: str) -> Optional[Dict[str, Any]]:
    assignments = ", ".join(f"{field} = NULL" for field in PLAN_FIELDS)
    with get_conn() as conn:
        conn.execute(
            f"UPDATE missions SET {assignments}, updated_at = ? WHERE id = ?",
            (_now(), mission_id),
        )
    return get_mission(mission_id)


def has_plan(mission: Dict[str, Any]) -> bool:
    return bool(mission.get("plan_de_masse_url"))


# ---------------------------------------------------------------------------
# Mission / building links
# ---------------------------------------------------------------------------


def link_building(mission_id: str, building_id: str) -> bool:
    """Attach a building to a mission. Returns False when already linked."""
    with get_conn() as conn:
        cursor = conn.execute(
            """
            INSERT INTO mission_buildings (mission_id, building_id, created_at)
            VALUES (?, ?, ?)
            ON CONFLICT DO NOTHING
            """,
            (mission_id, building_id, _now()),
        )
        inserted = cursor.rowcount
    return bool(inserted)


def unlink_building(mission_id: str, building_id: str) -> bool:
    with get_conn() as conn:
        cursor = conn.execute(
            "DELETE FROM mission_buildings WHERE mission_id = ? AND building_id = ?",
            (mission_id, building_id),
        )
        deleted = cursor.rowcount
    return bool(deleted)


def replace_buildings(mission_id: str, building_ids: Iterable[str]) -> List[str]:
    wanted: List[str] = []
    for building_id in building_ids:
        if building_id and building_id not in wanted:
            wanted.append(building_id)
    now = _now()
    with get_conn() as conn:
        conn.execute("DELETE FROM mission_buildings WHERE mission_id = ?", (mission_id,))
        for building_id in wanted:
            conn.execute(
                "INSERT INTO mission_buildings (mission_id, building_id, created_at) VALUES (?, ?, ?) ON CONFLICT DO NOTHING",
                (mission_id, building_id, now),
            )
    return wanted


def list_building_ids(mission_id: str) -> List[str]:
    with get_conn() as conn:
        rows = conn.execute(
            "SELECT building_id FROM mission_buildings WHERE mission_id = ? ORDER BY created_at ASC, building_id ASC",
            (mission_id,),
        ).fetchall()
    return [row["building_id"] for row in rows]


def list_mission_buildings(mission_id: str) -> List[Dict[str, Any]]:
    ids = list_building_ids(mission_id)
    by_id = {building["id"]: building for building in building_store.list_buildings(ids=ids)}
    return [by_id[building_id] for building_id in ids if building_id in by_id]


def list_mission_ids_for_building(
    building_id: str,
    *,
    assigned_to: Optional[str] = None,
    created_by: Optional[str] = None,
    statuses: Optional[Iterable[str]] = None,
) -> List[str]:
    clauses = ["mb.building_id = ?"]
    params: List[Any] = [building_id]
    if assigned_to:
        clauses.append("m.assigned_to = ?")
        params.append(assigned_to)
    if created_by:
        clauses.append("m.created_by = ?")
        params.append(created_by)
    if statuses is not None:
        status_list = list(statuses)
        clauses.append(f"m.status IN ({db.placeholders(len(status_list))})")
        params.extend(status_list)
    with get_conn() as conn:
        rows = conn.execute(
            f"""
            SELECT m.id AS id
            FROM mission_buildings mb
            JOIN missions m ON m.id = mb.mission_id
            WHERE {' AND '.join(clauses)}
            """,
            tuple(params),
        ).fetchall()
    return [row["id"] for row in rows]


def building_ids_for_missions(mission_ids: Iterable[str]) -> Dict[str, List[str]]:
    id_list = sorted(set(mission_ids))
    result: Dict[str, List[str]] = {mission_id: [] for mission_id in id_list}
    if not id_list:
        return result
    with get_conn() as conn:
        rows = conn.execute(
            f"""
            SELECT mission_id, building_id FROM mission_buildings
            WHERE mission_id IN ({db.placeholders(len(id_list))})
            ORDER BY created_at ASC, building_id ASC
            """,
            tuple(id_list),
        ).fetchall()
    for row in rows:
        result[row["mission_id"]].append(row["building_id"])
    return result


def building_ids_for_user_missions(
    *,
    assigned_to: Optional[str] = None,
    created_by: Optional[str] = None,
    statuses: Optional[Iterable[str]] = None,
) -> List[str]:
    missions = list_missions(assigned_to=assigned_to, created_by=created_by, status=statuses)
    linked = building_ids_for_missions(mission["id"] for mission in missions)
    seen: List[str] = []
    for ids in linked.values():
        for building_id in ids:
            if building_id not in seen:
                seen.append(building_id)
    return seen


init_db()


__all__ = [
    "DEFAULT_PRIORITY",
    "DEFAULT_STATUS",
    "DEFAULT_MISSION_TYPE",
    "FIELD_TRANSITIONS",
    "MISSION_PRIORITIES",
    "MISSION_STATUSES",
    "MISSION_TYPES",
    "OPEN_STATUSES",
    "building_ids_for_missions",
    "building_ids_for_user_missions",
    "clear_plan_de_masse",
    "create_mission",
    "delete_mission",
    "get_mission",
    "has_plan",
    "init_db",
    "is_field_transition",
    "link_building",
    "list_building_ids",
    "list_mission_buildings",
    "list_mission_ids_for_building",
    "list_missions",
    "replace_buildings",
    "set_plan_de_masse",
    "set_status",
    "unlink_building",
    "update_mission",
]
