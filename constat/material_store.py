from __future__ import annotations

import json
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional
from uuid import uuid4

from constat import building_store, db
from constat.building_store import compute_depreciated_value
from constat.db import bool_column, get_conn, real_column, row_to_dict

MATERIAL_STATUSES = ("operational", "maintenance", "out_of_order", "retired")
DEFAULT_MATERIAL_STATUS = "operational"
MATERIAL_CONDITIONS = ("bon", "acceptable", "vetuste")
DEFAULT_CONDITION = "bon"
DEFAULT_CATEGORY = "general"

_TEXT_FIELDS = {
    "name",
    "category",
    "brand",
    "model",
    "serial_number",
    "location_details",
    "maintenance_notes",
}
_DATE_FIELDS = {"installation_date", "warranty_end_date"}
_EDITABLE_FIELDS = _TEXT_FIELDS | _DATE_FIELDS | {
    "building_id",
    "specifications",
    "status",
    "quantity",
    "manufacturing_year",
    "condition",
    "new_value_mad",
    "obsolescence_percentage",
    "is_active",
}

_NOT_NULL_FIELDS = {"name", "building_id", "category", "specifications", "status", "quantity", "condition", "is_active"}


def _now() -> str:
    return datetime.utcnow().isoformat(timespec="seconds") + "Z"


def init_db() -> None:
    real = real_column()
    with get_conn() as conn:
        conn.execute(
            f"""
            CREATE TABLE IF NOT EXISTS materials (
                id TEXT PRIMARY KEY,
                building_id TEXT NOT NULL REFERENCES buildings(id) ON DELETE CASCADE,
                name TEXT NOT NULL,
                category TEXT NOT NULL DEFAULT '{DEFAULT_CATEGORY}',
                brand TEXT,
                model TEXT,
                serial_number TEXT,
                installation_date TEXT,
                warranty_end_date TEXT,
                location_details TEXT,
                specifications TEXT NOT NULL DEFAULT '{{}}',
                maintenance_notes TEXT,
                status TEXT NOT NULL DEFAULT '{DEFAULT_MATERIAL_STATUS}',
                quantity INTEGER NOT NULL DEFAULT 1,
                manufacturing_year INTEGER,
                condition TEXT NOT NULL DEFAULT '{DEFAULT_CONDITION}',
                new_value_mad {real},
                obsolescence_percentage {real},
                depreciated_value_mad {real},
                is_active {bool_column(True)},
                created_by TEXT REFERENCES profiles(id) ON DELETE SET NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_materials_building ON materials(building_id)")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_materials_created_by ON materials(created_by)")


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _optional_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _optional_date(value: Any, field: str) -> Optional[str]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    text = str(value).strip()
    try:
        return date.fromisoformat(text[:10]).isoformat()
    except ValueError:
        raise ValueError(f"{field} must be an ISO date (YYYY-MM-DD)")


def _optional_number(value: Any, field: str, *, minimum: Optional[float] = None, maximum: Optional[float] = None) -> Optional[float]:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"{field} must be a number")
    if minimum is not None and number < minimum:
        raise ValueError(f"{field} must be greater than or equal to {minimum:g}")
    if maximum is not None and number > maximum:
        raise ValueError(f"{field} must be less than or equal to {maximum:g}")
    return number


def _optional_int(value: Any, field: str) -> Optional[int]:
    number = _optional_number(value, field)
    if number is None:
        return None
    if int(number) != number:
        raise ValueError(f"{field} must be a whole number")
    return int(number)


def _normalize_specifications(value: Any) -> Dict[str, Any]:
    if value is None:
        return {}
    if isinstance(value, str):
        value = json.loads(value) if value.strip() else {}
    if not isinstance(value, dict):
        raise ValueError("specifications must be an object")
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
        if key == "name":
            cleaned = (value or "").strip()
            if not cleaned:
                raise ValueError("name is required")
            prepared[key] = cleaned
        elif key == "building_id":
            if not value:
                raise ValueError("building_id is required")
            if not building_store.get_building(value):
                raise ValueError("Unknown building")
            prepared[key] = value
        elif key == "category":
            prepared[key] = _optional_text(value) or DEFAULT_CATEGORY
        elif key in _TEXT_FIELDS:
            prepared[key] = _optional_text(value)
        elif key in _DATE_FIELDS:
            prepared[key] = _optional_date(value, key)
        elif key == "specifications":
            prepared[key] = _normalize_specifications(value)
        elif key == "status":
            status = (value or DEFAULT_MATERIAL_STATUS).strip().lower()
            if status not in MATERIAL_STATUSES:
                raise ValueError(f"status must be one of: {', '.join(MATERIAL_STATUSES)}")
            prepared[key] = status
        elif key == "condition":
            condition = (value or DEFAULT_CONDITION).strip().lower()
            if condition not in MATERIAL_CONDITIONS:
                raise ValueError(f"condition must be one of: {', '.join(MATERIAL_CONDITIONS)}")
            prepared[key] = condition
        elif key == "quantity":
            quantity = _optional_int(value, key)
            if quantity is None:
                quantity = 1
            if quantity < 0:
                raise ValueError("quantity must be greater than or equal to 0")
            prepared[key] = quantity
        elif key == "manufacturing_year":
            year = _optional_int(value, key)
            if year is not None and not 1800 <= year <= datetime.utcnow().year + 1:
                raise ValueError("manufacturing_year is out of range")
            prepared[key] = year
        elif key == "new_value_mad":
            prepared[key] = _optional_number(value, key, minimum=0)
        elif key == "obsolescence_percentage":
            prepared[key] = _optional_number(value, key, minimum=0, maximum=100)
        elif key == "is_active":
            prepared[key] = bool(value)
    return prepared


def _row_to_dict(row: Any) -> Optional[Dict[str, Any]]:
    record = row_to_dict(row)
    if record is None:
        return None
    record["specifications"] = _normalize_specifications(record.get("specifications"))
    record["is_active"] = bool(record.get("is_active"))
    return record


def _db_values(record: Dict[str, Any]) -> Dict[str, Any]:
    values = dict(record)
    if "specifications" in values:
        values["specifications"] = json.dumps(values["specifications"], ensure_ascii=False)
    return values


# ---------------------------------------------------------------------------
# Material operations
# ---------------------------------------------------------------------------


def create_material(*, created_by: Optional[str], **fields: Any) -> Dict[str, Any]:
    payload = {key: value for key, value in fields.items() if key in _EDITABLE_FIELDS}
    for required in ("name", "building_id"):
        if required not in payload:
            raise ValueError(f"{required} is required")
    record: Dict[str, Any] = {
        "category": DEFAULT_CATEGORY,
        "specifications": {},
        "status": DEFAULT_MATERIAL_STATUS,
        "quantity": 1,
        "condition": DEFAULT_CONDITION,
        "new_value_mad": None,
        "obsolescence_percentage": None,
        "is_active": True,
    }
    record.update(_prepare(payload))
    record["depreciated_value_mad"] = compute_depreciated_value(
        record.get("new_value_mad"), record.get("obsolescence_percentage")
    )
    now = _now()
    record.update({"id": str(uuid4()), "created_by": created_by, "created_at": now, "updated_at": now})
    values = _db_values(record)
    columns = list(values.keys())
    with get_conn() as conn:
        conn.execute(
            f"INSERT INTO materials ({', '.join(columns)}) VALUES ({db.placeholders(len(columns))})",
            tuple(values[column] for column in columns),
        )
    created = get_material(record["id"])
    if not created:
        raise RuntimeError("Failed to create material record")
    return created


def get_material(material_id: str) -> Optional[Dict[str, Any]]:
    with get_conn() as conn:
        row = conn.execute("SELECT * FROM materials WHERE id = ?", (material_id,)).fetchone()
    return _row_to_dict(row)


def list_materials(
    *,
    building_ids: Optional[Iterable[str]] = None,
    include_inactive: bool = True,
) -> List[Dict[str, Any]]:
    clauses: List[str] = []
    params: List[Any] = []
    if building_ids is not None:
        id_list = sorted(set(building_ids))
        if not id_list:
            return []
        clauses.append(f"building_id IN ({db.placeholders(len(id_list))})")
        params.extend(id_list)
    if not include_inactive:
        clauses.append("is_active = ?")
        params.append(True)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    with get_conn() as conn:
        rows = conn.execute(
            f"SELECT * FROM materials {where} ORDER BY created_at DESC, name ASC",
            tuple(params),
        ).fetchall()
    return [_row_to_dict(row) for row in rows]


def update_material(material_id: str, **fields: Any) -> Optional[Dict[str, Any]]:
    current = get_material(material_id)
    if not current:
        return None
    updates = _prepare(_changes(fields))
    if not updates:
        return current
    merged = dict(current)
    merged.update(updates)
    updates["depreciated_value_mad"] = compute_depreciated_value(
        merged.get("new_value_mad"), merged.get("obsolescence_percentage")
    )
    updates["updated_at"] = _now()
    values = _db_values(updates)
    columns = ", ".join(f"{key} = ?" for key in values.keys())
    with get_conn() as conn:
        conn.execute(
            f"UPDATE materials SET {columns} WHERE id = ?",
            (*values.values(), material_id),
        )
    return get_material(material_id)


def delete_material(material_id: str) -> bool:
    with get_conn() as conn:
        cursor = conn.execute("DELETE FROM materials WHERE id = ?", (material_id,))
        deleted = cursor.rowcount
    return bool(deleted)


def warranty_state(material: Dict[str, Any], *, today: Optional[date] = None) -> Optional[str]:
    """Return 'expired' or 'active' for materials with a warranty end date."""
    raw = material.get("warranty_end_date")
    if not raw:
        return None
    try:
        end = date.fromisoformat(str(raw)[:10])
    except ValueError:
        return None
    return "expired" if end < (today or date.today()) else "active"


init_db()


__all__ = [
    "DEFAULT_CATEGORY",
    "DEFAULT_CONDITION",
    "DEFAULT_MATERIAL_STATUS",
    "MATERIAL_CONDITIONS",
    "MATERIAL_STATUSES",
    "create_material",
    "delete_material",
    "get_material",
    "init_db",
    "list_materials",
    "update_material",
    "warranty_state",
]
