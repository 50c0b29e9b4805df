from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional
from uuid import uuid4

from constat import db, user_store  # noqa: F401  profiles table first
from constat.db import bool_column, get_conn, real_column, row_to_dict

CONTIGUITY_CHOICES = ("neant", "oui")
DEFAULT_CONTIGUITY = "neant"

TECHNICAL_ELEMENT_OPTIONS: Dict[str, List[str]] = {
    "semelles": ["en béton armé", "moellons", "gros béton"],
    "elevations": ["extérieur", "intérieur"],
    "ossature": ["béton armé", "métallique", "bois", "plastique", "panneau sandwich"],
    "portes": [
        "PVC", "Aluminium", "Bois", "Métallique", "Coupe-feu", "Sectionnelle",
        "Iso plane", "Coulissante", "Pliante", "Vitrage clair", "Vitrage armé",
    ],
    "fenetres": [
        "Aluminium", "PVC", "Bois", "Métallique", "Coulissante", "Basculante",
        "Porte-fenêtre", "Vitrage clair", "Vitrage feuilleté", "Verre armé", "Vitrage teinté",
    ],
    "grillage": ["Métallique", "Bois", "Inox"],
    "chassis": ["en métallique", "en bois", "en PVC", "en aluminium", "avec vitrage clair"],
    "facade": ["Béton armé", "Brique rouge", "Mur rideau"],
    "toiture": [
        "Dalle béton", "Charpente métallique", "Bac acier", "Panneau sandwich",
        "Bois", "Fibres ciment", "Zinc",
    ],
    "sol": [
        "Béton", "Carrelage", "Mosaïque", "Marbre", "Résine", "Parquet",
        "Moquette", "Caillebotis", "Tôles striées",
    ],
    "plafond": ["Enduit peint", "Faux plafond staff", "Plaque Armstrong"],
    "escalier": ["Béton", "Marbre", "Mosaïque", "Carrelage", "Métallique", "Caillebotis"],
    "cloisonnement": [
        "Agglomérés", "Panneaux sandwich", "PVC", "Aluminium", "Bois", "Verre",
        "Métallique", "Contreplaqué",
    ],
}
TECHNICAL_ELEMENT_KEYS = list(TECHNICAL_ELEMENT_OPTIONS.keys())
TECHNICAL_ELEMENT_LABELS: Dict[str, str] = {
    "semelles": "Semelles",
    "elevations": "Élévations",
    "ossature": "Ossature",
    "portes": "Portes",
    "fenetres": "Fenêtres",
    "grillage": "Grillage",
    "chassis": "Châssis",
    "facade": "Façade",
    "toiture": "Toiture",
    "sol": "Sol",
    "plafond": "Plafond",
    "escalier": "Escalier",
    "cloisonnement": "Cloisonnement",
}

MISCELLANEOUS_OPTIONS = [
    "Peinture sur murs",
    "Peinture sur menuiseries",
    "Papier peint",
    "Faïence",
    "Peinture sur éléments métalliques",
    "Revêtement partiel en carrelage",
    "Revêtement mural en faïence",
    "Revêtement mural en liège",
    "Revêtement mural en papier peint",
    "Revêtement mural en lambris",
    "Revêtement intérieur murs et cloisons",
    "Rideaux",
    "Stores",
    "Sanitaire : Lavabo",
    "Sanitaire : WC",
    "Sanitaire : Arrivée d'eau",
    "Présence de chauffe-eau",
    "Évacuation des eaux usées",
    "Évacuation des eaux vannes",
    "Installation électrique",
    "Installation de chauffage (Climatisation)",
    "Ascenseur",
    "Zinguerie : Gouttières",
    "Zinguerie : Descentes d'eaux pluviales",
]

AREA_FIELDS = ("basement_area_sqm", "ground_floor_area_sqm", "first_floor_area_sqm")

_EDITABLE_FIELDS = {
    "designation",
    *AREA_FIELDS,
    "technical_elements",
    "miscellaneous_elements",
    "new_value_mad",
    "obsolescence_percentage",
    "contiguity",
    "communication",
    "is_active",
}

_NOT_NULL_FIELDS = {
    "designation",
    "technical_elements",
    "miscellaneous_elements",
    "contiguity",
    "communication",
    "is_active",
}


def _now() -> str:
    return datetime.utcnow().isoformat(timespec="seconds") + "Z"


def init_db() -> None:
    real = real_column()
    with get_conn() as conn:
        conn.execute(
            f"""
            CREATE TABLE IF NOT EXISTS buildings (
                id TEXT PRIMARY KEY,
                designation TEXT NOT NULL,
                basement_area_sqm {real} DEFAULT 0,
                ground_floor_area_sqm {real} DEFAULT 0,
                first_floor_area_sqm {real} DEFAULT 0,
                total_area {real} NOT NULL DEFAULT 0,
                technical_elements TEXT NOT NULL DEFAULT '{{}}',
                miscellaneous_elements TEXT NOT NULL DEFAULT '[]',
                new_value_mad {real},
                obsolescence_percentage {real},
                depreciated_value_mad {real},
                contiguity TEXT NOT NULL DEFAULT 'neant',
                communication TEXT NOT NULL DEFAULT 'neant',
                is_active {bool_column(True)},
                created_by TEXT REFERENCES profiles(id) ON DELETE SET NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_buildings_created_by ON buildings(created_by)")


# ---------------------------------------------------------------------------
# Valuation helpers
# ---------------------------------------------------------------------------


def compute_total_area(values: Dict[str, Any]) -> float:
    return float(sum(float(values.get(field) or 0) for field in AREA_FIELDS))


def compute_depreciated_value(new_value: Optional[float], obsolescence: Optional[float]) -> Optional[float]:
    if new_value is None or obsolescence is None:
        return None
    return float(new_value) * float(obsolescence) / 100.0


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


def _normalize_choice(value: Any, field: str) -> str:
    cleaned = (value or DEFAULT_CONTIGUITY)
    cleaned = str(cleaned).strip().lower()
    if cleaned not in CONTIGUITY_CHOICES:
        raise ValueError(f"{field} must be one of: {', '.join(CONTIGUITY_CHOICES)}")
    return cleaned


def normalize_technical_elements(value: Any) -> Dict[str, List[str]]:
    if value is None:
        return {}
    if isinstance(value, str):
        value = json.loads(value) if value.strip() else {}
    if not isinstance(value, dict):
        raise ValueError("technical_elements must be an object")
    cleaned: Dict[str, List[str]] = {}
    for key, choices in value.items():
        if key not in TECHNICAL_ELEMENT_OPTIONS:
            raise ValueError(f"Unknown technical element '{key}'")
        if isinstance(choices, str):
            choices = [choices] if choices.strip() else []
        if not isinstance(choices, (list, tuple)):
            raise ValueError(f"technical_elements.{key} must be a list")
        cleaned[key] = [str(choice).strip() for choice in choices if str(choice).strip()]
    return cleaned


def normalize_miscellaneous(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = json.loads(value) if value.strip() else []
    if not isinstance(value, (list, tuple)):
        raise ValueError("miscellaneous_elements must be a list")
    seen: List[str] = []
    for item in value:
        text = str(item).strip()
        if text and text not in seen:
            seen.append(text)
    return seen


def _changes(fields: Dict[str, Any]) -> Dict[str, Any]:
    return {
        key: value
        for key, value in fields.items()
        if key in _EDITABLE_FIELDS and not (value is None and key in _NOT_NULL_FIELDS)
    }


def _prepare(values: Dict[str, Any]) -> Dict[str, Any]:
    prepared: Dict[str, Any] = {}
    for key, value in values.items():
        if key == "designation":
            cleaned = (value or "").strip()
            if not cleaned:
                raise ValueError("designation is required")
            prepared[key] = cleaned
        elif key in AREA_FIELDS:
            prepared[key] = _optional_number(value, key, minimum=0)
        elif key == "new_value_mad":
            prepared[key] = _optional_number(value, key, minimum=0)
        elif key == "obsolescence_percentage":
            prepared[key] = _optional_number(value, key, minimum=0, maximum=100)
        elif key in {"contiguity", "communication"}:
            prepared[key] = _normalize_choice(value, key)
        elif key == "technical_elements":
            prepared[key] = normalize_technical_elements(value)
        elif key == "miscellaneous_elements":
            prepared[key] = normalize_miscellaneous(value)
        elif key == "is_active":
            prepared[key] = bool(value)
    return prepared


def _derived(record: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "total_area": compute_total_area(record),
        "depreciated_value_mad": compute_depreciated_value(
            record.get("new_value_mad"), record.get("obsolescence_percentage")
        ),
    }


def _row_to_dict(row: Any) -> Optional[Dict[str, Any]]:
    record = row_to_dict(row)
    if record is None:
        return None
    record["technical_elements"] = normalize_technical_elements(record.get("technical_elements"))
    record["miscellaneous_elements"] = normalize_miscellaneous(record.get("miscellaneous_elements"))
    record["is_active"] = bool(record.get("is_active"))
    return record


def _db_values(record: Dict[str, Any]) -> Dict[str, Any]:
    values = dict(record)
    if "technical_elements" in values:
        values["technical_elements"] = json.dumps(values["technical_elements"], ensure_ascii=False)
    if "miscellaneous_elements" in values:
        values["miscellaneous_elements"] = json.dumps(values["miscellaneous_elements"], ensure_ascii=False)
    return values


# ---------------------------------------------------------------------------
# Building operations
# ---------------------------------------------------------------------------


def create_building(*, created_by: Optional[str], **fields: Any) -> Dict[str, Any]:
    payload = {key: value for key, value in fields.items() if key in _EDITABLE_FIELDS}
    if "designation" not in payload:
        raise ValueError("designation is required")
    record: Dict[str, Any] = {
        "basement_area_sqm": 0.0,
        "ground_floor_area_sqm": 0.0,
        "first_floor_area_sqm": 0.0,
        "technical_elements": {},
        "miscellaneous_elements": [],
        "new_value_mad": None,
        "obsolescence_percentage": None,
        "contiguity": DEFAULT_CONTIGUITY,
        "communication": DEFAULT_CONTIGUITY,
        "is_active": True,
    }
    record.update(_prepare(payload))
    record.update(_derived(record))
    now = _now()
    record.update({"id": str(uuid4()), "created_by": created_by, "created_at": now, "updated_at": now})
    values = _db_values(record)
    columns = list(values.keys())
    with get_conn() as conn:
        conn.execute(
            f"INSERT INTO buildings ({', '.join(columns)}) VALUES ({db.placeholders(len(columns))})",
            tuple(values[column] for column in columns),
        )
    created = get_building(record["id"])
    if not created:
        raise RuntimeError("Failed to create building record")
    return created


def get_building(building_id: str) -> Optional[Dict[str, Any]]:
    with get_conn() as conn:
        row = conn.execute("SELECT * FROM buildings WHERE id = ?", (building_id,)).fetchone()
    return _row_to_dict(row)


def list_buildings(
    *,
    ids: Optional[Iterable[str]] = None,
    created_by: Optional[str] = None,
    include_inactive: bool = True,
) -> List[Dict[str, Any]]:
    clauses: List[str] = []
    params: List[Any] = []
    if ids is not None:
        id_list = sorted(set(ids))
        if not id_list:
            return []
        clauses.append(f"id IN ({db.placeholders(len(id_list))})")
        params.extend(id_list)
    if created_by:
        clauses.append("created_by = ?")
        params.append(created_by)
    if not include_inactive:
        clauses.append("is_active = ?")
        params.append(True)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    with get_conn() as conn:
        rows = conn.execute(
            f"SELECT * FROM buildings {where} ORDER BY created_at DESC, designation ASC",
            tuple(params),
        ).fetchall()
    return [_row_to_dict(row) for row in rows]


def update_building(building_id: str, **fields: Any) -> Optional[Dict[str, Any]]:
    current = get_building(building_id)
    if not current:
        return None
    updates = _prepare(_changes(fields))
    if not updates:
        return current
    merged = dict(current)
    merged.update(updates)
    updates.update(_derived(merged))
    updates["updated_at"] = _now()
    values = _db_values(updates)
    columns = ", ".join(f"{key} = ?" for key in values.keys())
    with get_conn() as conn:
        conn.execute(
            f"UPDATE buildings SET {columns} WHERE id = ?",
            (*values.values(), building_id),
        )
    return get_building(building_id)


def delete_building(building_id: str) -> bool:
    """Delete a building; its materials and mission links go with it."""
    with get_conn() as conn:
        cursor = conn.execute("DELETE FROM buildings WHERE id = ?", (building_id,))
        deleted = cursor.rowcount
    return bool(deleted)


def catalogue() -> Dict[str, Any]:
    return {
        "technical_elements": [
            {"key": key, "label": TECHNICAL_ELEMENT_LABELS[key], "options": options}
            for key, options in TECHNICAL_ELEMENT_OPTIONS.items()
        ],
        "miscellaneous_elements": list(MISCELLANEOUS_OPTIONS),
        "contiguity": list(CONTIGUITY_CHOICES),
    }


init_db()


__all__ = [
    "AREA_FIELDS",
    "CONTIGUITY_CHOICES",
    "MISCELLANEOUS_OPTIONS",
    "TECHNICAL_ELEMENT_KEYS",
    "TECHNICAL_ELEMENT_LABELS",
    "TECHNICAL_ELEMENT_OPTIONS",
    "catalogue",
    "compute_depreciated_value",
    "compute_total_area",
    "create_building",
    "delete_building",
    "get_building",
    "init_db",
    "list_buildings",
    "update_building",
]
