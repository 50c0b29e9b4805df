"""Completion percentages for buildings, materials and missions.

A building or material counts as validated once its completion reaches
``VALIDATION_THRESHOLD`` percent.
"""
from __future__ import annotations

import math
from typing import Any, Dict, Iterable, List, Optional

from constat.building_store import AREA_FIELDS, TECHNICAL_ELEMENT_KEYS

VALIDATION_THRESHOLD = 80
BUILDING_WEIGHT = 0.6
MATERIAL_WEIGHT = 0.4

# Progress shown for a mission that has no survey data yet.
EMPTY_MISSION_PROGRESS = {"draft": 0, "assigned": 15, "in_progress": 50}

VALIDATED = "Validé"
PARTIAL = "Validation partielle"
PENDING = "En attente"
NO_BUILDINGS = "Aucun bâtiment"
NO_MATERIALS = "Aucun matériel"


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _number(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _has_text(value: Any) -> bool:
    return value is not None and str(value).strip() != ""


def _has_technical_value(value: Any) -> bool:
    if isinstance(value, (list, tuple)):
        return len(value) > 0
    if isinstance(value, str):
        return value.strip() != ""
    return False


def calculate_building_progress(building: Dict[str, Any]) -> int:
    total = 0
    filled = 0

    total += 1
    if _has_text(building.get("designation")):
        filled += 1

    for field in AREA_FIELDS:
        total += 1
        if building.get(field) is not None:
            filled += 1

    for field in ("contiguity", "communication"):
        total += 1
        if building.get(field):
            filled += 1

    total += 1
    new_value = _number(building.get("new_value_mad"))
    if new_value is not None and new_value > 0:
        filled += 1

    total += 1
    if building.get("obsolescence_percentage") is not None:
        filled += 1

    technical = building.get("technical_elements") or {}
    for key in TECHNICAL_ELEMENT_KEYS:
        total += 1
        if _has_technical_value(technical.get(key)):
            filled += 1

    # every selected miscellaneous element is a filled field
    miscellaneous = building.get("miscellaneous_elements") or []
    total += len(miscellaneous)
    filled += len(miscellaneous)

    if total == 0:
        return 0
    return round_half_up(filled / total * 100)


def calculate_material_progress(material: Dict[str, Any]) -> int:
    quantity = _number(material.get("quantity"))
    new_value = _number(material.get("new_value_mad"))
    checks = [
        _has_text(material.get("name")),
        _has_text(material.get("building_id")),
        _has_text(material.get("brand")),
        _has_text(material.get("model")),
        quantity is not None and quantity > 0,
        _has_text(material.get("serial_number")),
        material.get("manufacturing_year") is not None,
        _has_text(material.get("condition")),
        new_value is not None and new_value > 0,
        material.get("obsolescence_percentage") is not None,
    ]
    return round_half_up(sum(1 for check in checks if check) / len(checks) * 100)


def _average(values: List[int]) -> float:
    return sum(values) / len(values) if values else 0.0


def calculate_overall_mission_progress(
    buildings: Iterable[Dict[str, Any]],
    materials: Iterable[Dict[str, Any]],
    status: Optional[str],
) -> int:
    if status == "completed":
        return 100
    if status == "cancelled":
        return 0

    building_scores = [calculate_building_progress(building) for building in buildings]
    material_scores = [calculate_material_progress(material) for material in materials]
    if not building_scores and not material_scores:
        return EMPTY_MISSION_PROGRESS.get(status or "", 0)

    weighted = 0.0
    weight = 0.0
    if building_scores:
        weighted += _average(building_scores) * BUILDING_WEIGHT
        weight += BUILDING_WEIGHT
    if material_scores:
        weighted += _average(material_scores) * MATERIAL_WEIGHT
        weight += MATERIAL_WEIGHT
    return round_half_up(weighted / weight)


def _validation_label(scores: List[int], empty_label: str) -> Dict[str, Any]:
    validated = sum(1 for score in scores if score >= VALIDATION_THRESHOLD)
    if not scores:
        label = empty_label
    elif validated == len(scores):
        label = VALIDATED
    elif validated > 0:
        label = PARTIAL
    else:
        label = PENDING
    return {"label": label, "validated": validated, "total": len(scores)}


def buildings_validation_status(buildings: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    return _validation_label([calculate_building_progress(b) for b in buildings], NO_BUILDINGS)


def materials_validation_status(materials: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    return _validation_label([calculate_material_progress(m) for m in materials], NO_MATERIALS)


def mission_progress_summary(
    mission: Dict[str, Any],
    buildings: List[Dict[str, Any]],
    materials: List[Dict[str, Any]],
) -> Dict[str, Any]:
    return {
        "mission_id": mission.get("id"),
        "status": mission.get("status"),
        "overall": calculate_overall_mission_progress(buildings, materials, mission.get("status")),
        "buildings": [
            {"id": b.get("id"), "designation": b.get("designation"), "progress": calculate_building_progress(b)}
            for b in buildings
        ],
        "materials": [
            {"id": m.get("id"), "name": m.get("name"), "progress": calculate_material_progress(m)}
            for m in materials
        ],
        "buildings_validation": buildings_validation_status(buildings),
        "materials_validation": materials_validation_status(materials),
    }
