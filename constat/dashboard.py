from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from constat import building_store, material_store, mission_store, policies, user_store
from constat.mission_store import OPEN_STATUSES
from constat.progress import calculate_overall_mission_progress, round_half_up

PERIODS = ("ce_mois", "3_mois", "annee_courante", "annee_precedente", "personnalise")
DEFAULT_PERIOD = "ce_mois"
TABLE_LIMIT = 10

MONTHS_LONG = [
    "janvier", "février", "mars", "avril", "mai", "juin",
    "juillet", "août", "septembre", "octobre", "novembre", "décembre",
]
MONTHS_SHORT = [
    "janv.", "févr.", "mars", "avr.", "mai", "juin",
    "juil.", "août", "sept.", "oct.", "nov.", "déc.",
]

NO_LOCATION = "Non spécifié"
UNASSIGNED = "Non assigné"

Range = Tuple[datetime, datetime]


def _month_start(year: int, month: int) -> datetime:
    while month < 1:
        month += 12
        year -= 1
    while month > 12:
        month -= 12
        year += 1
    return datetime(year, month, 1)


def _month_end(year: int, month: int) -> datetime:
    return _month_start(year, month + 1) - timedelta(microseconds=1)


def _day_start(value: date) -> datetime:
    return datetime.combine(value, time.min)


def _day_end(value: date) -> datetime:
    return datetime.combine(value, time.max)


def date_ranges(
    period: str,
    *,
    start: Optional[date] = None,
    end: Optional[date] = None,
    now: Optional[datetime] = None,
) -> Tuple[Range, Range]:
    """Current and previous windows for a dashboard period."""
    now = now or datetime.utcnow()
    year, month = now.year, now.month
    if period == "ce_mois":
        current = (_month_start(year, month), _month_end(year, month))
        previous = (_month_start(year, month - 1), _month_end(year, month - 1))
    elif period == "3_mois":
        current = (_month_start(year, month - 2), _month_end(year, month))
        previous = (_month_start(year, month - 5), _month_end(year, month - 3))
    elif period == "annee_courante":
        current = (datetime(year, 1, 1), _month_end(year, 12))
        previous = (datetime(year - 1, 1, 1), _month_end(year - 1, 12))
    elif period == "annee_precedente":
        current = (datetime(year - 1, 1, 1), _month_end(year - 1, 12))
        previous = (datetime(year - 2, 1, 1), _month_end(year - 2, 12))
    elif period == "personnalise":
        if not start or not end:
            raise ValueError("Custom period requires start and end dates")
        if end < start:
            raise ValueError("End date must not precede start date")
        current = (_day_start(start), _day_end(end))
        span = current[1] - current[0]
        previous_end = current[0] - timedelta(microseconds=1)
        previous = (previous_end - span, previous_end)
    else:
        raise ValueError(f"Unsupported period '{period}', expected one of {', '.join(PERIODS)}")
    return current, previous


def parse_timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        return datetime.combine(value, time.min)
    else:
        try:
            parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def mission_date(mission: Dict[str, Any]) -> Optional[datetime]:
    return parse_timestamp(mission.get("scheduled_start_date")) or parse_timestamp(mission.get("created_at"))


def _within(moment: Optional[datetime], window: Range) -> bool:
    return moment is not None and window[0] <= moment <= window[1]


def calculate_variation(current: int, previous: int) -> int:
    if previous == 0:
        return 100 if current > 0 else 0
    return round_half_up((current - previous) / previous * 100)


def _counts(missions: List[Dict[str, Any]]) -> Dict[str, int]:
    return {
        "total": len(missions),
        "en_cours": sum(1 for m in missions if m.get("status") in OPEN_STATUSES),
        "cloturees": sum(1 for m in missions if m.get("status") == "completed"),
        "sans_plan": sum(1 for m in missions if not mission_store.has_plan(m)),
    }


def compute_kpis(current: List[Dict[str, Any]], previous: List[Dict[str, Any]]) -> Dict[str, int]:
    now_counts = _counts(current)
    before = _counts(previous)
    kpis = dict(now_counts)
    for key, value in now_counts.items():
        kpis[f"{key}_variation"] = calculate_variation(value, before[key])
    return kpis


def month_label(moment: datetime) -> str:
    return f"{MONTHS_SHORT[moment.month - 1]} {moment.year % 100:02d}"


def monthly_stats(missions: List[Dict[str, Any]], *, now: Optional[datetime] = None) -> Dict[str, List[Any]]:
    """Created and completed counts for the last twelve months.

    Completion is bucketed by creation date; missions carry no reliable
    completion timestamp for older records.
    """
    now = now or datetime.utcnow()
    stats: Dict[str, List[Any]] = {"labels": [], "creees": [], "cloturees": []}
    for offset in range(11, -1, -1):
        start = _month_start(now.year, now.month - offset)
        window = (start, _month_end(start.year, start.month))
        created = [m for m in missions if _within(parse_timestamp(m.get("created_at")), window)]
        stats["labels"].append(month_label(start))
        stats["creees"].append(len(created))
        stats["cloturees"].append(sum(1 for m in created if m.get("status") == "completed"))
    return stats


def status_table(kpis: Dict[str, int]) -> List[Dict[str, Any]]:
    total = kpis["en_cours"] + kpis["cloturees"]

    def percent(count: int) -> int:
        return round_half_up(count / total * 100) if total else 0

    return [
        {"statut": "En cours", "count": kpis["en_cours"], "percent": percent(kpis["en_cours"])},
        {"statut": "Clôturées", "count": kpis["cloturees"], "percent": percent(kpis["cloturees"])},
    ]


def period_display(period: str, window: Range) -> str:
    start, end = window
    if period == "ce_mois":
        return f"{MONTHS_LONG[start.month - 1]} {start.year}"
    if period == "3_mois":
        return f"{MONTHS_SHORT[start.month - 1]} - {MONTHS_SHORT[end.month - 1]} {end.year}"
    if period in {"annee_courante", "annee_precedente"}:
        return f"Année {start.year}"
    return f"{start.strftime('%d/%m/%Y')} - {end.strftime('%d/%m/%Y')}"


def _mission_rows(missions: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    if not missions:
        return []
    links = mission_store.building_ids_for_missions(m["id"] for m in missions)
    building_ids = {building_id for ids in links.values() for building_id in ids}
    buildings = {b["id"]: b for b in building_store.list_buildings(ids=building_ids)}
    materials_by_building: Dict[str, List[Dict[str, Any]]] = {}
    for material in material_store.list_materials(building_ids=building_ids):
        materials_by_building.setdefault(material["building_id"], []).append(material)
    assignees = user_store.get_users_by_ids(m.get("assigned_to") for m in missions)

    rows: List[Dict[str, Any]] = []
    for mission in missions:
        mission_buildings = [buildings[i] for i in links.get(mission["id"], []) if i in buildings]
        mission_materials = [
            material
            for building in mission_buildings
            for material in materials_by_building.get(building["id"], [])
        ]
        assignee = assignees.get(mission.get("assigned_to") or "")
        rows.append(
            {
                "id": mission["id"],
                "title": mission["title"],
                "lieu": mission_buildings[0]["designation"] if mission_buildings else NO_LOCATION,
                "constateur_name": (assignee or {}).get("full_name") or UNASSIGNED,
                "progress": calculate_overall_mission_progress(
                    mission_buildings, mission_materials, mission.get("status")
                ),
                "has_plan": mission_store.has_plan(mission),
                "scheduled_start_date": mission.get("scheduled_start_date"),
                "status": mission.get("status"),
            }
        )
    return rows


def build_dashboard(
    user: Dict[str, Any],
    period: str = DEFAULT_PERIOD,
    *,
    start: Optional[date] = None,
    end: Optional[date] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    now = now or datetime.utcnow()
    current_window, previous_window = date_ranges(period, start=start, end=end, now=now)
    missions = policies.visible_missions(user)
    current = [m for m in missions if _within(mission_date(m), current_window)]
    previous = [m for m in missions if _within(mission_date(m), previous_window)]
    kpis = compute_kpis(current, previous)
    open_missions = [m for m in current if m.get("status") in OPEN_STATUSES][:TABLE_LIMIT]
    return {
        "kpis": kpis,
        "missions": _mission_rows(open_missions),
        "monthly_stats": monthly_stats(missions, now=now),
        "status_table": status_table(kpis),
        "period": period_display(period, current_window),
        "range": {
            "start": current_window[0].isoformat(),
            "end": current_window[1].isoformat(),
        },
    }
