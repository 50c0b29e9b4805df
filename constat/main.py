# constat/main.py
from __future__ import annotations

import logging
from datetime import date, datetime
from io import BytesIO
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd
from fastapi import FastAPI, File, HTTPException, Request, Response, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, StreamingResponse

from constat import (
    building_store,
    dashboard,
    material_store,
    mission_store,
    policies,
    settings,
    storage,
    user_store,
)
from constat.auth import (
    bootstrap_admin_from_env,
    issue_tokens,
    require_staff,
    require_user,
    resolve_session,
    user_out,
)
from constat.auth_tokens import TokenError, decode_refresh_token
from constat.db import INTEGRITY_ERRORS, describe_backend
from constat.progress import (
    calculate_building_progress,
    calculate_material_progress,
    calculate_overall_mission_progress,
    mission_progress_summary,
)
from constat.report_pdf import STATUS_LABELS, generate_mission_report, report_filename
from constat.roles import CONSTATEUR, EXPERT, has_role, normalize_role, permissions_for
from constat.schemas import (
    ActionResult,
    AuthResponse,
    BuildingCreate,
    BuildingOut,
    BuildingUpdate,
    ChangePasswordRequest,
    LoginRequest,
    MaterialCreate,
    MaterialOut,
    MaterialUpdate,
    MeResponse,
    MissionCreate,
    MissionOut,
    MissionUpdate,
    PasswordReset,
    ProfileUpdate,
    RefreshRequest,
    ReportResult,
    SignupRequest,
    StatusChange,
    UserCreate,
    UserOut,
    UserUpdate,
)

log = logging.getLogger("uvicorn.error")

UPLOAD_CHUNK_BYTES = 1024 * 1024

# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------
app = FastAPI(title="Constat API", version="0.3.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)

log.info("Database backend: %s", describe_backend())


@app.on_event("startup")
async def _on_startup() -> None:
    bootstrap_admin_from_env()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _not_found(kind: str) -> HTTPException:
    return HTTPException(status_code=404, detail=f"{kind} not found")


def _building_out(record: Dict[str, Any]) -> BuildingOut:
    return BuildingOut(**record, progress=calculate_building_progress(record))


def _material_out(record: Dict[str, Any]) -> MaterialOut:
    return MaterialOut(**record, progress=calculate_material_progress(record))


def _mission_out(
    record: Dict[str, Any],
    *,
    building_ids: Optional[List[str]] = None,
    names: Optional[Dict[str, Dict[str, Any]]] = None,
) -> MissionOut:
    if building_ids is None:
        building_ids = mission_store.list_building_ids(record["id"])
    if names is None:
        names = user_store.get_users_by_ids([record.get("assigned_to")])
    assignee = names.get(record.get("assigned_to") or "")
    data = {key: value for key, value in record.items() if key in MissionOut.model_fields}
    data["building_ids"] = building_ids
    data["assigned_to_name"] = (assignee or {}).get("full_name") or (assignee or {}).get("email")
    return MissionOut(**data)


def _missions_out(records: List[Dict[str, Any]]) -> List[MissionOut]:
    links = mission_store.building_ids_for_missions(record["id"] for record in records)
    names = user_store.get_users_by_ids(record.get("assigned_to") for record in records)
    return [_mission_out(record, building_ids=links.get(record["id"], []), names=names) for record in records]


def _visible_mission(user: Dict[str, Any], mission_id: str) -> Dict[str, Any]:
    mission = mission_store.get_mission(mission_id)
    if not mission or not policies.can_view_mission(user, mission):
        raise _not_found("Mission")
    return mission


def _visible_building(user: Dict[str, Any], building_id: str) -> Dict[str, Any]:
    building = building_store.get_building(building_id)
    if not building or not policies.can_view_building(user, building):
        raise _not_found("Building")
    return building


def _visible_material(user: Dict[str, Any], material_id: str) -> Dict[str, Any]:
    material = material_store.get_material(material_id)
    if not material or not policies.can_view_material(user, material):
        raise _not_found("Material")
    return material


def _check_assignee(user: Dict[str, Any], assignee_id: Optional[str]) -> None:
    if not assignee_id:
        return
    assignee = user_store.get_user_by_id(assignee_id)
    if not assignee or not assignee.get("is_active") or assignee.get("role") != CONSTATEUR:
        raise HTTPException(status_code=400, detail="Missions can only be assigned to an active constateur.")
    if has_role(user, (EXPERT,)) and assignee.get("created_by") != user["id"]:
        raise HTTPException(status_code=403, detail="Experts can only assign constateurs they manage.")


def _check_buildings_visible(user: Dict[str, Any], building_ids: List[str]) -> None:
    for building_id in building_ids:
        building = building_store.get_building(building_id)
        if not building or not policies.can_view_building(user, building):
            raise HTTPException(status_code=400, detail=f"Unknown building '{building_id}'")


def _mission_survey(mission_id: str) -> Dict[str, List[Dict[str, Any]]]:
    buildings = mission_store.list_mission_buildings(mission_id)
    materials = material_store.list_materials(building_ids=[b["id"] for b in buildings])
    return {"buildings": buildings, "materials": materials}


async def _read_plan_upload(file: UploadFile) -> bytes:
    chunks: List[bytes] = []
    size = 0
    while True:
        chunk = await file.read(UPLOAD_CHUNK_BYTES)
        if not chunk:
            break
        size += len(chunk)
        storage.check_plan_size(size)
        chunks.append(chunk)
    return b"".join(chunks)


def _render_report(mission: Dict[str, Any]) -> Dict[str, Any]:
    survey = _mission_survey(mission["id"])
    generated_at = datetime.utcnow()
    relative = storage.report_relative_path(mission["id"], mission["title"], now=generated_at)
    full_path = storage.safe_path(relative)
    generate_mission_report(
        full_path,
        mission=mission,
        buildings=survey["buildings"],
        materials=survey["materials"],
        generated_at=generated_at,
    )
    stored = storage.store_report(relative, full_path)
    log.info("Report generated for mission %s at %s", mission["id"], relative)
    return {
        "filename": report_filename(mission["title"]),
        "url": stored["url"],
        "path": relative,
        "generated_at": generated_at.isoformat(timespec="seconds") + "Z",
    }


# ---------------------------------------------------------------------------
# Routes: health & auth
# ---------------------------------------------------------------------------
@app.get("/healthz")
def healthz() -> Dict[str, bool]:
    return {"ok": True}


@app.post("/api/auth/login", response_model=AuthResponse)
async def auth_login(request: Request, payload: LoginRequest) -> AuthResponse:
    email = (payload.email or "").strip().lower()
    if not email or not payload.password:
        raise HTTPException(status_code=400, detail="Email and password are required")
    user = user_store.verify_credentials(email, payload.password, include_disabled=True)
    if not user:
        log.info("Login failed for %s", email)
        raise HTTPException(status_code=401, detail="Invalid email or password")
    if not user.get("is_active"):
        raise HTTPException(status_code=403, detail="Account disabled")
    response = issue_tokens(user)
    log.info("Login success for %s via %s", email, getattr(request.client, "host", "-"))
    return response


@app.post("/api/auth/refresh", response_model=AuthResponse)
async def auth_refresh(payload: RefreshRequest) -> AuthResponse:
    token = (payload.refresh_token or "").strip()
    if not token:
        raise HTTPException(status_code=400, detail="Refresh token is required")
    try:
        data = decode_refresh_token(token)
    except TokenError as exc:
        raise HTTPException(status_code=401, detail="Invalid refresh token") from exc
    user = resolve_session(data.get("sub"), data.get("stk"))
    return issue_tokens(user)


@app.post("/api/auth/logout", status_code=204)
async def auth_logout(request: Request) -> Response:
    user = require_user(request)
    user_store.clear_session_token(user["id"])
    log.info("Logout for %s", user["email"])
    return Response(status_code=204)


@app.post("/api/auth/signup", response_model=AuthResponse, status_code=201)
async def auth_signup(payload: SignupRequest) -> AuthResponse:
    try:
        user = user_store.create_user(
            email=payload.email,
            password=payload.password,
            full_name=payload.full_name,
            phone=payload.phone or "",
            role=CONSTATEUR,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except INTEGRITY_ERRORS as exc:
        raise HTTPException(status_code=409, detail="An account already exists for this email.") from exc
    log.info("Self signup for %s", user["email"])
    return issue_tokens(user)


@app.get("/api/auth/me", response_model=MeResponse)
async def auth_me(request: Request) -> MeResponse:
    user = require_user(request)
    return MeResponse(user=user_out(user), permissions=permissions_for(user))


@app.patch("/api/auth/me", response_model=UserOut)
async def auth_update_me(request: Request, payload: ProfileUpdate) -> UserOut:
    user = require_user(request)
    data = payload.model_dump(exclude_unset=True)
    try:
        record = user_store.update_user(user["id"], **{k: v for k, v in data.items() if v is not None})
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except INTEGRITY_ERRORS as exc:
        raise HTTPException(status_code=409, detail="Email already in use.") from exc
    return user_out(record)


@app.post("/api/auth/change-password", response_model=AuthResponse)
async def auth_change_password(request: Request, payload: ChangePasswordRequest) -> AuthResponse:
    user = require_user(request)
    if not user_store.verify_credentials(user["email"], payload.current_password):
        raise HTTPException(status_code=400, detail="Current password is incorrect.")
    if payload.current_password == payload.new_password:
        raise HTTPException(status_code=400, detail="New password must be different from the current password.")
    try:
        user_store.set_password(user["id"], payload.new_password)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    fresh = user_store.get_user_by_id(user["id"])
    return issue_tokens(fresh)


# ---------------------------------------------------------------------------
# Routes: users
# ---------------------------------------------------------------------------
@app.get("/api/users", response_model=List[UserOut])
async def api_list_users(request: Request, role: Optional[str] = None, include_inactive: bool = True) -> List[UserOut]:
    user = require_user(request)
    if not policies.can_list_users(user):
        raise HTTPException(status_code=403, detail="Expert access required")
    try:
        records = user_store.list_users(role=role, include_inactive=include_inactive)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return [user_out(record) for record in policies.visible_users(user, records)]


@app.post("/api/users", response_model=UserOut, status_code=201)
async def api_create_user(request: Request, payload: UserCreate) -> UserOut:
    user = require_user(request)
    if not policies.can_create_user(user, payload.role):
        raise HTTPException(status_code=403, detail=f"Not allowed to create users with role '{payload.role}'.")
    try:
        record = user_store.create_user(
            email=payload.email,
            password=payload.password,
            full_name=payload.full_name,
            phone=payload.phone or "",
            role=payload.role,
            created_by=user["id"],
            is_active=payload.is_active,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except INTEGRITY_ERRORS as exc:
        raise HTTPException(status_code=409, detail="An account already exists for this email.") from exc
    return user_out(record)


@app.get("/api/users/{user_id}", response_model=UserOut)
async def api_get_user(request: Request, user_id: str) -> UserOut:
    user = require_user(request)
    record = user_store.get_user_by_id(user_id)
    if not record or not policies.can_read_profile(user, record):
        raise _not_found("User")
    return user_out(record)


@app.patch("/api/users/{user_id}", response_model=UserOut)
async def api_update_user(request: Request, user_id: str, payload: UserUpdate) -> UserOut:
    user = require_user(request)
    record = user_store.get_user_by_id(user_id)
    if not record or not policies.can_read_profile(user, record):
        raise _not_found("User")
    data = payload.model_dump(exclude_unset=True)
    data = {key: value for key, value in data.items() if value is not None}
    if not policies.can_update_profile(user, record):
        raise HTTPException(status_code=403, detail="Not allowed to update this user.")
    new_role = normalize_role(data.get("role", record["role"]))
    if not policies.can_change_role(user, record, new_role):
        raise HTTPException(status_code=403, detail=f"Not allowed to assign role '{new_role}'.")
    if data.get("is_active") is False and not policies.can_manage_profile(user, record):
        raise HTTPException(status_code=403, detail="You cannot disable your own account.")
    try:
        updated = user_store.update_user(user_id, **data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except INTEGRITY_ERRORS as exc:
        raise HTTPException(status_code=409, detail="Email already in use.") from exc
    return user_out(updated)


@app.delete("/api/users/{user_id}", status_code=204)
async def api_delete_user(request: Request, user_id: str) -> Response:
    user = require_user(request)
    record = user_store.get_user_by_id(user_id)
    if not record or not policies.can_read_profile(user, record):
        raise _not_found("User")
    if not policies.can_delete_profile(user, record):
        raise HTTPException(status_code=403, detail="Not allowed to delete this user.")
    user_store.delete_user(user_id)
    log.info("User %s deleted by %s", record["email"], user["email"])
    return Response(status_code=204)


@app.post("/api/users/{user_id}/reset-password", response_model=ActionResult)
async def api_reset_password(request: Request, user_id: str, payload: PasswordReset) -> ActionResult:
    user = require_user(request)
    record = user_store.get_user_by_id(user_id)
    if not record or not policies.can_read_profile(user, record):
        raise _not_found("User")
    if not policies.can_manage_profile(user, record):
        raise HTTPException(status_code=403, detail="Not allowed to reset this password.")
    try:
        user_store.set_password(user_id, payload.new_password)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return ActionResult(status="ok", message=f"Password updated for '{record['email']}'.")


# ---------------------------------------------------------------------------
# Routes: missions
# ---------------------------------------------------------------------------
@app.get("/api/missions", response_model=List[MissionOut])
async def api_list_missions(
    request: Request,
    status: Optional[str] = None,
    q: Optional[str] = None,
    limit: Optional[int] = None,
) -> List[MissionOut]:
    user = require_user(request)
    statuses = [value.strip() for value in status.split(",") if value.strip()] if status else None
    records = policies.visible_missions(user, status=statuses, query=q, limit=limit)
    return _missions_out(records)


@app.get("/api/missions/export")
async def api_export_missions(request: Request, status: Optional[str] = None):
    user = require_staff(request)
    statuses = [value.strip() for value in status.split(",") if value.strip()] if status else None
    records = policies.visible_missions(user, status=statuses)
    links = mission_store.building_ids_for_missions(record["id"] for record in records)
    names = user_store.get_users_by_ids(record.get("assigned_to") for record in records)
    all_ids = {building_id for ids in links.values() for building_id in ids}
    buildings = {b["id"]: b for b in building_store.list_buildings(ids=all_ids)}
    materials_by_building: Dict[str, List[Dict[str, Any]]] = {}
    for material in material_store.list_materials(building_ids=all_ids):
        materials_by_building.setdefault(material["building_id"], []).append(material)

    columns = [
        "Titre",
        "Type",
        "Priorité",
        "Statut",
        "Date prévue",
        "Constateur",
        "Bâtiments",
        "Matériels",
        "Progression (%)",
        "Plan de masse",
        "Créée le",
    ]
    rows: List[Dict[str, Any]] = []
    for record in records:
        mission_buildings = [buildings[i] for i in links.get(record["id"], []) if i in buildings]
        mission_materials = [m for b in mission_buildings for m in materials_by_building.get(b["id"], [])]
        assignee = names.get(record.get("assigned_to") or "") or {}
        rows.append(
            {
                "Titre": record["title"],
                "Type": record["mission_type"],
                "Priorité": record["priority"],
                "Statut": STATUS_LABELS.get(record["status"], record["status"]),
                "Date prévue": (record.get("scheduled_start_date") or "")[:10],
                "Constateur": assignee.get("full_name") or assignee.get("email") or "Non assigné",
                "Bâtiments": ", ".join(b["designation"] for b in mission_buildings),
                "Matériels": len(mission_materials),
                "Progression (%)": calculate_overall_mission_progress(
                    mission_buildings, mission_materials, record["status"]
                ),
                "Plan de masse": "Oui" if mission_store.has_plan(record) else "Non",
                "Créée le": (record.get("created_at") or "")[:10],
            }
        )

    if rows:
        df = pd.DataFrame(rows, columns=columns)
    else:
        df = pd.DataFrame(columns=columns)

    output = BytesIO()
    with pd.ExcelWriter(output, engine="openpyxl") as writer:
        df.to_excel(writer, index=False, sheet_name="Missions")
    output.seek(0)

    filename = f"missions_export_{datetime.utcnow().strftime('%Y%m%dT%H%M%S')}.xlsx"
    headers = {"Content-Disposition": f"attachment; filename={filename}"}
    return StreamingResponse(
        output,
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        headers=headers,
    )


@app.post("/api/missions", response_model=MissionOut, status_code=201)
async def api_create_mission(request: Request, payload: MissionCreate) -> MissionOut:
    user = require_user(request)
    if not policies.can_create_mission(user):
        raise HTTPException(status_code=403, detail="Expert access required")
    _check_assignee(user, payload.assigned_to)
    _check_buildings_visible(user, payload.building_ids)
    data = payload.model_dump(exclude={"building_ids"})
    try:
        mission = mission_store.create_mission(created_by=user["id"], **data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if payload.building_ids:
        mission_store.replace_buildings(mission["id"], payload.building_ids)
    return _mission_out(mission)


@app.get("/api/missions/{mission_id}", response_model=MissionOut)
async def api_get_mission(request: Request, mission_id: str) -> MissionOut:
    user = require_user(request)
    return _mission_out(_visible_mission(user, mission_id))


@app.patch("/api/missions/{mission_id}", response_model=MissionOut)
async def api_update_mission(request: Request, mission_id: str, payload: MissionUpdate) -> MissionOut:
    user = require_user(request)
    mission = _visible_mission(user, mission_id)
    if not policies.can_update_mission(user, mission):
        raise HTTPException(status_code=403, detail="Not allowed to update this mission.")
    data = payload.model_dump(exclude_unset=True)
    building_ids = data.pop("building_ids", None)
    if "assigned_to" in data and data["assigned_to"] != mission.get("assigned_to"):
        _check_assignee(user, data["assigned_to"])
    if building_ids is not None:
        _check_buildings_visible(user, building_ids)
    try:
        updated = mission_store.update_mission(mission_id, **data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if building_ids is not None:
        mission_store.replace_buildings(mission_id, building_ids)
    return _mission_out(updated)


@app.delete("/api/missions/{mission_id}", status_code=204)
async def api_delete_mission(request: Request, mission_id: str) -> Response:
    user = require_user(request)
    mission = _visible_mission(user, mission_id)
    if not policies.can_delete_mission(user, mission):
        raise HTTPException(status_code=403, detail="Not allowed to delete this mission.")
    storage.delete_artifact(mission.get("plan_de_masse_path"))
    mission_store.delete_mission(mission_id)
    log.info("Mission %s deleted by %s", mission_id, user["email"])
    return Response(status_code=204)


@app.post("/api/missions/{mission_id}/status", response_model=MissionOut)
async def api_change_mission_status(request: Request, mission_id: str, payload: StatusChange) -> MissionOut:
    user = require_user(request)
    mission = _visible_mission(user, mission_id)
    if not policies.can_change_mission_status(user, mission, payload.status):
        raise HTTPException(
            status_code=403,
            detail=f"Status change from '{mission['status']}' to '{payload.status}' is not allowed.",
        )
    updated = mission_store.set_status(mission_id, payload.status)
    log.info("Mission %s status %s -> %s by %s", mission_id, mission["status"], payload.status, user["email"])
    return _mission_out(updated)


@app.get("/api/missions/{mission_id}/progress")
async def api_mission_progress(request: Request, mission_id: str) -> Dict[str, Any]:
    user = require_user(request)
    mission = _visible_mission(user, mission_id)
    survey = _mission_survey(mission_id)
    return mission_progress_summary(mission, survey["buildings"], survey["materials"])


@app.get("/api/missions/{mission_id}/buildings", response_model=List[BuildingOut])
async def api_mission_buildings(request: Request, mission_id: str) -> List[BuildingOut]:
    user = require_user(request)
    _visible_mission(user, mission_id)
    return [_building_out(record) for record in mission_store.list_mission_buildings(mission_id)]


@app.post("/api/missions/{mission_id}/buildings", response_model=BuildingOut, status_code=201)
async def api_mission_add_building(request: Request, mission_id: str, payload: BuildingCreate) -> BuildingOut:
    user = require_user(request)
    mission = _visible_mission(user, mission_id)
    if not policies.can_link_building(user, mission):
        raise HTTPException(status_code=403, detail="Not allowed to add buildings to this mission.")
    try:
        building = building_store.create_building(created_by=user["id"], **payload.model_dump())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    mission_store.link_building(mission_id, building["id"])
    return _building_out(building)


@app.put("/api/missions/{mission_id}/buildings/{building_id}", response_model=ActionResult)
async def api_mission_link_building(request: Request, mission_id: str, building_id: str) -> ActionResult:
    user = require_user(request)
    mission = _visible_mission(user, mission_id)
    building = _visible_building(user, building_id)
    if not policies.can_link_building(user, mission):
        raise HTTPException(status_code=403, detail="Not allowed to add buildings to this mission.")
    created = mission_store.link_building(mission_id, building["id"])
    return ActionResult(status="ok", message="Building linked." if created else "Building already linked.")


@app.delete("/api/missions/{mission_id}/buildings/{building_id}", status_code=204)
async def api_mission_unlink_building(request: Request, mission_id: str, building_id: str) -> Response:
    user = require_user(request)
    mission = _visible_mission(user, mission_id)
    if not policies.can_unlink_building(user, mission):
        raise HTTPException(status_code=403, detail="Not allowed to remove buildings from this mission.")
    if not mission_store.unlink_building(mission_id, building_id):
        raise _not_found("Mission building")
    return Response(status_code=204)


@app.get("/api/missions/{mission_id}/materials", response_model=List[MaterialOut])
async def api_mission_materials(request: Request, mission_id: str) -> List[MaterialOut]:
    user = require_user(request)
    _visible_mission(user, mission_id)
    return [_material_out(record) for record in _mission_survey(mission_id)["materials"]]


@app.post("/api/missions/{mission_id}/plan-de-masse", response_model=MissionOut)
async def api_upload_plan(request: Request, mission_id: str, file: UploadFile = File(...)) -> MissionOut:
    user = require_user(request)
    mission = _visible_mission(user, mission_id)
    if not policies.can_manage_documents(user, mission):
        raise HTTPException(status_code=403, detail="Not allowed to manage documents for this mission.")
    try:
        data = await _read_plan_upload(file)
        stored = storage.save_plan(
            mission_id,
            filename=file.filename or "plan-de-masse",
            content_type=file.content_type,
            data=data,
        )
    except storage.ArtifactError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    previous = mission.get("plan_de_masse_path")
    if previous and previous != stored["path"]:
        storage.delete_artifact(previous)
    updated = mission_store.set_plan_de_masse(
        mission_id,
        url=stored["url"],
        path=stored["path"],
        filename=stored["filename"],
        size=stored["size"],
    )
    log.info("Plan de masse uploaded for mission %s (%s bytes)", mission_id, stored["size"])
    return _mission_out(updated)


@app.get("/api/missions/{mission_id}/plan-de-masse")
async def api_get_plan(request: Request, mission_id: str):
    user = require_user(request)
    mission = _visible_mission(user, mission_id)
    if not policies.can_read_documents(user, mission) or not mission.get("plan_de_masse_path"):
        raise _not_found("Plan de masse")
    try:
        full = storage.resolve_artifact(mission["plan_de_masse_path"])
    except FileNotFoundError as exc:
        raise _not_found("Plan de masse") from exc
    return FileResponse(str(full), filename=mission.get("plan_de_masse_filename") or full.name)


@app.delete("/api/missions/{mission_id}/plan-de-masse", status_code=204)
async def api_delete_plan(request: Request, mission_id: str) -> Response:
    user = require_user(request)
    mission = _visible_mission(user, mission_id)
    if not policies.can_manage_documents(user, mission):
        raise HTTPException(status_code=403, detail="Not allowed to manage documents for this mission.")
    if not mission.get("plan_de_masse_path"):
        raise _not_found("Plan de masse")
    storage.delete_artifact(mission["plan_de_masse_path"])
    mission_store.clear_plan_de_masse(mission_id)
    return Response(status_code=204)


@app.post("/api/missions/{mission_id}/report", response_model=ReportResult)
async def api_generate_report(request: Request, mission_id: str) -> ReportResult:
    user = require_user(request)
    mission = _visible_mission(user, mission_id)
    if not policies.can_read_documents(user, mission):
        raise _not_found("Mission")
    result = _render_report(mission)
    return ReportResult(
        filename=result["filename"],
        url=result["url"],
        path=result["path"],
        generated_at=result["generated_at"],
    )


@app.get("/api/missions/{mission_id}/report")
async def api_download_report(request: Request, mission_id: str):
    user = require_user(request)
    mission = _visible_mission(user, mission_id)
    if not policies.can_read_documents(user, mission):
        raise _not_found("Mission")
    # Rendered on the fly; only POST /report persists an artifact
    survey = _mission_survey(mission_id)
    output = BytesIO()
    generate_mission_report(output, mission=mission, buildings=survey["buildings"], materials=survey["materials"])
    output.seek(0)
    headers = {"Content-Disposition": f"attachment; filename={report_filename(mission['title'])}"}
    return StreamingResponse(output, media_type="application/pdf", headers=headers)


@app.get("/artifacts/{path:path}")
async def api_artifact(request: Request, path: str):
    user = require_user(request)
    parts = Path(path).parts
    if len(parts) < 3 or parts[0] != "missions":
        raise _not_found("Artifact")
    _visible_mission(user, parts[1])
    try:
        full = storage.resolve_artifact(path)
    except storage.ArtifactError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except FileNotFoundError as exc:
        raise _not_found("Artifact") from exc
    return FileResponse(str(full))


# ---------------------------------------------------------------------------
# Routes: buildings
# ---------------------------------------------------------------------------
@app.get("/api/buildings/catalogue")
async def api_building_catalogue(request: Request) -> Dict[str, Any]:
    require_user(request)
    return building_store.catalogue()


@app.get("/api/buildings", response_model=List[BuildingOut])
async def api_list_buildings(request: Request, include_inactive: bool = True) -> List[BuildingOut]:
    user = require_user(request)
    return [_building_out(record) for record in policies.visible_buildings(user, include_inactive=include_inactive)]


@app.post("/api/buildings", response_model=BuildingOut, status_code=201)
async def api_create_building(request: Request, payload: BuildingCreate) -> BuildingOut:
    user = require_user(request)
    if not policies.can_create_building(user):
        raise HTTPException(status_code=403, detail="Not allowed to create buildings.")
    try:
        record = building_store.create_building(created_by=user["id"], **payload.model_dump())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _building_out(record)


@app.get("/api/buildings/{building_id}", response_model=BuildingOut)
async def api_get_building(request: Request, building_id: str) -> BuildingOut:
    user = require_user(request)
    return _building_out(_visible_building(user, building_id))


@app.patch("/api/buildings/{building_id}", response_model=BuildingOut)
async def api_update_building(request: Request, building_id: str, payload: BuildingUpdate) -> BuildingOut:
    user = require_user(request)
    building = _visible_building(user, building_id)
    if not policies.can_update_building(user, building):
        raise HTTPException(status_code=403, detail="Not allowed to update this building.")
    try:
        record = building_store.update_building(building_id, **payload.model_dump(exclude_unset=True))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _building_out(record)


@app.delete("/api/buildings/{building_id}", status_code=204)
async def api_delete_building(request: Request, building_id: str) -> Response:
    user = require_user(request)
    building = _visible_building(user, building_id)
    if not policies.can_delete_building(user, building):
        raise HTTPException(status_code=403, detail="Not allowed to delete this building.")
    building_store.delete_building(building_id)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Routes: materials
# ---------------------------------------------------------------------------
@app.get("/api/materials", response_model=List[MaterialOut])
async def api_list_materials(request: Request, building_id: Optional[str] = None) -> List[MaterialOut]:
    user = require_user(request)
    building_ids = [building_id] if building_id else None
    return [_material_out(record) for record in policies.visible_materials(user, building_ids=building_ids)]


@app.post("/api/materials", response_model=MaterialOut, status_code=201)
async def api_create_material(request: Request, payload: MaterialCreate) -> MaterialOut:
    user = require_user(request)
    if not building_store.get_building(payload.building_id):
        raise HTTPException(status_code=400, detail="Unknown building")
    if not policies.can_create_material(user, payload.building_id):
        raise HTTPException(status_code=403, detail="Not allowed to add materials to this building.")
    try:
        record = material_store.create_material(created_by=user["id"], **payload.model_dump())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _material_out(record)


@app.get("/api/materials/{material_id}", response_model=MaterialOut)
async def api_get_material(request: Request, material_id: str) -> MaterialOut:
    user = require_user(request)
    return _material_out(_visible_material(user, material_id))


@app.patch("/api/materials/{material_id}", response_model=MaterialOut)
async def api_update_material(request: Request, material_id: str, payload: MaterialUpdate) -> MaterialOut:
    user = require_user(request)
    material = _visible_material(user, material_id)
    data = payload.model_dump(exclude_unset=True)
    target_building = data.get("building_id")
    if target_building and target_building != material["building_id"]:
        allowed = policies.can_move_material(user, material, target_building)
    else:
        allowed = policies.can_update_material(user, material)
    if not allowed:
        raise HTTPException(status_code=403, detail="Not allowed to update this material.")
    try:
        record = material_store.update_material(material_id, **data)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _material_out(record)


@app.delete("/api/materials/{material_id}", status_code=204)
async def api_delete_material(request: Request, material_id: str) -> Response:
    user = require_user(request)
    material = _visible_material(user, material_id)
    if not policies.can_delete_material(user, material):
        raise HTTPException(status_code=403, detail="Not allowed to delete this material.")
    material_store.delete_material(material_id)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# Routes: dashboard
# ---------------------------------------------------------------------------
@app.get("/api/dashboard")
async def api_dashboard(
    request: Request,
    period: str = dashboard.DEFAULT_PERIOD,
    start: Optional[date] = None,
    end: Optional[date] = None,
) -> Dict[str, Any]:
    user = require_user(request)
    try:
        return dashboard.build_dashboard(user, period, start=start, end=end)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
