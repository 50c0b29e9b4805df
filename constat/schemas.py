from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

RoleName = Literal["super_admin", "admin", "expert", "constateur"]
MissionType = Literal["inspection", "maintenance", "audit", "emergency"]
MissionPriority = Literal["low", "medium", "high", "urgent"]
MissionStatus = Literal["draft", "assigned", "in_progress", "completed", "cancelled"]
Contiguity = Literal["neant", "oui"]
MaterialStatus = Literal["operational", "maintenance", "out_of_order", "retired"]
MaterialCondition = Literal["bon", "acceptable", "vetuste"]


class _Strict(BaseModel):
    model_config = ConfigDict(extra="forbid")


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class LoginRequest(_Strict):
    email: str = Field(..., max_length=256)
    password: str = Field(..., max_length=128)


class RefreshRequest(_Strict):
    refresh_token: str


class SignupRequest(_Strict):
    email: str = Field(..., max_length=256)
    password: str = Field(..., min_length=6, max_length=128)
    full_name: str = Field(..., min_length=1, max_length=128)
    phone: Optional[str] = Field(default="", max_length=64)


class ChangePasswordRequest(_Strict):
    current_password: str = Field(..., max_length=128)
    new_password: str = Field(..., min_length=6, max_length=128)


class ProfileUpdate(_Strict):
    full_name: Optional[str] = Field(default=None, max_length=128)
    phone: Optional[str] = Field(default=None, max_length=64)
    email: Optional[str] = Field(default=None, max_length=256)


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


class UserOut(BaseModel):
    id: str
    email: str
    full_name: str
    phone: str
    role: str
    role_label: str
    is_active: bool
    created_by: Optional[str] = None
    created_at: str
    updated_at: str


class AuthResponse(BaseModel):
    access_token: str
    expires_in: int
    refresh_token: str
    refresh_expires_in: int
    token_type: str = "bearer"
    role: str
    user: UserOut


class MeResponse(BaseModel):
    user: UserOut
    permissions: Dict[str, bool]


class UserCreate(_Strict):
    email: str = Field(..., max_length=256)
    password: str = Field(..., min_length=6, max_length=128)
    full_name: str = Field(..., min_length=1, max_length=128)
    phone: Optional[str] = Field(default="", max_length=64)
    role: RoleName = "constateur"
    is_active: bool = True


class UserUpdate(_Strict):
    full_name: Optional[str] = Field(default=None, max_length=128)
    phone: Optional[str] = Field(default=None, max_length=64)
    email: Optional[str] = Field(default=None, max_length=256)
    role: Optional[RoleName] = None
    is_active: Optional[bool] = None


class PasswordReset(_Strict):
    new_password: str = Field(..., min_length=6, max_length=128)


class ActionResult(BaseModel):
    status: str = "ok"
    message: Optional[str] = None


# ---------------------------------------------------------------------------
# Buildings
# ---------------------------------------------------------------------------


class BuildingCreate(_Strict):
    designation: str = Field(..., min_length=1, max_length=256)
    basement_area_sqm: Optional[float] = Field(default=0, ge=0)
    ground_floor_area_sqm: Optional[float] = Field(default=0, ge=0)
    first_floor_area_sqm: Optional[float] = Field(default=0, ge=0)
    technical_elements: Dict[str, List[str]] = Field(default_factory=dict)
    miscellaneous_elements: List[str] = Field(default_factory=list)
    new_value_mad: Optional[float] = Field(default=None, ge=0)
    obsolescence_percentage: Optional[float] = Field(default=None, ge=0, le=100)
    contiguity: Contiguity = "neant"
    communication: Contiguity = "neant"


class BuildingUpdate(_Strict):
    designation: Optional[str] = Field(default=None, min_length=1, max_length=256)
    basement_area_sqm: Optional[float] = Field(default=None, ge=0)
    ground_floor_area_sqm: Optional[float] = Field(default=None, ge=0)
    first_floor_area_sqm: Optional[float] = Field(default=None, ge=0)
    technical_elements: Optional[Dict[str, List[str]]] = None
    miscellaneous_elements: Optional[List[str]] = None
    new_value_mad: Optional[float] = Field(default=None, ge=0)
    obsolescence_percentage: Optional[float] = Field(default=None, ge=0, le=100)
    contiguity: Optional[Contiguity] = None
    communication: Optional[Contiguity] = None
    is_active: Optional[bool] = None


class BuildingOut(BaseModel):
    id: str
    designation: str
    basement_area_sqm: Optional[float] = None
    ground_floor_area_sqm: Optional[float] = None
    first_floor_area_sqm: Optional[float] = None
    total_area: float
    technical_elements: Dict[str, List[str]]
    miscellaneous_elements: List[str]
    new_value_mad: Optional[float] = None
    obsolescence_percentage: Optional[float] = None
    depreciated_value_mad: Optional[float] = None
    contiguity: str
    communication: str
    is_active: bool
    created_by: Optional[str] = None
    created_at: str
    updated_at: str
    progress: int


# ---------------------------------------------------------------------------
# Materials
# ---------------------------------------------------------------------------


class MaterialCreate(_Strict):
    building_id: str
    name: str = Field(..., min_length=1, max_length=256)
    category: Optional[str] = Field(default=None, max_length=128)
    brand: Optional[str] = Field(default=None, max_length=128)
    model: Optional[str] = Field(default=None, max_length=128)
    serial_number: Optional[str] = Field(default=None, max_length=128)
    installation_date: Optional[str] = None
    warranty_end_date: Optional[str] = None
    location_details: Optional[str] = Field(default=None, max_length=1024)
    specifications: Dict[str, Any] = Field(default_factory=dict)
    maintenance_notes: Optional[str] = Field(default=None, max_length=4096)
    status: MaterialStatus = "operational"
    quantity: int = Field(default=1, ge=0)
    manufacturing_year: Optional[int] = None
    condition: MaterialCondition = "bon"
    new_value_mad: Optional[float] = Field(default=None, ge=0)
    obsolescence_percentage: Optional[float] = Field(default=None, ge=0, le=100)


class MaterialUpdate(_Strict):
    building_id: Optional[str] = None
    name: Optional[str] = Field(default=None, min_length=1, max_length=256)
    category: Optional[str] = Field(default=None, max_length=128)
    brand: Optional[str] = Field(default=None, max_length=128)
    model: Optional[str] = Field(default=None, max_length=128)
    serial_number: Optional[str] = Field(default=None, max_length=128)
    installation_date: Optional[str] = None
    warranty_end_date: Optional[str] = None
    location_details: Optional[str] = Field(default=None, max_length=1024)
    specifications: Optional[Dict[str, Any]] = None
    maintenance_notes: Optional[str] = Field(default=None, max_length=4096)
    status: Optional[MaterialStatus] = None
    quantity: Optional[int] = Field(default=None, ge=0)
    manufacturing_year: Optional[int] = None
    condition: Optional[MaterialCondition] = None
    new_value_mad: Optional[float] = Field(default=None, ge=0)
    obsolescence_percentage: Optional[float] = Field(default=None, ge=0, le=100)
    is_active: Optional[bool] = None


class MaterialOut(BaseModel):
    id: str
    building_id: str
    name: str
    category: Optional[str] = None
    brand: Optional[str] = None
    model: Optional[str] = None
    serial_number: Optional[str] = None
    installation_date: Optional[str] = None
    warranty_end_date: Optional[str] = None
    location_details: Optional[str] = None
    specifications: Dict[str, Any]
    maintenance_notes: Optional[str] = None
    status: str
    quantity: int
    manufacturing_year: Optional[int] = None
    condition: str
    new_value_mad: Optional[float] = None
    obsolescence_percentage: Optional[float] = None
    depreciated_value_mad: Optional[float] = None
    is_active: bool
    created_by: Optional[str] = None
    created_at: str
    updated_at: str
    progress: int


# ---------------------------------------------------------------------------
# Missions
# ---------------------------------------------------------------------------


class MissionCreate(_Strict):
    title: str = Field(..., min_length=1, max_length=256)
    description: Optional[str] = Field(default=None, max_length=8192)
    mission_type: MissionType = "inspection"
    priority: MissionPriority = "medium"
    status: MissionStatus = "draft"
    scheduled_start_date: Optional[str] = None
    scheduled_end_date: Optional[str] = None
    assigned_to: Optional[str] = None
    instructions: Optional[str] = Field(default=None, max_length=8192)
    building_ids: List[str] = Field(default_factory=list)


class MissionUpdate(_Strict):
    title: Optional[str] = Field(default=None, min_length=1, max_length=256)
    description: Optional[str] = Field(default=None, max_length=8192)
    mission_type: Optional[MissionType] = None
    priority: Optional[MissionPriority] = None
    status: Optional[MissionStatus] = None
    scheduled_start_date: Optional[str] = None
    scheduled_end_date: Optional[str] = None
    actual_start_date: Optional[str] = None
    actual_end_date: Optional[str] = None
    assigned_to: Optional[str] = None
    approved_by: Optional[str] = None
    instructions: Optional[str] = Field(default=None, max_length=8192)
    report: Optional[str] = Field(default=None, max_length=65536)
    building_ids: Optional[List[str]] = None


class StatusChange(_Strict):
    status: MissionStatus


class MissionOut(BaseModel):
    id: str
    title: str
    description: Optional[str] = None
    mission_type: str
    priority: str
    status: str
    scheduled_start_date: Optional[str] = None
    scheduled_end_date: Optional[str] = None
    actual_start_date: Optional[str] = None
    actual_end_date: Optional[str] = None
    assigned_to: Optional[str] = None
    assigned_to_name: Optional[str] = None
    created_by: Optional[str] = None
    approved_by: Optional[str] = None
    instructions: Optional[str] = None
    report: Optional[str] = None
    attachments: List[Any] = Field(default_factory=list)
    plan_de_masse_url: Optional[str] = None
    plan_de_masse_filename: Optional[str] = None
    plan_de_masse_size: Optional[int] = None
    plan_de_masse_uploaded_at: Optional[str] = None
    building_ids: List[str] = Field(default_factory=list)
    created_at: str
    updated_at: str


class ReportResult(BaseModel):
    filename: str
    url: str
    path: str
    generated_at: str
