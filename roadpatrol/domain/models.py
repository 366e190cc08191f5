from pydantic import BaseModel, Field, ConfigDict, field_validator
from typing import Optional, List, Dict, Any
from datetime import datetime
from enum import Enum


# ============================================================================
# ENUMERATIONS
# ============================================================================

class ReportCategory(str, Enum):
    POTHOLE = "pothole"
    TRASH = "trash"
    STREETLIGHT = "streetlight"
    HAZARD = "hazard"
    GRAFFITI = "graffiti"
    ROAD_DAMAGE = "road_damage"
    OTHER = "other"


class ReportPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class ReportStatus(str, Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"


class ChangeType(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class AuthEvent(str, Enum):
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"


# Status ordering for the normal forward-only flow
STATUS_ORDER = {
    ReportStatus.OPEN: 0,
    ReportStatus.IN_PROGRESS: 1,
    ReportStatus.RESOLVED: 2,
}


# ============================================================================
# RECORDS (shadows of rows in the hosted datastore)
# ============================================================================

class Profile(BaseModel):
    """Public profile joined onto reports and held by the auth store"""
    id: str
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None
    created_at: Optional[datetime] = None
    reputation_score: Optional[int] = 0

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)


class Report(BaseModel):
    """Citizen-submitted civic issue"""
    id: str
    title: str
    description: Optional[str] = None
    category: ReportCategory
    priority: ReportPriority = ReportPriority.MEDIUM
    status: ReportStatus = ReportStatus.OPEN
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    address: Optional[str] = None
    photo_url: Optional[str] = None
    resolution_photo_url: Optional[str] = None
    vote_count: int = Field(default=0, ge=0)
    view_count: int = Field(default=0, ge=0)
    created_by: Optional[str] = None
    device_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    # Joined creator profile (report detail only)
    profiles: Optional[Profile] = None

    model_config = ConfigDict(extra="ignore", use_enum_values=False, coerce_numbers_to_str=True)


class ReportCreate(BaseModel):
    """Fields collected by the submission wizard"""
    title: str
    description: Optional[str] = None
    category: ReportCategory
    priority: ReportPriority = ReportPriority.MEDIUM
    latitude: float
    longitude: float
    address: Optional[str] = None
    created_by: Optional[str] = None

    @field_validator("title")
    @classmethod
    def strip_title(cls, v: str) -> str:
        return v.strip()

    @field_validator("description")
    @classmethod
    def blank_description_is_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        return v or None


class NearbyReport(BaseModel):
    """Candidate duplicate returned by the nearby_reports procedure"""
    id: str
    title: str
    distance: float  # meters
    vote_count: int = 0
    category: Optional[ReportCategory] = None
    status: Optional[ReportStatus] = None
    photo_url: Optional[str] = None

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)


class Vote(BaseModel):
    id: Optional[str] = None
    report_id: str
    device_id: str
    user_id: Optional[str] = None
    created_at: Optional[datetime] = None

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)


class Comment(BaseModel):
    id: str
    report_id: str
    user_id: Optional[str] = None
    content: str = Field(..., max_length=500)
    created_at: Optional[datetime] = None
    profiles: Optional[Profile] = None

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)


class ChatMessage(BaseModel):
    id: str
    user_id: Optional[str] = None
    username: str = "Anonymous"
    content: str = Field(..., max_length=500)
    created_at: Optional[datetime] = None

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)


class User(BaseModel):
    """Auth user as issued by the auth provider"""
    id: str
    email: Optional[str] = None
    user_metadata: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)


class Session(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[int] = None
    user: Optional[User] = None

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)


# ============================================================================
# QUERY / EVENT SHAPES
# ============================================================================

class ReportFilters(BaseModel):
    """Report list filters; 'all' disables a filter"""
    status: str = "all"
    category: str = "all"
    priority: str = "all"
    exclude_resolved: bool = False
    limit: Optional[int] = None

    def is_default(self) -> bool:
        return self == ReportFilters()


class Bounds(BaseModel):
    north: float
    south: float
    east: float
    west: float


class ChangeEvent(BaseModel):
    """Row-level change pushed over a realtime channel"""
    event_type: ChangeType
    table: str
    new: Dict[str, Any] = Field(default_factory=dict)
    old: Dict[str, Any] = Field(default_factory=dict)
    commit_timestamp: Optional[str] = None

    @property
    def record_id(self) -> Optional[str]:
        record = self.old if self.event_type == ChangeType.DELETE else self.new
        value = record.get("id") if record else None
        return str(value) if value is not None else None


class Location(BaseModel):
    lat: float
    lng: float
    accuracy: Optional[float] = None  # meters
    timestamp: Optional[float] = None


class AddressParts(BaseModel):
    road: Optional[str] = None
    suburb: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postcode: Optional[str] = None
    country: Optional[str] = None


class GeocodeResult(BaseModel):
    display_name: str
    formatted_address: str
    address: Optional[AddressParts] = None


class AddressSearchResult(BaseModel):
    display_name: str
    lat: float
    lng: float
    type: Optional[str] = None
    address: Optional[Dict[str, Any]] = None


class ReportStats(BaseModel):
    """Counts shown in the reports and profile panels"""
    total: int = 0
    open: int = 0
    in_progress: int = 0
    resolved: int = 0
    urgent: int = 0
    total_votes: int = 0

    @classmethod
    def from_reports(cls, reports: List[Report]) -> "ReportStats":
        return cls(
            total=len(reports),
            open=len([r for r in reports if r.status == ReportStatus.OPEN]),
            in_progress=len([r for r in reports if r.status == ReportStatus.IN_PROGRESS]),
            resolved=len([r for r in reports if r.status == ReportStatus.RESOLVED]),
            urgent=len([r for r in reports if r.priority == ReportPriority.URGENT]),
            total_votes=sum(r.vote_count or 0 for r in reports),
        )
