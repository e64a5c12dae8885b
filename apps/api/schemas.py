from pydantic import BaseModel, ConfigDict, Field
from datetime import datetime, date
from uuid import UUID
from typing import Optional


class SlotResponse(BaseModel):
    id: int
    slot_time: str
    timezone: str
    status: str
    user_id: Optional[UUID] = None
    missed_count: int = 0
    skip_expires_at: Optional[datetime] = None
    assigned_at: Optional[datetime] = None
    version: int

    model_config = ConfigDict(from_attributes=True)


class SlotAvailability(BaseModel):
    """Catalog row as shown to intercessors choosing a window."""
    id: int
    slot_time: str
    timezone: str
    is_available: bool


class SlotChange(BaseModel):
    # Required only when more than one window is held
    from_slot_id: Optional[int] = None


class CountdownResponse(BaseModel):
    hours: int
    minutes: int
    seconds: int


class SlotProjectionResponse(BaseModel):
    """What the dashboard reads; it writes back only via skip/reactivate."""
    slot_id: Optional[int] = None
    slot_time: Optional[str] = None
    status: str
    countdown: Optional[CountdownResponse] = None
    streak: int
    monthly_sessions: int
    coverage_percent: int
    fallback_active: bool = False
    skip_expires_at: Optional[datetime] = None


class AttendanceCreate(BaseModel):
    date: date
    attended: bool
    duration_minutes: Optional[int] = Field(default=None, ge=0)


class AttendanceResponse(BaseModel):
    id: UUID
    slot_id: int
    user_id: UUID
    date: date
    attended: bool
    duration_minutes: Optional[int] = None
    recorded_at: datetime
    source: str

    model_config = ConfigDict(from_attributes=True)


class AttendanceJoin(BaseModel):
    """Meeting join reported by the video-call integration."""
    user_id: UUID
    joined_at: datetime
    left_at: Optional[datetime] = None
    source: str = "zoom"


class CoverageResponse(BaseModel):
    slot_id: int
    slot_time: str
    lookback_days: int
    scheduled: int
    attended: int
    coverage_percent: int
    attendance_percent: int


class NetworkCoverageResponse(BaseModel):
    total_windows: int
    held_windows: int
    active_windows: int
    coverage_percent: int


class AttendanceStatsResponse(BaseModel):
    """Network-wide totals for the admin dashboard."""
    total_sessions: int
    attended_sessions: int
    missed_sessions: int
    attendance_rate: float
    active_intercessors: int
    last_updated: datetime


class UserProgressResponse(BaseModel):
    sessions_this_month: int
    day_streak: int
    best_streak: int
    total_days: int
    attended_days: int
    missed_days: int
    attendance_rate: float


class SkipRequestCreate(BaseModel):
    skip_days: int = Field(ge=1)
    reason: str = Field(min_length=1)
    slot_id: Optional[int] = None


class SkipRequestDecision(BaseModel):
    approve: bool
    admin_comment: Optional[str] = None


class SkipRequestResponse(BaseModel):
    id: int
    user_id: UUID
    slot_id: int
    skip_days: int
    reason: str
    status: str
    admin_comment: Optional[str] = None
    created_at: datetime
    processed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)
