"""
Prayer Slots API Router

Catalog, assignment and slot changes, skip/reactivate, attendance ingestion
and history, and the dashboard projection. All state changes go through
services.slot_service.
"""

from datetime import date
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session
from typing import List, Optional
from uuid import UUID

from core.auth import get_current_user, require_admin
from core.database import get_db
from core.exceptions import ForbiddenError
from models import Intercessor, PrayerSlot
from schemas import (
    AttendanceCreate,
    AttendanceJoin,
    AttendanceResponse,
    AttendanceStatsResponse,
    CoverageResponse,
    NetworkCoverageResponse,
    SlotAvailability,
    SlotChange,
    SlotProjectionResponse,
    SlotResponse,
    UserProgressResponse,
)
from services.attendance_ledger import AttendanceFilter, query_attendance
from services.attendance_metrics import (
    attendance_summary,
    compute_coverage,
    compute_user_progress,
    network_attendance_stats,
    network_coverage,
)
from services.slot_dashboard import build_projection
from services.slot_service import (
    assign_slot,
    change_slot,
    reactivate,
    record_join,
    record_session,
    relinquish_slot,
    request_skip,
)
from services.slot_state_machine import SlotStatus

router = APIRouter(prefix="/v1/slots", tags=["Prayer Slots"])


@router.get("", response_model=List[SlotAvailability])
async def list_slots(
    available_only: bool = False,
    db: Session = Depends(get_db),
    current_user: Intercessor = Depends(get_current_user)
):
    """
    The day's windows and whether each can be claimed.
    """
    slots = db.query(PrayerSlot).order_by(PrayerSlot.window_start).all()
    rows = [
        SlotAvailability(
            id=s.id,
            slot_time=s.slot_time,
            timezone=s.timezone,
            is_available=not SlotStatus(s.status).is_held,
        )
        for s in slots
    ]
    if available_only:
        rows = [r for r in rows if r.is_available]
    return rows


@router.get("/coverage", response_model=NetworkCoverageResponse)
async def get_network_coverage(
    db: Session = Depends(get_db),
    current_user: Intercessor = Depends(get_current_user)
):
    return NetworkCoverageResponse(**network_coverage(db).__dict__)


@router.get("/admin/attendance-stats", response_model=AttendanceStatsResponse)
async def get_attendance_stats(
    db: Session = Depends(get_db),
    admin: Intercessor = Depends(require_admin)
):
    """
    Network-wide attendance totals (admin only).
    """
    return AttendanceStatsResponse(**network_attendance_stats(db).__dict__)


@router.get("/attendance/{user_id}", response_model=List[AttendanceResponse])
async def get_attendance_history(
    user_id: UUID,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    limit: int = Query(default=30, ge=1, le=366),
    db: Session = Depends(get_db),
    current_user: Intercessor = Depends(get_current_user)
):
    """
    An intercessor's attendance records, newest first. Admins may read anyone's.
    """
    if current_user.id != user_id and current_user.role != "admin":
        raise ForbiddenError("You can only view your own attendance")
    records = query_attendance(db, AttendanceFilter(user_id=user_id, start_date=start_date, end_date=end_date))
    return list(reversed(records))[:limit]


@router.get("/me", response_model=SlotProjectionResponse)
async def get_my_slot(
    db: Session = Depends(get_db),
    current_user: Intercessor = Depends(get_current_user)
):
    """
    Dashboard projection: status, countdown, streak, monthly sessions, coverage.

    Clients poll this (or compute the countdown locally each second from
    slot_time); the countdown is recomputed from the clock on every call.
    """
    return SlotProjectionResponse(**build_projection(db, current_user.id).to_dict())


@router.get("/me/progress", response_model=UserProgressResponse)
async def get_my_progress(
    db: Session = Depends(get_db),
    current_user: Intercessor = Depends(get_current_user)
):
    progress = compute_user_progress(db, current_user.id)
    summary = attendance_summary(db, current_user.id)
    return UserProgressResponse(**progress.__dict__, **summary.__dict__)


@router.post("/{slot_id}/assign", response_model=SlotResponse)
async def claim_slot(
    slot_id: int,
    db: Session = Depends(get_db),
    current_user: Intercessor = Depends(get_current_user)
):
    """
    Claim a free window. 409 if someone holds it or you already hold one.
    """
    return assign_slot(db, slot_id, current_user.id)


@router.post("/{slot_id}/change", response_model=SlotResponse)
async def move_to_slot(
    slot_id: int,
    body: Optional[SlotChange] = None,
    db: Session = Depends(get_db),
    current_user: Intercessor = Depends(get_current_user)
):
    """
    Give up your current window and take this one in a single step.
    """
    from_slot_id = body.from_slot_id if body else None
    return change_slot(db, current_user.id, slot_id, from_slot_id=from_slot_id)


@router.post("/{slot_id}/release", response_model=SlotResponse)
async def release_slot(
    slot_id: int,
    db: Session = Depends(get_db),
    current_user: Intercessor = Depends(get_current_user)
):
    return relinquish_slot(db, slot_id, current_user.id)


@router.post("/{slot_id}/skip", response_model=SlotResponse)
async def skip_slot(
    slot_id: int,
    db: Session = Depends(get_db),
    current_user: Intercessor = Depends(get_current_user)
):
    """
    Pause your active slot for the grace period. It reactivates on its own
    when the skip lapses; longer absences go through /v1/skip-requests.
    """
    return request_skip(db, slot_id, current_user.id)


@router.post("/{slot_id}/reactivate", response_model=SlotResponse)
async def reactivate_slot(
    slot_id: int,
    db: Session = Depends(get_db),
    current_user: Intercessor = Depends(get_current_user)
):
    return reactivate(db, slot_id, current_user.id)


@router.get("/{slot_id}/coverage", response_model=CoverageResponse)
async def get_slot_coverage(
    slot_id: int,
    lookback_days: Optional[int] = Query(default=None, ge=1, le=365),
    db: Session = Depends(get_db),
    current_user: Intercessor = Depends(get_current_user)
):
    return CoverageResponse(**compute_coverage(db, slot_id, lookback_days).__dict__)


@router.post("/{slot_id}/attendance", response_model=AttendanceResponse, status_code=status.HTTP_201_CREATED)
async def create_attendance(
    slot_id: int,
    body: AttendanceCreate,
    db: Session = Depends(get_db),
    admin: Intercessor = Depends(require_admin)
):
    """
    Record one occurrence (admin / integrations). 409 if already recorded.
    """
    record, _ = record_session(
        db,
        slot_id,
        body.date,
        attended=body.attended,
        duration_minutes=body.duration_minutes,
    )
    return record


@router.post("/attendance/join", response_model=Optional[AttendanceResponse])
async def create_attendance_from_join(
    body: AttendanceJoin,
    db: Session = Depends(get_db),
    admin: Intercessor = Depends(require_admin)
):
    """
    Meeting join from the video-call integration. Returns null when the join
    matches none of the intercessor's windows.
    """
    return record_join(db, body.user_id, body.joined_at, body.left_at, source=body.source)
