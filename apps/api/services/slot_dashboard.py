"""
Dashboard projection for one intercessor.

Read model only: {status, countdown, streak, monthly sessions, coverage}.
The one write is persisting a lapsed skip so the stored status matches what
is shown.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from services.attendance_metrics import compute_coverage, compute_user_progress
from services.countdown import Countdown, slot_countdown
from services.reminder_trigger import fallback_active
from services.slot_service import held_slots, refresh_slot
from services.slot_state_machine import SlotState, SlotStatus, effective_status
from services.slot_time import get_zone, local_date


@dataclass
class SlotProjection:
    slot_id: Optional[int]
    slot_time: Optional[str]
    status: str
    countdown: Optional[Countdown]
    streak: int
    monthly_sessions: int
    coverage_percent: int
    fallback_active: bool = False
    skip_expires_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "slot_id": self.slot_id,
            "slot_time": self.slot_time,
            "status": self.status,
            "countdown": self.countdown.to_dict() if self.countdown else None,
            "streak": self.streak,
            "monthly_sessions": self.monthly_sessions,
            "coverage_percent": self.coverage_percent,
            "fallback_active": self.fallback_active,
            "skip_expires_at": self.skip_expires_at,
        }


def build_projection(db: Session, user_id: UUID, now: Optional[datetime] = None) -> SlotProjection:
    now = now or datetime.now(timezone.utc)
    progress = compute_user_progress(db, user_id, now)

    slots = held_slots(db, user_id)
    if not slots:
        return SlotProjection(
            slot_id=None,
            slot_time=None,
            status=SlotStatus.UNASSIGNED.value,
            countdown=None,
            streak=progress.day_streak,
            monthly_sessions=progress.sessions_this_month,
            coverage_percent=0,
        )

    slot = refresh_slot(db, slots[0], now)
    status = effective_status(SlotState.of(slot), now)
    coverage = compute_coverage(db, slot.id, today=local_date(now, get_zone(slot.timezone)))

    return SlotProjection(
        slot_id=slot.id,
        slot_time=slot.slot_time,
        status=status.value,
        countdown=slot_countdown(slot, now),
        streak=progress.day_streak,
        monthly_sessions=progress.sessions_this_month,
        coverage_percent=coverage.coverage_percent,
        fallback_active=fallback_active(slot, now),
        skip_expires_at=slot.skip_expires_at if status == SlotStatus.SKIPPED else None,
    )
