"""
Streak & Coverage Calculator

Display metrics derived from the attendance ledger:
- day streak / best streak (consecutive calendar days with attendance)
- sessions this month
- per-window coverage over a rolling lookback
- network coverage (share of the day's windows currently held)
- network attendance totals for the admin dashboard

Everything here is read-only. Slightly stale reads are acceptable, so these
may run against a replica.
"""

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, List, Optional
from uuid import UUID
import logging

from sqlalchemy import func
from sqlalchemy.orm import Session

from core.config import settings
from core.exceptions import NotFoundError, ValidationError
from models import AttendanceRecord, Intercessor, PrayerSlot
from services.attendance_ledger import AttendanceFilter, query_attendance
from services.slot_state_machine import SlotStatus
from services.slot_time import get_zone, local_date

logger = logging.getLogger(__name__)


@dataclass
class UserProgress:
    """Derived on demand, never persisted."""
    sessions_this_month: int
    day_streak: int
    best_streak: int


@dataclass
class CoverageSnapshot:
    slot_id: int
    slot_time: str
    lookback_days: int
    scheduled: int
    attended: int
    coverage_percent: int  # attended / scheduled occurrences
    attendance_percent: int  # attended / calendar days in the lookback


@dataclass
class AttendanceSummary:
    total_days: int
    attended_days: int
    missed_days: int
    attendance_rate: float  # percent, 2 decimals


@dataclass
class AttendanceStats:
    total_sessions: int
    attended_sessions: int
    missed_sessions: int
    attendance_rate: float  # percent, 2 decimals
    active_intercessors: int  # distinct intercessors with any record
    last_updated: datetime


@dataclass
class NetworkCoverage:
    total_windows: int
    held_windows: int
    active_windows: int
    coverage_percent: int


def rounded_percent(numerator: int, denominator: int) -> int:
    """Nearest whole percent, halves rounding up. Empty denominator gives 0."""
    if denominator <= 0:
        return 0
    value = Decimal(numerator) * 100 / Decimal(denominator)
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


# ---------------------------------------------------------------------------
# Pure computations over attended dates
# ---------------------------------------------------------------------------

def day_streak(attended_dates: Iterable[date], today: date) -> int:
    """
    Consecutive days of attendance ending at the most recent date <= today.

    Returns 0 when that most recent date is more than one day before today,
    so an unrecorded "today" does not break yesterday's streak.
    """
    days = sorted({d for d in attended_dates if d <= today}, reverse=True)
    if not days:
        return 0
    if (today - days[0]).days > 1:
        return 0

    streak = 1
    for newer, older in zip(days, days[1:]):
        if (newer - older).days != 1:
            break
        streak += 1
    return streak


def best_streak(attended_dates: Iterable[date]) -> int:
    days = sorted(set(attended_dates))
    best = run = 0
    previous = None
    for day in days:
        run = run + 1 if previous is not None and (day - previous).days == 1 else 1
        best = max(best, run)
        previous = day
    return best


def monthly_sessions(attended_dates: Iterable[date], month: int, year: int) -> int:
    return sum(1 for d in attended_dates if d.month == month and d.year == year)


# ---------------------------------------------------------------------------
# Ledger-backed queries
# ---------------------------------------------------------------------------

def _get_intercessor(db: Session, user_id: UUID) -> Intercessor:
    user = db.query(Intercessor).filter(Intercessor.id == user_id).first()
    if not user:
        raise NotFoundError("Intercessor", user_id)
    return user


def _user_today(user: Intercessor, now: Optional[datetime] = None) -> date:
    return local_date(now or datetime.now(timezone.utc), get_zone(user.timezone))


def _attended_dates(db: Session, user_id: UUID, **bounds) -> List[date]:
    records = query_attendance(db, AttendanceFilter(user_id=user_id, attended=True, **bounds))
    return [r.date for r in records]


def compute_streak(db: Session, user_id: UUID, today: Optional[date] = None) -> int:
    user = _get_intercessor(db, user_id)
    today = today or _user_today(user)
    return day_streak(_attended_dates(db, user_id, end_date=today), today)


def compute_monthly_sessions(db: Session, user_id: UUID, month: int, year: int) -> int:
    if not 1 <= month <= 12:
        raise ValidationError(f"Invalid month: {month}", field="month")
    _get_intercessor(db, user_id)
    first = date(year, month, 1)
    last = (date(year + (month // 12), month % 12 + 1, 1)) - timedelta(days=1)
    dates = _attended_dates(db, user_id, start_date=first, end_date=last)
    return monthly_sessions(dates, month, year)


def compute_user_progress(db: Session, user_id: UUID, now: Optional[datetime] = None) -> UserProgress:
    user = _get_intercessor(db, user_id)
    today = _user_today(user, now)
    dates = _attended_dates(db, user_id, end_date=today)
    return UserProgress(
        sessions_this_month=monthly_sessions(dates, today.month, today.year),
        day_streak=day_streak(dates, today),
        best_streak=best_streak(dates),
    )


def compute_coverage(
    db: Session,
    slot_id: int,
    lookback_days: Optional[int] = None,
    today: Optional[date] = None,
) -> CoverageSnapshot:
    """
    Coverage of one window over the `lookback_days` days ending `today`.

    Every ledger record is one scheduled occurrence, so scheduled = records
    in range. Zero scheduled occurrences yields 0%.
    """
    lookback_days = lookback_days or settings.COVERAGE_LOOKBACK_DAYS
    if lookback_days <= 0:
        raise ValidationError("lookback_days must be positive", field="lookback_days")

    slot = db.query(PrayerSlot).filter(PrayerSlot.id == slot_id).first()
    if not slot:
        raise NotFoundError("Slot", slot_id)

    today = today or local_date(datetime.now(timezone.utc), get_zone(slot.timezone))
    start = today - timedelta(days=lookback_days - 1)
    records = query_attendance(db, AttendanceFilter(slot_id=slot_id, start_date=start, end_date=today))
    attended = sum(1 for r in records if r.attended)

    return CoverageSnapshot(
        slot_id=slot.id,
        slot_time=slot.slot_time,
        lookback_days=lookback_days,
        scheduled=len(records),
        attended=attended,
        coverage_percent=rounded_percent(attended, len(records)),
        attendance_percent=rounded_percent(attended, lookback_days),
    )


def attendance_summary(db: Session, user_id: UUID) -> AttendanceSummary:
    _get_intercessor(db, user_id)
    records = query_attendance(db, AttendanceFilter(user_id=user_id))
    attended = sum(1 for r in records if r.attended)
    total = len(records)
    rate = round(attended / total * 100, 2) if total else 0.0
    return AttendanceSummary(
        total_days=total,
        attended_days=attended,
        missed_days=total - attended,
        attendance_rate=rate,
    )


def network_coverage(db: Session) -> NetworkCoverage:
    statuses = [s for (s,) in db.query(PrayerSlot.status).all()]
    held = [s for s in statuses if SlotStatus(s).is_held]
    active = [s for s in statuses if s == SlotStatus.ACTIVE.value]
    return NetworkCoverage(
        total_windows=len(statuses),
        held_windows=len(held),
        active_windows=len(active),
        coverage_percent=rounded_percent(len(held), len(statuses)),
    )


def network_attendance_stats(db: Session, now: Optional[datetime] = None) -> AttendanceStats:
    total, attended, users = db.query(
        func.count(AttendanceRecord.id),
        func.count(AttendanceRecord.id).filter(AttendanceRecord.attended.is_(True)),
        func.count(func.distinct(AttendanceRecord.user_id)),
    ).one()
    return AttendanceStats(
        total_sessions=total,
        attended_sessions=attended,
        missed_sessions=total - attended,
        attendance_rate=round(attended / total * 100, 2) if total else 0.0,
        active_intercessors=users,
        last_updated=now or datetime.now(timezone.utc),
    )
