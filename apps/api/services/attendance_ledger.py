"""
Attendance Ledger

Append-only store of per-slot, per-day attendance. One record per scheduled
occurrence, attended or not; records are never updated or deleted.

Slot status changes that follow from a record are applied by
services.slot_service.record_session, which calls into this module inside
the same transaction.
"""

from dataclasses import dataclass
from datetime import date, datetime
from typing import List, Optional
from uuid import UUID
import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.exceptions import DuplicateRecordError
from models import AttendanceRecord

logger = logging.getLogger(__name__)


@dataclass
class AttendanceFilter:
    """Query filter; date bounds are inclusive."""
    user_id: Optional[UUID] = None
    slot_id: Optional[int] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    attended: Optional[bool] = None


def find_record(db: Session, slot_id: int, on_date: date) -> Optional[AttendanceRecord]:
    return db.query(AttendanceRecord).filter(
        AttendanceRecord.slot_id == slot_id,
        AttendanceRecord.date == on_date,
    ).first()


def append_attendance(
    db: Session,
    slot_id: int,
    user_id: UUID,
    on_date: date,
    attended: bool,
    duration_minutes: Optional[int] = None,
    recorded_at: Optional[datetime] = None,
    source: str = "manual",
    joined_at: Optional[datetime] = None,
    left_at: Optional[datetime] = None,
) -> AttendanceRecord:
    """
    Append one attendance record.

    Raises:
        DuplicateRecordError: a record for (slot, date) already exists
    """
    if find_record(db, slot_id, on_date) is not None:
        raise DuplicateRecordError(slot_id, on_date)

    record = AttendanceRecord(
        slot_id=slot_id,
        user_id=user_id,
        date=on_date,
        attended=attended,
        duration_minutes=duration_minutes,
        source=source,
        joined_at=joined_at,
        left_at=left_at,
    )
    if recorded_at is not None:
        record.recorded_at = recorded_at

    db.add(record)
    try:
        db.flush()
    except IntegrityError:
        # Lost the race against a concurrent writer for the same (slot, date).
        logger.info(f"Concurrent attendance write for slot {slot_id} on {on_date}")
        raise DuplicateRecordError(slot_id, on_date)
    return record


def query_attendance(db: Session, flt: AttendanceFilter) -> List[AttendanceRecord]:
    """Records matching `flt`, oldest first."""
    query = db.query(AttendanceRecord)
    if flt.user_id is not None:
        query = query.filter(AttendanceRecord.user_id == flt.user_id)
    if flt.slot_id is not None:
        query = query.filter(AttendanceRecord.slot_id == flt.slot_id)
    if flt.start_date is not None:
        query = query.filter(AttendanceRecord.date >= flt.start_date)
    if flt.end_date is not None:
        query = query.filter(AttendanceRecord.date <= flt.end_date)
    if flt.attended is not None:
        query = query.filter(AttendanceRecord.attended.is_(flt.attended))
    return query.order_by(AttendanceRecord.date.asc()).all()
