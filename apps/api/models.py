from sqlalchemy import Column, Integer, Boolean, CheckConstraint, Date, DateTime, ForeignKey, Text, Time, Index, Uuid
from sqlalchemy.orm import relationship
from sqlalchemy.types import TypeDecorator
from core.config import settings
from core.database import Base
import uuid
from datetime import datetime, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware timestamp stored as UTC.

    Postgres keeps the offset natively; sqlite would hand back naive values,
    so results are re-tagged as UTC on the way out.
    """
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Intercessor(Base):
    __tablename__ = "intercessor"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    email = Column(Text, unique=True, nullable=False)
    display_name = Column(Text, nullable=True)
    role = Column(Text, default="intercessor", nullable=False)  # 'intercessor' or 'admin'
    # IANA name; day boundaries for streaks are taken here. None = SLOT_TIMEZONE.
    timezone = Column(Text, nullable=True)

    # --- REMINDER PREFERENCES ---
    reminders_enabled = Column(Boolean, default=True, nullable=False)
    # Comma list of minutes before window start, e.g. "60,30,15". None = configured default.
    reminder_offsets = Column(Text, nullable=True)

    slots = relationship("PrayerSlot", back_populates="owner")


class PrayerSlot(Base):
    """
    One recurring daily prayer window.

    The catalog holds one row per window of the day; ownership moves between
    intercessors as the slot is assigned and released. `version` is bumped on
    every status save and checked by the optimistic writer.
    """
    __tablename__ = "prayer_slot"

    id = Column(Integer, primary_key=True, autoincrement=True)
    slot_time = Column(Text, nullable=False, unique=True)  # e.g. "22:00–22:30"
    window_start = Column(Time, nullable=False)
    window_end = Column(Time, nullable=False)
    timezone = Column(Text, nullable=False, default=lambda: settings.SLOT_TIMEZONE)

    user_id = Column(Uuid, ForeignKey("intercessor.id"), nullable=True, index=True)
    status = Column(Text, nullable=False, default="unassigned")
    missed_count = Column(Integer, nullable=False, default=0)

    assigned_at = Column(UTCDateTime, nullable=True)
    # Occurrences starting before this are not owed (assignment, end of a skip).
    active_since = Column(UTCDateTime, nullable=True)
    skip_started_at = Column(UTCDateTime, nullable=True)
    skip_expires_at = Column(UTCDateTime, nullable=True)
    released_at = Column(UTCDateTime, nullable=True)

    version = Column(Integer, nullable=False, default=1)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    owner = relationship("Intercessor", back_populates="slots")

    __table_args__ = (
        CheckConstraint(
            "status IN ('unassigned', 'active', 'missed', 'skipped', 'released')",
            name="ck_prayer_slot_status",
        ),
        CheckConstraint("missed_count >= 0", name="ck_prayer_slot_missed_count"),
        Index("ix_prayer_slot_status", "status"),
    )


class AttendanceRecord(Base):
    """Append-only: one row per scheduled occurrence of a slot, attended or not."""
    __tablename__ = "attendance_record"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    slot_id = Column(Integer, ForeignKey("prayer_slot.id"), nullable=False, index=True)
    # Owner at the time of the occurrence; slots change hands.
    user_id = Column(Uuid, ForeignKey("intercessor.id"), nullable=False, index=True)
    date = Column(Date, nullable=False)
    attended = Column(Boolean, nullable=False)
    duration_minutes = Column(Integer, nullable=True)
    recorded_at = Column(UTCDateTime, default=utcnow, nullable=False)
    source = Column(Text, default="manual", nullable=False)  # 'manual', 'zoom', 'sweep'
    joined_at = Column(UTCDateTime, nullable=True)
    left_at = Column(UTCDateTime, nullable=True)

    __table_args__ = (
        Index("uq_attendance_slot_date", "slot_id", "date", unique=True),
        Index("ix_attendance_user_date", "user_id", "date"),
    )


class SkipRequest(Base):
    """Longer-than-default skips go through admin approval."""
    __tablename__ = "skip_request"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Uuid, ForeignKey("intercessor.id"), nullable=False, index=True)
    slot_id = Column(Integer, ForeignKey("prayer_slot.id"), nullable=False)
    skip_days = Column(Integer, nullable=False)
    reason = Column(Text, nullable=False)
    status = Column(Text, nullable=False, default="pending")  # 'pending', 'approved', 'rejected'
    admin_comment = Column(Text, nullable=True)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    processed_at = Column(UTCDateTime, nullable=True)

    __table_args__ = (
        CheckConstraint("skip_days > 0", name="ck_skip_request_days"),
        CheckConstraint(
            "status IN ('pending', 'approved', 'rejected')",
            name="ck_skip_request_status",
        ),
    )


class SlotNotification(Base):
    """
    Outbox handed to the notification collaborator.

    The unique index makes a reminder offset fire at most once per occurrence,
    across any number of evaluators.
    """
    __tablename__ = "slot_notification"

    id = Column(Integer, primary_key=True, autoincrement=True)
    slot_id = Column(Integer, ForeignKey("prayer_slot.id"), nullable=False, index=True)
    user_id = Column(Uuid, ForeignKey("intercessor.id"), nullable=True)
    kind = Column(Text, nullable=False)  # 'reminder' or 'fallback'
    offset_minutes = Column(Integer, nullable=True)
    active = Column(Boolean, nullable=True)  # fallback transitions only
    occurrence_start = Column(UTCDateTime, nullable=False)
    created_at = Column(UTCDateTime, default=utcnow, nullable=False)
    delivered_at = Column(UTCDateTime, nullable=True)

    __table_args__ = (
        Index(
            "uq_slot_notification_occurrence",
            "slot_id", "kind", "occurrence_start", "offset_minutes",
            unique=True,
        ),
    )
