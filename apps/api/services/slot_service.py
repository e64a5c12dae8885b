"""
Slot Service

The only writer of prayer slot state. Every mutation:

1. loads the slot row with SELECT ... FOR UPDATE (per-slot lock),
2. settles a lapsed skip first, so the event sees the observed status,
3. runs the pure transition in services.slot_state_machine,
4. saves with an optimistic version check (UPDATE ... WHERE version = :expected).

A lost race surfaces as ConflictError; callers refetch and retry. Functions
here do not commit: request handlers commit through core.database.get_db and
batch jobs commit per slot.
"""

from datetime import date, datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple
from uuid import UUID
import logging

from sqlalchemy import update
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import set_committed_value

from core.config import settings
from core.logging import slot_context
from core.exceptions import (
    APIException,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from models import AttendanceRecord, Intercessor, PrayerSlot
from services.attendance_ledger import append_attendance, find_record
from services.slot_state_machine import (
    SlotEvent,
    SlotPolicy,
    SlotState,
    SlotStatus,
    transition,
)
from services.slot_time import build_windows, get_zone, slot_window, to_utc

logger = logging.getLogger(__name__)

HELD_STATUSES = [s.value for s in SlotStatus if s.is_held]


def _now(now: Optional[datetime]) -> datetime:
    return to_utc(now) if now is not None else datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Persistence collaborator
# ---------------------------------------------------------------------------

def load_slot(db: Session, slot_id: int, lock: bool = False) -> PrayerSlot:
    query = db.query(PrayerSlot).filter(PrayerSlot.id == slot_id)
    if lock:
        query = query.with_for_update().populate_existing()
    slot = query.first()
    if not slot:
        raise NotFoundError("Slot", slot_id)
    return slot


def save_slot(
    db: Session,
    slot: PrayerSlot,
    state: SlotState,
    expected_version: int,
    now: Optional[datetime] = None,
) -> PrayerSlot:
    """
    Persist `state` onto `slot` if nobody saved since `expected_version`.

    Raises:
        ConflictError: the row's version moved on (concurrent mutation)
    """
    now = _now(now)
    previous = SlotStatus(slot.status)
    values = {
        "status": state.status.value,
        "user_id": state.owner_id,
        "missed_count": state.missed_count,
        "skip_started_at": state.skip_started_at,
        "skip_expires_at": state.skip_expires_at,
        "version": expected_version + 1,
        "updated_at": now,
    }

    if state.status == SlotStatus.ACTIVE and previous in (SlotStatus.UNASSIGNED, SlotStatus.RELEASED):
        values.update(assigned_at=now, active_since=now, released_at=None)
    elif state.status == SlotStatus.ACTIVE and previous == SlotStatus.SKIPPED:
        # A lapsed skip is active from its expiry, not from when we noticed.
        expires = slot.skip_expires_at
        values["active_since"] = min(now, to_utc(expires)) if expires else now
    elif state.status == SlotStatus.RELEASED and previous != SlotStatus.RELEASED:
        values.update(released_at=now, assigned_at=None, active_since=None)

    result = db.execute(
        update(PrayerSlot)
        .where(PrayerSlot.id == slot.id, PrayerSlot.version == expected_version)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise ConflictError(f"Slot {slot.id} was modified concurrently; reload and retry")

    for key, value in values.items():
        set_committed_value(slot, key, value)
    return slot


def _log_transition(slot: PrayerSlot, before: SlotStatus, event: SlotEvent) -> None:
    logger.info(
        f"Slot {slot.slot_time} {before.value} -> {slot.status} on {event.value}",
        extra={"extra_fields": {
            "slot_id": slot.id,
            "event": event.value,
            "from_status": before.value,
            "to_status": slot.status,
            "missed_count": slot.missed_count,
        }},
    )


def _settle(state: SlotState, now: datetime, policy: SlotPolicy) -> SlotState:
    if state.skip_lapsed(now):
        return transition(state, SlotEvent.SKIP_EXPIRED, now=now, policy=policy)
    return state


def apply_event(
    db: Session,
    slot_id: int,
    event: SlotEvent,
    *,
    now: Optional[datetime] = None,
    owner_id: Optional[UUID] = None,
    actor_id: Optional[UUID] = None,
    skip_for: Optional[timedelta] = None,
    policy: Optional[SlotPolicy] = None,
) -> PrayerSlot:
    """
    Lock, transition and save one slot.

    `actor_id`, when given, must be the slot's owner (owner-only actions).
    """
    now = _now(now)
    policy = policy or SlotPolicy.from_settings()
    slot = load_slot(db, slot_id, lock=True)

    if actor_id is not None and slot.user_id != actor_id:
        raise ForbiddenError("Only the slot's intercessor can change it")

    stored = SlotState.of(slot)
    new_state = transition(
        _settle(stored, now, policy),
        event,
        now=now,
        owner_id=owner_id,
        skip_for=skip_for,
        policy=policy,
    )
    if new_state == stored:
        return slot

    before = stored.status
    save_slot(db, slot, new_state, slot.version, now=now)
    _log_transition(slot, before, event)
    return slot


# ---------------------------------------------------------------------------
# Owner / admin operations
# ---------------------------------------------------------------------------

def held_slots(db: Session, user_id: UUID) -> List[PrayerSlot]:
    return db.query(PrayerSlot).filter(
        PrayerSlot.user_id == user_id,
        PrayerSlot.status.in_(HELD_STATUSES),
    ).order_by(PrayerSlot.window_start).all()


def load_intercessor(db: Session, user_id: UUID, lock: bool = False) -> Intercessor:
    """
    Fetch an intercessor. With `lock`, the row lock serializes that
    intercessor's claims so the per-intercessor slot limit holds.
    """
    query = db.query(Intercessor).filter(Intercessor.id == user_id)
    if lock:
        query = query.with_for_update()
    user = query.first()
    if not user:
        raise NotFoundError("Intercessor", user_id)
    return user


def _check_slot_limit(db: Session, user_id: UUID, keeping: List[int]) -> None:
    others = [s for s in held_slots(db, user_id) if s.id not in keeping]
    if len(others) >= settings.MAX_SLOTS_PER_INTERCESSOR:
        raise ConflictError(
            f"Intercessor already holds {', '.join(s.slot_time for s in others)}"
        )


def assign_slot(db: Session, slot_id: int, user_id: UUID, now: Optional[datetime] = None) -> PrayerSlot:
    """
    Claim a free window for an intercessor.

    Raises:
        NotFoundError: unknown slot or intercessor
        ConflictError: slot held by someone, or the intercessor is at their limit
    """
    load_intercessor(db, user_id, lock=True)
    _check_slot_limit(db, user_id, keeping=[slot_id])
    return apply_event(db, slot_id, SlotEvent.ASSIGN, now=now, owner_id=user_id)


def relinquish_slot(db: Session, slot_id: int, user_id: Optional[UUID], now: Optional[datetime] = None) -> PrayerSlot:
    """Hand a held window back; it becomes claimable at once."""
    return apply_event(db, slot_id, SlotEvent.RELINQUISH, now=now, actor_id=user_id)


def change_slot(
    db: Session,
    user_id: UUID,
    new_slot_id: int,
    from_slot_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> PrayerSlot:
    """
    Move an intercessor from their held window to `new_slot_id` in one
    transaction.

    Both rows are locked in id order before anything changes, so two
    intercessors swapping windows cannot deadlock. Without `from_slot_id`
    the intercessor must hold exactly one other window.

    Raises:
        NotFoundError: unknown slot or intercessor
        ValidationError: several held windows and no `from_slot_id`
        ForbiddenError: `from_slot_id` is not the intercessor's
        ConflictError: the new window is held by someone else
    """
    now = _now(now)
    load_intercessor(db, user_id, lock=True)

    if from_slot_id is None:
        current = [s.id for s in held_slots(db, user_id) if s.id != new_slot_id]
        if len(current) > 1:
            raise ValidationError("Choose which held slot to give up", field="from_slot_id")
        if not current:
            return assign_slot(db, new_slot_id, user_id, now=now)
        from_slot_id = current[0]
    if from_slot_id == new_slot_id:
        return load_slot(db, new_slot_id)

    rows = {sid: load_slot(db, sid, lock=True) for sid in sorted((from_slot_id, new_slot_id))}
    old, new = rows[from_slot_id], rows[new_slot_id]
    if old.user_id != user_id or not SlotStatus(old.status).is_held:
        raise ForbiddenError("Only the slot's intercessor can change it")
    if SlotStatus(new.status).is_held:
        raise ConflictError(f"Slot {new.slot_time} is already held ({new.status})")

    _check_slot_limit(db, user_id, keeping=[from_slot_id, new_slot_id])
    relinquish_slot(db, from_slot_id, user_id, now=now)
    slot = apply_event(db, new_slot_id, SlotEvent.ASSIGN, now=now, owner_id=user_id)
    logger.info(
        f"Intercessor {user_id} moved from {old.slot_time} to {slot.slot_time}",
        extra={"extra_fields": {"from_slot_id": from_slot_id, "slot_id": new_slot_id}},
    )
    return slot


def request_skip(db: Session, slot_id: int, user_id: Optional[UUID], now: Optional[datetime] = None) -> PrayerSlot:
    """Pause an active slot for the policy grace period; it comes back by itself at expiry."""
    return apply_event(db, slot_id, SlotEvent.REQUEST_SKIP, now=now, actor_id=user_id)


def grant_skip(
    db: Session,
    slot_id: int,
    user_id: Optional[UUID],
    skip_days: int,
    now: Optional[datetime] = None,
) -> PrayerSlot:
    """
    Skip of an approved length. A skip already running is stretched to
    `skip_days` from when it started.
    """
    if not 1 <= skip_days <= settings.MAX_SKIP_DAYS:
        raise ValidationError(
            f"skip_days must be between 1 and {settings.MAX_SKIP_DAYS}", field="skip_days"
        )
    return apply_event(
        db, slot_id, SlotEvent.REQUEST_SKIP, now=now, actor_id=user_id, skip_for=timedelta(days=skip_days)
    )


def reactivate(db: Session, slot_id: int, user_id: Optional[UUID], now: Optional[datetime] = None) -> PrayerSlot:
    return apply_event(db, slot_id, SlotEvent.REACTIVATE, now=now, actor_id=user_id)


def refresh_slot(db: Session, slot: PrayerSlot, now: Optional[datetime] = None) -> PrayerSlot:
    """Persist a lapsed skip before the slot is displayed. Races are harmless here."""
    now = _now(now)
    if not SlotState.of(slot).skip_lapsed(now):
        return slot
    try:
        return apply_event(db, slot.id, SlotEvent.SKIP_EXPIRED, now=now)
    except ConflictError:
        return load_slot(db, slot.id)


# ---------------------------------------------------------------------------
# Attendance
# ---------------------------------------------------------------------------

def record_session(
    db: Session,
    slot_id: int,
    on_date: date,
    attended: bool,
    duration_minutes: Optional[int] = None,
    now: Optional[datetime] = None,
    source: str = "manual",
    joined_at: Optional[datetime] = None,
    left_at: Optional[datetime] = None,
) -> Tuple[AttendanceRecord, PrayerSlot]:
    """
    Append the occurrence to the ledger and move the slot accordingly.

    A miss that brings the counter to the release threshold releases the
    slot in the same transaction.

    Raises:
        NotFoundError: unknown slot
        InvalidStateError: slot is not held by anyone
        DuplicateRecordError: (slot, date) already recorded
    """
    now = _now(now)
    policy = SlotPolicy.from_settings()
    slot = load_slot(db, slot_id, lock=True)

    stored = SlotState.of(slot)
    settled = _settle(stored, now, policy)
    event = SlotEvent.ATTENDED_SESSION if attended else SlotEvent.MISSED_SESSION
    new_state = transition(settled, event, now=now, policy=policy)

    record = append_attendance(
        db,
        slot_id=slot.id,
        user_id=settled.owner_id,
        on_date=on_date,
        attended=attended,
        duration_minutes=duration_minutes,
        recorded_at=now,
        source=source,
        joined_at=joined_at,
        left_at=left_at,
    )

    if new_state.status == SlotStatus.MISSED and new_state.missed_count >= policy.release_threshold:
        new_state = transition(new_state, SlotEvent.RELEASE, now=now, policy=policy)
        event = SlotEvent.RELEASE

    if new_state != stored:
        save_slot(db, slot, new_state, slot.version, now=now)
        _log_transition(slot, stored.status, event)
    return record, slot


def record_join(
    db: Session,
    user_id: UUID,
    joined_at: datetime,
    left_at: Optional[datetime] = None,
    source: str = "zoom",
    now: Optional[datetime] = None,
) -> Optional[AttendanceRecord]:
    """
    Turn a meeting join into attendance for the intercessor's slot.

    The join must fall inside one of the intercessor's windows (overnight
    windows included). Returns None when it matches none of them or that
    occurrence is already recorded.
    """
    joined_at = to_utc(joined_at)
    for slot in held_slots(db, user_id):
        window = slot_window(slot)
        if window is None:
            continue
        occurrence = window.current_occurrence(joined_at, get_zone(slot.timezone))
        if occurrence is None:
            continue
        on_date, start, end = occurrence
        if find_record(db, slot.id, on_date) is not None:
            logger.info(f"Join for slot {slot.slot_time} on {on_date} already recorded")
            return None
        until = min(to_utc(left_at), end) if left_at else end
        duration = max(0, int((until - max(joined_at, start)).total_seconds() // 60))
        record, _ = record_session(
            db,
            slot.id,
            on_date,
            attended=True,
            duration_minutes=duration,
            now=now,
            source=source,
            joined_at=joined_at,
            left_at=left_at,
        )
        return record

    logger.info(f"Join at {joined_at.isoformat()} by {user_id} matches no held slot")
    return None


# ---------------------------------------------------------------------------
# Batch jobs (idempotent; commit per slot)
# ---------------------------------------------------------------------------

def _run_per_slot(db: Session, slot_ids: List[int], job: str, fn) -> Dict[str, int]:
    done = skipped = 0
    for slot_id in slot_ids:
        with slot_context(slot_id=slot_id, job=job):
            try:
                if fn(slot_id):
                    done += 1
                db.commit()
            except APIException as e:
                db.rollback()
                skipped += 1
                logger.warning(f"{job}: skipping slot {slot_id}: {e.detail}")
    return {"processed": len(slot_ids), "changed": done, "skipped": skipped}


def release_exhausted_slots(db: Session, now: Optional[datetime] = None) -> Dict[str, int]:
    """
    Release every slot that reached the consecutive-miss threshold.

    Each candidate is re-checked under its row lock immediately before the
    transition, so a reactivation or attendance that landed in between wins.
    """
    now = _now(now)
    policy = SlotPolicy.from_settings()
    candidates = [
        slot_id for (slot_id,) in db.query(PrayerSlot.id).filter(
            PrayerSlot.status == SlotStatus.MISSED.value,
            PrayerSlot.missed_count >= policy.release_threshold,
        ).all()
    ]

    def release(slot_id: int) -> bool:
        slot = apply_event(db, slot_id, SlotEvent.RELEASE, now=now, policy=policy)
        return slot.status == SlotStatus.RELEASED.value

    result = _run_per_slot(db, candidates, "auto-release", release)
    if result["changed"]:
        logger.info(f"Auto-released {result['changed']} slot(s)")
    return result


def expire_lapsed_skips(db: Session, now: Optional[datetime] = None) -> Dict[str, int]:
    now = _now(now)
    candidates = [
        slot_id for (slot_id,) in db.query(PrayerSlot.id).filter(
            PrayerSlot.status == SlotStatus.SKIPPED.value,
            PrayerSlot.skip_expires_at <= now,
        ).all()
    ]

    def expire(slot_id: int) -> bool:
        slot = apply_event(db, slot_id, SlotEvent.SKIP_EXPIRED, now=now)
        return slot.status == SlotStatus.ACTIVE.value

    return _run_per_slot(db, candidates, "skip-expiry", expire)


def sweep_missed_sessions(db: Session, now: Optional[datetime] = None) -> Dict[str, int]:
    """
    Record a miss for each owed occurrence that ended without attendance.

    Only the most recent ended occurrence of each slot is examined; the
    (slot, date) uniqueness makes reruns harmless.
    """
    now = _now(now)
    cutoff = now - timedelta(minutes=settings.MISSED_SWEEP_GRACE_MINUTES)
    candidates = [
        slot_id for (slot_id,) in db.query(PrayerSlot.id).filter(
            PrayerSlot.status.in_(HELD_STATUSES),
        ).all()
    ]

    def sweep(slot_id: int) -> bool:
        slot = refresh_slot(db, load_slot(db, slot_id), now)
        if slot.status not in (SlotStatus.ACTIVE.value, SlotStatus.MISSED.value):
            return False
        window = slot_window(slot)
        if window is None:
            logger.warning(f"Slot {slot.id} has an unusable window {slot.slot_time!r}")
            return False
        on_date, start, _ = window.last_ended(cutoff, get_zone(slot.timezone))
        if slot.active_since and start < to_utc(slot.active_since):
            return False
        if find_record(db, slot.id, on_date) is not None:
            return False
        record_session(db, slot.id, on_date, attended=False, now=now, source="sweep")
        return True

    return _run_per_slot(db, candidates, "missed-sweep", sweep)


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------

def seed_slot_catalog(db: Session, length_minutes: Optional[int] = None, tz_name: Optional[str] = None) -> int:
    """Create any missing window rows for the day. Returns how many were added."""
    length_minutes = length_minutes or settings.SLOT_LENGTH_MINUTES
    existing = {label for (label,) in db.query(PrayerSlot.slot_time).all()}
    added = 0
    for window in build_windows(length_minutes):
        if window.label in existing:
            continue
        db.add(PrayerSlot(
            slot_time=window.label,
            window_start=window.start,
            window_end=window.end,
            timezone=tz_name or settings.SLOT_TIMEZONE,
            status=SlotStatus.UNASSIGNED.value,
            missed_count=0,
            version=1,
        ))
        added += 1
    db.flush()
    if added:
        logger.info(f"Seeded {added} prayer slot window(s)")
    return added
