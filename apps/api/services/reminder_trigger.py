"""
Reminder & Fallback Trigger

Decides *when* the notification and fallback-content collaborators should
act; never how anything is delivered.

- Reminders: each configured offset (minutes before window start) fires at
  most once per occurrence. A tracker claims (slot, occurrence, offset)
  atomically, so evaluating every second, or from several workers, cannot
  re-fire. An offset is only due for REMINDER_GRACE_SECONDS after its fire
  time; an evaluator that starts late does not burst stale reminders.
- Fallback: active while the window is open and the slot is not effectively
  active. FallbackMonitor turns the level into on/off transitions.

Neither path mutates slot or ledger state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Tuple
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.config import parse_offsets, settings
from models import SlotNotification
from services.slot_state_machine import SlotState, SlotStatus, effective_status
from services.slot_time import get_zone, slot_window, to_utc

logger = logging.getLogger(__name__)


class NotificationKind(str, Enum):
    REMINDER = "reminder"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class NotificationEvent:
    slot_id: int
    user_id: Optional[UUID]
    kind: NotificationKind
    occurrence_start: datetime
    offset_minutes: Optional[int] = None
    active: Optional[bool] = None  # fallback only

    def to_dict(self) -> dict:
        payload = {
            "slotId": self.slot_id,
            "userId": str(self.user_id) if self.user_id else None,
            "kind": self.kind.value,
            "occurrenceStart": self.occurrence_start.isoformat(),
        }
        if self.offset_minutes is not None:
            payload["offsetMinutes"] = self.offset_minutes
        if self.active is not None:
            payload["active"] = self.active
        return payload


# ---------------------------------------------------------------------------
# Trackers
# ---------------------------------------------------------------------------

ReminderKey = Tuple[int, datetime, int]


class ReminderTracker:
    """In-process last-fired memory, for a single client's tick."""

    def __init__(self) -> None:
        self._fired: Dict[ReminderKey, datetime] = {}

    def last_fired(self, slot_id: int, occurrence_start: datetime, offset: int) -> Optional[datetime]:
        return self._fired.get((slot_id, occurrence_start, offset))

    def claim(self, event: NotificationEvent, now: datetime) -> bool:
        key = (event.slot_id, event.occurrence_start, event.offset_minutes)
        if key in self._fired:
            return False
        self._fired[key] = now
        return True

    def prune(self, before: datetime) -> None:
        """Forget occurrences that started before `before`."""
        self._fired = {k: v for k, v in self._fired.items() if k[1] >= before}


class OutboxReminderTracker:
    """
    Claims reminders by inserting into the slot_notification outbox.

    The unique index on (slot, kind, occurrence, offset) is the arbiter when
    several workers evaluate the same minute.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    def last_fired(self, slot_id: int, occurrence_start: datetime, offset: int) -> Optional[datetime]:
        row = self.db.query(SlotNotification).filter(
            SlotNotification.slot_id == slot_id,
            SlotNotification.kind == NotificationKind.REMINDER.value,
            SlotNotification.occurrence_start == occurrence_start,
            SlotNotification.offset_minutes == offset,
        ).first()
        return row.created_at if row else None

    def claim(self, event: NotificationEvent, now: datetime) -> bool:
        if self.last_fired(event.slot_id, event.occurrence_start, event.offset_minutes) is not None:
            return False
        try:
            # Savepoint per claim; losing one offset keeps the offsets already claimed this pass.
            with self.db.begin_nested():
                self.db.add(_outbox_row(event, now))
        except IntegrityError:
            logger.debug(f"Reminder {event.offset_minutes}m for slot {event.slot_id} claimed elsewhere")
            return False
        return True


def _outbox_row(event: NotificationEvent, now: datetime) -> SlotNotification:
    return SlotNotification(
        slot_id=event.slot_id,
        user_id=event.user_id,
        kind=event.kind.value,
        offset_minutes=event.offset_minutes,
        active=event.active,
        occurrence_start=event.occurrence_start,
        created_at=now,
    )


def publish(db: Session, events: Iterable[NotificationEvent], now: datetime) -> int:
    """Write fallback transitions to the outbox."""
    count = 0
    for event in events:
        db.add(_outbox_row(event, to_utc(now)))
        count += 1
    if count:
        db.flush()
    return count


class LoggingNotificationSink:
    """Delivers outbox events to the log. Used for local runs."""

    def __init__(self, log: Optional[logging.Logger] = None) -> None:
        self.log = log or logger

    def send(self, event: NotificationEvent) -> None:
        self.log.info(
            f"Notification {event.kind.value} for slot {event.slot_id}",
            extra={"extra_fields": event.to_dict()},
        )


def _event_from_row(row: SlotNotification) -> NotificationEvent:
    return NotificationEvent(
        slot_id=row.slot_id,
        user_id=row.user_id,
        kind=NotificationKind(row.kind),
        occurrence_start=row.occurrence_start,
        offset_minutes=row.offset_minutes,
        active=row.active,
    )


def deliver_pending(db: Session, sink, now: datetime) -> int:
    """Hand undelivered outbox rows to `sink` in insertion order and mark them delivered."""
    rows = db.query(SlotNotification).filter(
        SlotNotification.delivered_at.is_(None),
    ).order_by(SlotNotification.id).all()
    for row in rows:
        sink.send(_event_from_row(row))
        row.delivered_at = to_utc(now)
    if rows:
        db.flush()
    return len(rows)


# ---------------------------------------------------------------------------
# Reminders
# ---------------------------------------------------------------------------

def reminder_offsets_for(slot) -> List[int]:
    owner = getattr(slot, "owner", None)
    if owner is not None and owner.reminder_offsets:
        offsets = parse_offsets(owner.reminder_offsets)
        if offsets:
            return offsets
    return settings.reminder_offsets


def _wants_reminders(slot, start: datetime) -> bool:
    """Whether the owner should hear about the occurrence beginning at `start`."""
    if slot.user_id is None:
        return False
    owner = getattr(slot, "owner", None)
    if owner is not None and not owner.reminders_enabled:
        return False
    status = effective_status(SlotState.of(slot), start)
    return status in (SlotStatus.ACTIVE, SlotStatus.MISSED)


def reminder_due(
    slot,
    now: datetime,
    offsets: Optional[Sequence[int]] = None,
    tracker=None,
    grace: Optional[timedelta] = None,
) -> List[NotificationEvent]:
    """
    Reminder events due at `now` for the slot's next occurrence.

    Each returned event has been claimed on `tracker`; the same
    (occurrence, offset) is never returned again by that tracker.
    """
    now = to_utc(now)
    window = slot_window(slot)
    if window is None:
        return []
    start = window.next_start(now, get_zone(slot.timezone))
    # A skip that lapses before the window opens still owes this occurrence.
    if not _wants_reminders(slot, start):
        return []

    tracker = tracker if tracker is not None else ReminderTracker()
    grace = grace or timedelta(seconds=settings.REMINDER_GRACE_SECONDS)
    offsets = offsets if offsets is not None else reminder_offsets_for(slot)

    events = []
    for offset in offsets:
        fire_at = start - timedelta(minutes=offset)
        if not fire_at <= now < min(fire_at + grace, start):
            continue
        event = NotificationEvent(
            slot_id=slot.id,
            user_id=slot.user_id,
            kind=NotificationKind.REMINDER,
            occurrence_start=start,
            offset_minutes=offset,
        )
        if tracker.claim(event, now):
            events.append(event)
    return events


# ---------------------------------------------------------------------------
# Fallback
# ---------------------------------------------------------------------------

def fallback_active(slot, now: datetime) -> bool:
    """
    True while `now` is inside the slot's window and nobody is covering it:
    effective status missed, skipped (unexpired), released or unassigned.
    """
    window = slot_window(slot)
    if window is None:
        return False
    if not window.contains(now, get_zone(slot.timezone)):
        return False
    return effective_status(SlotState.of(slot), now) != SlotStatus.ACTIVE


class FallbackMonitor:
    """Remembers the last fallback level per slot and reports only changes."""

    def __init__(self, initial: Optional[Dict[int, Tuple[bool, Optional[datetime]]]] = None) -> None:
        self._last: Dict[int, Tuple[bool, Optional[datetime]]] = dict(initial or {})

    def is_active(self, slot_id: int) -> bool:
        return self._last.get(slot_id, (False, None))[0]

    def observe(self, slot, now: datetime) -> Optional[NotificationEvent]:
        active = fallback_active(slot, now)
        previous, occurrence_start = self._last.get(slot.id, (False, None))
        if active == previous:
            return None

        if active:
            window = slot_window(slot)
            occurrence = window.current_occurrence(now, get_zone(slot.timezone))
            occurrence_start = occurrence[1]
        self._last[slot.id] = (active, occurrence_start)
        return NotificationEvent(
            slot_id=slot.id,
            user_id=slot.user_id,
            kind=NotificationKind.FALLBACK,
            occurrence_start=occurrence_start or to_utc(now),
            active=active,
        )


def last_fallback_states(db: Session) -> Dict[int, Tuple[bool, Optional[datetime]]]:
    """Latest fallback level per slot as recorded in the outbox."""
    latest = (
        select(func.max(SlotNotification.id))
        .where(SlotNotification.kind == NotificationKind.FALLBACK.value)
        .group_by(SlotNotification.slot_id)
    )
    rows = db.query(SlotNotification).filter(SlotNotification.id.in_(latest)).all()
    return {row.slot_id: (bool(row.active), row.occurrence_start) for row in rows}
