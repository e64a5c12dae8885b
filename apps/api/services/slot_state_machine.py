"""
Slot State Machine

The single transition table for a prayer slot's lifecycle:

    unassigned/released --assign-------------> active     (missed := 0)
    active              --missed_session-----> missed     (missed += 1)
    missed              --missed_session-----> missed     (missed += 1)
    missed              --attended_session---> active     (missed := 0)
    missed              --release (>= limit)-> released   (owner cleared)
    active              --request_skip-------> skipped    (expiry := now + grace)
    skipped             --request_skip(n)----> skipped    (expiry := max(expiry, started + n))
    skipped             --reactivate---------> active     (missed := 0)
    skipped             --skip_expired-------> active     (missed := 0, once now >= expiry)
    active/missed/skipped --relinquish-------> released   (owner hands the window back)

`transition` is a pure function of (state, event, inputs). Re-applying an
event whose target already holds returns the state unchanged. Persistence,
locking and logging live in services.slot_service.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional
from uuid import UUID

from core.exceptions import ConflictError, InvalidStateError
from services.slot_time import to_utc


class SlotStatus(str, Enum):
    UNASSIGNED = "unassigned"
    ACTIVE = "active"
    MISSED = "missed"
    SKIPPED = "skipped"
    RELEASED = "released"

    @property
    def is_held(self) -> bool:
        return self in (SlotStatus.ACTIVE, SlotStatus.MISSED, SlotStatus.SKIPPED)


class SlotEvent(str, Enum):
    ASSIGN = "assign"
    MISSED_SESSION = "missed_session"
    ATTENDED_SESSION = "attended_session"
    RELEASE = "release"
    REQUEST_SKIP = "request_skip"
    REACTIVATE = "reactivate"
    SKIP_EXPIRED = "skip_expired"
    RELINQUISH = "relinquish"


@dataclass(frozen=True)
class SlotPolicy:
    release_threshold: int = 5
    skip_grace: timedelta = timedelta(days=5)

    @classmethod
    def from_settings(cls) -> "SlotPolicy":
        from core.config import settings
        return cls(
            release_threshold=settings.MISSED_RELEASE_THRESHOLD,
            skip_grace=timedelta(days=settings.SKIP_GRACE_DAYS),
        )


@dataclass(frozen=True)
class SlotState:
    status: SlotStatus
    owner_id: Optional[UUID] = None
    missed_count: int = 0
    skip_started_at: Optional[datetime] = None
    skip_expires_at: Optional[datetime] = None

    @classmethod
    def of(cls, slot) -> "SlotState":
        """Snapshot of a PrayerSlot row."""
        return cls(
            status=SlotStatus(slot.status),
            owner_id=slot.user_id,
            missed_count=slot.missed_count or 0,
            skip_started_at=slot.skip_started_at,
            skip_expires_at=slot.skip_expires_at,
        )

    def skip_lapsed(self, now: datetime) -> bool:
        return (
            self.status == SlotStatus.SKIPPED
            and self.skip_expires_at is not None
            and to_utc(now) >= to_utc(self.skip_expires_at)
        )


def effective_status(state: SlotState, now: datetime) -> SlotStatus:
    """Status as observed at `now`: a lapsed skip reads as active."""
    if state.skip_lapsed(now):
        return SlotStatus.ACTIVE
    return state.status


def _activate(state: SlotState) -> SlotState:
    return replace(
        state,
        status=SlotStatus.ACTIVE,
        missed_count=0,
        skip_started_at=None,
        skip_expires_at=None,
    )


def transition(
    state: SlotState,
    event: SlotEvent,
    *,
    now: datetime,
    owner_id: Optional[UUID] = None,
    skip_for: Optional[timedelta] = None,
    policy: Optional[SlotPolicy] = None,
) -> SlotState:
    """
    Apply one event to a slot state.

    Raises:
        ConflictError: assign on a slot held by someone else
        InvalidStateError: any other event not permitted from `state.status`
    """
    policy = policy or SlotPolicy()
    status = state.status

    if event == SlotEvent.ASSIGN:
        if owner_id is None:
            raise InvalidStateError("assign requires an owner")
        if status in (SlotStatus.UNASSIGNED, SlotStatus.RELEASED):
            return SlotState(status=SlotStatus.ACTIVE, owner_id=owner_id, missed_count=0)
        if status == SlotStatus.ACTIVE and state.owner_id == owner_id:
            return state
        raise ConflictError(f"Slot is already held ({status.value})")

    if event == SlotEvent.MISSED_SESSION:
        if status in (SlotStatus.ACTIVE, SlotStatus.MISSED):
            return replace(state, status=SlotStatus.MISSED, missed_count=state.missed_count + 1)
        if status == SlotStatus.SKIPPED:
            return state
        raise InvalidStateError(f"Cannot record a session on a {status.value} slot")

    if event == SlotEvent.ATTENDED_SESSION:
        if status in (SlotStatus.ACTIVE, SlotStatus.MISSED):
            return replace(state, status=SlotStatus.ACTIVE, missed_count=0)
        if status == SlotStatus.SKIPPED:
            return state
        raise InvalidStateError(f"Cannot record a session on a {status.value} slot")

    if event == SlotEvent.RELEASE:
        if status == SlotStatus.RELEASED:
            return state
        if status == SlotStatus.MISSED and state.missed_count >= policy.release_threshold:
            return SlotState(status=SlotStatus.RELEASED, owner_id=None, missed_count=0)
        raise InvalidStateError(
            f"Release requires {policy.release_threshold} consecutive misses "
            f"(status={status.value}, missed={state.missed_count})"
        )

    if event == SlotEvent.REQUEST_SKIP:
        if status == SlotStatus.SKIPPED and not state.skip_lapsed(now):
            if skip_for is None or state.skip_started_at is None or state.skip_expires_at is None:
                return state
            # An approved longer skip stretches the running one; it never shortens it.
            extended = to_utc(state.skip_started_at) + skip_for
            if extended <= to_utc(state.skip_expires_at):
                return state
            return replace(state, skip_expires_at=extended)
        if status != SlotStatus.ACTIVE and not state.skip_lapsed(now):
            raise InvalidStateError(f"Only an active slot can be skipped (status={status.value})")
        grace = skip_for if skip_for is not None else policy.skip_grace
        started = to_utc(now)
        return replace(
            _activate(state),
            status=SlotStatus.SKIPPED,
            skip_started_at=started,
            skip_expires_at=started + grace,
        )

    if event == SlotEvent.REACTIVATE:
        if status == SlotStatus.ACTIVE:
            return state
        if status != SlotStatus.SKIPPED:
            raise InvalidStateError(f"Only a skipped slot can be reactivated (status={status.value})")
        return _activate(state)

    if event == SlotEvent.SKIP_EXPIRED:
        if state.skip_lapsed(now):
            return _activate(state)
        return state

    if event == SlotEvent.RELINQUISH:
        if status == SlotStatus.RELEASED:
            return state
        if not status.is_held:
            raise InvalidStateError(f"Only a held slot can be handed back (status={status.value})")
        return SlotState(status=SlotStatus.RELEASED, owner_id=None, missed_count=0)

    raise InvalidStateError(f"Unknown event: {event}")
