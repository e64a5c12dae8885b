"""
Countdown Scheduler

Time to the next occurrence of a slot, recomputed from scratch on every call.
Callers own the tick (once per second for display); nothing here keeps state
between calls, so a skipped or delayed tick never accumulates drift.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, time
from typing import Optional

from services.slot_state_machine import SlotState, SlotStatus, effective_status
from services.slot_time import SlotWindow, get_zone, slot_window, split_duration, to_utc


@dataclass(frozen=True)
class Countdown:
    hours: int
    minutes: int
    seconds: int

    @classmethod
    def zero(cls) -> "Countdown":
        return cls(0, 0, 0)

    @property
    def total_seconds(self) -> int:
        return self.hours * 3600 + self.minutes * 60 + self.seconds

    def to_dict(self) -> dict:
        return {"hours": self.hours, "minutes": self.minutes, "seconds": self.seconds}


def remaining(now: datetime, window_start: time, tz_name: Optional[str] = None) -> Countdown:
    """
    Time until `window_start` (local time-of-day in `tz_name`).

    A start that has already passed today, or is exactly now, targets
    tomorrow's occurrence.
    """
    tz = get_zone(tz_name)
    # Any end works; only the start matters for the next occurrence.
    window = SlotWindow(window_start, _one_minute_after(window_start))
    target = window.next_start(now, tz)
    return Countdown(*split_duration(target - to_utc(now)))


def _one_minute_after(clock: time) -> time:
    total = (clock.hour * 60 + clock.minute + 1) % (24 * 60)
    return time(total // 60, total % 60)


def slot_countdown(slot, now: datetime) -> Optional[Countdown]:
    """
    Countdown for a PrayerSlot row, or None when there is no active countdown.

    Only held slots that are due to be prayed (active or missed) count down;
    unparseable windows degrade to None instead of raising.
    """
    status = effective_status(SlotState.of(slot), now)
    if status not in (SlotStatus.ACTIVE, SlotStatus.MISSED):
        return None
    window = slot_window(slot)
    if window is None:
        return None
    return remaining(now, window.start, slot.timezone)
