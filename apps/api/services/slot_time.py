"""
Slot Time Utilities

Parsing of daily window labels ("22:00–22:30"), occurrence arithmetic in a
slot's timezone, and duration splitting.

All instants handed out are timezone-aware. Differences are always taken in
UTC so DST transitions never distort a countdown.
"""

from __future__ import annotations

import logging
import re
import zoneinfo
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import List, Optional, Tuple

from core.config import settings

logger = logging.getLogger(__name__)

EN_DASH = "–"

# Accepts "22:00–22:30", "22:00-22:30", "22:00 - 22:30", "9:05–9:35"
_WINDOW_RE = re.compile(r"^\s*(\d{1,2}):(\d{2})\s*[–—-]\s*(\d{1,2}):(\d{2})\s*$")


def get_zone(name: Optional[str]) -> zoneinfo.ZoneInfo:
    """Resolve an IANA name, falling back to the configured slot timezone."""
    for candidate in (name, settings.SLOT_TIMEZONE):
        if not candidate:
            continue
        try:
            return zoneinfo.ZoneInfo(candidate)
        except (zoneinfo.ZoneInfoNotFoundError, ValueError) as e:
            logger.debug(f"Invalid timezone '{candidate}': {e}")
    return zoneinfo.ZoneInfo("UTC")


def to_utc(moment: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def local_date(moment: datetime, tz: zoneinfo.ZoneInfo) -> date:
    return to_utc(moment).astimezone(tz).date()


def split_duration(delta: timedelta) -> Tuple[int, int, int]:
    """Whole hours, minutes, seconds. Negative or zero clamps to (0, 0, 0)."""
    total = int(delta.total_seconds())
    if total <= 0:
        return 0, 0, 0
    hours, rest = divmod(total, 3600)
    minutes, seconds = divmod(rest, 60)
    return hours, minutes, seconds


def _at(on_date: date, clock: time, tz: zoneinfo.ZoneInfo) -> datetime:
    return datetime.combine(on_date, clock, tzinfo=tz).astimezone(timezone.utc)


@dataclass(frozen=True)
class SlotWindow:
    """A daily window. `end <= start` means the window crosses midnight."""

    start: time
    end: time

    @classmethod
    def parse(cls, text: str) -> "SlotWindow":
        match = _WINDOW_RE.match(text or "")
        if not match:
            raise ValueError(f"Malformed slot window: {text!r}")
        sh, sm, eh, em = (int(g) for g in match.groups())
        # "24:00" is accepted as an end-of-day marker
        if eh == 24 and em == 0:
            eh = 0
        if not (0 <= sh < 24 and 0 <= eh < 24 and sm < 60 and em < 60):
            raise ValueError(f"Slot window out of range: {text!r}")
        window = cls(time(sh, sm), time(eh, em))
        if window.start == window.end:
            raise ValueError(f"Slot window has zero length: {text!r}")
        return window

    @classmethod
    def try_parse(cls, text: str) -> Optional["SlotWindow"]:
        try:
            return cls.parse(text)
        except ValueError as e:
            logger.debug(str(e))
            return None

    @property
    def label(self) -> str:
        return f"{self.start:%H:%M}{EN_DASH}{self.end:%H:%M}"

    @property
    def crosses_midnight(self) -> bool:
        return self.end <= self.start

    @property
    def duration(self) -> timedelta:
        start = timedelta(hours=self.start.hour, minutes=self.start.minute)
        end = timedelta(hours=self.end.hour, minutes=self.end.minute)
        if self.crosses_midnight:
            end += timedelta(days=1)
        return end - start

    def occurrence(self, on_date: date, tz: zoneinfo.ZoneInfo) -> Tuple[datetime, datetime]:
        """UTC bounds of the occurrence that starts on `on_date` (local)."""
        start = _at(on_date, self.start, tz)
        end_date = on_date + timedelta(days=1) if self.crosses_midnight else on_date
        return start, _at(end_date, self.end, tz)

    def current_occurrence(self, now: datetime, tz: zoneinfo.ZoneInfo) -> Optional[Tuple[date, datetime, datetime]]:
        """The occurrence `now` falls inside, as (occurrence date, start, end)."""
        now = to_utc(now)
        today = local_date(now, tz)
        # An overnight window may have started yesterday.
        for on_date in (today, today - timedelta(days=1)):
            start, end = self.occurrence(on_date, tz)
            if start <= now < end:
                return on_date, start, end
        return None

    def contains(self, now: datetime, tz: zoneinfo.ZoneInfo) -> bool:
        return self.current_occurrence(now, tz) is not None

    def next_start(self, now: datetime, tz: zoneinfo.ZoneInfo) -> datetime:
        """First start strictly after `now`; a start equal to now rolls to tomorrow."""
        now = to_utc(now)
        today = local_date(now, tz)
        for offset in (0, 1, 2):
            start, _ = self.occurrence(today + timedelta(days=offset), tz)
            if start > now:
                return start
        # unreachable for sane clocks
        return self.occurrence(today + timedelta(days=3), tz)[0]

    def last_ended(self, now: datetime, tz: zoneinfo.ZoneInfo) -> Tuple[date, datetime, datetime]:
        """Most recent occurrence whose end is at or before `now`."""
        now = to_utc(now)
        today = local_date(now, tz)
        for back in (0, 1, 2):
            on_date = today - timedelta(days=back)
            start, end = self.occurrence(on_date, tz)
            if end <= now:
                return on_date, start, end
        on_date = today - timedelta(days=3)
        return (on_date, *self.occurrence(on_date, tz))


def slot_window(slot) -> Optional[SlotWindow]:
    """Window of a PrayerSlot row, or None if its label is unusable."""
    return SlotWindow.try_parse(slot.slot_time)


def build_windows(length_minutes: int) -> List[SlotWindow]:
    """Tile the day with back-to-back windows starting at midnight."""
    if length_minutes <= 0 or (24 * 60) % length_minutes:
        raise ValueError(f"Window length must divide the day evenly: {length_minutes}")
    windows = []
    for begin in range(0, 24 * 60, length_minutes):
        finish = (begin + length_minutes) % (24 * 60)
        windows.append(SlotWindow(time(begin // 60, begin % 60), time(finish // 60, finish % 60)))
    return windows
