"""Bookable slot computation.

Business-hour rules are evaluated in the host timezone; every slot is
emitted as a pair of UTC instants. Days are keyed by their host-local
``YYYY-MM-DD`` date.
"""

import logging
from datetime import date, datetime, time, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo

from booking_desk.config import SchedulingConfig
from booking_desk.models import (
    AvailabilityByDate,
    AvailabilityRule,
    BusyInterval,
    MeetingType,
    UtcSlot,
    parse_iso_datetime,
)

logger = logging.getLogger(__name__)

LUNCH_BREAK_HOUR = 12

# Host-local start times blocked in the offline schedule, keyed by days from today.
MOCK_BLOCKED_STARTS = {
    2: ("09:00", "09:30", "10:00"),
    9: ("13:00", "13:30"),
}


def merge_busy_intervals(intervals: Iterable[BusyInterval]) -> List[BusyInterval]:
    """Sort intervals and coalesce any that overlap or touch."""
    ordered = sorted(
        (BusyInterval(interval.start, interval.end) for interval in intervals),
        key=lambda interval: interval.start,
    )
    merged: List[BusyInterval] = []
    for interval in ordered:
        if merged and interval.start <= merged[-1].end:
            if interval.end > merged[-1].end:
                merged[-1].end = interval.end
        else:
            merged.append(interval)
    return merged


def collect_busy_intervals(
    free_busy: Dict[str, List[Dict[str, str]]],
) -> List[BusyInterval]:
    """Flatten per-calendar free/busy ranges into one merged interval list."""
    intervals = []
    for calendar_id, ranges in free_busy.items():
        for busy_range in ranges:
            start = parse_iso_datetime(busy_range.get("start"))
            end = parse_iso_datetime(busy_range.get("end"))
            if start is None or end is None or end <= start:
                logger.debug(f"Skipping invalid busy range from {calendar_id}: {busy_range}")
                continue
            intervals.append(BusyInterval(start, end))
    return merge_busy_intervals(intervals)


def find_slot(
    slots_by_date: AvailabilityByDate, start: datetime, end: datetime
) -> Optional[UtcSlot]:
    for slots in slots_by_date.values():
        for slot in slots:
            if slot.start == start and slot.end == end:
                return slot
    return None


def remove_slot(
    slots_by_date: AvailabilityByDate, start: Optional[datetime]
) -> AvailabilityByDate:
    """Return a copy without the slot starting at ``start``."""
    if start is None:
        return slots_by_date
    return {
        date_key: [slot for slot in slots if slot.start != start]
        for date_key, slots in slots_by_date.items()
    }


def _parse_clock(value: str) -> time:
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes))


class SlotEngine:
    """Turns availability rules and busy intervals into bookable slots."""

    def __init__(
        self,
        host_timezone: str,
        rules: Sequence[AvailabilityRule],
        max_days_out: int = 14,
        min_notice_minutes: int = 0,
    ):
        self.host_timezone = host_timezone
        self.tz = ZoneInfo(host_timezone)
        self.rules = list(rules)
        self.max_days_out = max_days_out
        self.min_notice = timedelta(minutes=min_notice_minutes)

    @classmethod
    def from_config(cls, scheduling: SchedulingConfig) -> "SlotEngine":
        return cls(
            host_timezone=scheduling.host_timezone,
            rules=scheduling.availability_rules,
            max_days_out=scheduling.max_days_out,
            min_notice_minutes=scheduling.min_notice_minutes,
        )

    def host_date(self, instant: datetime) -> date:
        return instant.astimezone(self.tz).date()

    def local_to_utc(self, day: date, clock: time) -> datetime:
        return datetime.combine(day, clock, tzinfo=self.tz).astimezone(timezone.utc)

    def day_bounds(self, day: date) -> Tuple[datetime, datetime]:
        """UTC instants of host-local midnight on ``day`` and on the next day."""
        return (
            self.local_to_utc(day, time(0, 0)),
            self.local_to_utc(day + timedelta(days=1), time(0, 0)),
        )

    def window_dates(self, window_start: date) -> List[date]:
        return [window_start + timedelta(days=offset) for offset in range(self.max_days_out + 1)]

    def availability_window(self, now: datetime) -> Tuple[datetime, datetime]:
        """UTC range covering today (host time) through ``max_days_out`` days ahead."""
        first_day = self.host_date(now)
        last_day = first_day + timedelta(days=self.max_days_out)
        return self.day_bounds(first_day)[0], self.day_bounds(last_day)[1]

    def rule_for_date(self, day: date) -> Optional[AvailabilityRule]:
        weekday = day.weekday()
        for rule in self.rules:
            if rule.weekday_index == weekday:
                return rule
        return None

    def compute_calendar(
        self,
        meeting_type: MeetingType,
        window_start: date,
        now: datetime,
        busy_intervals: Iterable[BusyInterval],
    ) -> AvailabilityByDate:
        """Compute free slots for every host-local date in the look-ahead window."""
        merged = merge_busy_intervals(busy_intervals)
        availability: AvailabilityByDate = {}

        for day in self.window_dates(window_start):
            day_start, next_day_start = self.day_bounds(day)
            busy_for_day = [
                interval
                for interval in merged
                if interval.start < next_day_start and interval.end > day_start
            ]
            availability[day.isoformat()] = self.slots_for_date(
                meeting_type, day, now, busy_for_day
            )

        return availability

    def slots_for_date(
        self,
        meeting_type: MeetingType,
        day: date,
        now: datetime,
        busy_intervals: Sequence[BusyInterval],
    ) -> List[UtcSlot]:
        rule = self.rule_for_date(day)
        if rule is None:
            return []

        start = self.local_to_utc(day, _parse_clock(rule.start))
        end = self.local_to_utc(day, _parse_clock(rule.end))
        duration = timedelta(minutes=meeting_type.duration_minutes)
        earliest_start = now + self.min_notice

        slots = []
        cursor = start
        while cursor < end:
            slot_end = cursor + duration
            if slot_end > end:
                break

            if (
                cursor >= earliest_start
                and cursor.astimezone(self.tz).hour != LUNCH_BREAK_HOUR
                and not any(busy.overlaps(cursor, slot_end) for busy in busy_intervals)
            ):
                slots.append(UtcSlot(cursor, slot_end))

            cursor = slot_end

        return slots

    def mock_busy_intervals(
        self, duration_minutes: int, now: datetime
    ) -> List[BusyInterval]:
        """Deterministic fake busy blocks relative to the host date of ``now``."""
        today = self.host_date(now)
        duration = timedelta(minutes=duration_minutes)
        busy = []
        for offset, starts in MOCK_BLOCKED_STARTS.items():
            day = today + timedelta(days=offset)
            for start_label in starts:
                start = self.local_to_utc(day, _parse_clock(start_label))
                busy.append(BusyInterval(start, start + duration))
        return merge_busy_intervals(busy)
