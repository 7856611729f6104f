"""Availability resolution with a mock fallback when Google is unreachable."""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional

from booking_desk.calendar_client import CalendarClient
from booking_desk.models import (
    AvailabilityByDate,
    AvailabilityResolution,
    MeetingType,
)
from booking_desk.slots import SlotEngine, collect_busy_intervals

logger = logging.getLogger(__name__)

SOURCE_GOOGLE = "google"
SOURCE_MOCK = "mock"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MeetingTypeCatalog:
    """Configured meeting types, looked up by id."""

    def __init__(self, meeting_types: Iterable[MeetingType]):
        self._by_id: Dict[str, MeetingType] = {mt.id: mt for mt in meeting_types}

    def get(self, meeting_type_id: str) -> Optional[MeetingType]:
        return self._by_id.get(meeting_type_id)

    def get_active(self, meeting_type_id: str) -> Optional[MeetingType]:
        meeting_type = self._by_id.get(meeting_type_id)
        if meeting_type is None or not meeting_type.is_active:
            return None
        return meeting_type

    def active(self) -> List[MeetingType]:
        return [mt for mt in self._by_id.values() if mt.is_active]


class AvailabilityResolver:
    def __init__(
        self,
        engine: SlotEngine,
        catalog: MeetingTypeCatalog,
        calendar: CalendarClient,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.engine = engine
        self.catalog = catalog
        self.calendar = calendar
        self._clock = clock

    async def get_availability(
        self, meeting_type: MeetingType, now: Optional[datetime] = None
    ) -> AvailabilityByDate:
        """Compute slots from live free/busy data. Calendar errors propagate."""
        now = now or self._clock()
        time_min, time_max = self.engine.availability_window(now)
        free_busy = await asyncio.to_thread(self.calendar.free_busy, time_min, time_max)
        busy = collect_busy_intervals(free_busy)
        return self.engine.compute_calendar(
            meeting_type, self.engine.host_date(now), now, busy
        )

    def get_mock_availability(
        self, meeting_type: MeetingType, now: Optional[datetime] = None
    ) -> AvailabilityByDate:
        now = now or self._clock()
        busy = self.engine.mock_busy_intervals(meeting_type.duration_minutes, now)
        return self.engine.compute_calendar(
            meeting_type, self.engine.host_date(now), now, busy
        )

    async def resolve(
        self, meeting_type_id: str, now: Optional[datetime] = None
    ) -> AvailabilityResolution:
        """Live availability if possible, otherwise the mock schedule. Never raises."""
        now = now or self._clock()
        meeting_type = self.catalog.get_active(meeting_type_id)
        if meeting_type is None:
            return AvailabilityResolution(
                slots_by_date={},
                source=SOURCE_MOCK,
                fallback=True,
                message=f"Meeting type {meeting_type_id} is not configured.",
            )

        try:
            slots_by_date = await self.get_availability(meeting_type, now)
            return AvailabilityResolution(
                slots_by_date=slots_by_date, source=SOURCE_GOOGLE, fallback=False
            )
        except Exception as e:
            message = str(e) or "Unable to load Google Calendar availability."
            logger.warning(
                f"Falling back to mock availability for {meeting_type_id}: {message}"
            )
            return AvailabilityResolution(
                slots_by_date=self.get_mock_availability(meeting_type, now),
                source=SOURCE_MOCK,
                fallback=True,
                message=message,
            )
