"""Pytest fixtures for booking-desk tests."""

import logging
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest

from booking_desk.alias_store import ManageLinkAliasStore
from booking_desk.availability import AvailabilityResolver, MeetingTypeCatalog
from booking_desk.booking import BookingService
from booking_desk.calendar_client import CalendarClient
from booking_desk.config import (
    AliasStoreConfig,
    GoogleConfig,
    SchedulingConfig,
    ServerConfig,
    SigningConfig,
)
from booking_desk.models import CalendarEvent, MeetingType
from booking_desk.signing import LinkSigner
from booking_desk.slots import SlotEngine

logging.basicConfig(level=logging.INFO)

# Wednesday 2026-10-21, 08:00 in Los Angeles (PDT).
WEDNESDAY_8AM = datetime(2026, 10, 21, 15, 0, tzinfo=timezone.utc)

HOST_CALENDAR = "host@example.com"
SIGNING_SECRET = "test-signing-secret"


class FakeClock:
    """Callable clock that tests can move forward."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock(WEDNESDAY_8AM)


@pytest.fixture
def intro_meeting():
    return MeetingType(id="intro-30", title="Introductory Call", duration_minutes=30)


@pytest.fixture
def server_config(tmp_path, intro_meeting):
    """Create a Server configuration with no minimum notice."""
    return ServerConfig(
        google=GoogleConfig(
            client_id="mock_client_id",
            client_secret="mock_client_secret",
            refresh_token="mock_refresh_token",
            calendar_ids=[HOST_CALENDAR],
        ),
        scheduling=SchedulingConfig(
            host_timezone="America/Los_Angeles",
            max_days_out=14,
            min_notice_minutes=0,
        ),
        meeting_types=[
            intro_meeting,
            MeetingType(
                id="legacy-60",
                title="Legacy Deep Dive",
                duration_minutes=60,
                is_active=False,
            ),
        ],
        signing=SigningConfig(secret=SIGNING_SECRET),
        alias_store=AliasStoreConfig(path=tmp_path / "aliases.json"),
        app_url="https://book.example.com",
    )


@pytest.fixture
def signer(clock):
    return LinkSigner(SIGNING_SECRET, clock=clock)


@pytest.fixture
def alias_store(tmp_path, clock):
    return ManageLinkAliasStore.at_path(tmp_path / "aliases.json", clock=clock)


@pytest.fixture
def slot_engine(server_config):
    return SlotEngine.from_config(server_config.scheduling)


@pytest.fixture
def mock_calendar():
    """A CalendarClient stand-in with an empty calendar."""
    calendar = MagicMock(spec=CalendarClient)
    calendar.calendar_ids.return_value = [HOST_CALENDAR]
    calendar.free_busy.return_value = {HOST_CALENDAR: []}

    def _event(calendar_id, summary, start, end, description=None, attendees=None, send_updates="all"):
        return CalendarEvent(
            id="evt123",
            start=start.strftime("%Y-%m-%dT%H:%M:%SZ"),
            end=end.strftime("%Y-%m-%dT%H:%M:%SZ"),
            html_link="https://calendar.google.com/event?eid=evt123",
            hangout_link="https://meet.google.com/abc-defg-hij",
            raw={"id": "evt123", "description": description or ""},
        )

    def _update(calendar_id, event_id, start, end, summary=None, description=None, attendees=None, send_updates="all"):
        start_value = start if isinstance(start, str) else start.strftime("%Y-%m-%dT%H:%M:%SZ")
        end_value = end if isinstance(end, str) else end.strftime("%Y-%m-%dT%H:%M:%SZ")
        return CalendarEvent(
            id=event_id,
            start=start_value,
            end=end_value,
            raw={"id": event_id, "description": description or "Guest: Ada"},
        )

    calendar.create_event.side_effect = _event
    calendar.update_event.side_effect = _update
    calendar.delete_event.return_value = "deleted"
    return calendar


@pytest.fixture
def resolver(slot_engine, server_config, mock_calendar, clock):
    return AvailabilityResolver(
        slot_engine,
        MeetingTypeCatalog(server_config.meeting_types),
        mock_calendar,
        clock=clock,
    )


@pytest.fixture
def booking_service(server_config, signer, resolver, mock_calendar, alias_store, clock):
    return BookingService(
        server_config, signer, resolver, mock_calendar, alias_store, clock=clock
    )


@pytest.fixture
def mock_calendar_service():
    """Create a mock Calendar API service with common responses."""
    with patch("googleapiclient.discovery.build") as mock_build:
        service = MagicMock()
        mock_build.return_value = service

        service.freebusy().query().execute.return_value = {
            "calendars": {
                HOST_CALENDAR: {
                    "busy": [
                        {
                            "start": "2026-10-21T17:00:00Z",
                            "end": "2026-10-21T18:00:00Z",
                        }
                    ]
                }
            }
        }
        service.events().insert().execute.return_value = {
            "id": "evt123",
            "htmlLink": "https://calendar.google.com/event?eid=evt123",
            "hangoutLink": "https://meet.google.com/abc-defg-hij",
            "start": {"dateTime": "2026-10-21T16:00:00Z"},
            "end": {"dateTime": "2026-10-21T16:30:00Z"},
        }

        yield service
