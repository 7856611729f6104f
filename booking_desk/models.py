"""Core data types for meeting booking and signed management links."""

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

LINK_ACTIONS = ("cancel", "reschedule", "manage")

CLOCK_PATTERN = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")

WEEKDAY_INDEX = {
    "monday": 0,
    "tuesday": 1,
    "wednesday": 2,
    "thursday": 3,
    "friday": 4,
    "saturday": 5,
    "sunday": 6,
}


def to_iso_utc(value: datetime) -> str:
    """Format an aware datetime as ``YYYY-MM-DDTHH:MM:SS.mmmZ``."""
    utc_value = value.astimezone(timezone.utc)
    return (
        utc_value.strftime("%Y-%m-%dT%H:%M:%S")
        + f".{utc_value.microsecond // 1000:03d}Z"
    )


def parse_iso_datetime(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 string into an aware UTC datetime.

    Naive values are treated as UTC. Returns None for anything unparseable.
    """
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str) and value:
        try:
            dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return None
    else:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@dataclass(frozen=True)
class MeetingType:
    id: str
    title: str
    duration_minutes: int
    is_active: bool = True
    description: Optional[str] = None

    def __post_init__(self):
        if not self.id:
            raise ValueError("Meeting type id must not be empty")
        if self.duration_minutes <= 0:
            raise ValueError(
                f"Meeting type '{self.id}' duration must be positive, got {self.duration_minutes}"
            )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "durationMinutes": self.duration_minutes,
            "isActive": self.is_active,
        }
        if self.description is not None:
            data["description"] = self.description
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MeetingType":
        duration = data.get("duration_minutes", data.get("durationMinutes"))
        is_active = data.get("is_active", data.get("isActive", True))
        return cls(
            id=data["id"],
            title=data.get("title", data["id"]),
            duration_minutes=int(duration),
            is_active=bool(is_active),
            description=data.get("description"),
        )


@dataclass(frozen=True)
class AvailabilityRule:
    """Business hours for one weekday, as host-local ``HH:MM`` clock times."""

    weekday: str
    start: str
    end: str

    def __post_init__(self):
        weekday = self.weekday.lower().strip()
        if weekday not in WEEKDAY_INDEX:
            raise ValueError(
                f"Invalid weekday '{self.weekday}'. Must be one of: {', '.join(WEEKDAY_INDEX)}"
            )
        object.__setattr__(self, "weekday", weekday)

        if not CLOCK_PATTERN.match(self.start):
            raise ValueError(
                f"start time '{self.start}' must be in HH:MM format (e.g., 09:00)"
            )
        if not CLOCK_PATTERN.match(self.end):
            raise ValueError(
                f"end time '{self.end}' must be in HH:MM format (e.g., 17:00)"
            )
        if self.start >= self.end:
            raise ValueError(
                f"Availability start time must be before end time (start: {self.start}, end: {self.end})"
            )

    @property
    def weekday_index(self) -> int:
        return WEEKDAY_INDEX[self.weekday]

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AvailabilityRule":
        return cls(weekday=data["weekday"], start=data["start"], end=data["end"])


@dataclass(frozen=True)
class UtcSlot:
    start: datetime
    end: datetime

    def to_dict(self) -> Dict[str, str]:
        return {"start": to_iso_utc(self.start), "end": to_iso_utc(self.end)}


@dataclass
class BusyInterval:
    start: datetime
    end: datetime

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return start < self.end and end > self.start


@dataclass(frozen=True)
class SignedLinkPayload:
    """Booking identity carried inside a capability token."""

    action: str
    meeting_type_id: str
    event_id: str
    guest_email: str
    expires_at: str
    calendar_id: Optional[str] = None
    guest_name: Optional[str] = None
    slot_start: Optional[str] = None
    slot_end: Optional[str] = None

    # Wire order of the JSON keys; tokens are reproducible only if it is stable.
    _WIRE_FIELDS = (
        ("action", "action"),
        ("expires_at", "expiresAt"),
        ("meeting_type_id", "meetingTypeId"),
        ("event_id", "eventId"),
        ("guest_email", "guestEmail"),
        ("guest_name", "guestName"),
        ("calendar_id", "calendarId"),
        ("slot_start", "slotStart"),
        ("slot_end", "slotEnd"),
    )

    @property
    def expires_at_datetime(self) -> Optional[datetime]:
        return parse_iso_datetime(self.expires_at)

    def is_expired(self, now: datetime) -> bool:
        expires_at = self.expires_at_datetime
        return expires_at is not None and expires_at < now

    def has_required_fields(self) -> bool:
        return bool(
            self.action and self.meeting_type_id and self.event_id and self.guest_email
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        for attr, key in self._WIRE_FIELDS:
            value = getattr(self, attr)
            if value is not None:
                data[key] = value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SignedLinkPayload":
        def _text(key: str) -> str:
            value = data.get(key)
            return value if isinstance(value, str) else ""

        def _optional(key: str) -> Optional[str]:
            value = data.get(key)
            return value if isinstance(value, str) else None

        return cls(
            action=_text("action"),
            meeting_type_id=_text("meetingTypeId"),
            event_id=_text("eventId"),
            guest_email=_text("guestEmail"),
            expires_at=_text("expiresAt"),
            calendar_id=_optional("calendarId"),
            guest_name=_optional("guestName"),
            slot_start=_optional("slotStart"),
            slot_end=_optional("slotEnd"),
        )


@dataclass(frozen=True)
class BookingIdentity:
    """Fields shared by every link minted for one booking."""

    meeting_type_id: str
    event_id: str
    guest_email: str
    guest_name: Optional[str] = None
    calendar_id: Optional[str] = None
    slot_start: Optional[str] = None
    slot_end: Optional[str] = None

    def to_payload(self, action: str, expires_at: str) -> SignedLinkPayload:
        return SignedLinkPayload(
            action=action,
            meeting_type_id=self.meeting_type_id,
            event_id=self.event_id,
            guest_email=self.guest_email,
            expires_at=expires_at,
            calendar_id=self.calendar_id,
            guest_name=self.guest_name,
            slot_start=self.slot_start,
            slot_end=self.slot_end,
        )


@dataclass(frozen=True)
class SignedLink:
    token: str
    expires_at: str

    def to_dict(self) -> Dict[str, str]:
        return {"token": self.token, "expiresAt": self.expires_at}


@dataclass
class ManageLinkAliasRecord:
    token: str
    expires_at: str
    created_at: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "token": self.token,
            "expiresAt": self.expires_at,
            "createdAt": self.created_at,
        }


@dataclass
class CalendarEvent:
    id: str
    start: str
    end: str
    html_link: Optional[str] = None
    hangout_link: Optional[str] = None
    attendees: Optional[List[Dict[str, Any]]] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def description(self) -> str:
        value = self.raw.get("description")
        return value if isinstance(value, str) else ""

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"id": self.id, "start": self.start, "end": self.end}
        if self.html_link:
            data["htmlLink"] = self.html_link
        if self.hangout_link:
            data["hangoutLink"] = self.hangout_link
        if self.attendees is not None:
            data["attendees"] = self.attendees
        return data


AvailabilityByDate = Dict[str, List[UtcSlot]]


def slots_to_dict(slots_by_date: AvailabilityByDate) -> Dict[str, List[Dict[str, str]]]:
    return {
        date_key: [slot.to_dict() for slot in slots]
        for date_key, slots in slots_by_date.items()
    }


@dataclass
class AvailabilityResolution:
    slots_by_date: AvailabilityByDate
    source: str
    fallback: bool
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "slotsByDate": slots_to_dict(self.slots_by_date),
            "source": self.source,
            "fallback": self.fallback,
        }
        if self.message:
            data["message"] = self.message
        return data
