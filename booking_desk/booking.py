"""Book, cancel, reschedule and manage actions behind signed links.

Every guest action after booking is authorized by a capability token
scoped to that action. Calendar failures are reclassified into
``BookingError`` here so provider exceptions never reach the HTTP layer.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from booking_desk.alias_store import ManageLinkAliasStore
from booking_desk.availability import AvailabilityResolver
from booking_desk.calendar_client import CalendarClient
from booking_desk.config import ServerConfig
from booking_desk.errors import (
    BookingError,
    BookingStatus,
    GoogleCalendarConfigError,
    SigningConfigError,
    classify_calendar_error,
)
from booking_desk.models import (
    BookingIdentity,
    MeetingType,
    SignedLinkPayload,
    parse_iso_datetime,
    slots_to_dict,
    to_iso_utc,
)
from booking_desk.schemas import BookingRequest, RescheduleRequest
from booking_desk.signing import (
    LinkSigner,
    describe_management_links,
    upsert_manage_link_in_description,
)
from booking_desk.slots import find_slot, remove_slot
from booking_desk.urls import resolve_app_base_url

logger = logging.getLogger(__name__)

ACTION_LABELS = {
    "cancel": "cancellation",
    "reschedule": "reschedule",
    "manage": "manage",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def build_event_description(request: BookingRequest, host_timezone: str) -> str:
    lines = [
        f"Guest: {request.guest.name} <{request.guest.email}>",
        f"Guest timezone: {request.guest_timezone or 'Not provided'}",
        f"Host timezone: {host_timezone}",
    ]
    notes = (request.notes or "").strip()
    if notes:
        lines.extend(["", "Notes:", notes])
    return "\n".join(lines)


def _guest_summary(payload: SignedLinkPayload) -> Dict[str, str]:
    guest = {"email": payload.guest_email}
    if payload.guest_name:
        guest["name"] = payload.guest_name
    return guest


def _current_slot(payload: SignedLinkPayload) -> Optional[Dict[str, str]]:
    if payload.slot_start and payload.slot_end:
        return {"start": payload.slot_start, "end": payload.slot_end}
    return None


def _canonical(value: str, fallback: datetime) -> str:
    parsed = parse_iso_datetime(value)
    return to_iso_utc(parsed or fallback)


class BookingService:
    """Runs guest actions against the calendar."""

    def __init__(
        self,
        config: ServerConfig,
        signer: LinkSigner,
        resolver: AvailabilityResolver,
        calendar: CalendarClient,
        aliases: Optional[ManageLinkAliasStore] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.config = config
        self.signer = signer
        self.resolver = resolver
        self.catalog = resolver.catalog
        self.calendar = calendar
        self.aliases = aliases
        self._clock = clock
        self.link_ttl = timedelta(days=config.signing.link_ttl_days)

    @property
    def host_timezone(self) -> str:
        return self.config.scheduling.host_timezone

    def _verify_token(
        self, token: Optional[str], action: str, now: datetime
    ) -> SignedLinkPayload:
        label = ACTION_LABELS[action]
        if not token:
            raise BookingError(
                BookingStatus.INVALID_TOKEN, f"A {label} token is required.", 400
            )

        decoded = LinkSigner.decode(token)
        if decoded is None or decoded.action != action:
            raise BookingError(
                BookingStatus.INVALID_TOKEN, f"The {label} link is malformed.", 400
            )

        try:
            verified = self.signer.verify(token, now)
        except SigningConfigError as e:
            raise classify_calendar_error(e) from e

        if verified is None:
            if decoded.is_expired(now):
                raise BookingError(
                    BookingStatus.EXPIRED,
                    f"This {label} link has expired.",
                    410,
                    meetingTypeId=decoded.meeting_type_id,
                    guestEmail=decoded.guest_email,
                )
            raise BookingError(
                BookingStatus.INVALID_TOKEN, f"The {label} link is invalid.", 400
            )
        return verified

    def _meeting_type(self, meeting_type_id: str) -> MeetingType:
        meeting_type = self.catalog.get_active(meeting_type_id)
        if meeting_type is None:
            raise BookingError(
                BookingStatus.UNKNOWN_MEETING_TYPE,
                f"Meeting type {meeting_type_id} is not enabled.",
                404,
            )
        return meeting_type

    def _calendar_id(self, token_calendar_id: Optional[str] = None) -> str:
        if token_calendar_id:
            return token_calendar_id
        try:
            return self.calendar.calendar_ids()[0]
        except GoogleCalendarConfigError as e:
            raise classify_calendar_error(e) from e

    def _management_links(
        self, identity: BookingIdentity, base_url: Optional[str], now: datetime
    ) -> Dict[str, Dict[str, Any]]:
        links = self.signer.create_management_links(identity, self.link_ttl, now)
        return describe_management_links(
            links, base_url or resolve_app_base_url(self.config.app_url), self.aliases
        )

    async def book(
        self,
        request: BookingRequest,
        base_url: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Create the event for a still-free slot and mint its management links."""
        now = now or self._clock()
        meeting_type = self._meeting_type(request.meeting_type_id)
        start = request.slot.start.astimezone(timezone.utc)
        end = request.slot.end.astimezone(timezone.utc)

        try:
            availability = await self.resolver.get_availability(meeting_type, now)
            if find_slot(availability, start, end) is None:
                raise BookingError(
                    BookingStatus.CONFLICT,
                    "Selected slot is no longer available. Please choose another time.",
                    409,
                )

            calendar_id = self._calendar_id()
            summary = f"{meeting_type.title} with {request.guest.name}"
            description = build_event_description(request, self.host_timezone)
            attendees = [
                {"email": request.guest.email, "displayName": request.guest.name}
            ]

            event = await asyncio.to_thread(
                self.calendar.create_event,
                calendar_id,
                summary,
                start,
                end,
                description,
                attendees,
                "none",
            )

            identity = BookingIdentity(
                meeting_type_id=meeting_type.id,
                event_id=event.id,
                guest_email=request.guest.email,
                guest_name=request.guest.name,
                calendar_id=calendar_id,
                slot_start=_canonical(event.start, start),
                slot_end=_canonical(event.end, end),
            )
            links = await asyncio.to_thread(
                self._management_links, identity, base_url, now
            )

            response_event = event
            try:
                response_event = await asyncio.to_thread(
                    self.calendar.update_event,
                    calendar_id,
                    event.id,
                    event.start,
                    event.end,
                    summary,
                    upsert_manage_link_in_description(description, links["manage"]["url"]),
                    attendees,
                    "all",
                )
            except Exception as e:
                logger.exception(f"Failed to append manage link to event {event.id}: {e}")
        except BookingError:
            raise
        except Exception as e:
            logger.error(f"Failed to create booking for {request.guest.email}: {e}")
            raise classify_calendar_error(e, "Unexpected error creating booking.") from e

        logger.info(f"Booked {meeting_type.id} event {response_event.id} on {calendar_id}")
        result: Dict[str, Any] = {
            "status": "confirmed",
            "eventId": response_event.id,
            "calendarId": calendar_id,
            "start": response_event.start,
            "end": response_event.end,
            "managementLinks": links,
        }
        if response_event.html_link:
            result["htmlLink"] = response_event.html_link
        if response_event.hangout_link:
            result["hangoutLink"] = response_event.hangout_link
        return result

    async def cancel(
        self, token: Optional[str], now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """Delete the booked event.

        Returns ``status: not_found`` rather than raising when the event is
        already gone, so cancelling twice is reported distinctly.
        """
        now = now or self._clock()
        payload = self._verify_token(token, "cancel", now)
        calendar_id = self._calendar_id(payload.calendar_id)

        try:
            outcome = await asyncio.to_thread(
                self.calendar.delete_event, calendar_id, payload.event_id, "all"
            )
        except Exception as e:
            logger.error(f"Failed to cancel event {payload.event_id}: {e}")
            raise classify_calendar_error(
                e, "Unexpected error cancelling the meeting."
            ) from e

        details = {
            "eventId": payload.event_id,
            "meetingTypeId": payload.meeting_type_id,
            "guestEmail": payload.guest_email,
            "calendarId": calendar_id,
        }
        if outcome == "not_found":
            logger.info(f"Event {payload.event_id} was already cancelled")
            return {
                "status": "not_found",
                "message": "This meeting was already cancelled or cannot be found.",
                **details,
            }

        logger.info(f"Cancelled event {payload.event_id} on {calendar_id}")
        return {"status": "cancelled", **details}

    async def reschedule_options(
        self, token: Optional[str], now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        """Availability for a reschedule link, minus the guest's current slot."""
        now = now or self._clock()
        payload = self._verify_token(token, "reschedule", now)
        meeting_type = self._meeting_type(payload.meeting_type_id)
        calendar_id = self._calendar_id(payload.calendar_id)

        availability = await self.resolver.resolve(meeting_type.id, now)
        slots_by_date = remove_slot(
            availability.slots_by_date, parse_iso_datetime(payload.slot_start)
        )

        result: Dict[str, Any] = {
            "status": "ok",
            "meetingType": meeting_type.to_dict(),
            "hostTimezone": self.host_timezone,
            "slotsByDate": slots_to_dict(slots_by_date),
            "source": availability.source,
            "fallback": availability.fallback,
            "currentSlot": _current_slot(payload),
            "calendarId": calendar_id,
            "guest": _guest_summary(payload),
        }
        if availability.message:
            result["message"] = availability.message
        return result

    async def reschedule(
        self,
        request: RescheduleRequest,
        base_url: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Move the event to a new free slot and refresh its management links."""
        now = now or self._clock()
        payload = self._verify_token(request.token, "reschedule", now)
        meeting_type = self._meeting_type(payload.meeting_type_id)
        start = request.slot.start.astimezone(timezone.utc)
        end = request.slot.end.astimezone(timezone.utc)

        current_start = parse_iso_datetime(payload.slot_start)
        if current_start is not None and current_start == start:
            raise BookingError(
                BookingStatus.UNCHANGED,
                "Select a different time to reschedule this meeting.",
                400,
            )

        calendar_id = self._calendar_id(payload.calendar_id)

        try:
            availability = await self.resolver.get_availability(meeting_type, now)
            if find_slot(availability, start, end) is None:
                raise BookingError(
                    BookingStatus.UNAVAILABLE,
                    "That time was just booked. Please choose another slot.",
                    409,
                )

            identity = BookingIdentity(
                meeting_type_id=meeting_type.id,
                event_id=payload.event_id,
                guest_email=payload.guest_email,
                guest_name=payload.guest_name,
                calendar_id=calendar_id,
                slot_start=to_iso_utc(start),
                slot_end=to_iso_utc(end),
            )
            links = await asyncio.to_thread(
                self._management_links, identity, base_url, now
            )

            summary = (
                f"{meeting_type.title} with {payload.guest_name}"
                if payload.guest_name
                else None
            )
            attendees: List[Dict[str, Any]] = [{"email": payload.guest_email}]

            # Move silently first; attendees are notified once, by the refresh below.
            updated = await asyncio.to_thread(
                self.calendar.update_event,
                calendar_id,
                payload.event_id,
                start,
                end,
                summary,
                None,
                attendees,
                "none",
            )

            final_event = updated
            try:
                final_event = await asyncio.to_thread(
                    self.calendar.update_event,
                    calendar_id,
                    payload.event_id,
                    updated.start,
                    updated.end,
                    summary,
                    upsert_manage_link_in_description(
                        updated.description, links["manage"]["url"]
                    ),
                    attendees,
                    "all",
                )
            except Exception as e:
                logger.exception(
                    f"Failed to refresh manage link on event {payload.event_id}: {e}"
                )
        except BookingError:
            raise
        except Exception as e:
            logger.error(f"Failed to reschedule event {payload.event_id}: {e}")
            raise classify_calendar_error(e, "Unexpected error while rescheduling.") from e

        logger.info(f"Rescheduled event {payload.event_id} to {to_iso_utc(start)}")
        return {
            "status": "rescheduled",
            "event": final_event.to_dict(),
            "calendarId": calendar_id,
            "managementLinks": links,
        }

    async def manage(
        self,
        token: Optional[str],
        base_url: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Describe a booking and re-mint its links from a manage token."""
        now = now or self._clock()
        payload = self._verify_token(token, "manage", now)
        meeting_type = self._meeting_type(payload.meeting_type_id)
        calendar_id = self._calendar_id(payload.calendar_id)

        identity = BookingIdentity(
            meeting_type_id=meeting_type.id,
            event_id=payload.event_id,
            guest_email=payload.guest_email,
            guest_name=payload.guest_name,
            calendar_id=calendar_id,
            slot_start=payload.slot_start,
            slot_end=payload.slot_end,
        )
        try:
            links = await asyncio.to_thread(
                self._management_links, identity, base_url, now
            )
        except SigningConfigError as e:
            raise classify_calendar_error(e) from e

        return {
            "status": "ok",
            "meetingType": meeting_type.to_dict(),
            "hostTimezone": self.host_timezone,
            "currentSlot": _current_slot(payload),
            "guest": _guest_summary(payload),
            "calendarId": calendar_id,
            "managementLinks": links,
        }

    def resolve_alias(self, alias: str) -> Optional[str]:
        """Return the manage token behind ``alias``, or None if unknown/expired."""
        if self.aliases is None:
            return None
        try:
            record = self.aliases.resolve(alias)
        except (OSError, ValueError) as e:
            logger.error(f"Could not read manage link aliases: {e}")
            raise BookingError(
                BookingStatus.ERROR, "We could not open this manage link right now.", 500
            )
        return record.token if record else None
