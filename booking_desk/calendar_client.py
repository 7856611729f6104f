"""Google Calendar client used for free/busy lookups and booking mutations."""

import json
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Union

import httplib2
from google.auth.exceptions import GoogleAuthError as GoogleAuthLibraryError
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from booking_desk.config import GoogleConfig, OAuth2Config
from booking_desk.errors import (
    GoogleApiError,
    GoogleAuthConfigError,
    GoogleAuthError,
    GoogleCalendarConfigError,
)
from booking_desk.models import CalendarEvent, parse_iso_datetime, to_iso_utc
from booking_desk.oauth2 import CALENDAR_SCOPES, GOOGLE_TOKEN_URI, get_access_token

logger = logging.getLogger(__name__)

logging.getLogger("googleapiclient.discovery_cache").setLevel(logging.WARNING)

SEND_UPDATES_VALUES = ("all", "externalOnly", "none")

DateLike = Union[datetime, str]


def _to_utc_iso(value: DateLike) -> str:
    parsed = parse_iso_datetime(value)
    if parsed is None:
        raise ValueError(f"Invalid date provided to Google API request: {value!r}")
    return to_iso_utc(parsed)


def _attendee_body(attendees: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    body = []
    for attendee in attendees:
        entry = {"email": attendee["email"]}
        if attendee.get("displayName"):
            entry["displayName"] = attendee["displayName"]
        body.append(entry)
    return body


def _map_event(payload: Any, fallback_start: str, fallback_end: str) -> CalendarEvent:
    event = payload if isinstance(payload, dict) else {}

    hangout_link = event.get("hangoutLink")
    if not isinstance(hangout_link, str):
        hangout_link = None
        entry_points = (event.get("conferenceData") or {}).get("entryPoints") or []
        for entry in entry_points:
            if entry.get("entryPointType") == "video" and isinstance(entry.get("uri"), str):
                hangout_link = entry["uri"]
                break

    start = (event.get("start") or {}).get("dateTime")
    end = (event.get("end") or {}).get("dateTime")
    attendees = event.get("attendees")

    return CalendarEvent(
        id=event.get("id") if isinstance(event.get("id"), str) else "",
        start=start if isinstance(start, str) else fallback_start,
        end=end if isinstance(end, str) else fallback_end,
        html_link=event.get("htmlLink") if isinstance(event.get("htmlLink"), str) else None,
        hangout_link=hangout_link,
        attendees=attendees if isinstance(attendees, list) else None,
        raw=event,
    )


def _api_error(error: HttpError, default_message: str) -> GoogleApiError:
    status = int(getattr(error.resp, "status", 0) or 0)
    body: Any = None
    try:
        body = json.loads(error.content)
    except (TypeError, ValueError):
        pass

    message = None
    if isinstance(body, dict) and isinstance(body.get("error"), dict):
        message = body["error"].get("message")
    if not isinstance(message, str) or not message:
        message = getattr(error, "reason", None) or default_message
    return GoogleApiError(message, status, body)


class CalendarClient:
    """Client for interacting with Google Calendar API."""

    def __init__(self, config: GoogleConfig):
        self.config: GoogleConfig = config
        self.service: Any = None
        self._oauth: Optional[OAuth2Config] = None

    def _get_credentials(self) -> Credentials:
        """Exchange the configured refresh token for API credentials."""
        if self._oauth is None:
            self._oauth = self.config.oauth2()

        access_token, _ = get_access_token(self._oauth)
        return Credentials(
            token=access_token,
            refresh_token=self._oauth.refresh_token,
            token_uri=GOOGLE_TOKEN_URI,
            client_id=self._oauth.client_id,
            client_secret=self._oauth.client_secret,
            scopes=CALENDAR_SCOPES,
        )

    def connect(self):
        """Initialize the Calendar service."""
        try:
            creds = self._get_credentials()
            self.service = build(
                "calendar", "v3", credentials=creds, cache_discovery=False
            )
            logger.info("Successfully connected to Google Calendar API")
        except Exception as e:
            logger.error(f"Failed to connect to Google Calendar: {e}")
            raise

    def _ensure_connected(self) -> Any:
        """Ensure service is connected and return it."""
        if not self.service:
            self.connect()
        if not self.service:
            raise RuntimeError("Failed to connect to Calendar service")
        return self.service

    def calendar_ids(self) -> List[str]:
        return self.config.require_calendar_ids()

    def _execute(self, request: Any, default_message: str) -> Any:
        try:
            return request.execute()
        except HttpError as e:
            raise _api_error(e, default_message) from e
        except GoogleAuthLibraryError as e:
            raise GoogleAuthError(f"Google credentials were rejected: {e}", 401) from e
        except (httplib2.HttpLib2Error, OSError) as e:
            raise GoogleApiError(f"{default_message} ({e})", 503) from e

    def free_busy(
        self,
        time_min: DateLike,
        time_max: DateLike,
        calendar_ids: Optional[List[str]] = None,
    ) -> Dict[str, List[Dict[str, str]]]:
        """Return busy ranges keyed by calendar ID."""
        calendar_ids = calendar_ids or self.calendar_ids()
        service = self._ensure_connected()

        body = {
            "timeMin": _to_utc_iso(time_min),
            "timeMax": _to_utc_iso(time_max),
            "items": [{"id": calendar_id} for calendar_id in calendar_ids],
        }
        payload = self._execute(
            service.freebusy().query(body=body),
            "Failed to fetch Google Calendar FreeBusy data.",
        )

        calendars = (payload or {}).get("calendars") or {}
        result: Dict[str, List[Dict[str, str]]] = {}
        for calendar_id in calendar_ids:
            entry = calendars.get(calendar_id) or {}
            if entry.get("errors"):
                logger.warning(f"FreeBusy errors for {calendar_id}: {entry['errors']}")
            result[calendar_id] = [
                {"start": busy.get("start"), "end": busy.get("end")}
                for busy in entry.get("busy") or []
            ]
        return result

    def create_event(
        self,
        calendar_id: str,
        summary: str,
        start: DateLike,
        end: DateLike,
        description: Optional[str] = None,
        attendees: Optional[List[Dict[str, Any]]] = None,
        send_updates: str = "all",
    ) -> CalendarEvent:
        """Create an event with a Google Meet conference attached."""
        service = self._ensure_connected()
        start_iso = _to_utc_iso(start)
        end_iso = _to_utc_iso(end)

        body: Dict[str, Any] = {
            "summary": summary,
            "start": {"dateTime": start_iso, "timeZone": "UTC"},
            "end": {"dateTime": end_iso, "timeZone": "UTC"},
            "attendees": _attendee_body(attendees or []),
            "conferenceData": {
                "createRequest": {
                    "conferenceSolutionKey": {"type": "hangoutsMeet"},
                    "requestId": str(uuid.uuid4()),
                }
            },
        }
        if description is not None:
            body["description"] = description

        payload = self._execute(
            service.events().insert(
                calendarId=calendar_id,
                body=body,
                sendUpdates=send_updates,
                conferenceDataVersion=1,
            ),
            "Failed to create Google Calendar event.",
        )
        event = _map_event(payload, start_iso, end_iso)
        logger.info(f"Created event {event.id} on {calendar_id}")
        return event

    def update_event(
        self,
        calendar_id: str,
        event_id: str,
        start: DateLike,
        end: DateLike,
        summary: Optional[str] = None,
        description: Optional[str] = None,
        attendees: Optional[List[Dict[str, Any]]] = None,
        send_updates: str = "all",
    ) -> CalendarEvent:
        """Patch an event's time and, optionally, its summary/description/attendees."""
        service = self._ensure_connected()
        start_iso = _to_utc_iso(start)
        end_iso = _to_utc_iso(end)

        body: Dict[str, Any] = {
            "start": {"dateTime": start_iso, "timeZone": "UTC"},
            "end": {"dateTime": end_iso, "timeZone": "UTC"},
        }
        if summary is not None:
            body["summary"] = summary
        if description is not None:
            body["description"] = description
        if attendees:
            body["attendees"] = _attendee_body(attendees)

        payload = self._execute(
            service.events().patch(
                calendarId=calendar_id,
                eventId=event_id,
                body=body,
                sendUpdates=send_updates,
                conferenceDataVersion=1,
            ),
            "Failed to update Google Calendar event.",
        )
        return _map_event(payload, start_iso, end_iso)

    def delete_event(
        self, calendar_id: str, event_id: str, send_updates: str = "all"
    ) -> str:
        """Delete an event. Returns ``"deleted"`` or ``"not_found"``."""
        service = self._ensure_connected()
        try:
            self._execute(
                service.events().delete(
                    calendarId=calendar_id, eventId=event_id, sendUpdates=send_updates
                ),
                "Failed to delete Google Calendar event.",
            )
        except GoogleApiError as e:
            if e.status in (404, 410):
                return "not_found"
            raise
        return "deleted"

    def health(self, now: Optional[datetime] = None) -> Dict[str, str]:
        """Probe free/busy for the next hour and summarize reachability."""
        try:
            calendar_ids = self.calendar_ids()
            start = now or datetime.now(timezone.utc)
            self.free_busy(start, start + timedelta(hours=1), calendar_ids)
            return {
                "status": "ok",
                "detail": f"Google Calendar reachable ({', '.join(calendar_ids)})",
                "source": "live",
            }
        except (GoogleAuthConfigError, GoogleCalendarConfigError, GoogleApiError) as e:
            return {"status": "degraded", "detail": str(e), "source": "live"}
        except GoogleAuthError as e:
            return {"status": "error", "detail": str(e), "source": "live"}
        except Exception:
            logger.exception("Unexpected error while checking Google Calendar health")
            return {
                "status": "error",
                "detail": "Unexpected error while checking Google Calendar health.",
                "source": "live",
            }
