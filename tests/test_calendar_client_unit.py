"""Unit tests for the Calendar API client."""

import json
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import httplib2
import pytest
from googleapiclient.errors import HttpError

from booking_desk.calendar_client import CalendarClient
from booking_desk.config import GoogleConfig
from booking_desk.errors import GoogleApiError, GoogleAuthConfigError, GoogleAuthError

HOST_CALENDAR = "host@example.com"
START = datetime(2026, 10, 21, 16, 0, tzinfo=timezone.utc)
END = datetime(2026, 10, 21, 16, 30, tzinfo=timezone.utc)


def http_error(status, message="Backend Error"):
    body = json.dumps({"error": {"code": status, "message": message}}).encode()
    return HttpError(httplib2.Response({"status": status}), body)


@pytest.fixture
def client(server_config, mock_calendar_service):
    client = CalendarClient(server_config.google)
    client.service = mock_calendar_service
    return client


def test_free_busy(client, mock_calendar_service):
    """Test checking busy ranges."""
    busy = client.free_busy(
        "2026-10-21T07:00:00Z", datetime(2026, 10, 22, 7, 0, tzinfo=timezone.utc)
    )

    assert busy == {
        HOST_CALENDAR: [
            {"start": "2026-10-21T17:00:00Z", "end": "2026-10-21T18:00:00Z"}
        ]
    }
    mock_calendar_service.freebusy().query.assert_called_with(
        body={
            "timeMin": "2026-10-21T07:00:00.000Z",
            "timeMax": "2026-10-22T07:00:00.000Z",
            "items": [{"id": HOST_CALENDAR}],
        }
    )


def test_free_busy_missing_calendar_is_empty(client, mock_calendar_service):
    busy = client.free_busy(START, END, ["other@example.com"])
    assert busy == {"other@example.com": []}


def test_free_busy_rejects_bad_dates(client):
    with pytest.raises(ValueError):
        client.free_busy("not a date", END)


def test_create_event(client, mock_calendar_service):
    """Test creating an event with a Meet conference."""
    event = client.create_event(
        HOST_CALENDAR,
        "Introductory Call with Ada",
        START,
        END,
        description="Guest: Ada",
        attendees=[{"email": "ada@example.com", "displayName": "Ada"}],
        send_updates="none",
    )

    assert event.id == "evt123"
    assert event.hangout_link == "https://meet.google.com/abc-defg-hij"
    assert event.start == "2026-10-21T16:00:00Z"

    kwargs = mock_calendar_service.events().insert.call_args.kwargs
    assert kwargs["calendarId"] == HOST_CALENDAR
    assert kwargs["sendUpdates"] == "none"
    assert kwargs["conferenceDataVersion"] == 1
    body = kwargs["body"]
    assert body["start"] == {"dateTime": "2026-10-21T16:00:00.000Z", "timeZone": "UTC"}
    assert body["attendees"] == [{"email": "ada@example.com", "displayName": "Ada"}]
    assert body["description"] == "Guest: Ada"
    create_request = body["conferenceData"]["createRequest"]
    assert create_request["conferenceSolutionKey"] == {"type": "hangoutsMeet"}
    assert create_request["requestId"]


def test_update_event_uses_patch(client, mock_calendar_service):
    mock_calendar_service.events().patch().execute.return_value = {
        "id": "evt123",
        "start": {"dateTime": "2026-10-22T16:00:00Z"},
        "end": {"dateTime": "2026-10-22T16:30:00Z"},
        "conferenceData": {
            "entryPoints": [
                {"entryPointType": "phone", "uri": "tel:+1-555"},
                {"entryPointType": "video", "uri": "https://meet.google.com/xyz"},
            ]
        },
        "description": "Guest: Ada",
    }

    event = client.update_event(
        HOST_CALENDAR,
        "evt123",
        "2026-10-22T16:00:00Z",
        "2026-10-22T16:30:00Z",
        summary="Intro with Ada",
        send_updates="none",
    )

    assert event.hangout_link == "https://meet.google.com/xyz"
    assert event.description == "Guest: Ada"
    kwargs = mock_calendar_service.events().patch.call_args.kwargs
    assert kwargs["eventId"] == "evt123"
    assert kwargs["sendUpdates"] == "none"
    assert kwargs["body"] == {
        "start": {"dateTime": "2026-10-22T16:00:00.000Z", "timeZone": "UTC"},
        "end": {"dateTime": "2026-10-22T16:30:00.000Z", "timeZone": "UTC"},
        "summary": "Intro with Ada",
    }


def test_update_event_falls_back_to_requested_times(client, mock_calendar_service):
    mock_calendar_service.events().patch().execute.return_value = {"id": "evt123"}
    event = client.update_event(HOST_CALENDAR, "evt123", START, END)
    assert event.start == "2026-10-21T16:00:00.000Z"
    assert event.end == "2026-10-21T16:30:00.000Z"
    assert event.hangout_link is None


def test_update_event_http_error(client, mock_calendar_service):
    mock_calendar_service.events().patch().execute.side_effect = http_error(500)

    with pytest.raises(GoogleApiError) as exc_info:
        client.update_event(HOST_CALENDAR, "evt123", START, END)

    assert exc_info.value.status == 500
    assert str(exc_info.value) == "Backend Error"
    assert exc_info.value.response_body["error"]["code"] == 500


@pytest.mark.parametrize("status", [404, 410])
def test_delete_missing_event(client, mock_calendar_service, status):
    mock_calendar_service.events().delete().execute.side_effect = http_error(
        status, "Not Found"
    )
    assert client.delete_event(HOST_CALENDAR, "evt123") == "not_found"


def test_delete_event(client, mock_calendar_service):
    mock_calendar_service.events().delete().execute.return_value = ""
    assert client.delete_event(HOST_CALENDAR, "evt123") == "deleted"
    mock_calendar_service.events().delete.assert_called_with(
        calendarId=HOST_CALENDAR, eventId="evt123", sendUpdates="all"
    )


def test_delete_event_other_errors_propagate(client, mock_calendar_service):
    mock_calendar_service.events().delete().execute.side_effect = http_error(403, "Forbidden")
    with pytest.raises(GoogleApiError) as exc_info:
        client.delete_event(HOST_CALENDAR, "evt123")
    assert exc_info.value.status == 403


def test_network_errors_become_api_errors(client, mock_calendar_service):
    mock_calendar_service.freebusy().query().execute.side_effect = ConnectionResetError(
        "connection reset"
    )
    with pytest.raises(GoogleApiError) as exc_info:
        client.free_busy(START, END)
    assert exc_info.value.status == 503


class TestConnection:
    def test_credentials_from_refresh_token(self, server_config):
        client = CalendarClient(server_config.google)
        with patch(
            "booking_desk.calendar_client.get_access_token",
            return_value=("fresh-token", 1_900_000_000),
        ) as mock_token:
            creds = client._get_credentials()

        assert creds.token == "fresh-token"
        assert creds.refresh_token == "mock_refresh_token"
        assert creds.client_id == "mock_client_id"
        mock_token.assert_called_once()

    def test_connect_builds_service(self, server_config):
        client = CalendarClient(server_config.google)
        with patch(
            "booking_desk.calendar_client.get_access_token",
            return_value=("fresh-token", 1_900_000_000),
        ), patch("booking_desk.calendar_client.build") as mock_build:
            mock_build.return_value = MagicMock()
            client.connect()

        assert client.service is mock_build.return_value
        assert mock_build.call_args.args == ("calendar", "v3")

    def test_missing_oauth_settings(self):
        client = CalendarClient(GoogleConfig(calendar_ids=[HOST_CALENDAR]))
        with pytest.raises(GoogleAuthConfigError) as exc_info:
            client.connect()
        assert exc_info.value.missing_env == [
            "GOOGLE_CLIENT_ID",
            "GOOGLE_CLIENT_SECRET",
            "GOOGLE_REFRESH_TOKEN",
        ]


class TestHealth:
    def test_ok(self, client):
        report = client.health(now=START)
        assert report["status"] == "ok"
        assert HOST_CALENDAR in report["detail"]
        assert report["source"] == "live"

    def test_missing_calendar_is_degraded(self, mock_calendar_service):
        client = CalendarClient(GoogleConfig(client_id="id", client_secret="s", refresh_token="r"))
        client.service = mock_calendar_service
        report = client.health(now=START)
        assert report["status"] == "degraded"
        assert "GOOGLE_CALENDAR_ID" in report["detail"]

    def test_api_error_is_degraded(self, client, mock_calendar_service):
        mock_calendar_service.freebusy().query().execute.side_effect = http_error(429, "Rate Limit")
        assert client.health(now=START)["status"] == "degraded"

    def test_auth_error(self, server_config):
        client = CalendarClient(server_config.google)
        with patch(
            "booking_desk.calendar_client.get_access_token",
            side_effect=GoogleAuthError("invalid_grant: Token has been revoked.", 400),
        ):
            report = client.health(now=START)
        assert report["status"] == "error"
        assert "invalid_grant" in report["detail"]
