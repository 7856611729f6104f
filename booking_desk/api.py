import asyncio
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Callable, Optional

import uvicorn
from fastapi import FastAPI, Query, Request, status
from fastapi.responses import JSONResponse, RedirectResponse

from booking_desk.alias_store import ManageLinkAliasStore
from booking_desk.availability import AvailabilityResolver, MeetingTypeCatalog
from booking_desk.booking import BookingService
from booking_desk.calendar_client import CalendarClient
from booking_desk.config import ServerConfig, load_config
from booking_desk.errors import BookingError, BookingStatus
from booking_desk.models import slots_to_dict
from booking_desk.schemas import (
    BookingRequest,
    CancelRequest,
    RescheduleRequest,
    parse_request,
)
from booking_desk.signing import LinkSigner
from booking_desk.slots import SlotEngine
from booking_desk.urls import resolve_app_base_url

logger = logging.getLogger(__name__)

logging.getLogger("httpx").setLevel(logging.WARNING)

DEFAULT_MEETING_TYPE_ID = "intro-30"

HEALTH_STATUS_CODES = {
    "ok": status.HTTP_200_OK,
    "degraded": status.HTTP_503_SERVICE_UNAVAILABLE,
    "error": status.HTTP_502_BAD_GATEWAY,
}


class AppState:
    def __init__(self):
        self.config: Optional[ServerConfig] = None
        self.calendar_client: Optional[CalendarClient] = None
        self.resolver: Optional[AvailabilityResolver] = None
        self.booking: Optional[BookingService] = None


state = AppState()


def configure(
    config: ServerConfig,
    calendar_client: Optional[CalendarClient] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> AppState:
    """Wire the booking services for ``config`` into the module state."""
    clock_kwargs: dict[str, Any] = {"clock": clock} if clock else {}

    calendar = calendar_client or CalendarClient(config.google)
    signer = LinkSigner(config.signing.secret, **clock_kwargs)
    aliases = ManageLinkAliasStore.at_path(config.alias_store.path, **clock_kwargs)
    resolver = AvailabilityResolver(
        SlotEngine.from_config(config.scheduling),
        MeetingTypeCatalog(config.meeting_types),
        calendar,
        **clock_kwargs,
    )

    state.config = config
    state.calendar_client = calendar
    state.resolver = resolver
    state.booking = BookingService(
        config, signer, resolver, calendar, aliases, **clock_kwargs
    )
    return state


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan handler - wires services from config unless already configured."""
    logger.info("Starting booking-desk...")
    if state.booking is None:
        configure(load_config(os.environ.get("BOOKING_DESK_CONFIG")))
    yield
    logger.info("Shutting down booking-desk...")


app = FastAPI(title="Booking Desk", lifespan=lifespan)


def _service() -> BookingService:
    if state.booking is None:
        raise BookingError(BookingStatus.ERROR, "Booking service is not configured.", 500)
    return state.booking


def _resolver() -> AvailabilityResolver:
    if state.resolver is None:
        raise BookingError(BookingStatus.ERROR, "Booking service is not configured.", 500)
    return state.resolver


def _base_url(request: Request) -> str:
    app_url = state.config.app_url if state.config else None
    return resolve_app_base_url(app_url, request.headers)


async def _json_body(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError:
        return None


def _method_not_allowed(allow: str, message: str) -> JSONResponse:
    return JSONResponse(
        {"status": BookingStatus.INVALID_TOKEN.value, "message": message},
        status_code=status.HTTP_405_METHOD_NOT_ALLOWED,
        headers={"Allow": allow},
    )


@app.exception_handler(BookingError)
async def booking_error_handler(request: Request, exc: BookingError):
    return JSONResponse(exc.to_dict(), status_code=exc.http_status)


# ============================================================================
# Status endpoints
# ============================================================================


@app.get("/health")
async def health():
    return {"status": "ok", "service": "booking-desk"}


@app.get("/api/integrations/google/health")
async def google_health():
    if state.calendar_client is None:
        raise BookingError(BookingStatus.ERROR, "Booking service is not configured.", 500)
    report = await asyncio.to_thread(state.calendar_client.health)
    return JSONResponse(
        report,
        status_code=HEALTH_STATUS_CODES.get(
            report["status"], status.HTTP_502_BAD_GATEWAY
        ),
    )


# ============================================================================
# Availability endpoints
# ============================================================================


@app.get("/api/meeting-types")
async def list_meeting_types():
    resolver = _resolver()
    return {"meetingTypes": [mt.to_dict() for mt in resolver.catalog.active()]}


@app.get("/api/availability")
async def get_availability(
    meeting_type_id: str = Query(DEFAULT_MEETING_TYPE_ID, alias="meetingTypeId"),
):
    resolver = _resolver()
    availability = await resolver.resolve(meeting_type_id)

    result: dict[str, Any] = {
        "meetingTypeId": meeting_type_id,
        "hostTimezone": resolver.engine.host_timezone,
        "days": [
            {
                "date": date_key,
                "hasAvailability": len(slots) > 0,
                "totalSlots": len(slots),
            }
            for date_key, slots in availability.slots_by_date.items()
        ],
        "source": availability.source,
        "fallback": availability.fallback,
    }
    if availability.fallback and availability.message:
        result["message"] = availability.message
    return result


@app.get("/api/slots")
async def get_slots(
    meeting_type_id: str = Query(DEFAULT_MEETING_TYPE_ID, alias="meetingTypeId"),
    date: Optional[str] = None,
):
    resolver = _resolver()
    availability = await resolver.resolve(meeting_type_id)
    slots_by_date = slots_to_dict(availability.slots_by_date)

    result: dict[str, Any] = {
        "meetingTypeId": meeting_type_id,
        "hostTimezone": resolver.engine.host_timezone,
        "date": date,
        "slots": slots_by_date.get(date, []) if date else slots_by_date,
        "source": availability.source,
        "fallback": availability.fallback,
    }
    if availability.fallback and availability.message:
        result["message"] = availability.message
    return result


# ============================================================================
# Guest actions
# ============================================================================


@app.post("/api/book")
async def book(request: Request):
    parsed = parse_request(BookingRequest, await _json_body(request))
    if not parsed.ok:
        return JSONResponse(
            {
                "status": BookingStatus.INVALID.value,
                "message": "The booking payload is invalid.",
                "issues": parsed.issues,
            },
            status_code=status.HTTP_400_BAD_REQUEST,
        )

    result = await _service().book(parsed.value, base_url=_base_url(request))
    return JSONResponse(result, status_code=status.HTTP_201_CREATED)


@app.post("/api/cancel")
async def cancel(request: Request, token: Optional[str] = None):
    if not token and "application/json" in request.headers.get("content-type", "").lower():
        parsed = parse_request(CancelRequest, await _json_body(request))
        if parsed.ok:
            token = parsed.value.token

    result = await _service().cancel(token)
    status_code = (
        status.HTTP_410_GONE
        if result["status"] == BookingStatus.NOT_FOUND.value
        else status.HTTP_200_OK
    )
    return JSONResponse(result, status_code=status_code)


@app.get("/api/cancel")
async def cancel_via_get():
    return _method_not_allowed("POST", "Use POST with a signed token to cancel a meeting.")


@app.get("/api/reschedule")
async def reschedule_options(token: Optional[str] = None):
    return await _service().reschedule_options(token)


@app.patch("/api/reschedule")
async def reschedule(request: Request):
    parsed = parse_request(RescheduleRequest, await _json_body(request))
    if not parsed.ok:
        return JSONResponse(
            {
                "status": BookingStatus.INVALID_TOKEN.value,
                "message": "Reschedule request payload is invalid.",
                "issues": parsed.issues,
            },
            status_code=status.HTTP_400_BAD_REQUEST,
        )
    return await _service().reschedule(parsed.value, base_url=_base_url(request))


@app.get("/api/manage")
async def manage(request: Request, token: Optional[str] = None):
    return await _service().manage(token, base_url=_base_url(request))


@app.post("/api/manage")
async def manage_via_post():
    return _method_not_allowed("GET", "Use GET with a signed token to view meeting management.")


@app.get("/manage/{token}")
async def manage_page(request: Request, token: str):
    return await _service().manage(token, base_url=_base_url(request))


@app.get("/m/{alias}")
async def resolve_manage_alias(alias: str):
    token = await asyncio.to_thread(_service().resolve_alias, alias)
    if not token:
        return JSONResponse(
            {
                "status": BookingStatus.NOT_FOUND.value,
                "message": "This manage link is no longer available.",
            },
            status_code=status.HTTP_404_NOT_FOUND,
        )
    return RedirectResponse(
        f"/manage/{token}", status_code=status.HTTP_307_TEMPORARY_REDIRECT
    )


def run_server():
    import argparse

    parser = argparse.ArgumentParser(description="Booking Desk scheduling API")
    parser.add_argument(
        "--host", type=str, default="127.0.0.1", help="TCP host to bind to"
    )
    parser.add_argument("--port", type=int, default=8000, help="TCP port to bind to")
    parser.add_argument(
        "--config",
        type=str,
        default=os.environ.get("BOOKING_DESK_CONFIG"),
        help="Path to a YAML configuration file",
    )
    args = parser.parse_args()

    configure(load_config(args.config))

    logger.info(f"Starting Booking Desk API on {args.host}:{args.port}")
    config = uvicorn.Config(app, host=args.host, port=args.port, log_level="info")
    server = uvicorn.Server(config)
    server.run()
