"""Signed-link meeting booking service backed by Google Calendar."""

from booking_desk.alias_store import ManageLinkAliasStore
from booking_desk.availability import AvailabilityResolver, MeetingTypeCatalog
from booking_desk.booking import BookingService
from booking_desk.signing import LinkSigner
from booking_desk.slots import SlotEngine
