"""Configuration handling for the booking service."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo

import yaml  # type: ignore
from dotenv import load_dotenv

from booking_desk.errors import GoogleAuthConfigError, GoogleCalendarConfigError
from booking_desk.models import AvailabilityRule, MeetingType

logger = logging.getLogger(__name__)


# Load environment variables from .env file if it exists
load_dotenv()

DEFAULT_HOST_TIMEZONE = "America/Los_Angeles"
DEFAULT_ALIAS_STORE_PATH = Path(".cache") / "manage-aliases.json"


def _default_rules() -> List[AvailabilityRule]:
    return [
        AvailabilityRule(weekday=day, start="09:00", end="17:00")
        for day in ("monday", "tuesday", "wednesday", "thursday", "friday")
    ]


def _default_meeting_types() -> List[MeetingType]:
    return [
        MeetingType(
            id="intro-30",
            title="Introductory Call",
            description="A short call to get to know each other.",
            duration_minutes=30,
            is_active=True,
        )
    ]


def _split_ids(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


@dataclass
class OAuth2Config:
    """OAuth2 client credentials for the Google Calendar API."""

    client_id: str
    client_secret: str
    refresh_token: str
    access_token: Optional[str] = None
    token_expiry: Optional[int] = None


@dataclass
class GoogleConfig:
    """Google account and calendars consulted for availability."""

    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    refresh_token: Optional[str] = None
    calendar_ids: List[str] = field(default_factory=list)

    def oauth2(self) -> OAuth2Config:
        """Return OAuth2 credentials, raising if any are missing."""
        missing = []
        if not self.client_id:
            missing.append("GOOGLE_CLIENT_ID")
        if not self.client_secret:
            missing.append("GOOGLE_CLIENT_SECRET")
        if not self.refresh_token:
            missing.append("GOOGLE_REFRESH_TOKEN")
        if missing:
            raise GoogleAuthConfigError(
                f"Missing required Google OAuth environment variables: {', '.join(missing)}",
                missing,
            )
        return OAuth2Config(
            client_id=self.client_id or "",
            client_secret=self.client_secret or "",
            refresh_token=self.refresh_token or "",
        )

    def require_calendar_ids(self) -> List[str]:
        if not self.calendar_ids:
            raise GoogleCalendarConfigError(
                "Missing GOOGLE_CALENDAR_ID environment variable. "
                "Provide a calendar ID or comma-separated IDs."
            )
        return list(self.calendar_ids)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GoogleConfig":
        raw_ids = data.get("calendar_ids")
        if isinstance(raw_ids, str):
            calendar_ids = _split_ids(raw_ids)
        elif raw_ids:
            calendar_ids = [str(cid).strip() for cid in raw_ids if str(cid).strip()]
        else:
            calendar_ids = _split_ids(
                os.environ.get("GOOGLE_CALENDAR_ID")
                or os.environ.get("GOOGLE_CALENDAR_IDS")
            )

        return cls(
            client_id=data.get("client_id") or os.environ.get("GOOGLE_CLIENT_ID"),
            client_secret=data.get("client_secret")
            or os.environ.get("GOOGLE_CLIENT_SECRET"),
            refresh_token=data.get("refresh_token")
            or os.environ.get("GOOGLE_REFRESH_TOKEN"),
            calendar_ids=calendar_ids,
        )


@dataclass
class SchedulingConfig:
    """Host business hours and booking window."""

    host_timezone: str = DEFAULT_HOST_TIMEZONE
    max_days_out: int = 14
    min_notice_minutes: int = 120
    availability_rules: List[AvailabilityRule] = field(default_factory=_default_rules)

    def __post_init__(self):
        try:
            ZoneInfo(self.host_timezone)
        except Exception as e:
            raise ValueError(
                f"Invalid timezone '{self.host_timezone}': {e}. "
                "Must be a valid IANA timezone (e.g., 'America/Los_Angeles')"
            )
        if self.max_days_out < 0:
            raise ValueError(f"max_days_out must be >= 0, got {self.max_days_out}")
        if self.min_notice_minutes < 0:
            raise ValueError(
                f"min_notice_minutes must be >= 0, got {self.min_notice_minutes}"
            )

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.host_timezone)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SchedulingConfig":
        host_timezone = (
            os.environ.get("TZ_DEFAULT_HOST")
            or os.environ.get("HOST_TIMEZONE")
            or data.get("host_timezone")
            or DEFAULT_HOST_TIMEZONE
        )
        rules_data = data.get("availability_rules")
        rules = (
            [AvailabilityRule.from_dict(rule) for rule in rules_data]
            if rules_data is not None
            else _default_rules()
        )
        return cls(
            host_timezone=host_timezone,
            max_days_out=int(data.get("max_days_out", 14)),
            min_notice_minutes=int(data.get("min_notice_minutes", 120)),
            availability_rules=rules,
        )


@dataclass
class SigningConfig:
    """Secret and lifetime for signed management links."""

    secret: Optional[str] = None
    link_ttl_days: int = 7

    def __post_init__(self):
        if self.link_ttl_days <= 0:
            raise ValueError(f"link_ttl_days must be positive, got {self.link_ttl_days}")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SigningConfig":
        return cls(
            secret=data.get("secret") or os.environ.get("SIGNING_SECRET"),
            link_ttl_days=int(data.get("link_ttl_days", 7)),
        )


@dataclass
class AliasStoreConfig:
    path: Path = DEFAULT_ALIAS_STORE_PATH

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AliasStoreConfig":
        env_path = (os.environ.get("MANAGE_ALIAS_STORE_PATH") or "").strip()
        path = env_path or data.get("path")
        return cls(path=Path(path).expanduser() if path else DEFAULT_ALIAS_STORE_PATH)


@dataclass
class ServerConfig:
    """Booking service configuration."""

    google: GoogleConfig = field(default_factory=GoogleConfig)
    scheduling: SchedulingConfig = field(default_factory=SchedulingConfig)
    meeting_types: List[MeetingType] = field(default_factory=_default_meeting_types)
    signing: SigningConfig = field(default_factory=SigningConfig)
    alias_store: AliasStoreConfig = field(default_factory=AliasStoreConfig)
    app_url: Optional[str] = None

    def __post_init__(self):
        ids = [meeting_type.id for meeting_type in self.meeting_types]
        duplicates = sorted({mid for mid in ids if ids.count(mid) > 1})
        if duplicates:
            raise ValueError(f"Duplicate meeting type ids: {', '.join(duplicates)}")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ServerConfig":
        """Create configuration from dictionary."""
        types_data = data.get("meeting_types")
        meeting_types = (
            [MeetingType.from_dict(item) for item in types_data]
            if types_data is not None
            else _default_meeting_types()
        )
        return cls(
            google=GoogleConfig.from_dict(data.get("google") or {}),
            scheduling=SchedulingConfig.from_dict(data.get("scheduling") or {}),
            meeting_types=meeting_types,
            signing=SigningConfig.from_dict(data.get("signing") or {}),
            alias_store=AliasStoreConfig.from_dict(data.get("alias_store") or {}),
            app_url=data.get("app_url")
            or os.environ.get("APP_URL")
            or os.environ.get("PUBLIC_APP_URL"),
        )


def load_config(config_path: Optional[str] = None) -> ServerConfig:
    """Load configuration from file or environment variables.

    Args:
        config_path: Path to configuration file

    Returns:
        Server configuration

    Raises:
        ValueError: If configuration is invalid
    """
    default_locations = [
        Path("config/config.yaml"),
        Path("config/config.yml"),
        Path("config.yaml"),
        Path("config.yml"),
        Path("~/.config/booking-desk/config.yaml"),
        Path("/etc/booking-desk/config.yaml"),
    ]

    config_data: Dict[str, Any] = {}

    if config_path:
        try:
            with open(config_path, "r") as f:
                config_data = yaml.safe_load(f) or {}
            logger.info(f"Loaded configuration from {config_path}")
        except FileNotFoundError:
            logger.warning(f"Configuration file not found: {config_path}")
    else:
        for path in default_locations:
            expanded_path = path.expanduser()
            if expanded_path.exists():
                with open(expanded_path, "r") as f:
                    config_data = yaml.safe_load(f) or {}
                logger.info(f"Loaded configuration from {expanded_path}")
                break

    if not config_data:
        logger.info("No configuration file found, using environment variables")

    try:
        return ServerConfig.from_dict(config_data)
    except KeyError as e:
        raise ValueError(f"Missing required configuration: {e}")
