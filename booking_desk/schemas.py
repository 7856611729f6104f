"""Request bodies accepted by the booking endpoints."""

from dataclasses import dataclass, field
from typing import Any, Generic, List, Optional, Type, TypeVar

from pydantic import (
    AwareDatetime,
    BaseModel,
    ConfigDict,
    EmailStr,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

T = TypeVar("T", bound=BaseModel)


class SlotSelection(BaseModel):
    start: AwareDatetime
    end: AwareDatetime

    @model_validator(mode="after")
    def _end_after_start(self) -> "SlotSelection":
        if self.end <= self.start:
            raise ValueError("Slot end must be after slot start")
        return self


class GuestDetails(BaseModel):
    name: str
    email: EmailStr

    @field_validator("name")
    @classmethod
    def _name_required(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Name is required")
        return value

    @field_validator("email", mode="before")
    @classmethod
    def _strip_email(cls, value: Any) -> Any:
        return value.strip() if isinstance(value, str) else value


class BookingRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    meeting_type_id: str = Field(alias="meetingTypeId", min_length=1)
    slot: SlotSelection
    guest: GuestDetails
    guest_timezone: Optional[str] = Field(default=None, alias="guestTimezone")
    notes: Optional[str] = Field(default=None, max_length=1000)


class RescheduleRequest(BaseModel):
    token: str = Field(min_length=1)
    slot: SlotSelection


class CancelRequest(BaseModel):
    token: str = Field(min_length=1)


@dataclass
class ParseResult(Generic[T]):
    """Outcome of validating an untrusted request body."""

    value: Optional[T] = None
    issues: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.value is not None


def parse_request(model: Type[T], data: Any) -> ParseResult[T]:
    if not isinstance(data, dict):
        return ParseResult(issues=["Request body must be a JSON object"])
    try:
        return ParseResult(value=model.model_validate(data))
    except ValidationError as e:
        issues = []
        for error in e.errors():
            location = ".".join(str(part) for part in error.get("loc", ()))
            message = error.get("msg", "Invalid value")
            issues.append(f"{location}: {message}" if location else message)
        return ParseResult(issues=issues)
