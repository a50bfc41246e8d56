"""Provider-agnostic calendar data model.

Every payload that crosses the provider boundary uses these shapes, whatever
the provider's native wire format. Event boundaries are timezone-aware
``datetime`` values carrying an IANA zone.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Annotated, Literal
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator, model_validator

SyncStatus = Literal["incremental", "full"]

EventKey = tuple[str, str, str, str]


class ProviderId(StrEnum):
    """Closed set of supported calendar providers."""

    google = "google"
    microsoft = "microsoft"


class ResponseStatus(StrEnum):
    """RSVP state of an attendee (or of the account owner for ``CalendarEvent.response``)."""

    accepted = "accepted"
    declined = "declined"
    tentative = "tentative"
    unknown = "unknown"


@dataclass(frozen=True, slots=True)
class CalendarRef:
    """Identifies one calendar of one connected account."""

    account_id: str
    calendar_id: str

    def __str__(self) -> str:
        return f"{self.account_id}:{self.calendar_id}"

    @classmethod
    def parse(cls, value: str) -> CalendarRef:
        """Parse the ``account:calendar`` form used by the CLI and HTTP surface."""
        account_id, sep, calendar_id = value.partition(":")
        if not sep or not account_id.strip() or not calendar_id.strip():
            raise ValueError(f"Calendar reference must look like 'account:calendar', got {value!r}")
        return cls(account_id=account_id.strip(), calendar_id=calendar_id.strip())


def ensure_valid_timezone(value: str) -> str:
    normalized = value.strip()
    try:
        ZoneInfo(normalized)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Invalid IANA time zone: {value!r}") from exc
    return normalized


def _require_aware(value: datetime, info: ValidationInfo) -> datetime:
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        raise ValueError(f"{info.field_name} must be timezone-aware")
    return value


class Calendar(BaseModel):
    """A calendar belonging to one provider account."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    name: str
    account_id: str = Field(min_length=1)
    provider_id: ProviderId
    provider_account_id: str
    primary: bool = False
    read_only: bool = False
    color: str | None = None
    time_zone: str | None = None

    @property
    def ref(self) -> CalendarRef:
        return CalendarRef(account_id=self.account_id, calendar_id=self.id)


class Attendee(BaseModel):
    """Event attendee with RSVP tracking."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    email: str
    display_name: str | None = None
    status: ResponseStatus = ResponseStatus.unknown
    optional: bool = False
    organizer: bool = False
    self_: bool = Field(default=False, alias="self")
    comment: str | None = None


class EventResponse(BaseModel):
    """The account owner's reply to an invitation."""

    model_config = ConfigDict(frozen=True)

    status: ResponseStatus
    comment: str | None = None
    send_update: bool = True


class CalendarEvent(BaseModel):
    """Canonical event shape shared across provider implementations."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    calendar_id: str = Field(min_length=1)
    account_id: str = Field(min_length=1)
    provider_id: ProviderId
    provider_account_id: str
    title: str = "(untitled)"
    description: str | None = None
    location: str | None = None
    start: datetime
    end: datetime
    time_zone: str = "UTC"
    all_day: bool = False
    recurring_event_id: str | None = None
    recurrence: list[str] = Field(default_factory=list)
    read_only: bool = False
    status: str | None = None
    attendees: list[Attendee] = Field(default_factory=list)
    response: EventResponse | None = None
    etag: str | None = None
    updated_at: datetime | None = None

    @field_validator("start", "end")
    @classmethod
    def _validate_aware(cls, value: datetime, info: ValidationInfo) -> datetime:
        return _require_aware(value, info)

    @model_validator(mode="after")
    def _validate_bounds(self) -> CalendarEvent:
        if self.end < self.start:
            raise ValueError(f"Event '{self.id}' ends before it starts")
        return self

    @property
    def key(self) -> EventKey:
        return (
            self.provider_id.value,
            self.provider_account_id,
            self.calendar_id,
            self.id,
        )

    @property
    def ref(self) -> CalendarRef:
        return CalendarRef(account_id=self.account_id, calendar_id=self.calendar_id)

    @property
    def start_instant(self) -> datetime:
        return self.start.astimezone(UTC)

    @property
    def end_instant(self) -> datetime:
        return self.end.astimezone(UTC)


class DeletedEventRef(BaseModel):
    """Identity of a deleted event; deletions carry no content."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    calendar_id: str
    account_id: str
    provider_id: ProviderId
    provider_account_id: str

    @property
    def key(self) -> EventKey:
        return (
            self.provider_id.value,
            self.provider_account_id,
            self.calendar_id,
            self.id,
        )


class UpdatedSyncItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: Literal["updated"] = "updated"
    event: CalendarEvent


class DeletedSyncItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: Literal["deleted"] = "deleted"
    event: DeletedEventRef


CalendarEventSyncItem = Annotated[
    UpdatedSyncItem | DeletedSyncItem,
    Field(discriminator="status"),
]


class SyncResult(BaseModel):
    """Outcome of one incremental (or fallback full) sync of a calendar."""

    changes: list[CalendarEventSyncItem] = Field(default_factory=list)
    sync_token: str | None = None
    status: SyncStatus = "incremental"
    recurring_master_events: list[CalendarEvent] = Field(default_factory=list)


class CalendarEventsResult(BaseModel):
    """Events of a time window plus the recurring series masters they reference."""

    events: list[CalendarEvent] = Field(default_factory=list)
    recurring_master_events: list[CalendarEvent] = Field(default_factory=list)


class FreeBusySlot(BaseModel):
    start: datetime
    end: datetime
    status: str = "busy"


class CalendarFreeBusy(BaseModel):
    schedule_id: str
    busy: list[FreeBusySlot] = Field(default_factory=list)


class CreateCalendarInput(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(min_length=1)

    @field_validator("name")
    @classmethod
    def _normalize_name(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("name must be a non-empty string")
        return normalized


class UpdateCalendarInput(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str | None = None
    color: str | None = None


def _localize(value: datetime, time_zone: str) -> datetime:
    if value.tzinfo is not None:
        return value
    return value.replace(tzinfo=ZoneInfo(time_zone))


class CreateEventInput(BaseModel):
    """Payload for creating an event.

    ``id`` is an optional client-generated identifier. Google keeps it as the
    event id; Microsoft always assigns its own. Naive boundaries are
    interpreted in ``time_zone``.
    """

    model_config = ConfigDict(extra="forbid")

    id: str | None = None
    title: str
    start: datetime
    end: datetime
    time_zone: str = "UTC"
    all_day: bool = False
    description: str | None = None
    location: str | None = None
    attendees: list[str] = Field(default_factory=list)
    recurrence: list[str] = Field(default_factory=list)

    @field_validator("title")
    @classmethod
    def _normalize_title(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("title must be a non-empty string")
        return normalized

    @field_validator("time_zone")
    @classmethod
    def _normalize_timezone(cls, value: str) -> str:
        return ensure_valid_timezone(value)

    @field_validator("attendees")
    @classmethod
    def _normalize_attendees(cls, value: list[str]) -> list[str]:
        return [email.strip() for email in value if email.strip()]

    @model_validator(mode="after")
    def _localize_bounds(self) -> CreateEventInput:
        self.start = _localize(self.start, self.time_zone)
        self.end = _localize(self.end, self.time_zone)
        if self.end < self.start:
            raise ValueError("end must not be before start")
        return self


class UpdateEventInput(BaseModel):
    """Partial event update; only explicitly set fields are sent to the provider."""

    model_config = ConfigDict(extra="forbid")

    title: str | None = None
    start: datetime | None = None
    end: datetime | None = None
    time_zone: str | None = None
    all_day: bool | None = None
    description: str | None = None
    location: str | None = None
    attendees: list[str] | None = None
    recurrence: list[str] | None = None
    response: EventResponse | None = None
    etag: str | None = None

    @field_validator("time_zone")
    @classmethod
    def _normalize_timezone(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return ensure_valid_timezone(value)

    @model_validator(mode="after")
    def _localize_bounds(self) -> UpdateEventInput:
        zone = self.time_zone or "UTC"
        if self.start is not None:
            self.start = _localize(self.start, zone)
        if self.end is not None:
            self.end = _localize(self.end, zone)
        if self.start is not None and self.end is not None and self.end < self.start:
            raise ValueError("end must not be before start")
        return self

    def apply_to(self, event: CalendarEvent) -> CalendarEvent:
        """Return ``event`` with this patch applied locally."""
        update: dict[str, object] = {}
        for field_name in (
            "title",
            "start",
            "end",
            "time_zone",
            "all_day",
            "description",
            "location",
            "recurrence",
            "response",
        ):
            if field_name in self.model_fields_set:
                value = getattr(self, field_name)
                if value is not None or field_name in {"description", "location", "response"}:
                    update[field_name] = value
        if self.attendees is not None:
            update["attendees"] = [Attendee(email=email) for email in self.attendees]
        # model_copy skips validation, so re-validate through the constructor.
        return CalendarEvent.model_validate({**event.model_dump(by_alias=True), **update})
