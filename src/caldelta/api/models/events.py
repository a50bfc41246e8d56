"""Request and response models for the event, sync and free/busy endpoints."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field, field_validator

from caldelta.models import CalendarEvent, CalendarRef, CreateEventInput, SyncStatus
from caldelta.optimistic.coordinator import MutationState


class CreateEventRequest(BaseModel):
    """Create an event in ``calendar`` (``account:calendar``)."""

    calendar: str
    event: CreateEventInput
    immediate: bool = False

    @field_validator("calendar")
    @classmethod
    def _check_calendar(cls, value: str) -> str:
        CalendarRef.parse(value)
        return value


class MoveEventRequest(BaseModel):
    destination_calendar_id: str = Field(min_length=1)
    notify_attendees: bool = True


class SyncRequest(BaseModel):
    """Sync one calendar; omit ``sync_token`` for a full sync over the window."""

    calendar: str
    sync_token: str | None = None
    time_min: datetime | None = None
    time_max: datetime | None = None
    time_zone: str | None = None

    @field_validator("calendar")
    @classmethod
    def _check_calendar(cls, value: str) -> str:
        CalendarRef.parse(value)
        return value


class FreeBusyRequest(BaseModel):
    schedule_ids: list[str] = Field(min_length=1)
    time_min: datetime
    time_max: datetime


class MutationResponse(BaseModel):
    """Outcome of a mutation accepted by the coordinator."""

    action_id: str
    kind: str
    state: MutationState
    event_id: str
    event: CalendarEvent | None = None


class SyncResponse(BaseModel):
    calendar: str
    status: SyncStatus
    sync_token: str | None = None
    updated: int = 0
    deleted: int = 0
