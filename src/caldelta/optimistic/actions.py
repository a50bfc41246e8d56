"""Optimistic actions: pending local edits overlaid on the confirmed event list."""

from __future__ import annotations

import uuid
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field

from caldelta.models import CalendarEvent, CalendarRef, ProviderId


def _new_action_id() -> str:
    return uuid.uuid4().hex


class _ActionBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=_new_action_id)
    event_id: str = Field(min_length=1)


class CreateAction(_ActionBase):
    type: Literal["create"] = "create"
    event: CalendarEvent


class UpdateAction(_ActionBase):
    """Carries the full proposed event, not a patch.

    For a move, ``source`` is the calendar the event is leaving; ``event``
    already points at the destination.
    """

    type: Literal["update"] = "update"
    event: CalendarEvent
    source: CalendarRef | None = None


class DraftAction(_ActionBase):
    """A local-only event being composed; never sent to a provider."""

    type: Literal["draft"] = "draft"
    event: CalendarEvent


class DeleteAction(_ActionBase):
    type: Literal["delete"] = "delete"
    calendar_id: str
    account_id: str
    provider_id: ProviderId


OptimisticAction = Annotated[
    CreateAction | UpdateAction | DraftAction | DeleteAction,
    Field(discriminator="type"),
]


def create_action(event: CalendarEvent) -> CreateAction:
    return CreateAction(event_id=event.id, event=event)


def update_action(event: CalendarEvent, *, source: CalendarRef | None = None) -> UpdateAction:
    return UpdateAction(event_id=event.id, event=event, source=source)


def draft_action(event: CalendarEvent) -> DraftAction:
    return DraftAction(event_id=event.id, event=event)


def delete_action(event: CalendarEvent) -> DeleteAction:
    return DeleteAction(
        event_id=event.id,
        calendar_id=event.calendar_id,
        account_id=event.account_id,
        provider_id=event.provider_id,
    )
