"""Event endpoints: aggregated reads and optimistic mutations.

Reads return either the confirmed events (``view=confirmed``) or the display
list with pending optimistic actions applied (``view=display``, the default).
Mutations go through the ``MutationCoordinator`` and report the committed
action; provider failures surface through the shared error handlers after the
optimistic state has been rolled back.

Provides a single router mounted at ``/api/events``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from fastapi import APIRouter, Depends, Query

from caldelta.api.deps import get_coordinator, get_service
from caldelta.api.models import ApiMeta, ApiResponse
from caldelta.api.models.events import CreateEventRequest, MoveEventRequest, MutationResponse
from caldelta.models import CalendarEvent, CalendarRef, EventResponse, UpdateEventInput
from caldelta.optimistic.coordinator import Mutation, MutationCoordinator
from caldelta.service import CalendarService

router = APIRouter(prefix="/api/events", tags=["events"])

_EVENT_PATH = "/{account_id}/{calendar_id}/{event_id}"


def _mutation_response(mutation: Mutation) -> ApiResponse[MutationResponse]:
    return ApiResponse[MutationResponse](
        data=MutationResponse(
            action_id=mutation.action.id,
            kind=mutation.kind,
            state=mutation.state,
            event_id=mutation.action.event_id,
            event=mutation.result,
        )
    )


# ---------------------------------------------------------------------------
# Read endpoints
# ---------------------------------------------------------------------------


@router.get("", response_model=ApiResponse[list[CalendarEvent]])
async def list_events(
    time_min: datetime,
    time_max: datetime,
    calendar: list[str] | None = Query(default=None),
    time_zone: str | None = None,
    view: Literal["display", "confirmed"] = "display",
    service: CalendarService = Depends(get_service),
) -> ApiResponse[list[CalendarEvent]]:
    """Return the events of ``calendar`` refs (default: every calendar) in the window."""
    if time_max <= time_min:
        raise ValueError("time_max must be after time_min")
    refs = [CalendarRef.parse(value) for value in calendar] if calendar else None

    if view == "confirmed":
        result = await service.confirmed_events(refs, time_min, time_max, time_zone)
        meta = ApiMeta(
            count=len(result.events),
            view=view,
            recurring_masters=len(result.recurring_master_events),
        )
        return ApiResponse[list[CalendarEvent]](data=result.events, meta=meta)

    events = await service.display_events(refs, time_min, time_max, time_zone)
    return ApiResponse[list[CalendarEvent]](data=events, meta=ApiMeta(count=len(events), view=view))


@router.get(_EVENT_PATH, response_model=ApiResponse[CalendarEvent])
async def get_event(
    account_id: str,
    calendar_id: str,
    event_id: str,
    time_zone: str | None = None,
    service: CalendarService = Depends(get_service),
) -> ApiResponse[CalendarEvent]:
    event = await service.get_event(CalendarRef(account_id, calendar_id), event_id, time_zone)
    return ApiResponse[CalendarEvent](data=event)


# ---------------------------------------------------------------------------
# Write endpoints (optimistic)
# ---------------------------------------------------------------------------


@router.post("", status_code=201, response_model=ApiResponse[MutationResponse])
async def create_event(
    request: CreateEventRequest,
    coordinator: MutationCoordinator = Depends(get_coordinator),
) -> ApiResponse[MutationResponse]:
    mutation = await coordinator.create_event(
        CalendarRef.parse(request.calendar),
        request.event,
        immediate=request.immediate,
    )
    return _mutation_response(mutation)


@router.patch(_EVENT_PATH, response_model=ApiResponse[MutationResponse])
async def update_event(
    account_id: str,
    calendar_id: str,
    event_id: str,
    patch: UpdateEventInput,
    immediate: bool = False,
    service: CalendarService = Depends(get_service),
    coordinator: MutationCoordinator = Depends(get_coordinator),
) -> ApiResponse[MutationResponse]:
    event = await service.get_event(CalendarRef(account_id, calendar_id), event_id)
    mutation = await coordinator.update_event(event, patch, immediate=immediate)
    return _mutation_response(mutation)


@router.delete(_EVENT_PATH, response_model=ApiResponse[MutationResponse])
async def delete_event(
    account_id: str,
    calendar_id: str,
    event_id: str,
    notify_attendees: bool = True,
    immediate: bool = False,
    service: CalendarService = Depends(get_service),
    coordinator: MutationCoordinator = Depends(get_coordinator),
) -> ApiResponse[MutationResponse]:
    event = await service.get_event(CalendarRef(account_id, calendar_id), event_id)
    mutation = await coordinator.delete_event(
        event,
        notify_attendees=notify_attendees,
        immediate=immediate,
    )
    return _mutation_response(mutation)


@router.post(_EVENT_PATH + "/move", response_model=ApiResponse[MutationResponse])
async def move_event(
    account_id: str,
    calendar_id: str,
    event_id: str,
    request: MoveEventRequest,
    immediate: bool = False,
    service: CalendarService = Depends(get_service),
    coordinator: MutationCoordinator = Depends(get_coordinator),
) -> ApiResponse[MutationResponse]:
    """Move an event to another calendar of the same account."""
    event = await service.get_event(CalendarRef(account_id, calendar_id), event_id)
    mutation = await coordinator.move_event(
        event,
        CalendarRef(account_id, request.destination_calendar_id),
        notify_attendees=request.notify_attendees,
        immediate=immediate,
    )
    return _mutation_response(mutation)


@router.post(_EVENT_PATH + "/respond", response_model=ApiResponse[MutationResponse])
async def respond_to_event(
    account_id: str,
    calendar_id: str,
    event_id: str,
    response: EventResponse,
    immediate: bool = False,
    service: CalendarService = Depends(get_service),
    coordinator: MutationCoordinator = Depends(get_coordinator),
) -> ApiResponse[MutationResponse]:
    """Record the user's RSVP."""
    event = await service.get_event(CalendarRef(account_id, calendar_id), event_id)
    mutation = await coordinator.respond_to_event(event, response, immediate=immediate)
    return _mutation_response(mutation)
