"""Calendar endpoints: list connected calendars and query free/busy.

Provides a single router mounted at ``/api``.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from caldelta.api.deps import get_service
from caldelta.api.models import ApiMeta, ApiResponse
from caldelta.api.models.events import FreeBusyRequest
from caldelta.models import Calendar, CalendarFreeBusy, CalendarRef
from caldelta.service import CalendarService

router = APIRouter(prefix="/api", tags=["calendars"])


@router.get("/calendars", response_model=ApiResponse[list[Calendar]])
async def list_calendars(
    account: list[str] | None = Query(default=None),
    service: CalendarService = Depends(get_service),
) -> ApiResponse[list[Calendar]]:
    """Return every calendar of the given accounts (default: all accounts)."""
    calendars = await service.list_calendars(account)
    return ApiResponse[list[Calendar]](data=calendars, meta=ApiMeta(count=len(calendars)))


@router.get(
    "/calendars/{account_id}/{calendar_id}",
    response_model=ApiResponse[Calendar],
)
async def get_calendar(
    account_id: str,
    calendar_id: str,
    service: CalendarService = Depends(get_service),
) -> ApiResponse[Calendar]:
    calendar = await service.get_calendar(CalendarRef(account_id, calendar_id))
    return ApiResponse[Calendar](data=calendar)


@router.post(
    "/accounts/{account_id}/free-busy",
    response_model=ApiResponse[list[CalendarFreeBusy]],
)
async def free_busy(
    account_id: str,
    request: FreeBusyRequest,
    service: CalendarService = Depends(get_service),
) -> ApiResponse[list[CalendarFreeBusy]]:
    """Busy intervals for each schedule id over the requested window."""
    if request.time_max <= request.time_min:
        raise ValueError("time_max must be after time_min")
    schedules = await service.free_busy(
        account_id, request.schedule_ids, request.time_min, request.time_max
    )
    return ApiResponse[list[CalendarFreeBusy]](data=schedules)
