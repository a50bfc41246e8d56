"""Sync endpoint: run an incremental (or full) sync for one calendar.

Provides a single router mounted at ``/api/sync``.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from caldelta.api.deps import get_service
from caldelta.api.models import ApiResponse
from caldelta.api.models.events import SyncRequest, SyncResponse
from caldelta.models import CalendarRef
from caldelta.service import CalendarService

router = APIRouter(prefix="/api/sync", tags=["sync"])


@router.post("", response_model=ApiResponse[SyncResponse])
async def sync_calendar(
    request: SyncRequest,
    service: CalendarService = Depends(get_service),
) -> ApiResponse[SyncResponse]:
    """Sync ``request.calendar`` and fold the changes into the confirmed cache.

    Without ``sync_token`` the sync is a full one over the given window. The
    returned token is the one to present next time.
    """
    ref = CalendarRef.parse(request.calendar)
    result = await service.sync(
        ref,
        sync_token=request.sync_token,
        time_min=request.time_min,
        time_max=request.time_max,
        time_zone=request.time_zone,
    )
    deleted = sum(1 for change in result.changes if change.status == "deleted")
    return ApiResponse[SyncResponse](
        data=SyncResponse(
            calendar=str(ref),
            status=result.status,
            sync_token=result.sync_token,
            updated=len(result.changes) - deleted,
            deleted=deleted,
        )
    )
