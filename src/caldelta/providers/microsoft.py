"""Microsoft Graph calendar provider.

Incremental sync uses ``calendarView/delta``: ``@odata.nextLink`` drives
paging and the final ``@odata.deltaLink`` is stored as the sync token. Delta
items are already per-instance, so no recurring-master expansion is needed.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta, tzinfo
from typing import Any, ClassVar
from urllib.parse import quote
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx

from caldelta.errors import SyncTokenExpiredError
from caldelta.models import (
    Attendee,
    Calendar,
    CalendarEvent,
    CalendarEventsResult,
    CalendarEventSyncItem,
    CalendarFreeBusy,
    CreateCalendarInput,
    CreateEventInput,
    DeletedEventRef,
    DeletedSyncItem,
    EventResponse,
    FreeBusySlot,
    ProviderId,
    ResponseStatus,
    SyncResult,
    UpdateCalendarInput,
    UpdatedSyncItem,
    UpdateEventInput,
)
from caldelta.providers.auth import error_code
from caldelta.providers.base import (
    MAX_EVENTS_PER_CALENDAR,
    HttpCalendarProvider,
    provider_operation,
)

logger = logging.getLogger(__name__)

MICROSOFT_GRAPH_API_BASE_URL = "https://graph.microsoft.com/v1.0"

# Graph misbehaves on calendar listing without an explicit $select.
_CALENDAR_SELECT = "id,name,isDefaultCalendar,canEdit,hexColor,owner"

SYNC_TOKEN_EXPIRED_CODES = {"syncStateNotFound", "resyncRequired", "syncStateInvalid"}

# calendarView/delta needs both bounds; used when a full sync is requested without them.
DEFAULT_DELTA_LOOKBACK = timedelta(days=30)
DEFAULT_DELTA_LOOKAHEAD = timedelta(days=365)

_RESPONSE_STATUS_PATHS = {
    ResponseStatus.accepted: "accept",
    ResponseStatus.declined: "decline",
    ResponseStatus.tentative: "tentativelyAccept",
}

_GRAPH_RESPONSE_STATUS = {
    "accepted": ResponseStatus.accepted,
    "organizer": ResponseStatus.accepted,
    "declined": ResponseStatus.declined,
    "tentativelyAccepted": ResponseStatus.tentative,
}


def calendar_path(calendar_id: str) -> str:
    if calendar_id == "primary":
        return "/me/calendar"
    return f"/me/calendars/{quote(calendar_id, safe='')}"


def event_response_status_path(status: ResponseStatus) -> str:
    try:
        return _RESPONSE_STATUS_PATHS[status]
    except KeyError:
        raise ValueError(f"No Microsoft Graph response action for status '{status}'") from None


def _normalize_optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def _coerce_zoneinfo(timezone: str) -> ZoneInfo | tzinfo:
    try:
        return ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError):
        return UTC


def _parse_graph_datetime(payload: Any, *, fallback_timezone: str) -> tuple[datetime, str]:
    """Parse a Graph ``dateTimeTimeZone`` object into an aware datetime."""
    if not isinstance(payload, dict):
        raise ValueError("Microsoft Graph event is missing start/end values")
    raw_value = payload.get("dateTime")
    if not isinstance(raw_value, str) or not raw_value.strip():
        raise ValueError("Microsoft Graph event is missing a dateTime value")

    timezone = _normalize_optional_text(payload.get("timeZone")) or fallback_timezone
    normalized = raw_value.strip()
    if normalized.endswith("Z"):
        normalized = normalized[:-1]
    # Graph emits 7 fractional digits; fromisoformat accepts at most 6.
    head, dot, fraction = normalized.partition(".")
    if dot:
        normalized = f"{head}.{fraction[:6]}"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ValueError(f"Microsoft Graph returned an invalid dateTime: {raw_value}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=_coerce_zoneinfo(timezone))
    return parsed, timezone


def _parse_graph_datetime_optional(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def to_microsoft_date(value: datetime, time_zone: str) -> dict[str, str]:
    local = value.astimezone(_coerce_zoneinfo(time_zone)).replace(tzinfo=None)
    return {"dateTime": local.isoformat(), "timeZone": time_zone}


def _parse_graph_response_status(payload: Any) -> ResponseStatus:
    if isinstance(payload, dict):
        response = payload.get("response")
        if isinstance(response, str):
            return _GRAPH_RESPONSE_STATUS.get(response, ResponseStatus.unknown)
    return ResponseStatus.unknown


def _extract_graph_attendees(payload: Any) -> list[Attendee]:
    if not isinstance(payload, list):
        return []

    attendees: list[Attendee] = []
    for entry in payload:
        if not isinstance(entry, dict):
            continue
        email_address = entry.get("emailAddress")
        if not isinstance(email_address, dict):
            continue
        email = _normalize_optional_text(email_address.get("address"))
        if email is None:
            continue
        attendees.append(
            Attendee(
                email=email,
                display_name=_normalize_optional_text(email_address.get("name")),
                status=_parse_graph_response_status(entry.get("status")),
                optional=entry.get("type") == "optional",
            )
        )
    return attendees


def parse_microsoft_calendar(
    payload: dict[str, Any],
    *,
    account_id: str,
    provider_account_id: str,
) -> Calendar:
    calendar_id = _normalize_optional_text(payload.get("id"))
    if calendar_id is None:
        raise ValueError("Microsoft Graph calendar payload is missing a non-empty id")
    return Calendar(
        id=calendar_id,
        name=_normalize_optional_text(payload.get("name")) or calendar_id,
        account_id=account_id,
        provider_id=ProviderId.microsoft,
        provider_account_id=provider_account_id,
        primary=payload.get("isDefaultCalendar") is True,
        read_only=payload.get("canEdit") is False,
        color=_normalize_optional_text(payload.get("hexColor")),
    )


def parse_microsoft_event(
    payload: dict[str, Any],
    *,
    calendar: Calendar,
    fallback_timezone: str,
) -> CalendarEvent:
    event_id = _normalize_optional_text(payload.get("id"))
    if event_id is None:
        raise ValueError("Microsoft Graph event payload is missing a non-empty id")

    start_at, timezone = _parse_graph_datetime(
        payload.get("start"), fallback_timezone=fallback_timezone
    )
    end_at, _ = _parse_graph_datetime(payload.get("end"), fallback_timezone=fallback_timezone)

    body = payload.get("body")
    location = payload.get("location")
    is_organizer = payload.get("isOrganizer") is True
    own_status = _parse_graph_response_status(payload.get("responseStatus"))

    return CalendarEvent(
        id=event_id,
        calendar_id=calendar.id,
        account_id=calendar.account_id,
        provider_id=ProviderId.microsoft,
        provider_account_id=calendar.provider_account_id,
        title=_normalize_optional_text(payload.get("subject")) or "(untitled)",
        description=(
            _normalize_optional_text(body.get("content")) if isinstance(body, dict) else None
        ),
        location=(
            _normalize_optional_text(location.get("displayName"))
            if isinstance(location, dict)
            else None
        ),
        start=start_at,
        end=end_at,
        time_zone=timezone,
        all_day=payload.get("isAllDay") is True,
        recurring_event_id=_normalize_optional_text(payload.get("seriesMasterId")),
        read_only=calendar.read_only,
        status="cancelled" if payload.get("isCancelled") is True else "confirmed",
        attendees=_extract_graph_attendees(payload.get("attendees")),
        response=None if is_organizer else EventResponse(status=own_status),
        etag=_normalize_optional_text(payload.get("@odata.etag")),
        updated_at=_parse_graph_datetime_optional(payload.get("lastModifiedDateTime")),
    )


def to_microsoft_event(payload: CreateEventInput | UpdateEventInput) -> dict[str, Any]:
    """Translate a create payload or a partial update into a Graph event body."""
    body: dict[str, Any] = {}
    fields_set = payload.model_fields_set
    is_create = isinstance(payload, CreateEventInput)

    if payload.title is not None:
        body["subject"] = payload.title
    if payload.description is not None or (not is_create and "description" in fields_set):
        body["body"] = {"contentType": "text", "content": payload.description or ""}
    if payload.location is not None or (not is_create and "location" in fields_set):
        body["location"] = {"displayName": payload.location or ""}

    time_zone = payload.time_zone or "UTC"
    if payload.start is not None:
        body["start"] = to_microsoft_date(payload.start, time_zone)
    if payload.end is not None:
        body["end"] = to_microsoft_date(payload.end, time_zone)
    if payload.all_day is not None and (is_create or "all_day" in fields_set):
        body["isAllDay"] = payload.all_day

    if payload.attendees is not None and (is_create or "attendees" in fields_set):
        body["attendees"] = [
            {"emailAddress": {"address": email}, "type": "required"} for email in payload.attendees
        ]
    return body


def _parse_schedule_item(payload: dict[str, Any]) -> FreeBusySlot | None:
    try:
        start, _ = _parse_graph_datetime(payload.get("start"), fallback_timezone="UTC")
        end, _ = _parse_graph_datetime(payload.get("end"), fallback_timezone="UTC")
    except ValueError:
        return None
    status = _normalize_optional_text(payload.get("status")) or "busy"
    return FreeBusySlot(start=start, end=end, status=status)


class MicrosoftCalendarProvider(HttpCalendarProvider):
    """Microsoft Graph calendar provider speaking the v1.0 REST API through httpx."""

    provider_id: ClassVar[ProviderId] = ProviderId.microsoft
    base_url: ClassVar[str] = MICROSOFT_GRAPH_API_BASE_URL

    @staticmethod
    def _prefer_headers(time_zone: str, *, page_size: bool = False) -> dict[str, str]:
        prefer = f'outlook.timezone="{time_zone}"'
        if page_size:
            prefer = f"{prefer}, odata.maxpagesize={MAX_EVENTS_PER_CALENDAR}"
        return {"Prefer": prefer}

    def _event_path(self, calendar_id: str, event_id: str) -> str:
        normalized_event_id = event_id.strip()
        if not normalized_event_id:
            raise ValueError("event_id must be a non-empty string")
        return f"{calendar_path(calendar_id)}/events/{quote(normalized_event_id, safe='')}"

    def _to_calendar(self, payload: dict[str, Any]) -> Calendar:
        return parse_microsoft_calendar(
            payload,
            account_id=self.account_id,
            provider_account_id=self.provider_account_id,
        )

    # -- calendars ---------------------------------------------------------

    @provider_operation("list_calendars")
    async def list_calendars(self) -> list[Calendar]:
        calendars: list[Calendar] = []
        path: str | None = "/me/calendars"
        params: dict[str, Any] | None = {"$select": _CALENDAR_SELECT}
        while path is not None:
            payload = await self._request_json("GET", path, params=params)
            items = payload.get("value")
            if isinstance(items, list):
                calendars.extend(
                    self._to_calendar(item) for item in items if isinstance(item, dict)
                )
            next_link = payload.get("@odata.nextLink")
            path = next_link if isinstance(next_link, str) and next_link else None
            params = None
        return calendars

    @provider_operation("get_calendar")
    async def get_calendar(self, calendar_id: str) -> Calendar:
        payload = await self._request_json(
            "GET",
            calendar_path(calendar_id),
            params={"$select": _CALENDAR_SELECT},
        )
        return self._to_calendar(payload)

    @provider_operation("create_calendar")
    async def create_calendar(self, payload: CreateCalendarInput) -> Calendar:
        created = await self._request_json(
            "POST", "/me/calendars", json_body={"name": payload.name}
        )
        return self._to_calendar(created)

    @provider_operation("update_calendar")
    async def update_calendar(self, calendar_id: str, payload: UpdateCalendarInput) -> Calendar:
        body: dict[str, Any] = {}
        if payload.name is not None:
            body["name"] = payload.name
        if payload.color is not None:
            body["hexColor"] = payload.color
        updated = await self._request_json("PATCH", calendar_path(calendar_id), json_body=body)
        return self._to_calendar(updated)

    @provider_operation("delete_calendar")
    async def delete_calendar(self, calendar_id: str) -> None:
        await self._request_json("DELETE", calendar_path(calendar_id))

    # -- events ------------------------------------------------------------

    @provider_operation("list_events")
    async def list_events(
        self,
        calendar: Calendar,
        time_min: datetime,
        time_max: datetime,
        time_zone: str,
    ) -> CalendarEventsResult:
        payload = await self._request_json(
            "GET",
            f"{calendar_path(calendar.id)}/calendarView",
            params={
                "startDateTime": time_min.astimezone(UTC).isoformat(),
                "endDateTime": time_max.astimezone(UTC).isoformat(),
                "$orderby": "start/dateTime",
                "$top": MAX_EVENTS_PER_CALENDAR,
            },
            extra_headers=self._prefer_headers(time_zone),
        )
        items = payload.get("value")
        if not isinstance(items, list):
            raise ValueError("Microsoft Graph calendarView response missing value array")

        events = [
            parse_microsoft_event(item, calendar=calendar, fallback_timezone=time_zone)
            for item in items
            if isinstance(item, dict)
        ]
        return CalendarEventsResult(events=events, recurring_master_events=[])

    @provider_operation("get_event")
    async def get_event(self, calendar: Calendar, event_id: str, time_zone: str) -> CalendarEvent:
        payload = await self._request_json(
            "GET",
            self._event_path(calendar.id, event_id),
            extra_headers=self._prefer_headers(time_zone),
        )
        return parse_microsoft_event(payload, calendar=calendar, fallback_timezone=time_zone)

    @provider_operation("sync")
    async def sync(
        self,
        calendar: Calendar,
        *,
        sync_token: str | None = None,
        time_min: datetime | None = None,
        time_max: datetime | None = None,
        time_zone: str = "UTC",
    ) -> SyncResult:
        """Fetch changes through ``calendarView/delta``.

        ``sync_token`` is the ``@odata.deltaLink`` of a previous sync. Without
        one, ``time_min`` and ``time_max`` bound the initial delta round; a
        missing bound defaults to ``DEFAULT_DELTA_LOOKBACK`` before or
        ``DEFAULT_DELTA_LOOKAHEAD`` after the current time.

        Raises:
            SyncTokenExpiredError: When Graph reports the delta state is gone.
        """
        url: str
        params: dict[str, Any] | None = None
        if sync_token is not None:
            url = sync_token
        else:
            now = datetime.now(UTC)
            if time_min is None:
                time_min = now - DEFAULT_DELTA_LOOKBACK
            if time_max is None:
                time_max = now + DEFAULT_DELTA_LOOKAHEAD
            url = f"{calendar_path(calendar.id)}/calendarView/delta"
            params = {
                "startDateTime": time_min.astimezone(UTC).isoformat(),
                "endDateTime": time_max.astimezone(UTC).isoformat(),
            }

        changes: list[CalendarEventSyncItem] = []
        delta_link: str | None = None
        headers = self._prefer_headers(time_zone, page_size=True)

        while True:
            response = await self._request("GET", url, params=params, extra_headers=headers)
            if sync_token is not None and self._is_expired_sync_state(response):
                raise SyncTokenExpiredError(
                    f"Delta token expired for calendar '{calendar.id}'; full re-sync required",
                    operation="sync",
                    provider_id=self.provider_id.value,
                    account_id=self.account_id,
                    status_code=response.status_code,
                    context={"calendar_id": calendar.id},
                )
            self._raise_for_status(response)
            payload = self._decode_json(response)

            items = payload.get("value")
            if isinstance(items, list):
                for item in items:
                    if not isinstance(item, dict):
                        continue
                    event_id = _normalize_optional_text(item.get("id"))
                    if event_id is None:
                        continue
                    if "@removed" in item:
                        changes.append(
                            DeletedSyncItem(
                                event=DeletedEventRef(
                                    id=event_id,
                                    calendar_id=calendar.id,
                                    account_id=self.account_id,
                                    provider_id=self.provider_id,
                                    provider_account_id=calendar.provider_account_id,
                                )
                            )
                        )
                        continue
                    changes.append(
                        UpdatedSyncItem(
                            event=parse_microsoft_event(
                                item,
                                calendar=calendar,
                                fallback_timezone=time_zone,
                            )
                        )
                    )

            candidate_delta_link = payload.get("@odata.deltaLink")
            if isinstance(candidate_delta_link, str) and candidate_delta_link:
                delta_link = candidate_delta_link

            next_link = payload.get("@odata.nextLink")
            if not isinstance(next_link, str) or not next_link:
                break
            url = next_link
            params = None

        return SyncResult(changes=changes, sync_token=delta_link, status="incremental")

    @staticmethod
    def _is_expired_sync_state(response: httpx.Response) -> bool:
        if response.status_code == 410:
            return True
        if response.status_code < 400:
            return False
        return error_code(response) in SYNC_TOKEN_EXPIRED_CODES

    @provider_operation("create_event")
    async def create_event(self, calendar: Calendar, payload: CreateEventInput) -> CalendarEvent:
        logger.debug(
            "Creating Microsoft event in calendar '%s' (client id %s)",
            calendar.id,
            payload.id,
        )
        created = await self._request_json(
            "POST",
            f"{calendar_path(calendar.id)}/events",
            json_body=to_microsoft_event(payload),
            extra_headers=self._prefer_headers(payload.time_zone),
        )
        return parse_microsoft_event(
            created, calendar=calendar, fallback_timezone=payload.time_zone
        )

    @provider_operation("update_event")
    async def update_event(
        self,
        calendar: Calendar,
        event_id: str,
        patch: UpdateEventInput,
    ) -> CalendarEvent:
        time_zone = patch.time_zone or calendar.time_zone or "UTC"
        body = to_microsoft_event(patch)
        headers = self._prefer_headers(time_zone)
        if patch.etag is not None:
            headers["If-Match"] = patch.etag

        if body:
            updated = await self._request_json(
                "PATCH",
                self._event_path(calendar.id, event_id),
                json_body=body,
                extra_headers=headers,
            )
        else:
            updated = await self._request_json(
                "GET",
                self._event_path(calendar.id, event_id),
                extra_headers=self._prefer_headers(time_zone),
            )

        if patch.response is not None and patch.response.status != ResponseStatus.unknown:
            await self._post_response(event_id, patch.response)
            updated = {**updated, "responseStatus": {"response": _graph_response(patch.response)}}

        return parse_microsoft_event(updated, calendar=calendar, fallback_timezone=time_zone)

    @provider_operation("delete_event")
    async def delete_event(
        self,
        calendar_id: str,
        event_id: str,
        *,
        notify_attendees: bool = True,
    ) -> None:
        # Graph sends cancellations itself; there is no per-request toggle.
        await self._request_json("DELETE", self._event_path(calendar_id, event_id))

    @provider_operation("move_event")
    async def move_event(
        self,
        source: Calendar,
        destination: Calendar,
        event_id: str,
        *,
        notify_attendees: bool = True,
    ) -> CalendarEvent:
        # Graph has no move endpoint; the event is re-homed without a remote write.
        event = await self.get_event(source, event_id, "UTC")
        return event.model_copy(update={"calendar_id": destination.id})

    @provider_operation("respond_to_event")
    async def respond_to_event(
        self,
        calendar_id: str,
        event_id: str,
        response: EventResponse,
    ) -> None:
        if response.status == ResponseStatus.unknown:
            return
        await self._post_response(event_id, response)

    async def _post_response(self, event_id: str, response: EventResponse) -> None:
        await self._request_json(
            "POST",
            f"/me/events/{quote(event_id, safe='')}/{event_response_status_path(response.status)}",
            json_body={"comment": response.comment or "", "sendResponse": response.send_update},
        )

    @provider_operation("free_busy")
    async def free_busy(
        self,
        schedule_ids: list[str],
        time_min: datetime,
        time_max: datetime,
    ) -> list[CalendarFreeBusy]:
        payload = await self._request_json(
            "POST",
            "/me/calendar/getSchedule",
            json_body={
                "schedules": schedule_ids,
                "startTime": to_microsoft_date(time_min, "UTC"),
                "endTime": to_microsoft_date(time_max, "UTC"),
            },
        )
        items = payload.get("value")
        if not isinstance(items, list):
            return []

        results: list[CalendarFreeBusy] = []
        for info in items:
            if not isinstance(info, dict):
                continue
            schedule_id = _normalize_optional_text(info.get("scheduleId"))
            if schedule_id is None:
                continue
            schedule_items = info.get("scheduleItems")
            busy = [
                slot
                for item in (schedule_items if isinstance(schedule_items, list) else [])
                if isinstance(item, dict) and (slot := _parse_schedule_item(item)) is not None
            ]
            results.append(CalendarFreeBusy(schedule_id=schedule_id, busy=busy))
        return results


def _graph_response(response: EventResponse) -> str:
    return {
        ResponseStatus.accepted: "accepted",
        ResponseStatus.declined: "declined",
        ResponseStatus.tentative: "tentativelyAccepted",
    }.get(response.status, "none")
