"""Google Calendar provider (Calendar API v3).

Incremental sync uses Google's ``syncToken`` / ``nextSyncToken`` flow. Sync and
list requests expand recurring series into single instances; the series
masters those instances reference are loaded in a second, concurrent phase.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, date, datetime, tzinfo
from typing import Any, ClassVar
from urllib.parse import quote
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from caldelta.errors import ProviderHTTPError, SyncTokenExpiredError
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
from caldelta.providers.base import (
    MAX_EVENTS_PER_CALENDAR,
    NOT_FOUND_STATUS_CODES,
    HttpCalendarProvider,
    provider_operation,
)

logger = logging.getLogger(__name__)

GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"

_READ_ONLY_ACCESS_ROLES = {"reader", "freeBusyReader"}

_GOOGLE_RESPONSE_STATUS = {
    "accepted": ResponseStatus.accepted,
    "declined": ResponseStatus.declined,
    "tentative": ResponseStatus.tentative,
    "needsAction": ResponseStatus.unknown,
}


def _google_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _parse_google_datetime(value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ValueError(f"Google Calendar returned an invalid dateTime: {value}") from exc
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def _parse_google_rfc3339_optional(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return _parse_google_datetime(value.strip())
    except ValueError:
        return None


def _coerce_zoneinfo(timezone: str) -> ZoneInfo | tzinfo:
    try:
        return ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError):
        return UTC


def _normalize_optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def _parse_google_response_status(value: Any) -> ResponseStatus:
    if isinstance(value, str):
        return _GOOGLE_RESPONSE_STATUS.get(value.strip(), ResponseStatus.unknown)
    return ResponseStatus.unknown


def _google_response_status(status: ResponseStatus) -> str:
    if status == ResponseStatus.unknown:
        return "needsAction"
    return status.value


def _extract_google_attendees(payload: Any) -> list[Attendee]:
    """Parse a Google Calendar attendees array into ``Attendee`` objects."""
    if not isinstance(payload, list):
        return []

    attendees: list[Attendee] = []
    for entry in payload:
        if not isinstance(entry, dict):
            continue
        email = _normalize_optional_text(entry.get("email"))
        if email is None:
            continue
        attendees.append(
            Attendee(
                email=email,
                display_name=_normalize_optional_text(entry.get("displayName")),
                status=_parse_google_response_status(entry.get("responseStatus")),
                optional=entry.get("optional") is True,
                organizer=entry.get("organizer") is True,
                self_=entry.get("self") is True,
                comment=_normalize_optional_text(entry.get("comment")),
            )
        )
    return attendees


def _extract_google_recurrence(payload: Any) -> list[str]:
    if not isinstance(payload, list):
        return []
    return [entry.strip() for entry in payload if isinstance(entry, str) and entry.strip()]


def _parse_google_event_boundary(
    payload: dict[str, Any],
    *,
    fallback_timezone: str,
) -> tuple[datetime, str, bool]:
    date_time = payload.get("dateTime")
    timezone = _normalize_optional_text(payload.get("timeZone")) or fallback_timezone

    if isinstance(date_time, str) and date_time.strip():
        return _parse_google_datetime(date_time), timezone, False

    date_value = payload.get("date")
    if isinstance(date_value, str) and date_value.strip():
        try:
            parsed_date = date.fromisoformat(date_value)
        except ValueError as exc:
            raise ValueError(
                f"Google Calendar returned an invalid date value: {date_value}"
            ) from exc

        parsed_datetime = datetime(
            parsed_date.year,
            parsed_date.month,
            parsed_date.day,
            tzinfo=_coerce_zoneinfo(timezone),
        )
        return parsed_datetime, timezone, True

    raise ValueError("Google Calendar event is missing start/end dateTime or date values")


def _google_calendar_to_calendar(
    payload: dict[str, Any],
    *,
    account_id: str,
    provider_account_id: str,
) -> Calendar:
    calendar_id = _normalize_optional_text(payload.get("id"))
    if calendar_id is None:
        raise ValueError("Google Calendar calendar payload is missing a non-empty id")

    access_role = payload.get("accessRole")
    return Calendar(
        id=calendar_id,
        name=_normalize_optional_text(payload.get("summaryOverride"))
        or _normalize_optional_text(payload.get("summary"))
        or calendar_id,
        account_id=account_id,
        provider_id=ProviderId.google,
        provider_account_id=provider_account_id,
        primary=payload.get("primary") is True,
        read_only=isinstance(access_role, str) and access_role in _READ_ONLY_ACCESS_ROLES,
        color=_normalize_optional_text(payload.get("backgroundColor")),
        time_zone=_normalize_optional_text(payload.get("timeZone")),
    )


def _google_event_to_calendar_event(
    payload: dict[str, Any],
    *,
    calendar: Calendar,
    fallback_timezone: str,
) -> CalendarEvent:
    event_id = _normalize_optional_text(payload.get("id"))
    if event_id is None:
        raise ValueError("Google Calendar event payload is missing a non-empty id")

    start_payload = payload.get("start")
    end_payload = payload.get("end")
    if not isinstance(start_payload, dict) or not isinstance(end_payload, dict):
        raise ValueError(f"Google Calendar event '{event_id}' is missing start/end payloads")

    start_at, start_timezone, all_day = _parse_google_event_boundary(
        start_payload,
        fallback_timezone=fallback_timezone,
    )
    end_at, _end_timezone, _ = _parse_google_event_boundary(
        end_payload,
        fallback_timezone=fallback_timezone,
    )

    attendees = _extract_google_attendees(payload.get("attendees"))
    own_response = next((attendee for attendee in attendees if attendee.self_), None)

    return CalendarEvent(
        id=event_id,
        calendar_id=calendar.id,
        account_id=calendar.account_id,
        provider_id=ProviderId.google,
        provider_account_id=calendar.provider_account_id,
        title=_normalize_optional_text(payload.get("summary")) or "(untitled)",
        description=_normalize_optional_text(payload.get("description")),
        location=_normalize_optional_text(payload.get("location")),
        start=start_at,
        end=end_at,
        time_zone=start_timezone,
        all_day=all_day,
        recurring_event_id=_normalize_optional_text(payload.get("recurringEventId")),
        recurrence=_extract_google_recurrence(payload.get("recurrence")),
        read_only=calendar.read_only or payload.get("locked") is True,
        status=_normalize_optional_text(payload.get("status")),
        attendees=attendees,
        response=(
            EventResponse(status=own_response.status, comment=own_response.comment)
            if own_response is not None
            else None
        ),
        etag=_normalize_optional_text(payload.get("etag")),
        updated_at=_parse_google_rfc3339_optional(payload.get("updated")),
    )


def _google_boundary(value: datetime, *, time_zone: str, all_day: bool) -> dict[str, Any]:
    if all_day:
        return {"date": value.astimezone(ZoneInfo(time_zone)).date().isoformat()}
    return {
        "dateTime": value.astimezone(ZoneInfo(time_zone)).isoformat(),
        "timeZone": time_zone,
    }


def _build_google_event_body(payload: CreateEventInput) -> dict[str, Any]:
    """Translate a ``CreateEventInput`` into a Google Calendar API event body."""
    body: dict[str, Any] = {
        "summary": payload.title,
        "start": _google_boundary(
            payload.start, time_zone=payload.time_zone, all_day=payload.all_day
        ),
        "end": _google_boundary(payload.end, time_zone=payload.time_zone, all_day=payload.all_day),
    }
    if payload.id is not None:
        body["id"] = payload.id
    if payload.description is not None:
        body["description"] = payload.description
    if payload.location is not None:
        body["location"] = payload.location
    if payload.attendees:
        body["attendees"] = [{"email": email} for email in payload.attendees]
    if payload.recurrence:
        body["recurrence"] = list(payload.recurrence)
    return body


def _build_google_event_patch_body(
    patch: UpdateEventInput,
    *,
    existing: CalendarEvent | None = None,
) -> dict[str, Any]:
    """Translate an ``UpdateEventInput`` into a partial Google Calendar API event body.

    Only explicitly set fields are included, so unchanged fields are not
    overwritten on the server. ``existing`` supplies the current boundaries
    when only the time zone or the all-day flag changes.
    """
    body: dict[str, Any] = {}
    fields_set = patch.model_fields_set

    if patch.title is not None:
        body["summary"] = patch.title
    if "description" in fields_set:
        body["description"] = patch.description
    if "location" in fields_set:
        body["location"] = patch.location

    if {"start", "end", "time_zone", "all_day"} & fields_set:
        time_zone = patch.time_zone or (existing.time_zone if existing else "UTC")
        all_day = (
            patch.all_day if patch.all_day is not None else bool(existing and existing.all_day)
        )
        start = patch.start or (existing.start if existing else None)
        end = patch.end or (existing.end if existing else None)
        if start is not None:
            body["start"] = _google_boundary(start, time_zone=time_zone, all_day=all_day)
        if end is not None:
            body["end"] = _google_boundary(end, time_zone=time_zone, all_day=all_day)

    if patch.attendees is not None:
        body["attendees"] = [{"email": email} for email in patch.attendees]
    if patch.recurrence is not None:
        body["recurrence"] = list(patch.recurrence)
    return body


class GoogleCalendarProvider(HttpCalendarProvider):
    """Google Calendar provider speaking the v3 REST API through httpx."""

    provider_id: ClassVar[ProviderId] = ProviderId.google
    base_url: ClassVar[str] = GOOGLE_CALENDAR_API_BASE_URL

    def _calendar_path(self, calendar_id: str) -> str:
        return f"/calendars/{quote(calendar_id, safe='')}"

    def _event_path(self, calendar_id: str, event_id: str) -> str:
        normalized_event_id = event_id.strip()
        if not normalized_event_id:
            raise ValueError("event_id must be a non-empty string")
        return f"{self._calendar_path(calendar_id)}/events/{quote(normalized_event_id, safe='')}"

    def _to_calendar(self, payload: dict[str, Any]) -> Calendar:
        return _google_calendar_to_calendar(
            payload,
            account_id=self.account_id,
            provider_account_id=self.provider_account_id,
        )

    # -- calendars ---------------------------------------------------------

    @provider_operation("list_calendars")
    async def list_calendars(self) -> list[Calendar]:
        calendars: list[Calendar] = []
        params: dict[str, Any] = {"maxResults": 250}
        while True:
            payload = await self._request_json("GET", "/users/me/calendarList", params=params)
            items = payload.get("items")
            if isinstance(items, list):
                calendars.extend(
                    self._to_calendar(item) for item in items if isinstance(item, dict)
                )
            next_page_token = payload.get("nextPageToken")
            if not isinstance(next_page_token, str) or not next_page_token:
                return calendars
            params["pageToken"] = next_page_token

    @provider_operation("get_calendar")
    async def get_calendar(self, calendar_id: str) -> Calendar:
        payload = await self._request_json(
            "GET", f"/users/me/calendarList/{quote(calendar_id, safe='')}"
        )
        return self._to_calendar(payload)

    @provider_operation("create_calendar")
    async def create_calendar(self, payload: CreateCalendarInput) -> Calendar:
        created = await self._request_json(
            "POST", "/calendars", json_body={"summary": payload.name}
        )
        return self._to_calendar({**created, "accessRole": "owner"})

    @provider_operation("update_calendar")
    async def update_calendar(self, calendar_id: str, payload: UpdateCalendarInput) -> Calendar:
        if payload.name is not None:
            await self._request_json(
                "PATCH",
                self._calendar_path(calendar_id),
                json_body={"summary": payload.name},
            )
        if payload.color is not None:
            await self._request_json(
                "PATCH",
                f"/users/me/calendarList/{quote(calendar_id, safe='')}",
                params={"colorRgbFormat": True},
                json_body={"backgroundColor": payload.color},
            )
        return await self.get_calendar(calendar_id)

    @provider_operation("delete_calendar")
    async def delete_calendar(self, calendar_id: str) -> None:
        await self._request_json("DELETE", self._calendar_path(calendar_id))

    # -- events ------------------------------------------------------------

    @provider_operation("list_events")
    async def list_events(
        self,
        calendar: Calendar,
        time_min: datetime,
        time_max: datetime,
        time_zone: str,
    ) -> CalendarEventsResult:
        params: dict[str, Any] = {
            "singleEvents": True,
            "showDeleted": False,
            "orderBy": "startTime",
            "maxResults": MAX_EVENTS_PER_CALENDAR,
            "timeMin": _google_rfc3339(time_min),
            "timeMax": _google_rfc3339(time_max),
            "timeZone": time_zone,
        }
        payload = await self._request_json(
            "GET",
            f"{self._calendar_path(calendar.id)}/events",
            params=params,
        )
        items = payload.get("items")
        if not isinstance(items, list):
            raise ValueError("Google Calendar list_events response missing items array")

        events = [
            _google_event_to_calendar_event(item, calendar=calendar, fallback_timezone=time_zone)
            for item in items
            if isinstance(item, dict) and item.get("status") != "cancelled"
        ]
        masters = await self._fetch_recurring_masters(calendar, events, time_zone)
        return CalendarEventsResult(events=events, recurring_master_events=masters)

    @provider_operation("get_event")
    async def get_event(self, calendar: Calendar, event_id: str, time_zone: str) -> CalendarEvent:
        payload = await self._request_json(
            "GET",
            self._event_path(calendar.id, event_id),
            params={"timeZone": time_zone},
        )
        return _google_event_to_calendar_event(
            payload,
            calendar=calendar,
            fallback_timezone=time_zone,
        )

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
        """Fetch changes using Google's ``syncToken`` / ``nextSyncToken`` flow.

        Google rejects a sync token combined with a time window, so the window
        is only sent on a tokenless request.

        Raises:
            SyncTokenExpiredError: When Google returns 410 Gone for the token.
        """
        params: dict[str, Any] = {
            "showDeleted": True,
            "singleEvents": True,
            "maxResults": MAX_EVENTS_PER_CALENDAR,
            "timeZone": time_zone,
        }
        if sync_token is not None:
            params["syncToken"] = sync_token
        else:
            if time_min is not None:
                params["timeMin"] = _google_rfc3339(time_min)
            if time_max is not None:
                params["timeMax"] = _google_rfc3339(time_max)

        changes: list[CalendarEventSyncItem] = []
        updated_events: list[CalendarEvent] = []
        next_sync_token: str | None = None
        path = f"{self._calendar_path(calendar.id)}/events"

        while True:
            response = await self._request("GET", path, params=params)

            # 410 Gone means the sync token is expired; caller must do a full re-sync.
            if response.status_code == 410 and sync_token is not None:
                raise SyncTokenExpiredError(
                    f"Sync token expired for calendar '{calendar.id}'; full re-sync required",
                    operation="sync",
                    provider_id=self.provider_id.value,
                    account_id=self.account_id,
                    status_code=410,
                    context={"calendar_id": calendar.id},
                )
            self._raise_for_status(response)
            payload = self._decode_json(response)

            items = payload.get("items")
            if isinstance(items, list):
                for item in items:
                    if not isinstance(item, dict):
                        continue
                    event_id = _normalize_optional_text(item.get("id"))
                    if event_id is None:
                        continue
                    if item.get("status") == "cancelled":
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
                    event = _google_event_to_calendar_event(
                        item,
                        calendar=calendar,
                        fallback_timezone=time_zone,
                    )
                    updated_events.append(event)
                    changes.append(UpdatedSyncItem(event=event))

            candidate_sync_token = payload.get("nextSyncToken")
            if isinstance(candidate_sync_token, str) and candidate_sync_token.strip():
                next_sync_token = candidate_sync_token.strip()

            next_page_token = payload.get("nextPageToken")
            if not isinstance(next_page_token, str) or not next_page_token:
                break
            params["pageToken"] = next_page_token

        masters = await self._fetch_recurring_masters(calendar, updated_events, time_zone)
        return SyncResult(
            changes=changes,
            sync_token=next_sync_token,
            status="incremental",
            recurring_master_events=masters,
        )

    async def _fetch_recurring_masters(
        self,
        calendar: Calendar,
        events: list[CalendarEvent],
        time_zone: str,
    ) -> list[CalendarEvent]:
        """Load the series masters referenced by ``events`` but missing from them."""
        present_ids = {event.id for event in events}
        master_ids: list[str] = []
        for event in events:
            master_id = event.recurring_event_id
            if master_id and master_id not in present_ids and master_id not in master_ids:
                master_ids.append(master_id)
        if not master_ids:
            return []

        results = await asyncio.gather(
            *(self._fetch_master(calendar, master_id, time_zone) for master_id in master_ids)
        )
        return [master for master in results if master is not None]

    async def _fetch_master(
        self,
        calendar: Calendar,
        master_id: str,
        time_zone: str,
    ) -> CalendarEvent | None:
        response = await self._request(
            "GET",
            self._event_path(calendar.id, master_id),
            params={"timeZone": time_zone},
        )
        if response.status_code in NOT_FOUND_STATUS_CODES:
            logger.debug(
                "Recurring master '%s' in calendar '%s' no longer exists; skipping",
                master_id,
                calendar.id,
            )
            return None
        self._raise_for_status(response)
        payload = self._decode_json(response)
        if payload.get("status") == "cancelled":
            return None
        return _google_event_to_calendar_event(
            payload,
            calendar=calendar,
            fallback_timezone=time_zone,
        )

    @provider_operation("create_event")
    async def create_event(self, calendar: Calendar, payload: CreateEventInput) -> CalendarEvent:
        params = {"sendUpdates": "all"} if payload.attendees else None
        response_payload = await self._request_json(
            "POST",
            f"{self._calendar_path(calendar.id)}/events",
            params=params,
            json_body=_build_google_event_body(payload),
        )
        return _google_event_to_calendar_event(
            response_payload,
            calendar=calendar,
            fallback_timezone=payload.time_zone,
        )

    @provider_operation("update_event")
    async def update_event(
        self,
        calendar: Calendar,
        event_id: str,
        patch: UpdateEventInput,
    ) -> CalendarEvent:
        fields_set = patch.model_fields_set
        existing: CalendarEvent | None = None
        needs_existing_times = bool({"time_zone", "all_day"} & fields_set) and (
            patch.start is None or patch.end is None
        )
        if needs_existing_times:
            existing = await self.get_event(calendar, event_id, patch.time_zone or "UTC")

        body = _build_google_event_patch_body(patch, existing=existing)
        resolved_etag = patch.etag or (existing.etag if existing else None)
        extra_headers = {"If-Match": resolved_etag} if resolved_etag is not None else None
        fallback_timezone = patch.time_zone or calendar.time_zone or "UTC"

        response_payload = await self._request_json(
            "PATCH",
            self._event_path(calendar.id, event_id),
            json_body=body,
            extra_headers=extra_headers,
        )
        if patch.response is not None and patch.response.status != ResponseStatus.unknown:
            response_payload = await self._patch_own_response(
                calendar.id, event_id, patch.response, current=response_payload
            )

        return _google_event_to_calendar_event(
            response_payload,
            calendar=calendar,
            fallback_timezone=fallback_timezone,
        )

    @provider_operation("delete_event")
    async def delete_event(
        self,
        calendar_id: str,
        event_id: str,
        *,
        notify_attendees: bool = True,
    ) -> None:
        await self._request_json(
            "DELETE",
            self._event_path(calendar_id, event_id),
            params={"sendUpdates": "all" if notify_attendees else "none"},
        )

    @provider_operation("move_event")
    async def move_event(
        self,
        source: Calendar,
        destination: Calendar,
        event_id: str,
        *,
        notify_attendees: bool = True,
    ) -> CalendarEvent:
        payload = await self._request_json(
            "POST",
            f"{self._event_path(source.id, event_id)}/move",
            params={
                "destination": destination.id,
                "sendUpdates": "all" if notify_attendees else "none",
            },
        )
        return _google_event_to_calendar_event(
            payload,
            calendar=destination,
            fallback_timezone=destination.time_zone or "UTC",
        )

    @provider_operation("respond_to_event")
    async def respond_to_event(
        self,
        calendar_id: str,
        event_id: str,
        response: EventResponse,
    ) -> None:
        if response.status == ResponseStatus.unknown:
            return
        await self._patch_own_response(calendar_id, event_id, response)

    async def _patch_own_response(
        self,
        calendar_id: str,
        event_id: str,
        response: EventResponse,
        *,
        current: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Set the account owner's ``responseStatus`` on the event's attendee list."""
        if current is None:
            current = await self._request_json("GET", self._event_path(calendar_id, event_id))

        attendees = current.get("attendees")
        if not isinstance(attendees, list) or not any(
            isinstance(entry, dict) and entry.get("self") is True for entry in attendees
        ):
            raise ProviderHTTPError(
                status_code=400,
                message=f"Event '{event_id}' has no attendee entry for this account",
            )

        updated_attendees: list[dict[str, Any]] = []
        for entry in attendees:
            if isinstance(entry, dict) and entry.get("self") is True:
                entry = {**entry, "responseStatus": _google_response_status(response.status)}
                if response.comment is not None:
                    entry["comment"] = response.comment
            updated_attendees.append(entry)

        return await self._request_json(
            "PATCH",
            self._event_path(calendar_id, event_id),
            params={"sendUpdates": "all" if response.send_update else "none"},
            json_body={"attendees": updated_attendees},
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
            "/freeBusy",
            json_body={
                "timeMin": _google_rfc3339(time_min),
                "timeMax": _google_rfc3339(time_max),
                "items": [{"id": schedule_id} for schedule_id in schedule_ids],
            },
        )
        calendars = payload.get("calendars")
        if not isinstance(calendars, dict):
            calendars = {}

        results: list[CalendarFreeBusy] = []
        for schedule_id in schedule_ids:
            entry = calendars.get(schedule_id)
            busy_payload = entry.get("busy") if isinstance(entry, dict) else None
            busy: list[FreeBusySlot] = []
            if isinstance(busy_payload, list):
                for slot in busy_payload:
                    if not isinstance(slot, dict):
                        continue
                    start = _parse_google_rfc3339_optional(slot.get("start"))
                    end = _parse_google_rfc3339_optional(slot.get("end"))
                    if start is not None and end is not None:
                        busy.append(FreeBusySlot(start=start, end=end))
            results.append(CalendarFreeBusy(schedule_id=schedule_id, busy=busy))
        return results
