"""High-level helpers that wrap the Google Calendar API."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Callable, Mapping

from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from .auth import GoogleOAuthManager


class GoogleCalendarError(RuntimeError):
    """Raised for recoverable Google Calendar API issues."""


class GoogleCalendarService:
    """
    Async facade over the Google Calendar REST API.

    Credentials come from the OAuth manager on every call so a refreshed or
    newly authorized token is picked up without rebuilding the service.
    """

    def __init__(self, oauth_manager: GoogleOAuthManager) -> None:
        self._oauth_manager = oauth_manager

    async def list_calendars(self) -> list[Mapping[str, Any]]:
        response = await self._call(lambda api: api.calendarList().list(showDeleted=False))
        return response.get("items", [])

    async def list_events(
        self,
        *,
        calendar_id: str,
        max_results: int,
        time_min: datetime | None,
        time_max: datetime | None,
        query: str | None,
    ) -> list[Mapping[str, Any]]:
        params: dict[str, Any] = {
            "calendarId": calendar_id,
            "maxResults": max_results,
            "singleEvents": True,
            "orderBy": "startTime",
        }
        if time_min:
            params["timeMin"] = to_rfc3339(time_min)
        if time_max:
            params["timeMax"] = to_rfc3339(time_max)
        if query:
            params["q"] = query

        response = await self._call(lambda api: api.events().list(**params))
        return response.get("items", [])

    async def create_event(
        self,
        *,
        calendar_id: str,
        body: Mapping[str, Any],
        conference_data_version: int | None = None,
    ) -> Mapping[str, Any]:
        params = _with_conference_version(
            {"calendarId": calendar_id, "body": dict(body)}, conference_data_version
        )
        return await self._call(lambda api: api.events().insert(**params))

    async def update_event(
        self,
        *,
        calendar_id: str,
        event_id: str,
        body: Mapping[str, Any],
        conference_data_version: int | None = None,
    ) -> Mapping[str, Any]:
        params = _with_conference_version(
            {"calendarId": calendar_id, "eventId": event_id, "body": dict(body)},
            conference_data_version,
        )
        return await self._call(lambda api: api.events().patch(**params))

    async def delete_event(self, *, calendar_id: str, event_id: str) -> None:
        await self._call(
            lambda api: api.events().delete(calendarId=calendar_id, eventId=event_id)
        )

    async def _call(self, make_request: Callable[[Any], Any]) -> Any:
        api = await self._build_service()
        # googleapiclient requests block on httplib2.
        return await asyncio.to_thread(make_request(api).execute)

    async def _build_service(self):
        credentials = await self._oauth_manager.get_credentials()
        try:
            return build("calendar", "v3", credentials=credentials, cache_discovery=False)
        except HttpError as exc:
            raise GoogleCalendarError(str(exc)) from exc


def _with_conference_version(params: dict[str, Any], version: int | None) -> dict[str, Any]:
    if version is not None:
        params["conferenceDataVersion"] = version
    return params


def to_rfc3339(value: datetime) -> str:
    """Ensure a datetime is timezone aware and convert to RFC3339."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def event_boundary(event: Mapping[str, Any], key: str) -> str | None:
    """Return the ``dateTime`` (or all-day ``date``) of an event's start or end."""
    entry = event.get(key)
    if isinstance(entry, str):
        return entry
    if isinstance(entry, Mapping):
        return entry.get("dateTime") or entry.get("date")
    return None


def normalize_event(event: Mapping[str, Any]) -> dict[str, Any]:
    """Flatten start/end objects into ISO strings for the tool output model."""
    normalized = dict(event)
    for key in ("start", "end"):
        normalized[key] = event_boundary(event, key)
    return normalized
