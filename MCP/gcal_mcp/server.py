"""MCP tool surface: on-demand Google sign-in plus calendar read/write tools."""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator
from uuid import uuid4

from googleapiclient.errors import HttpError
from loguru import logger
from mcp.server.fastmcp import Context, FastMCP

from .auth import (
    AuthenticationRequiredError,
    AuthorizationTimeoutError,
    FlowStartError,
    GoogleOAuthManager,
)
from .calendar_service import GoogleCalendarError, GoogleCalendarService, normalize_event
from .models import (
    Attendee,
    AuthStatus,
    CalendarSummary,
    DeleteEventResult,
    EventOutput,
    EventTime,
)

AUTH_HELP = (
    "Google authorization is required. Call the `authenticate` tool, complete the "
    "browser sign-in, then retry."
)

INSTRUCTIONS = (
    "Browse and edit Google Calendar events for the signed-in account. When a tool "
    "reports that authorization is required, call `authenticate` and ask the user to "
    "finish signing in from the page it opens."
)


def _handle_calendar_exception(exc: Exception) -> RuntimeError:
    if isinstance(exc, AuthenticationRequiredError):
        return RuntimeError(f"{exc} {AUTH_HELP}")
    if isinstance(exc, HttpError):
        return RuntimeError(f"Google Calendar API error: {exc}")
    if isinstance(exc, GoogleCalendarError):
        return RuntimeError(str(exc))
    return RuntimeError(f"Unexpected error: {exc}")


@contextmanager
def _calendar_errors() -> Iterator[None]:
    try:
        yield
    except Exception as exc:  # noqa: BLE001
        raise _handle_calendar_exception(exc) from exc


def _as_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def build_event_body(
    *,
    summary: str | None = None,
    description: str | None = None,
    location: str | None = None,
    start: EventTime | None = None,
    end: EventTime | None = None,
    attendees: list[Attendee] | None = None,
    add_meet_link: bool = False,
) -> dict[str, Any]:
    """Translate tool arguments into a Calendar API event resource, omitting unset fields."""
    fields: dict[str, Any] = {
        "summary": summary,
        "description": description,
        "location": location,
        "start": start.to_google() if start else None,
        "end": end.to_google() if end else None,
        "attendees": [a.to_google() for a in attendees] if attendees is not None else None,
    }
    body = {key: value for key, value in fields.items() if value is not None}
    if add_meet_link:
        body["conferenceData"] = {
            "createRequest": {
                "requestId": f"mcp-{uuid4().hex}",
                "conferenceSolutionKey": {"type": "hangoutsMeet"},
            }
        }
    return body


def create_calendar_server(oauth_manager: GoogleOAuthManager) -> FastMCP:
    """Build the MCP server with the authentication and calendar tools registered."""
    calendar_api = GoogleCalendarService(oauth_manager)
    server = FastMCP("google-calendar", instructions=INSTRUCTIONS)

    async def report(ctx: Context | None, message: str) -> None:
        if ctx:
            await ctx.info(message)

    @server.tool(
        description=(
            "Sign in to Google Calendar. Opens the Google consent page and waits until "
            "the user finishes. Set force=true to discard existing tokens first."
        ),
        structured_output=True,
    )
    async def authenticate(force: bool = False, ctx: Context | None = None) -> AuthStatus:
        if force:
            oauth_manager.clear_tokens()
        elif oauth_manager.has_stored_credentials():
            return AuthStatus(authenticated=True, message="Already authenticated.")

        try:
            await oauth_manager.initiate_authorization()
        except (AuthorizationTimeoutError, FlowStartError, AuthenticationRequiredError) as exc:
            logger.warning(f"Authentication failed: {exc}")
            return AuthStatus(authenticated=False, message=str(exc))

        await report(ctx, "Google Calendar authentication completed.")
        return AuthStatus(authenticated=True, message="Authentication successful.")

    @server.tool(
        description="Report whether Google Calendar tokens are available.",
        structured_output=True,
    )
    async def auth_status() -> AuthStatus:
        if oauth_manager.has_stored_credentials():
            return AuthStatus(authenticated=True, message="Authenticated.")
        return AuthStatus(authenticated=False, message=AUTH_HELP)

    @server.tool(
        description="List events in a Google Calendar ordered by start time.",
        structured_output=True,
    )
    async def list_events(
        calendar_id: str = "primary",
        max_results: int = 10,
        time_min: datetime | None = None,
        time_max: datetime | None = None,
        query: str | None = None,
        ctx: Context | None = None,
    ) -> list[EventOutput]:
        """
        Args:
            calendar_id: Calendar to read, ``primary`` for the signed-in user.
            max_results: Upper bound on returned events (at most 2500).
            time_min: Earliest start time to include, defaults to now.
            time_max: Exclusive upper bound on start time.
            query: Free-text filter.
        """
        with _calendar_errors():
            events = await calendar_api.list_events(
                calendar_id=calendar_id,
                max_results=max_results,
                time_min=_as_utc(time_min) or datetime.now(timezone.utc),
                time_max=_as_utc(time_max),
                query=query,
            )

        found = [EventOutput.model_validate(normalize_event(event)) for event in events]
        await report(ctx, f"Fetched {len(found)} events from calendar '{calendar_id}'.")
        return found

    @server.tool(
        description="Create an event, optionally with a Google Meet link.",
        structured_output=True,
    )
    async def create_event(
        summary: str,
        start: EventTime,
        end: EventTime,
        calendar_id: str = "primary",
        description: str | None = None,
        location: str | None = None,
        attendees: list[Attendee] | None = None,
        conference_solution: bool = False,
        ctx: Context | None = None,
    ) -> EventOutput:
        body = build_event_body(
            summary=summary,
            description=description,
            location=location,
            start=start,
            end=end,
            attendees=attendees,
            add_meet_link=conference_solution,
        )
        with _calendar_errors():
            created = await calendar_api.create_event(
                calendar_id=calendar_id,
                body=body,
                conference_data_version=1 if conference_solution else None,
            )

        event = EventOutput.model_validate(normalize_event(created))
        await report(ctx, f"Created event '{event.id}' in calendar '{calendar_id}'.")
        return event

    @server.tool(
        description="Patch fields of an existing event. Omitted fields are left unchanged.",
        structured_output=True,
    )
    async def update_event(
        event_id: str,
        calendar_id: str = "primary",
        summary: str | None = None,
        description: str | None = None,
        location: str | None = None,
        start: EventTime | None = None,
        end: EventTime | None = None,
        attendees: list[Attendee] | None = None,
        conference_solution: bool | None = None,
        ctx: Context | None = None,
    ) -> EventOutput:
        # conference_solution=False keeps whatever conference the event already has.
        body = build_event_body(
            summary=summary,
            description=description,
            location=location,
            start=start,
            end=end,
            attendees=attendees,
            add_meet_link=conference_solution is True,
        )
        if not body:
            raise RuntimeError("No updates were provided.")

        with _calendar_errors():
            updated = await calendar_api.update_event(
                calendar_id=calendar_id,
                event_id=event_id,
                body=body,
                conference_data_version=1 if conference_solution else None,
            )

        await report(ctx, f"Updated event '{event_id}' in calendar '{calendar_id}'.")
        return EventOutput.model_validate(normalize_event(updated))

    @server.tool(description="Delete a Google Calendar event.", structured_output=True)
    async def delete_event(
        event_id: str,
        calendar_id: str = "primary",
        ctx: Context | None = None,
    ) -> DeleteEventResult:
        with _calendar_errors():
            await calendar_api.delete_event(calendar_id=calendar_id, event_id=event_id)

        await report(ctx, f"Deleted event '{event_id}' from calendar '{calendar_id}'.")
        return DeleteEventResult(event_id=event_id, calendar_id=calendar_id)

    @server.tool(
        description="List calendars the signed-in account can see.",
        structured_output=True,
    )
    async def list_calendars(ctx: Context | None = None) -> list[CalendarSummary]:
        with _calendar_errors():
            calendars = await calendar_api.list_calendars()

        summaries = [CalendarSummary.model_validate(cal) for cal in calendars]
        await report(ctx, f"Found {len(summaries)} calendars.")
        return summaries

    return server


def create_app(oauth_manager: GoogleOAuthManager):
    """Expose the MCP server over the SSE transport as an ASGI app."""
    return create_calendar_server(oauth_manager).sse_app()
