"""Pydantic schemas for MCP tool inputs and structured outputs."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class EventTime(BaseModel):
    """Start or end of a timed event."""

    value: datetime = Field(
        description="ISO8601 timestamp; a trailing 'Z' or a naive value means UTC."
    )
    time_zone: str | None = Field(
        default=None,
        description="IANA zone name such as 'Asia/Tokyo' used to render the event.",
    )

    @field_validator("value", mode="before")
    @classmethod
    def accept_zulu_suffix(cls, raw: Any) -> Any:
        if isinstance(raw, str) and raw.endswith("Z"):
            return f"{raw[:-1]}+00:00"
        return raw

    def to_google(self) -> dict[str, str]:
        moment = self.value if self.value.tzinfo else self.value.replace(tzinfo=timezone.utc)
        boundary = {"dateTime": moment.isoformat()}
        if self.time_zone:
            boundary["timeZone"] = self.time_zone
        return boundary


class Attendee(BaseModel):
    email: str = Field(description="Attendee email address.")
    optional: bool = Field(default=False, description="Mark the attendee as optional.")

    def to_google(self) -> dict[str, Any]:
        return self.model_dump()


class EventOutput(BaseModel):
    """Event as returned to MCP clients, with start/end flattened to strings."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    summary: str | None = None
    description: str | None = None
    location: str | None = None
    start: str | None = None
    end: str | None = None
    status: str | None = None
    html_link: str | None = Field(default=None, alias="htmlLink")
    hangout_link: str | None = Field(default=None, alias="hangoutLink")
    updated: str | None = None
    organizer: dict[str, Any] | None = None


class CalendarSummary(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    summary: str
    description: str | None = None
    primary: bool | None = None
    time_zone: str | None = Field(default=None, alias="timeZone")
    access_role: str | None = Field(default=None, alias="accessRole")


class DeleteEventResult(BaseModel):
    deleted: bool = True
    event_id: str
    calendar_id: str


class AuthStatus(BaseModel):
    authenticated: bool = Field(description="True when usable Google tokens are stored.")
    message: str
