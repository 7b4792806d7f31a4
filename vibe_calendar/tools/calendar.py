"""Calendar tools the model can call.

Each handler takes the model-supplied ``parameters`` plus a
:class:`ToolContext` and returns a :class:`ToolResult` whose ``message`` is
fed back to the model as part of the TOOL_RESULTS turn.  Handlers raise
:class:`ToolExecutionError` for bad input; ``dispatch`` turns any exception
into a failed result.

The model is inconsistent about nesting (``{"event": {...}}`` vs. flat
fields, ``{"criteria": {...}}`` vs. flat dates), so both shapes are accepted.
"""

from __future__ import annotations

import logging
import re
from datetime import UTC, datetime, timedelta
from typing import Any

from vibe_calendar.services.calendar_client import (
    CalendarAPIError,
    CalendarRateLimiter,
    GoogleCalendarClient,
)
from vibe_calendar.tools.dispatcher import (
    ParamSpec,
    ToolContext,
    ToolExecutionError,
    ToolRegistry,
    ToolResult,
    ToolSpec,
)

logger = logging.getLogger(__name__)

DEFAULT_QUERY_WINDOW = timedelta(days=30)
EVENT_FIELDS = (
    "title", "startTime", "endTime", "description",
    "location", "attendees", "reminders", "timezone",
)

_REMINDER_RE = re.compile(r"(\d+)\s*(minute|min|hour|hr|day)", re.IGNORECASE)

_rate_limiter = CalendarRateLimiter()


# ── Helpers ──────────────────────────────────────────────────────────


def _require_calendar(context: ToolContext) -> GoogleCalendarClient:
    if context.calendar is None:
        raise ToolExecutionError("Google Calendar is not connected for this session")
    return context.calendar


def reminder_minutes(reminder: str | int) -> int:
    """Turn '15 minutes before' / '1 hour before' / 30 into minutes (default 60)."""
    if isinstance(reminder, int):
        return reminder
    match = _REMINDER_RE.search(str(reminder))
    if not match:
        return 60
    amount, unit = int(match.group(1)), match.group(2).lower()
    if unit.startswith("h"):
        return amount * 60
    if unit.startswith("d"):
        return amount * 60 * 24
    return amount


def _reminders_block(reminders: list[str | int]) -> dict[str, Any]:
    return {
        "useDefault": False,
        "overrides": [{"method": "email", "minutes": reminder_minutes(r)} for r in reminders],
    }


def _to_iso(value: str) -> str:
    """Normalise an ISO 8601 string; raises ``ValueError`` when unparseable."""
    dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt.isoformat()


def _extract_event(parameters: dict[str, Any]) -> dict[str, Any] | None:
    event = parameters.get("event")
    if isinstance(event, dict):
        return event
    flat = {k: parameters[k] for k in EVENT_FIELDS if parameters.get(k) is not None}
    return flat or None


# ── Tool: create_event ───────────────────────────────────────────────


def create_event(parameters: dict[str, Any], context: ToolContext) -> ToolResult:
    event = _extract_event(parameters)
    if not event or not all(event.get(k) for k in ("title", "startTime", "endTime")):
        raise ToolExecutionError("Missing required event fields")

    calendar = _require_calendar(context)
    tz = event.get("timezone") or context.timezone or "UTC"
    body = {
        "summary": event["title"],
        "description": event.get("description"),
        "location": event.get("location"),
        "start": {"dateTime": event["startTime"], "timeZone": tz},
        "end": {"dateTime": event["endTime"], "timeZone": tz},
        "attendees": [{"email": email} for email in event.get("attendees") or []],
        "reminders": _reminders_block(event.get("reminders") or []),
    }

    _rate_limiter.wait(context.session_id)
    created = calendar.insert_event(body)
    return ToolResult(
        success=True,
        message=f'Event "{event["title"]}" created successfully!',
        data={"event": created},
    )


# ── Tool: query_events ───────────────────────────────────────────────


def query_events(parameters: dict[str, Any], context: ToolContext) -> ToolResult:
    criteria = parameters.get("criteria") or {}
    start_date = criteria.get("startDate") or parameters.get("startDate")
    end_date = criteria.get("endDate") or parameters.get("endDate")
    search_term = criteria.get("searchTerm") or parameters.get("searchTerm")

    try:
        now = datetime.now(UTC)
        time_min = _to_iso(start_date) if start_date else now.isoformat()
        time_max = _to_iso(end_date) if end_date else (now + DEFAULT_QUERY_WINDOW).isoformat()
    except ValueError:
        logger.warning("Invalid date in query_events: start=%r end=%r", start_date, end_date)
        return ToolResult(
            success=False,
            message=(
                "Invalid date format provided. Please use ISO date format "
                "(YYYY-MM-DDTHH:mm:ss.sssZ)."
            ),
        )

    calendar = _require_calendar(context)
    items = calendar.list_events(time_min, time_max, query=search_term)
    events = [
        {
            "id": item.get("id"),
            "summary": item.get("summary"),
            "start": item.get("start"),
            "end": item.get("end"),
            "description": item.get("description"),
            "location": item.get("location"),
            "attendees": item.get("attendees"),
            "reminders": item.get("reminders"),
        }
        for item in items
    ]
    return ToolResult(
        success=True,
        message=(
            f"Found {len(events)} events matching your criteria. "
            "Each event has an ID that can be used for deletion."
        ),
        data={"events": events, "count": len(events)},
    )


# ── Tool: update_event ───────────────────────────────────────────────


def update_event(parameters: dict[str, Any], context: ToolContext) -> ToolResult:
    event_id = parameters.get("eventId")
    event = parameters.get("event")
    if not event_id or not isinstance(event, dict):
        raise ToolExecutionError("Missing event ID or event data")

    calendar = _require_calendar(context)
    existing = calendar.get_event(event_id)

    merged = dict(existing)
    merged["summary"] = event.get("title") or existing.get("summary")
    for key in ("description", "location"):
        if key in event:
            merged[key] = event[key]
    if event.get("attendees"):
        merged["attendees"] = [{"email": email} for email in event["attendees"]]
    if event.get("reminders"):
        merged["reminders"] = _reminders_block(event["reminders"])
    # Only move the event when both ends are given
    if event.get("startTime") and event.get("endTime"):
        tz = event.get("timezone") or context.timezone or "UTC"
        merged["start"] = {"dateTime": event["startTime"], "timeZone": tz}
        merged["end"] = {"dateTime": event["endTime"], "timeZone": tz}

    _rate_limiter.wait(context.session_id)
    updated = calendar.update_event(event_id, merged)
    title = event.get("title") or updated.get("summary") or "Unknown"
    return ToolResult(
        success=True,
        message=f'Event "{title}" updated successfully!',
        data={"event": updated},
    )


# ── Tool: delete_event ───────────────────────────────────────────────

_DELETE_ERRORS = {
    401: "Authentication failed - please reconnect your Google Calendar",
    403: "Permission denied - check your Google Calendar permissions",
    404: "Event not found - it may have been deleted already",
    429: "Rate limit exceeded - please try again later",
}


def delete_event(parameters: dict[str, Any], context: ToolContext) -> ToolResult:
    event_id = parameters.get("eventId")
    title = parameters.get("eventTitle") or "Unknown"
    if not event_id:
        raise ToolExecutionError("Missing event ID")

    calendar = _require_calendar(context)
    _rate_limiter.wait(context.session_id)
    try:
        calendar.delete_event(event_id)
    except CalendarAPIError as exc:
        if exc.status_code == 410:
            return ToolResult(
                success=True,
                message=f'Event "{title}" was already deleted',
                data={"eventId": event_id, "eventTitle": title},
            )
        logger.error("Delete event %s failed: %s", event_id, exc)
        return ToolResult(
            success=False,
            message=_DELETE_ERRORS.get(exc.status_code, "Failed to delete calendar event"),
            data={"error": str(exc), "eventId": event_id, "eventTitle": title},
        )

    return ToolResult(
        success=True,
        message=f'Event "{title}" deleted successfully!',
        data={"eventId": event_id, "eventTitle": title},
    )


# ── Registry ─────────────────────────────────────────────────────────

_EVENT_FIELD_SPECS = {
    "title": "Event title",
    "startTime": "Start time (ISO)",
    "endTime": "End time (ISO)",
    "description": "Event details",
    "location": "Event location",
    "attendees": "Attendee emails",
    "reminders": "Reminders",
    "timezone": "Timezone",
}

CALENDAR_TOOLS = ToolRegistry(
    {
        "create_event": ToolSpec(
            handler=create_event,
            description="Create a new event.",
            parameters={
                "event": ParamSpec(
                    "The event to create",
                    required=True,
                    fields={
                        name: ParamSpec(desc, required=name in ("title", "startTime", "endTime"))
                        for name, desc in _EVENT_FIELD_SPECS.items()
                    },
                ),
            },
            returns={
                "success": "Tool success status",
                "event": "Created event data",
                "message": "User message",
            },
        ),
        "query_events": ToolSpec(
            handler=query_events,
            description=(
                "Access user's Google Calendar to view scheduled events and "
                "find available time slots."
            ),
            parameters={
                "criteria": ParamSpec(
                    "Search criteria",
                    required=True,
                    fields={
                        "startDate": ParamSpec("Start date (ISO)"),
                        "endDate": ParamSpec("End date (ISO)"),
                        "searchTerm": ParamSpec("Search keyword"),
                    },
                ),
            },
            returns={
                "success": "Tool success status",
                "events": "Found events array with IDs",
                "count": "Event count",
                "message": "User message",
            },
        ),
        "update_event": ToolSpec(
            handler=update_event,
            description="Update an existing event in the calendar.",
            parameters={
                "eventId": ParamSpec("ID of event to update", required=True),
                "event": ParamSpec(
                    "The fields to change",
                    required=True,
                    fields={
                        name: ParamSpec(f"New {desc[0].lower()}{desc[1:]}")
                        for name, desc in _EVENT_FIELD_SPECS.items()
                    },
                ),
            },
            returns={
                "success": "Tool success status",
                "event": "Updated event data",
                "message": "User message",
            },
            requires_confirmation=True,
        ),
        "delete_event": ToolSpec(
            handler=delete_event,
            description="Delete an event from the calendar.",
            parameters={
                "eventId": ParamSpec("ID of event to delete", required=True),
                "eventTitle": ParamSpec("Title of the event"),
            },
            returns={
                "success": "Tool success status",
                "message": "User message",
            },
            requires_confirmation=True,
        ),
    }
)
