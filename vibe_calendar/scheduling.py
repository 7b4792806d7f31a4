"""Smart scheduling: find free slots in the calendar and let the model pick one.

``find_available_slots`` walks the requested date range day by day, steps
through the working hours in 30-minute increments and keeps every slot of
the requested duration that does not overlap an existing event.  The free
slots then go to the model (through :class:`ModelInvoker`, so fallback and
the session's sticky model apply) with the event description and the user's
preferences, and the model answers with ``{"selectedSlot", "reasoning"}``.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, tzinfo
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from vibe_calendar.invoker import InvocationRequest, ModelInvoker
from vibe_calendar.prompts import resolve_timezone
from vibe_calendar.services.calendar_client import GoogleCalendarClient
from vibe_calendar.services.metrics import short_session
from vibe_calendar.tools.dispatcher import json_object_candidates

logger = logging.getLogger(__name__)

SLOT_STEP = timedelta(minutes=30)
MAX_PROMPT_SLOTS = 100

SCHEDULE_PROMPT_TEMPLATE = """\
Given these available time slots and the event description, select the best time:

Event: {description}
Preferences: {preferences}
Available Slots: {slots}

Select the best time slot and provide reasoning. Respond in JSON format:
{{
  "selectedSlot": "YYYY-MM-DDTHH:MM:SS",
  "reasoning": "Why this slot was chosen"
}}
"""


class CalendarNotConnectedError(Exception):
    """The session has no usable Google Calendar credentials."""


class ScheduleResponseError(Exception):
    """The model's answer did not contain a slot selection."""


@dataclass(frozen=True)
class ScheduleConstraints:
    start_date: str
    end_date: str
    duration_minutes: int = 60
    work_start_hour: int = 9
    work_end_hour: int = 17


@dataclass
class ScheduleResult:
    selected_time: str
    reasoning: str
    slots_considered: int
    model_used: str
    switched: bool = False
    original_model: str | None = None


class SlotSelection(BaseModel):
    selected_slot: str = Field(alias="selectedSlot", min_length=1)
    reasoning: str = ""


# ── Free-slot search ─────────────────────────────────────────────────


def _parse_bound(value: str, tz: tzinfo) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz)
    return parsed


def _event_edge(edge: dict[str, Any], tz: tzinfo) -> datetime | None:
    if edge.get("dateTime"):
        return _parse_bound(edge["dateTime"], tz)
    if edge.get("date"):
        return datetime.combine(date.fromisoformat(edge["date"]), time.min, tzinfo=tz)
    return None


def _busy_intervals(events: list[dict[str, Any]], tz: tzinfo) -> list[tuple[datetime, datetime]]:
    busy = []
    for event in events:
        start = _event_edge(event.get("start") or {}, tz)
        end = _event_edge(event.get("end") or {}, tz)
        if start is not None and end is not None:
            busy.append((start, end))
    return busy


def find_available_slots(
    calendar: GoogleCalendarClient,
    constraints: ScheduleConstraints,
    timezone: str | None = None,
) -> list[str]:
    """Start times (ISO 8601 with offset) of free slots inside working hours.

    Working hours are read in the user's *timezone*.  A slot must end by the
    close of the working day and may not start before ``start_date``.
    Calendar errors propagate.
    """
    _, tz = resolve_timezone(timezone)
    range_start = _parse_bound(constraints.start_date, tz)
    range_end = _parse_bound(constraints.end_date, tz)
    duration = timedelta(minutes=constraints.duration_minutes)

    events = calendar.list_events(
        range_start.isoformat(), range_end.isoformat(),
    )
    busy = _busy_intervals(events, tz)

    slots: list[str] = []
    day = range_start.astimezone(tz).date()
    while datetime.combine(day, time.min, tzinfo=tz) < range_end:
        day_open = datetime.combine(day, time(constraints.work_start_hour), tzinfo=tz)
        day_close = datetime.combine(day, time.min, tzinfo=tz) + timedelta(
            hours=constraints.work_end_hour,
        )
        slot = day_open
        while slot + duration <= day_close:
            slot_end = slot + duration
            if slot >= range_start and not any(
                slot < busy_end and slot_end > busy_start for busy_start, busy_end in busy
            ):
                slots.append(slot.isoformat())
            slot += SLOT_STEP
        day += timedelta(days=1)

    logger.info(
        "Found %d free slots between %s and %s (%d existing events)",
        len(slots), constraints.start_date, constraints.end_date, len(events),
    )
    return slots


# ── Model selection ──────────────────────────────────────────────────


def parse_slot_selection(raw_text: str) -> SlotSelection:
    """Decode the model's ``{"selectedSlot", "reasoning"}`` answer."""
    for candidate in json_object_candidates(raw_text):
        try:
            return SlotSelection.model_validate_json(candidate)
        except ValidationError:
            continue
    raise ScheduleResponseError("The AI response could not be parsed as a slot selection")


class SmartScheduler:
    """Ask the model to pick the best free slot for an event."""

    def __init__(self, invoker: ModelInvoker) -> None:
        self._invoker = invoker

    def schedule(
        self,
        session_id: str,
        calendar: GoogleCalendarClient,
        description: str,
        preferences: str,
        constraints: ScheduleConstraints,
        timezone: str | None = None,
    ) -> ScheduleResult | None:
        """Return the model's pick, or ``None`` when nothing is free.

        Model failures propagate; an unreadable answer raises
        :class:`ScheduleResponseError`.
        """
        slots = find_available_slots(calendar, constraints, timezone)
        if not slots:
            logger.info("No free slots for session %s", short_session(session_id))
            return None

        offered = slots[:MAX_PROMPT_SLOTS]
        prompt = SCHEDULE_PROMPT_TEMPLATE.format(
            description=description,
            preferences=preferences or "none",
            slots=json.dumps(offered),
        )
        result = self._invoker.invoke(
            InvocationRequest(current_message=prompt, session_id=session_id)
        )
        selection = parse_slot_selection(result.text)
        if selection.selected_slot not in offered:
            logger.warning(
                "Model picked %s, which is not one of the %d offered slots",
                selection.selected_slot, len(offered),
            )

        logger.info(
            "Smart schedule for session %s: %s via %s",
            short_session(session_id), selection.selected_slot, result.model_used,
        )
        return ScheduleResult(
            selected_time=selection.selected_slot,
            reasoning=selection.reasoning,
            slots_considered=len(offered),
            model_used=result.model_used,
            switched=result.switched,
            original_model=result.original_model,
        )
