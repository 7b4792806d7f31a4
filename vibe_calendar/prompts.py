"""System prompt for the Vibe calendar assistant."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import UTC, datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from vibe_calendar.tools.dispatcher import ToolSpec

logger = logging.getLogger(__name__)

SYSTEM_PROMPT_TEMPLATE = """You are Vibe, a friendly personal assistant. Respond in the same language as the user. Apart from your own knowledge, you have access to the following tools to serve the user:

AVAILABLE TOOLS:
{tools}

TOOL CALLING FORMAT:
  {{
    "tools": [
      {{ "tool": "tool_name", "parameters": {{ ... }} }}
    ],
    "message": "your natural language reply"
  }}

CRITICAL RULES:
- If you call tools, your entire response text should be a JSON object as described above. No natural language outside the JSON object allowed!
- When you see "TOOL_RESULTS:" messages, these contain results from tools you previously called. Use this information naturally in your responses, but NEVER mention "tool output", "tool results", or reference the technical JSON format to users.
- Updating or deleting an event needs the user's confirmation. Always query first so you have the event ID.

CONTEXT:
User timezone: {timezone}
Current time: {current_time}"""


def _marker(required: bool) -> str:
    return "required" if required else "optional"


def describe_tools(registry: Mapping[str, ToolSpec]) -> str:
    """Render the TOOLS block: name, description, parameters, returns."""
    lines = ["TOOLS:"]
    for name, spec in registry.items():
        lines.append(f"- {name}: {spec.description}")
        if spec.parameters:
            lines.append("  Input parameters:")
            for param, meta in spec.parameters.items():
                if meta.fields:
                    suffix = ", required" if meta.required else ""
                    lines.append(f"    {param} (object{suffix}):")
                    for field_name, field_meta in meta.fields.items():
                        lines.append(
                            f"      - {field_name} ({_marker(field_meta.required)}): "
                            f"{field_meta.description}"
                        )
                else:
                    lines.append(f"    {param} ({_marker(meta.required)}): {meta.description}")
        if spec.returns:
            lines.append("  Returns:")
            for field_name, desc in spec.returns.items():
                lines.append(f"    {field_name}: {desc}")
    return "\n".join(lines)


def resolve_timezone(timezone: str | None) -> tuple[str, ZoneInfo]:
    name = timezone or "UTC"
    try:
        return name, ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r, falling back to UTC", name)
        return "UTC", ZoneInfo("UTC")


def generate_system_prompt(
    timezone: str | None,
    registry: Mapping[str, ToolSpec],
    *,
    now: datetime | None = None,
) -> str:
    """Build the system prompt for a user in *timezone*.

    Only the current-time line depends on the clock; pass ``now`` to pin it.
    """
    tz_name, tz = resolve_timezone(timezone)
    current = (now or datetime.now(UTC)).astimezone(tz)
    return SYSTEM_PROMPT_TEMPLATE.format(
        tools=describe_tools(registry),
        timezone=tz_name,
        current_time=current.strftime("%A, %B %d, %Y %I:%M:%S %p %Z"),
    )
