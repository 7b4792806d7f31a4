"""Tests for system prompt generation."""

from __future__ import annotations

from datetime import UTC, datetime
from unittest.mock import MagicMock

from vibe_calendar.prompts import describe_tools, generate_system_prompt
from vibe_calendar.tools.calendar import CALENDAR_TOOLS
from vibe_calendar.tools.dispatcher import ParamSpec, ToolRegistry, ToolSpec

NOW = datetime(2025, 3, 7, 15, 30, tzinfo=UTC)

REGISTRY = ToolRegistry(
    {
        "create_event": ToolSpec(
            handler=MagicMock(),
            description="Create a new event.",
            parameters={
                "event": ParamSpec(
                    "The event",
                    required=True,
                    fields={
                        "title": ParamSpec("Event title", required=True),
                        "location": ParamSpec("Event location"),
                    },
                ),
                "notify": ParamSpec("Send emails"),
            },
            returns={"success": "Tool success status"},
        ),
    }
)


class TestDescribeTools:
    def test_nested_fields_with_markers(self):
        text = describe_tools(REGISTRY)
        assert text.splitlines() == [
            "TOOLS:",
            "- create_event: Create a new event.",
            "  Input parameters:",
            "    event (object, required):",
            "      - title (required): Event title",
            "      - location (optional): Event location",
            "    notify (optional): Send emails",
            "  Returns:",
            "    success: Tool success status",
        ]

    def test_every_calendar_tool_listed(self):
        text = describe_tools(CALENDAR_TOOLS)
        for name in CALENDAR_TOOLS:
            assert f"- {name}: " in text


class TestGenerateSystemPrompt:
    def test_contains_tools_format_and_context(self):
        prompt = generate_system_prompt("Europe/Lisbon", REGISTRY, now=NOW)
        assert "AVAILABLE TOOLS:\nTOOLS:\n- create_event" in prompt
        assert '"tools": [' in prompt
        assert "TOOL_RESULTS:" in prompt
        assert "User timezone: Europe/Lisbon" in prompt
        assert "Current time: Friday, March 07, 2025 03:30:00 PM WET" in prompt

    def test_time_rendered_in_user_timezone(self):
        prompt = generate_system_prompt("America/New_York", REGISTRY, now=NOW)
        assert "10:30:00 AM EST" in prompt

    def test_unknown_timezone_falls_back_to_utc(self):
        prompt = generate_system_prompt("Mars/Olympus_Mons", REGISTRY, now=NOW)
        assert "User timezone: UTC" in prompt
        assert "03:30:00 PM UTC" in prompt

    def test_deterministic_for_fixed_time(self):
        assert generate_system_prompt("UTC", REGISTRY, now=NOW) == generate_system_prompt(
            "UTC", REGISTRY, now=NOW,
        )

    def test_none_timezone_is_utc(self):
        assert "User timezone: UTC" in generate_system_prompt(None, REGISTRY, now=NOW)
