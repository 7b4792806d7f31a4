"""Tests for tool-call parsing and dispatch."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from vibe_calendar.tools.dispatcher import (
    ToolContext,
    ToolExecutionError,
    ToolRegistry,
    ToolResult,
    ToolSpec,
    dispatch,
    parse_response,
)

# ── Tests: parse_response ────────────────────────────────────────────


class TestParseResponse:
    def test_bare_json_object(self):
        raw = '{"tools": [{"tool": "query_events", "parameters": {"criteria": {}}}], "message": "Looking"}'
        parsed = parse_response(raw)
        assert parsed.is_json is True
        assert parsed.message == "Looking"
        assert [t.tool for t in parsed.tools] == ["query_events"]
        assert parsed.tools[0].parameters == {"criteria": {}}

    def test_fenced_json_block(self):
        raw = 'Sure!\n```json\n{"tools": [{"tool": "create_event"}], "message": "Creating"}\n```'
        parsed = parse_response(raw)
        assert parsed.is_json is True
        assert parsed.tools[0].tool == "create_event"
        assert parsed.tools[0].parameters == {}

    def test_fenced_block_without_language_tag(self):
        raw = '```\n{"tools": [], "message": "Nothing to do"}\n```'
        parsed = parse_response(raw)
        assert parsed.is_json is True
        assert parsed.tools == []
        assert parsed.message == "Nothing to do"

    def test_json_embedded_in_prose(self):
        raw = 'Okay, here it is {"tools": [{"tool": "delete_event", "parameters": {"eventId": "e1"}}]} thanks'
        parsed = parse_response(raw)
        assert parsed.is_json is True
        assert parsed.tools[0].parameters == {"eventId": "e1"}

    def test_missing_message_falls_back_to_raw_text(self):
        raw = '{"tools": []}'
        parsed = parse_response(raw)
        assert parsed.is_json is True
        assert parsed.message == raw

    def test_plain_text(self):
        parsed = parse_response("Hello! How can I help?")
        assert parsed.is_json is False
        assert parsed.tools == []
        assert parsed.message == "Hello! How can I help?"

    def test_malformed_json(self):
        raw = '{"tools": [{"tool": "x", }'
        parsed = parse_response(raw)
        assert parsed.is_json is False
        assert parsed.message == raw

    def test_tools_not_a_list(self):
        parsed = parse_response('{"tools": "create_event", "message": "hi"}')
        assert parsed.is_json is False
        assert parsed.tools == []

    def test_missing_tools_key(self):
        parsed = parse_response('{"message": "just a message"}')
        assert parsed.is_json is False

    def test_empty_input(self):
        parsed = parse_response("")
        assert parsed.is_json is False
        assert parsed.message == ""


# ── Tests: dispatch ──────────────────────────────────────────────────


def _registry(handler, *, requires_confirmation: bool = False) -> ToolRegistry:
    return ToolRegistry(
        {
            "do_thing": ToolSpec(
                handler=handler,
                description="Does a thing",
                requires_confirmation=requires_confirmation,
            )
        }
    )


CONTEXT = ToolContext(session_id="sess-1")


class TestDispatch:
    def test_unknown_tool(self):
        handler = MagicMock()
        result = dispatch("nope", {}, CONTEXT, _registry(handler))
        assert result == ToolResult(False, "Unknown tool: nope", False)
        handler.assert_not_called()

    def test_calls_handler_with_parameters_and_context(self):
        handler = MagicMock(return_value=ToolResult(True, "done"))
        result = dispatch("do_thing", {"a": 1}, CONTEXT, _registry(handler))
        handler.assert_called_once_with({"a": 1}, CONTEXT)
        assert result.success is True
        assert result.message == "done"

    def test_confirmation_flag_comes_from_registry(self):
        handler = MagicMock(return_value=ToolResult(True, "done", requires_confirmation=False))
        result = dispatch(
            "do_thing", {}, CONTEXT, _registry(handler, requires_confirmation=True),
        )
        assert result.requires_confirmation is True

    def test_handler_flag_overridden_when_registry_says_no(self):
        handler = MagicMock(return_value=ToolResult(True, "done", requires_confirmation=True))
        result = dispatch("do_thing", {}, CONTEXT, _registry(handler))
        assert result.requires_confirmation is False

    def test_handler_exception_becomes_failed_result(self):
        handler = MagicMock(side_effect=ToolExecutionError("Missing event ID"))
        result = dispatch("do_thing", {}, CONTEXT, _registry(handler, requires_confirmation=True))
        assert result == ToolResult(False, "Failed to do_thing: Missing event ID", False)

    def test_unexpected_exception_also_contained(self):
        handler = MagicMock(side_effect=RuntimeError("boom"))
        result = dispatch("do_thing", {}, CONTEXT, _registry(handler))
        assert result.success is False
        assert result.message == "Failed to do_thing: boom"

    @pytest.mark.parametrize("returned", [None, {"success": True}, "done"])
    def test_non_result_return_becomes_failed_result(self, returned):
        handler = MagicMock(return_value=returned)
        result = dispatch("do_thing", {}, CONTEXT, _registry(handler))
        assert result == ToolResult(False, "Failed to do_thing: tool returned no result", False)

    def test_none_parameters_become_empty_dict(self):
        handler = MagicMock(return_value=ToolResult(True, "ok"))
        dispatch("do_thing", None, CONTEXT, _registry(handler))
        handler.assert_called_once_with({}, CONTEXT)


class TestToolResult:
    def test_to_dict_flattens_data(self):
        result = ToolResult(True, "ok", data={"count": 2})
        assert result.to_dict() == {
            "success": True,
            "message": "ok",
            "requires_confirmation": False,
            "count": 2,
        }


class TestToolRegistry:
    def test_mapping_behaviour(self):
        registry = _registry(MagicMock(), requires_confirmation=True)
        assert list(registry) == ["do_thing"]
        assert len(registry) == 1
        assert registry.requires_confirmation("do_thing") is True
        assert registry.requires_confirmation("missing") is False
