"""Tests for the LangGraph chat agent.

Covers:
  - History conversion between stored turns and LangChain messages
  - Routing decisions (tools vs END, looping back to the model)
  - End-to-end turns with a mocked invoker and an in-memory session store
  - Confirmation gating for update/delete style tools
"""

from __future__ import annotations

import json
import time
from unittest.mock import MagicMock

import pytest
from langchain_core.messages import AIMessage, HumanMessage
from langgraph.graph import END

from vibe_calendar.agent import (
    MAX_TOOL_ROUNDS,
    TOOL_RESULTS_PREFIX,
    ChatAgent,
    history_to_messages,
    messages_to_history,
    should_continue,
    should_use_tools,
)
from vibe_calendar.invoker import InvocationResult
from vibe_calendar.scheduling import CalendarNotConnectedError, ScheduleConstraints
from vibe_calendar.services.gemini_client import ModelTransportError
from vibe_calendar.services.session_store import SessionStore
from vibe_calendar.tools.dispatcher import ToolRegistry, ToolResult, ToolSpec

# ── Helpers ──────────────────────────────────────────────────────────


def _result(text: str, model: str = "gemini-2.5-pro", **kwargs) -> InvocationResult:
    return InvocationResult(
        success=True,
        payload={"candidates": [{"content": {"parts": [{"text": text}]}}]},
        model_used=model,
        **kwargs,
    )


def _tool_reply(*calls: tuple[str, dict], message: str = "On it") -> str:
    return json.dumps(
        {"tools": [{"tool": name, "parameters": params} for name, params in calls], "message": message}
    )


@pytest.fixture
def lookup_handler():
    return MagicMock(return_value=ToolResult(True, "Found 1 events", data={"count": 1}))


@pytest.fixture
def remove_handler():
    return MagicMock(return_value=ToolResult(True, "Removed"))


@pytest.fixture
def registry(lookup_handler, remove_handler):
    return ToolRegistry(
        {
            "lookup": ToolSpec(handler=lookup_handler, description="Look things up"),
            "remove": ToolSpec(
                handler=remove_handler, description="Remove a thing", requires_confirmation=True,
            ),
        }
    )


@pytest.fixture
def store():
    return SessionStore()


@pytest.fixture
def session(store):
    return store.create(timezone="Europe/Lisbon")


@pytest.fixture
def invoker():
    return MagicMock()


@pytest.fixture
def agent(invoker, store, registry):
    return ChatAgent(invoker, store, registry)


# ── History conversion ───────────────────────────────────────────────


class TestHistoryConversion:
    def test_round_trip_keeps_roles_and_pins(self):
        history = [
            {"role": "user", "content": "hi", "pinned": True},
            {"role": "model", "content": "hello"},
        ]
        messages = history_to_messages(history)
        assert isinstance(messages[0], HumanMessage)
        assert isinstance(messages[1], AIMessage)
        assert messages_to_history(messages) == history

    def test_structured_content_serialised(self):
        messages = history_to_messages([{"role": "model", "content": {"tools": []}}])
        assert messages[0].content == '{"tools": []}'


# ── Conditional edges ────────────────────────────────────────────────


class TestRouting:
    def test_tools_when_pending(self):
        state = {"pending_tools": [{"tool": "lookup"}], "tool_rounds": 0}
        assert should_use_tools(state) == "tools"

    def test_end_without_tools(self):
        assert should_use_tools({"pending_tools": [], "tool_rounds": 0}) == END

    def test_end_after_max_rounds(self):
        state = {"pending_tools": [{"tool": "lookup"}], "tool_rounds": MAX_TOOL_ROUNDS}
        assert should_use_tools(state) == END

    def test_back_to_model_after_tool_results(self):
        state = {"messages": [HumanMessage(content=TOOL_RESULTS_PREFIX + "[]")]}
        assert should_continue(state) == "model"

    def test_end_when_nothing_executed(self):
        state = {"messages": [AIMessage(content="Shall I delete it?")]}
        assert should_continue(state) == END


# ── Chat turns ───────────────────────────────────────────────────────


class TestChat:
    def test_plain_reply(self, agent, invoker, store, session):
        invoker.invoke.return_value = _result("Hello! What can I schedule for you?")

        turn = agent.chat(session.session_id, "Hi")

        assert turn.reply == "Hello! What can I schedule for you?"
        assert turn.tool_results == []
        assert turn.model_used == "gemini-2.5-pro"
        assert turn.switched is False
        assert store.get(session.session_id).history == [
            {"role": "user", "content": "Hi"},
            {"role": "model", "content": "Hello! What can I schedule for you?"},
        ]

    def test_request_carries_history_prompt_and_session(self, agent, invoker, store, session):
        session.history = [
            {"role": "user", "content": "earlier"},
            {"role": "model", "content": "reply"},
        ]
        invoker.invoke.return_value = _result("ok")

        agent.chat(session.session_id, "now")

        request = invoker.invoke.call_args.args[0]
        assert request.current_message == "now"
        assert request.conversation_history == session.history[:2]
        assert request.session_id == session.session_id
        assert "User timezone: Europe/Lisbon" in request.system_prompt

    def test_tool_loop_feeds_results_back(self, agent, invoker, lookup_handler, session):
        invoker.invoke.side_effect = [
            _result(_tool_reply(("lookup", {"q": "lunch"}))),
            _result("You have lunch at noon."),
        ]

        turn = agent.chat(session.session_id, "What's on today?")

        assert turn.reply == "You have lunch at noon."
        assert invoker.invoke.call_count == 2
        lookup_handler.assert_called_once()
        assert lookup_handler.call_args.args[0] == {"q": "lunch"}
        assert turn.tool_results[0]["tool"] == "lookup"
        assert turn.tool_results[0]["count"] == 1

        second = invoker.invoke.call_args_list[1].args[0]
        assert second.current_message.startswith(TOOL_RESULTS_PREFIX)
        results = json.loads(second.current_message[len(TOOL_RESULTS_PREFIX):])
        assert results[0]["message"] == "Found 1 events"

    def test_confirmation_tools_are_deferred(self, agent, invoker, remove_handler, session):
        invoker.invoke.return_value = _result(
            _tool_reply(("remove", {"id": "e1"}), message="Delete Lunch?"),
        )

        turn = agent.chat(session.session_id, "Delete my lunch")

        remove_handler.assert_not_called()
        assert invoker.invoke.call_count == 1
        assert turn.reply == "Delete Lunch?"
        assert turn.pending_confirmations == [{"tool": "remove", "parameters": {"id": "e1"}}]

    def test_tool_rounds_are_bounded(self, agent, invoker, lookup_handler, session):
        invoker.invoke.return_value = _result(_tool_reply(("lookup", {})))

        agent.chat(session.session_id, "loop forever")

        assert lookup_handler.call_count == MAX_TOOL_ROUNDS
        assert invoker.invoke.call_count == MAX_TOOL_ROUNDS + 1

    def test_switch_reported(self, agent, invoker, session):
        invoker.invoke.return_value = _result(
            "ok", model="gemini-2.0-flash", switched=True, original_model="gemini-2.5-pro",
        )

        turn = agent.chat(session.session_id, "hi")

        assert turn.switched is True
        assert turn.model_used == "gemini-2.0-flash"
        assert turn.original_model == "gemini-2.5-pro"

    def test_timezone_update_persisted(self, agent, invoker, store, session):
        invoker.invoke.return_value = _result("ok")
        agent.chat(session.session_id, "hi", timezone="Asia/Tokyo")
        assert store.get(session.session_id).timezone == "Asia/Tokyo"
        assert "Asia/Tokyo" in invoker.invoke.call_args.args[0].system_prompt

    def test_unknown_session_raises_key_error(self, agent):
        with pytest.raises(KeyError):
            agent.chat("missing", "hi")

    def test_model_failure_propagates_and_history_unchanged(self, agent, invoker, store, session):
        invoker.invoke.side_effect = ModelTransportError("all down", 503)

        with pytest.raises(ModelTransportError):
            agent.chat(session.session_id, "hi")

        assert store.get(session.session_id).history == []


# ── Calendar wiring ──────────────────────────────────────────────────


class TestCalendarWiring:
    def test_calendar_client_built_from_token_and_closed(self, invoker, store, registry, lookup_handler):
        session = store.create(tokens={"access_token": "tok"})
        factory = MagicMock()
        agent = ChatAgent(invoker, store, registry, calendar_factory=factory)
        invoker.invoke.side_effect = [_result(_tool_reply(("lookup", {}))), _result("done")]

        agent.chat(session.session_id, "hi")

        factory.assert_called_once_with("tok")
        context = lookup_handler.call_args.args[1]
        assert context.calendar is factory.return_value
        factory.return_value.close.assert_called_once()

    def test_no_token_means_no_calendar(self, invoker, store, registry, lookup_handler, session):
        factory = MagicMock()
        agent = ChatAgent(invoker, store, registry, calendar_factory=factory)
        invoker.invoke.side_effect = [_result(_tool_reply(("lookup", {}))), _result("done")]

        agent.chat(session.session_id, "hi")

        factory.assert_not_called()
        assert lookup_handler.call_args.args[1].calendar is None


# ── Confirm ──────────────────────────────────────────────────────────


class TestConfirm:
    def test_executes_deferred_tool(self, agent, remove_handler, session):
        result = agent.confirm(session.session_id, "remove", {"id": "e1"})

        assert result.success is True
        assert result.message == "Removed"
        remove_handler.assert_called_once()
        assert remove_handler.call_args.args[0] == {"id": "e1"}
        assert remove_handler.call_args.args[1].timezone == "Europe/Lisbon"

    def test_unknown_tool(self, agent, session):
        result = agent.confirm(session.session_id, "explode", {})
        assert result.success is False
        assert result.message == "Unknown tool: explode"

    def test_unknown_session(self, agent):
        with pytest.raises(KeyError):
            agent.confirm("missing", "remove", {})


# ── Token refresh ────────────────────────────────────────────────────


def _expiring_tokens(seconds_left: float) -> dict:
    return {
        "access_token": "old-token",
        "refresh_token": "refresh-1",
        "expiry_date": (time.time() + seconds_left) * 1000,
    }


class TestTokenRefresh:
    def test_expiring_token_refreshed_before_calendar_use(self, invoker, store, registry):
        session = store.create(tokens=_expiring_tokens(60))
        refresher = MagicMock(
            return_value={**_expiring_tokens(3_600), "access_token": "new-token"},
        )
        factory = MagicMock()
        agent = ChatAgent(
            invoker, store, registry, calendar_factory=factory, token_refresher=refresher,
        )
        invoker.invoke.return_value = _result("ok")

        agent.chat(session.session_id, "hi")

        refresher.assert_called_once()
        factory.assert_called_once_with("new-token")
        assert store.get(session.session_id).tokens["access_token"] == "new-token"

    def test_failed_refresh_ends_the_session(self, invoker, store, registry):
        session = store.create(tokens=_expiring_tokens(-60))
        refresher = MagicMock(side_effect=RuntimeError("invalid_grant"))
        agent = ChatAgent(invoker, store, registry, token_refresher=refresher)

        with pytest.raises(KeyError):
            agent.chat(session.session_id, "hi")

        assert not store.has(session.session_id)
        invoker.invoke.assert_not_called()

    def test_no_refresher_leaves_tokens_alone(self, agent, invoker, store):
        session = store.create(tokens=_expiring_tokens(60))
        invoker.invoke.return_value = _result("ok")
        agent.chat(session.session_id, "hi")
        assert store.get(session.session_id).tokens["access_token"] == "old-token"


# ── Smart scheduling ─────────────────────────────────────────────────


WEEKDAY_MORNING = ScheduleConstraints(
    start_date="2025-03-10", end_date="2025-03-11", work_start_hour=9, work_end_hour=11,
)


class TestSmartSchedule:
    def test_requires_calendar(self, agent, session):
        with pytest.raises(CalendarNotConnectedError):
            agent.smart_schedule(session.session_id, "Sync", "", WEEKDAY_MORNING)

    def test_picks_slot_in_session_timezone(self, invoker, store, registry):
        session = store.create(tokens={"access_token": "tok"}, timezone="Asia/Tokyo")
        factory = MagicMock()
        factory.return_value.list_events.return_value = []
        agent = ChatAgent(invoker, store, registry, calendar_factory=factory)
        invoker.invoke.return_value = _result(
            '{"selectedSlot": "2025-03-10T09:00:00+09:00", "reasoning": "First thing"}',
        )

        result = agent.smart_schedule(session.session_id, "Sync", "mornings", WEEKDAY_MORNING)

        assert result.selected_time == "2025-03-10T09:00:00+09:00"
        assert result.slots_considered == 3
        prompt = invoker.invoke.call_args.args[0].current_message
        assert "2025-03-10T09:00:00+09:00" in prompt
        factory.return_value.close.assert_called_once()

    def test_unknown_session(self, agent):
        with pytest.raises(KeyError):
            agent.smart_schedule("missing", "Sync", "", WEEKDAY_MORNING)
