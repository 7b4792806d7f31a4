"""LangGraph-based chat agent for the Vibe calendar assistant.

Architecture:
  A LangGraph StateGraph with two nodes:

    1. **model**: asks :class:`ModelInvoker` for a reply (with fallback
                   across Gemini models), parses it for tool calls
    2. **tools**: runs the requested tools; tools flagged as needing
                  confirmation are deferred to ``pending_confirmations``

  Routing:
    model → (tool calls?) → tools → (anything executed?) → model (loop)
                                  → (only deferred tools) → END
          → (no tool calls, or MAX_TOOL_ROUNDS reached) → END

  Tool results go back to the model as a ``TOOL_RESULTS: <json>`` user turn;
  Gemini is called over plain REST and tools are described in the system
  prompt, so there is no native function-calling involved.

  Memory:
    Conversation history lives in the :class:`SessionStore`, not in a
    LangGraph checkpointer.  ``ChatAgent.chat`` loads it into the graph and
    writes the resulting messages back after each turn.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Annotated, Any

from langchain_core.messages import AIMessage, AnyMessage, HumanMessage
from langchain_core.runnables import RunnableConfig
from langgraph.graph import END, StateGraph
from langgraph.graph.message import add_messages
from typing_extensions import TypedDict

from vibe_calendar.invoker import InvocationRequest, ModelInvoker
from vibe_calendar.prompts import generate_system_prompt
from vibe_calendar.scheduling import (
    CalendarNotConnectedError,
    ScheduleConstraints,
    ScheduleResult,
    SmartScheduler,
)
from vibe_calendar.services.calendar_client import GoogleCalendarClient
from vibe_calendar.services.metrics import short_session
from vibe_calendar.services.session_store import Session, SessionStore
from vibe_calendar.tools.calendar import CALENDAR_TOOLS
from vibe_calendar.tools.dispatcher import (
    ToolContext,
    ToolResult,
    ToolSpec,
    dispatch,
    parse_response,
)

logger = logging.getLogger(__name__)

MAX_TOOL_ROUNDS = 3
TOOL_RESULTS_PREFIX = "TOOL_RESULTS: "


# ── State schema ─────────────────────────────────────────────────────


class AgentState(TypedDict):
    """The state that flows through the graph.

    ``messages`` uses the ``add_messages`` reducer; every other key is
    overwritten by whichever node returns it.
    """

    messages: Annotated[list[AnyMessage], add_messages]
    session_id: str
    timezone: str
    pending_tools: list[dict[str, Any]]
    tool_results: list[dict[str, Any]]
    pending_confirmations: list[dict[str, Any]]
    model_used: str | None
    switched: bool
    original_model: str | None
    tool_rounds: int


@dataclass
class ChatTurn:
    """What one user message produced."""

    session_id: str
    reply: str
    tool_results: list[dict[str, Any]] = field(default_factory=list)
    pending_confirmations: list[dict[str, Any]] = field(default_factory=list)
    model_used: str | None = None
    switched: bool = False
    original_model: str | None = None


# ── History conversion ───────────────────────────────────────────────


def history_to_messages(history: list[dict[str, Any]]) -> list[AnyMessage]:
    """Stored ``{role, content}`` turns to LangChain messages."""
    messages: list[AnyMessage] = []
    for turn in history:
        content = turn.get("content", "")
        if not isinstance(content, str):
            content = json.dumps(content, ensure_ascii=False)
        extra = {"pinned": True} if turn.get("pinned") else {}
        if turn.get("role") == "model":
            messages.append(AIMessage(content=content, additional_kwargs=extra))
        else:
            messages.append(HumanMessage(content=content, additional_kwargs=extra))
    return messages


def messages_to_history(messages: list[AnyMessage]) -> list[dict[str, Any]]:
    """LangChain messages back to ``{role, content}`` turns."""
    history: list[dict[str, Any]] = []
    for msg in messages:
        turn: dict[str, Any] = {
            "role": "model" if isinstance(msg, AIMessage) else "user",
            "content": msg.content,
        }
        if msg.additional_kwargs.get("pinned"):
            turn["pinned"] = True
        history.append(turn)
    return history


# ── Node: model ──────────────────────────────────────────────────────


def _make_model_node(invoker: ModelInvoker, registry: Mapping[str, ToolSpec]):
    """Create the node that calls the model and parses its reply.

    Model failures propagate out of the graph; the caller decides how to
    report them.
    """

    def model_node(state: AgentState) -> dict:
        messages = state["messages"]
        history = messages_to_history(messages[:-1])
        current_message = messages[-1].content if messages else ""

        result = invoker.invoke(
            InvocationRequest(
                current_message=current_message,
                conversation_history=history,
                system_prompt=generate_system_prompt(state["timezone"], registry),
                session_id=state["session_id"],
            )
        )
        parsed = parse_response(result.text)
        logger.debug(
            "model node: %s replied (json=%s, tools=%d, switched=%s)",
            result.model_used, parsed.is_json, len(parsed.tools), result.switched,
        )

        update: dict[str, Any] = {
            "messages": [AIMessage(content=parsed.message)],
            "pending_tools": [call.model_dump() for call in parsed.tools],
            "model_used": result.model_used,
        }
        # Keep the first switch of the turn visible to the caller
        if result.switched and not state.get("switched"):
            update["switched"] = True
            update["original_model"] = result.original_model
        return update

    return model_node


# ── Node: tools ──────────────────────────────────────────────────────


def _make_tools_node(registry: Mapping[str, ToolSpec]):
    """Create the node that runs (or defers) the requested tools."""

    def tools_node(state: AgentState, config: RunnableConfig) -> dict:
        calendar = (config.get("configurable") or {}).get("calendar")
        context = ToolContext(
            session_id=state["session_id"],
            timezone=state["timezone"],
            calendar=calendar,
        )

        executed: list[dict[str, Any]] = []
        deferred: list[dict[str, Any]] = []
        for call in state.get("pending_tools", []):
            name, params = call["tool"], call.get("parameters") or {}
            spec = registry.get(name)
            if spec is not None and spec.requires_confirmation:
                deferred.append({"tool": name, "parameters": params})
                continue
            result = dispatch(name, params, context, registry)
            executed.append({"tool": name, **result.to_dict()})

        update: dict[str, Any] = {
            "pending_tools": [],
            "tool_results": state.get("tool_results", []) + executed,
            "pending_confirmations": state.get("pending_confirmations", []) + deferred,
            "tool_rounds": state.get("tool_rounds", 0) + 1,
        }
        if executed:
            payload = json.dumps(executed, ensure_ascii=False, default=str)
            update["messages"] = [HumanMessage(content=TOOL_RESULTS_PREFIX + payload)]
        logger.debug(
            "tools node: executed=%d deferred=%d", len(executed), len(deferred),
        )
        return update

    return tools_node


# ── Conditional edges ────────────────────────────────────────────────


def should_use_tools(state: AgentState) -> str:
    if state.get("pending_tools") and state.get("tool_rounds", 0) < MAX_TOOL_ROUNDS:
        return "tools"
    return END


def should_continue(state: AgentState) -> str:
    """Go back to the model only if this round produced tool results."""
    last_message = state["messages"][-1]
    if isinstance(last_message, HumanMessage) and str(last_message.content).startswith(
        TOOL_RESULTS_PREFIX
    ):
        return "model"
    return END


# ── Graph assembly ───────────────────────────────────────────────────


def create_calendar_graph(
    invoker: ModelInvoker,
    registry: Mapping[str, ToolSpec] = CALENDAR_TOOLS,
):
    """Build and compile the model/tools graph.

    Invoke with the initial :class:`AgentState` and the session's calendar
    client under ``config={"configurable": {"calendar": client}}``.
    """
    graph = StateGraph(AgentState)
    graph.add_node("model", _make_model_node(invoker, registry))
    graph.add_node("tools", _make_tools_node(registry))

    graph.set_entry_point("model")
    graph.add_conditional_edges("model", should_use_tools, {"tools": "tools", END: END})
    graph.add_conditional_edges("tools", should_continue, {"model": "model", END: END})

    compiled = graph.compile()
    logger.debug("Calendar agent compiled with %d tools", len(registry))
    return compiled


# ── Chat agent ───────────────────────────────────────────────────────


class ChatAgent:
    """Run one user message through the graph against a stored session."""

    def __init__(
        self,
        invoker: ModelInvoker,
        sessions: SessionStore,
        registry: Mapping[str, ToolSpec] = CALENDAR_TOOLS,
        *,
        calendar_factory: Callable[[str], GoogleCalendarClient] | None = None,
        token_refresher: Callable[[dict[str, Any]], dict[str, Any]] | None = None,
    ) -> None:
        self._invoker = invoker
        self._sessions = sessions
        self._registry = registry
        self._calendar_factory = calendar_factory or GoogleCalendarClient
        self._token_refresher = token_refresher
        self._scheduler = SmartScheduler(invoker)
        self._graph = create_calendar_graph(invoker, registry)

    @property
    def invoker(self) -> ModelInvoker:
        return self._invoker

    @property
    def sessions(self) -> SessionStore:
        return self._sessions

    def _open_session(self, session_id: str) -> Session:
        """Fetch the session, refreshing its OAuth tokens when they are about to expire.

        A session whose refresh failed is gone, so this raises ``KeyError``.
        """
        if self._token_refresher is None:
            return self._sessions.get(session_id)
        session = self._sessions.refresh_tokens_if_needed(session_id, self._token_refresher)
        if session is None:
            raise KeyError(session_id)
        return session

    def _calendar_for(self, session: Session) -> GoogleCalendarClient | None:
        token = session.tokens.get("access_token")
        if not token:
            return None
        if session.is_expired():
            logger.warning(
                "Calendar tokens expired for session %s", short_session(session.session_id),
            )
            return None
        return self._calendar_factory(token)

    def chat(self, session_id: str, message: str, timezone: str | None = None) -> ChatTurn:
        """Process *message* for *session_id*.

        Raises ``KeyError`` for an unknown session; model failures propagate.
        """
        session = self._open_session(session_id)
        if timezone:
            session.timezone = timezone

        initial: AgentState = {
            "messages": history_to_messages(session.history) + [HumanMessage(content=message)],
            "session_id": session_id,
            "timezone": session.timezone,
            "pending_tools": [],
            "tool_results": [],
            "pending_confirmations": [],
            "model_used": None,
            "switched": False,
            "original_model": None,
            "tool_rounds": 0,
        }

        calendar = self._calendar_for(session)
        try:
            result = self._graph.invoke(initial, config={"configurable": {"calendar": calendar}})
        finally:
            if calendar is not None:
                calendar.close()

        # The invoker may have stored a new preferred model meanwhile
        session = self._sessions.get(session_id)
        session.history = messages_to_history(result["messages"])
        if timezone:
            session.timezone = timezone
        self._sessions.set(session_id, session)
        self._sessions.save_all()

        reply = ""
        for msg in reversed(result["messages"]):
            if isinstance(msg, AIMessage):
                reply = msg.content
                break

        return ChatTurn(
            session_id=session_id,
            reply=reply,
            tool_results=result.get("tool_results", []),
            pending_confirmations=result.get("pending_confirmations", []),
            model_used=result.get("model_used"),
            switched=result.get("switched", False),
            original_model=result.get("original_model"),
        )

    def confirm(self, session_id: str, tool: str, parameters: dict[str, Any]) -> ToolResult:
        """Execute a tool the user has confirmed.  ``KeyError`` for unknown sessions."""
        session = self._open_session(session_id)
        calendar = self._calendar_for(session)
        context = ToolContext(
            session_id=session_id, timezone=session.timezone, calendar=calendar,
        )
        try:
            result = dispatch(tool, parameters, context, self._registry)
        finally:
            if calendar is not None:
                calendar.close()
        logger.info(
            "Confirmed %s for session %s: success=%s",
            tool, short_session(session_id), result.success,
        )
        return result

    def smart_schedule(
        self,
        session_id: str,
        description: str,
        preferences: str,
        constraints: ScheduleConstraints,
        timezone: str | None = None,
    ) -> ScheduleResult | None:
        """Pick a free slot for an event.  ``None`` when nothing is free.

        Raises ``KeyError`` for an unknown session and
        :class:`CalendarNotConnectedError` without usable calendar tokens.
        """
        session = self._open_session(session_id)
        calendar = self._calendar_for(session)
        if calendar is None:
            raise CalendarNotConnectedError("Google Calendar is not connected for this session")
        try:
            return self._scheduler.schedule(
                session_id,
                calendar,
                description,
                preferences,
                constraints,
                timezone or session.timezone,
            )
        finally:
            calendar.close()


def create_chat_agent(
    invoker: ModelInvoker,
    sessions: SessionStore,
    registry: Mapping[str, ToolSpec] = CALENDAR_TOOLS,
    **kwargs: Any,
) -> ChatAgent:
    return ChatAgent(invoker, sessions, registry, **kwargs)
