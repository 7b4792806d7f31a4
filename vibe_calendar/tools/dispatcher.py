"""Tool-call parsing and dispatch.

The model asks for tools by answering with a JSON object::

    {"tools": [{"tool": "create_event", "parameters": {...}}], "message": "..."}

either bare, surrounded by prose, or inside a fenced ```json block.
``parse_response`` decodes that into :class:`ToolPayload` and degrades to
plain text on anything malformed; it never raises.

``dispatch`` looks a tool up in a :class:`ToolRegistry` and runs its handler.
Every failure (unknown tool, handler exception) comes back as a failed
:class:`ToolResult`; nothing propagates past this boundary.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator, Mapping

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger(__name__)

_FENCED_OBJECT_RE = re.compile(r"```(?:json)?\s*(\{[\s\S]*\})\s*```")


# ── Wire schema ──────────────────────────────────────────────────────


class ToolCall(BaseModel):
    """One tool invocation requested by the model."""

    tool: str
    parameters: dict[str, Any] = Field(default_factory=dict)


class ToolPayload(BaseModel):
    tools: list[ToolCall]
    message: str | None = None


@dataclass
class ParsedResponse:
    tools: list[ToolCall]
    message: str
    is_json: bool


# ── Results, context and registry ────────────────────────────────────


class ToolExecutionError(Exception):
    """Raised by handlers for expected failures (bad input, missing data)."""


@dataclass
class ToolResult:
    success: bool
    message: str
    requires_confirmation: bool = False
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "requires_confirmation": self.requires_confirmation,
            **self.data,
        }


@dataclass
class ToolContext:
    """What a handler may know about the caller."""

    session_id: str
    timezone: str = "UTC"
    calendar: Any = None  # GoogleCalendarClient when the session has tokens


ToolHandler = Callable[[dict[str, Any], ToolContext], ToolResult]


@dataclass(frozen=True)
class ParamSpec:
    description: str
    required: bool = False
    fields: Mapping[str, ParamSpec] | None = None


@dataclass(frozen=True)
class ToolSpec:
    """A registered tool: handler plus the metadata the prompt is built from."""

    handler: ToolHandler
    description: str
    parameters: Mapping[str, ParamSpec] = field(default_factory=dict)
    returns: Mapping[str, str] = field(default_factory=dict)
    requires_confirmation: bool = False


class ToolRegistry(Mapping[str, ToolSpec]):
    """Ordered, read-only mapping of tool name to :class:`ToolSpec`."""

    def __init__(self, tools: Mapping[str, ToolSpec] | None = None) -> None:
        self._tools: dict[str, ToolSpec] = dict(tools or {})

    def __getitem__(self, name: str) -> ToolSpec:
        return self._tools[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._tools)

    def __len__(self) -> int:
        return len(self._tools)

    def requires_confirmation(self, name: str) -> bool:
        spec = self._tools.get(name)
        return bool(spec and spec.requires_confirmation)


# ── Parsing ──────────────────────────────────────────────────────────


def _decode(candidate: str) -> ToolPayload | None:
    try:
        return ToolPayload.model_validate_json(candidate)
    except ValidationError:
        return None


def json_object_candidates(raw_text: str) -> list[str]:
    """Possible JSON objects in *raw_text*: a fenced block, then the outermost braces."""
    text = (raw_text or "").strip()
    candidates: list[str] = []

    fenced = _FENCED_OBJECT_RE.search(text)
    if fenced:
        candidates.append(fenced.group(1))

    first, last = text.find("{"), text.rfind("}")
    if first != -1 and last > first:
        candidates.append(text[first:last + 1])
    return candidates


def parse_response(raw_text: str) -> ParsedResponse:
    """Extract tool calls from a model reply, falling back to plain text."""
    for candidate in json_object_candidates(raw_text):
        payload = _decode(candidate)
        if payload is not None:
            return ParsedResponse(
                tools=payload.tools,
                message=payload.message or raw_text,
                is_json=True,
            )

    return ParsedResponse(tools=[], message=raw_text, is_json=False)


# ── Dispatch ─────────────────────────────────────────────────────────


def dispatch(
    tool_name: str,
    parameters: dict[str, Any],
    context: ToolContext,
    registry: Mapping[str, ToolSpec],
) -> ToolResult:
    """Run one tool; always returns a :class:`ToolResult`."""
    spec = registry.get(tool_name)
    if spec is None:
        logger.error("Unknown tool requested: %s", tool_name)
        return ToolResult(
            success=False,
            message=f"Unknown tool: {tool_name}",
            requires_confirmation=False,
        )

    try:
        result = spec.handler(parameters or {}, context)
    except Exception as exc:
        logger.error("Tool %s failed: %s", tool_name, exc)
        return ToolResult(
            success=False,
            message=f"Failed to {tool_name}: {exc}",
            requires_confirmation=False,
        )

    if not isinstance(result, ToolResult):
        logger.error(
            "Tool %s returned %s instead of a ToolResult", tool_name, type(result).__name__,
        )
        return ToolResult(
            success=False,
            message=f"Failed to {tool_name}: tool returned no result",
            requires_confirmation=False,
        )

    result.requires_confirmation = spec.requires_confirmation
    return result
