"""Conversation history compaction.

Long conversations are shrunk before a fallback attempt so the (usually
smaller) fallback model is not handed more context than it can take.

Two strategies, tried in order:

1. **AI-assisted**: the summarising model rewrites the history as a shorter
   JSON array of ``{role, content}`` turns.  Used only when a model and a
   session id are supplied and ``use_ai`` is set.
2. **Traditional**: keep every pinned/important turn plus the most recent
   ``preserve_recent`` turns, de-duplicated, in their original order.

Whatever comes back is never longer than the input and is always in
chronological order.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from vibe_calendar.services.gemini_client import GeminiClient, extract_text
from vibe_calendar.services.metrics import short_session

logger = logging.getLogger(__name__)

# Hard Gemini request limits; compaction kicks in at 90% of either one
HARD_CHAR_LIMIT = 30_000
HARD_TOKEN_LIMIT = 8_000
SAFE_CHAR_LIMIT = 0.9 * HARD_CHAR_LIMIT
SAFE_TOKEN_LIMIT = 0.9 * HARD_TOKEN_LIMIT
CHARS_PER_TOKEN = 4
PRESERVE_RECENT = 12

VALID_ROLES = ("user", "model")

COMPACT_PROMPT = (
    "The conversation history above is too long for the AI model to process "
    "efficiently.\n\n"
    "Please summarize or compact the conversation, preserving all important user "
    "requests, assistant responses, and any context needed for future scheduling "
    "or actions.\n\n"
    "Output the compacted conversation as a JSON array of messages, each with a "
    "role ('user' or 'model') and content. Do not include any explanation or "
    "extra text."
)

_JSON_ARRAY_RE = re.compile(r"\[\s*\{[\s\S]*\}\s*\]")
_JSON_ANY_RE = re.compile(r"\{[\s\S]*\}|\[[\s\S]*\]")


def _content_str(turn: dict[str, Any]) -> str:
    content = turn.get("content", "")
    if isinstance(content, str):
        return content
    return json.dumps(content, ensure_ascii=False)


def count_chars(history: list[dict[str, Any]]) -> int:
    return sum(len(_content_str(turn)) for turn in history)


def estimate_token_count(history: list[dict[str, Any]]) -> float:
    """Rough token estimate: four characters per token."""
    return count_chars(history) / CHARS_PER_TOKEN


def _parse_history_array(text: str) -> list[dict[str, Any]] | None:
    """Pull a list of turns out of free-form model output."""
    match = _JSON_ARRAY_RE.search(text)
    try:
        if match:
            parsed = json.loads(match.group(0))
        else:
            match = _JSON_ANY_RE.search(text)
            parsed = json.loads(match.group(0) if match else text)
    except ValueError:
        return None

    if isinstance(parsed, dict):
        parsed = parsed.get("messages") or parsed.get("conversation") or parsed.get("history")
    if not isinstance(parsed, list):
        return None
    return [
        {"role": turn["role"], "content": turn["content"]}
        for turn in parsed
        if isinstance(turn, dict)
        and turn.get("role") in VALID_ROLES
        and turn.get("content")
    ]


class HistoryCompactor:
    """Reduce a conversation history to a shorter equivalent."""

    def __init__(
        self,
        client: GeminiClient | None = None,
        *,
        preserve_recent: int = PRESERVE_RECENT,
    ) -> None:
        self._client = client
        self._preserve_recent = preserve_recent

    def compact(
        self,
        history: list[dict[str, Any]],
        *,
        use_ai: bool = True,
        model: str | None = None,
        session_id: str | None = None,
    ) -> list[dict[str, Any]]:
        """Return a compacted copy of *history* (or *history* itself if small)."""
        total_chars = count_chars(history)
        total_tokens = estimate_token_count(history)
        if total_chars < SAFE_CHAR_LIMIT and total_tokens < SAFE_TOKEN_LIMIT:
            return history

        if use_ai and model and session_id and self._client is not None:
            compacted = self._compact_with_ai(history, model, session_id)
            if compacted is not None:
                logger.info(
                    "AI-assisted compaction for session %s: %d -> %d turns, %d -> %d chars",
                    short_session(session_id), len(history), len(compacted),
                    total_chars, count_chars(compacted),
                )
                return compacted

        preserved = self._compact_traditional(history)
        if len(preserved) < len(history):
            logger.info(
                "Traditional compaction: %d -> %d turns, %d -> %d chars",
                len(history), len(preserved), total_chars, count_chars(preserved),
            )
        return preserved

    # ── Strategies ───────────────────────────────────────────────────

    def _compact_with_ai(
        self,
        history: list[dict[str, Any]],
        model: str,
        session_id: str,
    ) -> list[dict[str, Any]] | None:
        logger.info(
            "Context too large for session %s, attempting AI-assisted compaction with %s",
            short_session(session_id), model,
        )
        try:
            payload = self._client.generate(
                model,
                [{"role": t.get("role", "user"), "content": t.get("content", "")} for t in history],
                COMPACT_PROMPT,
                session_id=session_id,
            )
        except Exception as exc:
            logger.warning("AI-assisted compaction failed (%s): %s", type(exc).__name__, exc)
            return None

        text = extract_text(payload)
        turns = _parse_history_array(text)
        if not turns:
            logger.warning(
                "Could not parse AI-compacted history (%d chars): %r",
                len(text), text[:200],
            )
            return None
        if len(turns) > len(history):
            logger.warning(
                "AI-compacted history is longer than the input (%d > %d), discarding",
                len(turns), len(history),
            )
            return None
        return turns

    def _compact_traditional(self, history: list[dict[str, Any]]) -> list[dict[str, Any]]:
        keep: set[int] = {
            i for i, turn in enumerate(history) if turn.get("pinned") or turn.get("important")
        }
        keep.update(range(max(0, len(history) - self._preserve_recent), len(history)))

        seen: set[str] = set()
        preserved: list[dict[str, Any]] = []
        for i in sorted(keep):
            turn = history[i]
            key = f"{turn.get('role')}:{_content_str(turn)[:100]}"
            if key in seen:
                continue
            seen.add(key)
            preserved.append(turn)
        return preserved
