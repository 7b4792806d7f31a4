"""Resilient model invocation with ordered fallback.

Pipeline for one :meth:`ModelInvoker.invoke` call::

    resolve model ─► primary attempt ─► success ──────────────► switched=False
                           │
                           └─ failure ─► switching off? ─► re-raise
                                          │
                                          └─► for each later fallback:
                                                compact (history > 10 turns)
                                                attempt
                                                  success ─► store preference
                                                             switched=True
                                                  failure ─► log, next
                                          all failed ─► re-raise PRIMARY error

The primary failure is the one callers see when everything fails; the
fallback errors are logged and emitted as events only.  Whether that is the
most useful error to surface is an open product question; see DESIGN.md.

Retries of the *same* model happen inside the model client
(``max_retries`` / ``base_delay``); this module never retries a model itself.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any

from vibe_calendar.config import ModelConfig
from vibe_calendar.services.compaction import HistoryCompactor
from vibe_calendar.services.gemini_client import GeminiClient, extract_text
from vibe_calendar.services.metrics import MetricsClient, metrics, short_session
from vibe_calendar.services.session_store import SessionStore

logger = logging.getLogger(__name__)

# Histories longer than this are compacted before a fallback attempt
COMPACTION_THRESHOLD = 10


@dataclass(frozen=True)
class InvocationOptions:
    """Per-invocation knobs.  Delays and timeouts are in seconds."""

    max_retries: int = 3
    base_delay: float = 1.0
    enable_model_switching: bool = True
    enable_compaction: bool = True
    timeout: float = 25.0


@dataclass
class InvocationRequest:
    current_message: str
    conversation_history: list[dict[str, Any]] = field(default_factory=list)
    model: str | None = None
    system_prompt: str | None = None
    session_id: str | None = None
    options: InvocationOptions = field(default_factory=InvocationOptions)


@dataclass
class InvocationResult:
    success: bool
    payload: dict[str, Any]
    model_used: str
    switched: bool = False
    original_model: str | None = None

    @property
    def text(self) -> str:
        return extract_text(self.payload)


class ModelInvoker:
    """Call the model for a session, falling back through the configured list."""

    def __init__(
        self,
        config: ModelConfig,
        client: GeminiClient,
        sessions: SessionStore,
        compactor: HistoryCompactor | None = None,
        *,
        events: MetricsClient | None = None,
    ) -> None:
        self._config = config
        self._client = client
        self._sessions = sessions
        self._compactor = compactor or HistoryCompactor(client)
        self._events = events or metrics
        self._status: dict[str, dict[str, Any]] = {
            model: {"available": True, "last_error": None, "error_count": 0}
            for model in config.all_models
        }
        self._status_lock = threading.Lock()

    @property
    def config(self) -> ModelConfig:
        return self._config

    # ── Model resolution ─────────────────────────────────────────────

    def resolve_model(self, model_hint: str | None, session_id: str | None) -> str:
        """Pick the model for this request.

        A session id wins over the hint: the session's stored preference is
        used, or the primary when the session is unknown or has none.
        """
        if session_id:
            if self._sessions.has(session_id):
                preferred = self._sessions.get(session_id).preferred_model
                if preferred:
                    return preferred
            return self._config.primary_model
        return model_hint or self._config.primary_model

    # ── Invocation ───────────────────────────────────────────────────

    def invoke(self, request: InvocationRequest) -> InvocationResult:
        opts = request.options
        session_id = request.session_id
        history = request.conversation_history or []
        current_model = self.resolve_model(request.model, session_id)

        try:
            payload = self._attempt("primary", current_model, history, request)
            return InvocationResult(success=True, payload=payload, model_used=current_model)
        except Exception as error:
            if not opts.enable_model_switching:
                raise

            candidates = self._config.fallbacks_after(current_model)
            if not candidates:
                logger.error(
                    "No fallback models available after %s (session=%s)",
                    current_model, short_session(session_id),
                )
                raise

            for i, fallback_model in enumerate(candidates, start=1):
                logger.info(
                    "Trying fallback model %d/%d: %s", i, len(candidates), fallback_model,
                )
                try:
                    attempt_history = history
                    if opts.enable_compaction and len(history) > COMPACTION_THRESHOLD:
                        attempt_history = self._compactor.compact(
                            history,
                            use_ai=True,
                            model=fallback_model,
                            session_id=session_id,
                        )
                    payload = self._attempt("fallback", fallback_model, attempt_history, request)
                except Exception as fallback_error:
                    logger.error(
                        "Fallback model %s failed: %s", fallback_model, fallback_error,
                    )
                    continue

                self._remember_preference(session_id, fallback_model)
                self._events.record_model_switch(current_model, fallback_model, session_id)
                return InvocationResult(
                    success=True,
                    payload=payload,
                    model_used=fallback_model,
                    switched=True,
                    original_model=current_model,
                )

            logger.error(
                "All %d fallback models failed after %s; surfacing the original error",
                len(candidates), current_model,
            )
            raise error

    # ── Internal helpers ─────────────────────────────────────────────

    def _attempt(
        self,
        kind: str,
        model: str,
        history: list[dict[str, Any]],
        request: InvocationRequest,
    ) -> dict[str, Any]:
        opts = request.options
        t0 = time.perf_counter()
        try:
            payload = self._client.generate(
                model,
                history,
                request.current_message,
                request.system_prompt,
                request.session_id,
                max_retries=opts.max_retries,
                base_delay=opts.base_delay,
                timeout=opts.timeout,
            )
        except Exception as exc:
            self._events.record_attempt(
                kind, model, request.session_id, (time.perf_counter() - t0) * 1000, exc,
            )
            self._mark(model, exc)
            raise
        self._events.record_attempt(
            kind, model, request.session_id, (time.perf_counter() - t0) * 1000,
        )
        self._mark(model, None)
        return payload

    def _remember_preference(self, session_id: str | None, model: str) -> None:
        if not session_id or not self._sessions.has(session_id):
            return
        session = self._sessions.get(session_id)
        session.preferred_model = model
        self._sessions.set(session_id, session)
        self._sessions.save_all()
        logger.info(
            "Updated session %s preferred model to: %s", short_session(session_id), model,
        )

    def _mark(self, model: str, error: Exception | None) -> None:
        with self._status_lock:
            status = self._status.setdefault(
                model, {"available": True, "last_error": None, "error_count": 0},
            )
            if error is None:
                status["available"] = True
            else:
                status["available"] = False
                status["last_error"] = str(error)
                status["error_count"] += 1

    def model_status(self) -> dict[str, dict[str, Any]]:
        """Snapshot of per-model health as seen by recent attempts."""
        with self._status_lock:
            return {model: dict(status) for model, status in self._status.items()}
