"""HTTP client for the Gemini ``generateContent`` REST API.

One call to :meth:`GeminiClient.generate` is one request/response cycle for one
model.  Transient failures (timeouts, connection errors, 5xx) are retried
with exponential backoff inside the call; everything that survives the retry
budget is raised as :class:`ModelTransportError` or :class:`ModelTimeoutError`
so the invoker can decide whether to fall back to another model.

API docs: https://ai.google.dev/api/generate-content
"""

from __future__ import annotations

import json
import logging
import threading
import time
from typing import Any

import httpx

from vibe_calendar.config import GEMINI_API_KEY, GEMINI_BASE_URL
from vibe_calendar.services.metrics import metrics, short_session

logger = logging.getLogger(__name__)

# ── Retry configuration ─────────────────────────────────────────────
MAX_RETRIES = 3
INITIAL_BACKOFF_SECONDS = 1.0
REQUEST_TIMEOUT_SECONDS = 25.0


class ModelTransportError(Exception):
    """Raised when a model call fails with an HTTP or network error."""

    def __init__(self, message: str, status_code: int | None = None, model: str | None = None):
        self.status_code = status_code
        self.model = model
        super().__init__(message)


class ModelTimeoutError(ModelTransportError):
    """Raised when every attempt of a model call ran past its deadline."""


def _to_parts_text(content: Any) -> str:
    return content if isinstance(content, str) else json.dumps(content, ensure_ascii=False)


def build_contents(
    conversation_history: list[dict[str, Any]],
    current_message: str | None,
) -> list[dict[str, Any]]:
    """Map ``{role, content}`` turns onto Gemini ``contents`` entries."""
    contents = [
        {"role": turn.get("role", "user"), "parts": [{"text": _to_parts_text(turn.get("content", ""))}]}
        for turn in conversation_history or []
    ]
    if current_message:
        contents.append({"role": "user", "parts": [{"text": current_message}]})
    return contents


def extract_text(payload: dict[str, Any]) -> str:
    """Return the first candidate's first text part, or ``""``."""
    try:
        return payload["candidates"][0]["content"]["parts"][0]["text"] or ""
    except (KeyError, IndexError, TypeError):
        return ""


class GeminiClient:
    """Thin wrapper around the Gemini REST API with automatic retries."""

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
    ):
        self._api_key = api_key or GEMINI_API_KEY
        self._base_url = base_url or GEMINI_BASE_URL
        # Proxy settings (HTTPS_PROXY etc.) are honoured through httpx's trust_env
        self._client = httpx.Client(
            base_url=self._base_url,
            headers={
                "x-goog-api-key": self._api_key,
                "Content-Type": "application/json",
            },
            timeout=REQUEST_TIMEOUT_SECONDS,
        )

    # ── Internal helpers ─────────────────────────────────────────────

    def _request(
        self,
        method: str,
        path: str,
        *,
        json_body: dict[str, Any] | None = None,
        max_retries: int = MAX_RETRIES,
        base_delay: float = INITIAL_BACKOFF_SECONDS,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
        model: str | None = None,
    ) -> dict[str, Any]:
        """Execute an HTTP request with exponential-backoff retries."""
        attempts = max(1, max_retries)
        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                response = self._client.request(
                    method, path, json=json_body, timeout=timeout,
                )
                if response.status_code >= 500:
                    raise ModelTransportError(
                        f"Server error {response.status_code}: {response.text}",
                        status_code=response.status_code,
                        model=model,
                    )
                if response.status_code >= 400:
                    raise ModelTransportError(
                        f"Client error {response.status_code}: {response.text}",
                        status_code=response.status_code,
                        model=model,
                    )
                try:
                    return response.json()
                except ValueError as exc:
                    raise ModelTransportError(
                        f"Invalid JSON body from Gemini ({response.status_code}): "
                        f"{response.text[:200]}",
                        status_code=response.status_code,
                        model=model,
                    ) from exc

            except httpx.DecodingError as exc:
                raise ModelTransportError(
                    f"Could not decode Gemini response for {model or path}: {exc}",
                    model=model,
                ) from exc
            except httpx.TimeoutException as exc:
                last_error = exc
                logger.warning(
                    "Gemini attempt %d/%d for %s timed out (%s)",
                    attempt, attempts, model, type(exc).__name__,
                )
            except httpx.TransportError as exc:
                last_error = exc
                logger.warning(
                    "Gemini attempt %d/%d for %s failed (%s)",
                    attempt, attempts, model, type(exc).__name__,
                )
            except ModelTransportError as exc:
                if exc.status_code and exc.status_code >= 500:
                    last_error = exc
                    logger.warning(
                        "Gemini server error %d on attempt %d/%d for %s",
                        exc.status_code, attempt, attempts, model,
                    )
                else:
                    raise  # 4xx (including 429 quota errors) go straight to fallback

            if attempt < attempts:
                time.sleep(base_delay * (2 ** (attempt - 1)))

        target = model or path
        if isinstance(last_error, httpx.TimeoutException):
            raise ModelTimeoutError(
                f"Gemini request to {target} timed out after {attempts} attempts "
                f"({timeout:.0f}s each)",
                model=model,
            )
        raise ModelTransportError(
            f"Gemini request to {target} failed after {attempts} attempts: {last_error}",
            status_code=getattr(last_error, "status_code", None),
            model=model,
        )

    # ── Public API methods ───────────────────────────────────────────

    def generate(
        self,
        model: str,
        conversation_history: list[dict[str, Any]],
        current_message: str | None,
        system_prompt: str | None = None,
        session_id: str | None = None,
        *,
        max_retries: int = MAX_RETRIES,
        base_delay: float = INITIAL_BACKOFF_SECONDS,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
    ) -> dict[str, Any]:
        """Generate content with *model* and return the raw response payload.

        Args:
            model: Model name without the ``models/`` prefix.
            conversation_history: Chronological ``{role, content}`` turns.
            current_message: The new user message (omitted when empty).
            system_prompt: Optional system instruction.
            session_id: Only used for log correlation.
            max_retries: Total attempts for transient failures.
            base_delay: First backoff delay in seconds, doubled per retry.
            timeout: Per-attempt timeout in seconds.
        """
        body: dict[str, Any] = {
            "contents": build_contents(conversation_history, current_message),
        }
        if system_prompt:
            body["systemInstruction"] = {"parts": [{"text": system_prompt}]}

        logger.debug(
            "Gemini request: model=%s turns=%d session=%s",
            model, len(body["contents"]), short_session(session_id),
        )
        t0 = time.perf_counter()
        try:
            data = self._request(
                "POST",
                f"/models/{model}:generateContent",
                json_body=body,
                max_retries=max_retries,
                base_delay=base_delay,
                timeout=timeout,
                model=model,
            )
        except ModelTransportError as exc:
            elapsed = (time.perf_counter() - t0) * 1000
            metrics.record_failure(
                "gemini", "generateContent",
                error_type=type(exc).__name__, latency_ms=elapsed,
            )
            raise
        elapsed = (time.perf_counter() - t0) * 1000
        metrics.record_success("gemini", "generateContent", latency_ms=elapsed)
        return data

    def list_models(self) -> list[str]:
        """Return the names of models that support ``generateContent``."""
        data = self._request("GET", "/models")
        return [
            m["name"].removeprefix("models/")
            for m in data.get("models", [])
            if "generateContent" in m.get("supportedGenerationMethods", ["generateContent"])
        ]

    def close(self) -> None:
        self._client.close()


# ── Module-level singleton (thread-safe) ────────────────────────────
_client: GeminiClient | None = None
_client_lock = threading.Lock()


def get_gemini_client() -> GeminiClient:
    """Return a module-level GeminiClient singleton."""
    global _client
    if _client is None:
        with _client_lock:
            if _client is None:
                _client = GeminiClient()
    return _client
