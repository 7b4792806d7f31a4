"""HTTP client for the Google Calendar API v3 with retry logic and timeout
handling.

Calendar API docs: https://developers.google.com/calendar/api/v3/reference
Every request carries the session's OAuth access token as a Bearer token;
refreshing it is up to :mod:`vibe_calendar.services.oauth`.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from typing import Any

import httpx

from vibe_calendar.config import CALENDAR_BASE_URL
from vibe_calendar.services.metrics import metrics

logger = logging.getLogger(__name__)

# ── Retry configuration ─────────────────────────────────────────────
MAX_RETRIES = 3
INITIAL_BACKOFF_SECONDS = 1.0
REQUEST_TIMEOUT_SECONDS = 15.0
RATE_LIMIT_STATUS = 429

PRIMARY_CALENDAR = "primary"


class CalendarAPIError(Exception):
    """Raised when a Calendar API call fails after all retries."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class GoogleCalendarClient:
    """Thin wrapper around the Google Calendar REST API v3."""

    def __init__(
        self,
        access_token: str,
        base_url: str | None = None,
        *,
        calendar_id: str = PRIMARY_CALENDAR,
    ):
        self._calendar_id = calendar_id
        self._client = httpx.Client(
            base_url=base_url or CALENDAR_BASE_URL,
            headers={
                "Authorization": f"Bearer {access_token}",
                "Content-Type": "application/json",
            },
            timeout=REQUEST_TIMEOUT_SECONDS,
        )

    @property
    def _events_path(self) -> str:
        return f"/calendars/{self._calendar_id}/events"

    # ── Internal helpers ─────────────────────────────────────────────

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Execute an HTTP request with exponential-backoff retries.

        Timeouts, connection errors, 5xx and 429 are retried; other 4xx are
        raised immediately.
        """
        last_error: Exception | None = None
        t0 = time.perf_counter()
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                response = self._client.request(
                    method,
                    path,
                    params=params,
                    json=json_body,
                )
                if response.status_code >= 400:
                    kind = "Server" if response.status_code >= 500 else "Client"
                    raise CalendarAPIError(
                        f"{kind} error {response.status_code}: {response.text}",
                        status_code=response.status_code,
                    )
                metrics.record_success(
                    "google_calendar", f"{method} events",
                    latency_ms=(time.perf_counter() - t0) * 1000,
                )
                if response.status_code == 204 or not response.content:
                    return {}
                try:
                    return response.json()
                except ValueError as exc:
                    raise CalendarAPIError(
                        f"Invalid JSON body from Calendar API ({response.status_code})",
                        status_code=response.status_code,
                    ) from exc

            except (httpx.TimeoutException, httpx.ConnectError) as exc:
                last_error = exc
                logger.warning(
                    "Calendar API attempt %d/%d failed (%s)",
                    attempt, MAX_RETRIES, type(exc).__name__,
                )
            except CalendarAPIError as exc:
                retryable = exc.status_code is not None and (
                    exc.status_code >= 500 or exc.status_code == RATE_LIMIT_STATUS
                )
                if not retryable:
                    metrics.record_failure(
                        "google_calendar", f"{method} events", error_type=f"{exc.status_code}",
                    )
                    raise
                last_error = exc
                logger.warning(
                    "Calendar API error %s on attempt %d/%d. Retrying…",
                    exc.status_code, attempt, MAX_RETRIES,
                )

            if attempt < MAX_RETRIES:
                # Exponential backoff plus up to 25% jitter
                backoff = INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1))
                time.sleep(backoff + random.uniform(0, 0.25 * backoff))

        metrics.record_failure(
            "google_calendar", f"{method} events",
            error_type=type(last_error).__name__,
            latency_ms=(time.perf_counter() - t0) * 1000,
        )
        raise CalendarAPIError(
            f"Calendar API request failed after {MAX_RETRIES} retries: {last_error}",
            status_code=getattr(last_error, "status_code", None),
        )

    # ── Public API methods ───────────────────────────────────────────

    def list_events(
        self,
        time_min: str,
        time_max: str,
        *,
        query: str | None = None,
    ) -> list[dict[str, Any]]:
        """List single (expanded) events between two ISO 8601 datetimes."""
        params: dict[str, Any] = {
            "timeMin": time_min,
            "timeMax": time_max,
            "singleEvents": "true",
            "orderBy": "startTime",
        }
        if query:
            params["q"] = query
        data = self._request("GET", self._events_path, params=params)
        return data.get("items", [])

    def get_event(self, event_id: str) -> dict[str, Any]:
        return self._request("GET", f"{self._events_path}/{event_id}")

    def insert_event(self, event: dict[str, Any]) -> dict[str, Any]:
        """Create an event and notify attendees."""
        return self._request(
            "POST", self._events_path, params={"sendUpdates": "all"}, json_body=event,
        )

    def update_event(self, event_id: str, event: dict[str, Any]) -> dict[str, Any]:
        """Replace an event (full PUT semantics) and notify attendees."""
        return self._request(
            "PUT",
            f"{self._events_path}/{event_id}",
            params={"sendUpdates": "all"},
            json_body=event,
        )

    def delete_event(self, event_id: str) -> None:
        self._request(
            "DELETE", f"{self._events_path}/{event_id}", params={"sendUpdates": "all"},
        )

    def close(self) -> None:
        self._client.close()


class CalendarRateLimiter:
    """Enforce a minimum interval between mutating operations per session."""

    def __init__(
        self,
        min_interval_seconds: float = 1.0,
        idle_ttl_seconds: float = 300.0,
    ) -> None:
        self._min_interval = min_interval_seconds
        self._idle_ttl = idle_ttl_seconds
        self._last: dict[str, float] = {}
        self._lock = threading.Lock()

    def wait(self, session_id: str) -> float:
        """Block until the session may call again.  Returns seconds waited."""
        with self._lock:
            now = time.monotonic()
            self._prune(now)
            last = self._last.get(session_id)
            wait_for = 0.0
            if last is not None and now - last < self._min_interval:
                wait_for = self._min_interval - (now - last)
            # Reserve the slot before sleeping so concurrent callers queue up
            self._last[session_id] = now + wait_for
        if wait_for > 0:
            logger.info(
                "Rate limiting calendar operation for session %s..., waiting %.0fms",
                session_id[:8], wait_for * 1000,
            )
            time.sleep(wait_for)
        return wait_for

    def _prune(self, now: float) -> None:
        # Caller holds the lock
        stale = [sid for sid, last in self._last.items() if now - last > self._idle_ttl]
        for sid in stale:
            del self._last[sid]

    def __len__(self) -> int:
        return len(self._last)
