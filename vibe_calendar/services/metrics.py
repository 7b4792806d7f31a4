"""Invocation events and CloudWatch metrics with background batching.

Every model attempt (primary or fallback) and every external call
(Gemini, Google Calendar) is reported here as a structured event instead of
ad hoc log lines scattered through the decision logic.

Design
------
* Events are logged with their fields attached as ``extra`` so a JSON log
  formatter can pick them up; the message itself stays human readable.
* Metrics are collected in a thread-safe in-memory buffer.
* A daemon thread flushes the buffer to CloudWatch every
  ``FLUSH_INTERVAL_SECONDS`` (default 60 s).
* When running locally (``METRICS_ENABLED != "true"``), nothing is pushed to
  CloudWatch.
* Each ``put_metric_data`` call sends up to 1 000 metric data points
  (the CloudWatch API limit per request).

Usage
-----
>>> from vibe_calendar.services.metrics import metrics
>>> metrics.record_success("gemini", "generate", latency_ms=812.0)
>>> metrics.record_attempt("fallback", "gemini-2.0-flash", "sess-1234", latency_ms=640.0)
"""

from __future__ import annotations

import atexit
import logging
import os
import threading
import time
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from typing import Any

logger = logging.getLogger(__name__)

NAMESPACE = "VibeCalendar"
FLUSH_INTERVAL_SECONDS = 60
MAX_BATCH_SIZE = 1_000  # CloudWatch API limit per PutMetricData call


@dataclass(frozen=True)
class InvocationEvent:
    """One model attempt as seen by the invoker.

    ``kind`` is ``primary`` or ``fallback``; ``outcome`` is
    ``success`` or ``failure``.
    """

    kind: str
    model: str
    outcome: str
    session: str | None
    latency_ms: float
    error_type: str | None = None
    error: str | None = None


def short_session(session_id: str | None) -> str | None:
    """Session ids are secrets of a sort; only the first 8 chars are logged."""
    if not session_id:
        return None
    return f"{session_id[:8]}..."


class MetricsClient:
    """Batched CloudWatch metrics publisher and invocation event sink."""

    def __init__(self) -> None:
        self._enabled = os.getenv("METRICS_ENABLED", "false").lower() == "true"
        self._buffer: list[dict[str, Any]] = []
        self._events: list[InvocationEvent] = []
        self._lock = threading.Lock()
        self._cw_client = None  # lazy-init

        if self._enabled:
            self._start_flush_thread()

    # ── Lazy CloudWatch client ────────────────────────────────────────

    def _get_cw_client(self):
        """Create the boto3 CloudWatch client on first use."""
        if self._cw_client is None:
            import boto3

            self._cw_client = boto3.client("cloudwatch")
        return self._cw_client

    # ── Invocation events ─────────────────────────────────────────────

    def record_attempt(
        self,
        kind: str,
        model: str,
        session_id: str | None,
        latency_ms: float,
        error: Exception | None = None,
    ) -> InvocationEvent:
        """Emit one model attempt event and the matching metrics."""
        event = InvocationEvent(
            kind=kind,
            model=model,
            outcome="failure" if error else "success",
            session=short_session(session_id),
            latency_ms=round(latency_ms, 1),
            error_type=type(error).__name__ if error else None,
            error=str(error) if error else None,
        )
        with self._lock:
            self._events.append(event)
            # Only the recent tail is kept for the health endpoint
            del self._events[:-200]

        if error:
            logger.warning(
                "Model attempt failed: kind=%s model=%s session=%s %.0fms (%s: %s)",
                kind, model, event.session, latency_ms, event.error_type, error,
                extra={"invocation": asdict(event)},
            )
            self.record_failure("gemini", f"{kind}:{model}", event.error_type, latency_ms)
        else:
            logger.info(
                "Model attempt succeeded: kind=%s model=%s session=%s %.0fms",
                kind, model, event.session, latency_ms,
                extra={"invocation": asdict(event)},
            )
            self.record_success("gemini", f"{kind}:{model}", latency_ms)
        return event

    def record_model_switch(
        self, original_model: str, new_model: str, session_id: str | None,
    ) -> None:
        """Count a successful switch away from the resolved model."""
        logger.info(
            "Model switch: %s -> %s (session=%s)",
            original_model, new_model, short_session(session_id),
        )
        self._append(
            {
                "MetricName": "Model/SwitchCount",
                "Dimensions": [
                    {"Name": "From", "Value": original_model},
                    {"Name": "To", "Value": new_model},
                ],
                "Timestamp": datetime.now(UTC),
                "Value": 1,
                "Unit": "Count",
            }
        )

    def recent_events(self) -> list[InvocationEvent]:
        with self._lock:
            return list(self._events)

    # ── External API metrics ──────────────────────────────────────────

    def record_success(
        self,
        service: str,
        operation: str,
        latency_ms: float,
    ) -> None:
        """Record a successful API call."""
        now = datetime.now(UTC)
        dims_base = [
            {"Name": "Service", "Value": service},
        ]
        dims_op = dims_base + [{"Name": "Operation", "Value": operation}]

        self._append(
            {
                "MetricName": "ExternalAPI/RequestCount",
                "Dimensions": dims_base + [{"Name": "Status", "Value": "success"}],
                "Timestamp": now,
                "Value": 1,
                "Unit": "Count",
            }
        )
        self._append(
            {
                "MetricName": "ExternalAPI/Latency",
                "Dimensions": dims_op,
                "Timestamp": now,
                "Value": latency_ms,
                "Unit": "Milliseconds",
            }
        )

    def record_failure(
        self,
        service: str,
        operation: str,
        error_type: str,
        latency_ms: float = 0,
    ) -> None:
        """Record a failed API call."""
        now = datetime.now(UTC)
        dims_base = [
            {"Name": "Service", "Value": service},
        ]

        self._append(
            {
                "MetricName": "ExternalAPI/RequestCount",
                "Dimensions": dims_base + [{"Name": "Status", "Value": "failure"}],
                "Timestamp": now,
                "Value": 1,
                "Unit": "Count",
            }
        )
        self._append(
            {
                "MetricName": "ExternalAPI/ErrorCount",
                "Dimensions": dims_base + [{"Name": "ErrorType", "Value": error_type}],
                "Timestamp": now,
                "Value": 1,
                "Unit": "Count",
            }
        )
        if latency_ms > 0:
            self._append(
                {
                    "MetricName": "ExternalAPI/Latency",
                    "Dimensions": dims_base + [{"Name": "Operation", "Value": operation}],
                    "Timestamp": now,
                    "Value": latency_ms,
                    "Unit": "Milliseconds",
                }
            )

    def flush(self) -> int:
        """Send buffered metrics to CloudWatch.  Returns count sent."""
        with self._lock:
            if not self._buffer:
                return 0
            batch = self._buffer[:]
            self._buffer.clear()

        if not self._enabled:
            logger.debug("Metrics flush skipped (not enabled): %d items", len(batch))
            return 0

        sent = 0
        try:
            cw = self._get_cw_client()
            for i in range(0, len(batch), MAX_BATCH_SIZE):
                chunk = batch[i : i + MAX_BATCH_SIZE]
                cw.put_metric_data(Namespace=NAMESPACE, MetricData=chunk)
                sent += len(chunk)
            logger.info("Flushed %d metrics to CloudWatch", sent)
        except Exception:
            logger.exception("Failed to flush metrics to CloudWatch")
        return sent

    # ── Internal ──────────────────────────────────────────────────────

    def _append(self, metric_data: dict[str, Any]) -> None:
        with self._lock:
            self._buffer.append(metric_data)

    def _start_flush_thread(self) -> None:
        """Start a daemon thread that flushes metrics periodically."""

        def _loop():
            while True:
                time.sleep(FLUSH_INTERVAL_SECONDS)
                try:
                    self.flush()
                except Exception:
                    logger.exception("Metrics flush thread error")

        t = threading.Thread(target=_loop, daemon=True, name="metrics-flush")
        t.start()
        atexit.register(self.flush)
        logger.info(
            "Metrics flush thread started (interval=%ds)", FLUSH_INTERVAL_SECONDS,
        )


# ── Module-level singleton ──────────────────────────────────────────
metrics = MetricsClient()
