"""Tests for invocation events and the CloudWatch metrics client."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

from vibe_calendar.services.gemini_client import ModelTimeoutError
from vibe_calendar.services.metrics import NAMESPACE, MetricsClient, short_session


def _make_client(*, enabled: bool = False) -> MetricsClient:
    with patch.dict("os.environ", {"METRICS_ENABLED": str(enabled).lower()}):
        return MetricsClient()


class TestInvocationEvents:
    """Verify record_attempt / record_model_switch."""

    def test_success_event(self):
        client = _make_client()
        event = client.record_attempt("primary", "gemini-2.5-pro", "abcdef123456", 412.34)

        assert event.outcome == "success"
        assert event.session == "abcdef12..."
        assert event.latency_ms == 412.3
        assert event.error_type is None
        assert client.recent_events() == [event]

    def test_failure_event_carries_error(self):
        client = _make_client()
        event = client.record_attempt(
            "fallback", "gemini-2.0-flash", None, 25_000.0, ModelTimeoutError("timed out"),
        )

        assert event.outcome == "failure"
        assert event.error_type == "ModelTimeoutError"
        assert event.error == "timed out"
        assert event.session is None
        names = {m["MetricName"] for m in client._buffer}
        assert "ExternalAPI/ErrorCount" in names

    def test_only_recent_events_kept(self):
        client = _make_client()
        for _ in range(250):
            client.record_attempt("primary", "m", None, 1.0)
        assert len(client.recent_events()) == 200

    def test_model_switch_metric(self):
        client = _make_client()
        client.record_model_switch("gemini-2.5-pro", "gemini-2.0-flash", "sess-1")
        metric = client._buffer[-1]
        assert metric["MetricName"] == "Model/SwitchCount"
        dims = {d["Name"]: d["Value"] for d in metric["Dimensions"]}
        assert dims == {"From": "gemini-2.5-pro", "To": "gemini-2.0-flash"}

    def test_short_session(self):
        assert short_session("0123456789") == "01234567..."
        assert short_session(None) is None


class TestMetricsRecording:
    """Verify that record_success / record_failure buffer the right data."""

    def test_record_success_appends_two_data_points(self):
        client = _make_client()
        client.record_success("gemini", "generateContent", latency_ms=123.4)
        # Should buffer RequestCount + Latency
        assert len(client._buffer) == 2
        names = {m["MetricName"] for m in client._buffer}
        assert names == {"ExternalAPI/RequestCount", "ExternalAPI/Latency"}

    def test_record_failure_without_latency(self):
        client = _make_client()
        client.record_failure("google_calendar", "DELETE events", error_type="410")
        assert len(client._buffer) == 2
        names = {m["MetricName"] for m in client._buffer}
        assert names == {"ExternalAPI/RequestCount", "ExternalAPI/ErrorCount"}

    def test_failure_dimensions_include_error_type(self):
        client = _make_client()
        client.record_failure("gemini", "generateContent", error_type="ModelTransportError")
        error_metric = next(
            m for m in client._buffer
            if m["MetricName"] == "ExternalAPI/ErrorCount"
        )
        dim_map = {d["Name"]: d["Value"] for d in error_metric["Dimensions"]}
        assert dim_map == {"Service": "gemini", "ErrorType": "ModelTransportError"}


class TestMetricsFlush:
    """Verify flush behaviour with and without CloudWatch enabled."""

    def test_flush_when_disabled_does_not_call_boto3(self):
        client = _make_client()
        client.record_success("gemini", "generateContent", latency_ms=100.0)
        assert client.flush() == 0
        assert client._buffer == []

    def test_flush_when_enabled_calls_put_metric_data(self):
        client = _make_client(enabled=True)

        mock_cw = MagicMock()
        client._cw_client = mock_cw  # inject mock

        client.record_success("gemini", "generateContent", latency_ms=100.0)
        sent = client.flush()

        assert sent == 2
        mock_cw.put_metric_data.assert_called_once()
        kwargs = mock_cw.put_metric_data.call_args.kwargs
        assert kwargs["Namespace"] == NAMESPACE == "VibeCalendar"
        assert len(kwargs["MetricData"]) == 2

    def test_flush_errors_are_logged_not_raised(self):
        client = _make_client(enabled=True)
        client._cw_client = MagicMock()
        client._cw_client.put_metric_data.side_effect = RuntimeError("throttled")
        client.record_success("gemini", "generateContent", latency_ms=1.0)
        assert client.flush() == 0
