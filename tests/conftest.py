"""Shared test fixtures for the Vibe Calendar test suite."""

from __future__ import annotations

import os
from unittest.mock import MagicMock

import pytest


def pytest_configure(config):
    """Set test environment variables BEFORE collection starts.

    This runs before any imports, so config.py won't fail on module load.
    """
    os.environ.setdefault("GEMINI_API_KEY", "test-gemini-key-123")
    os.environ.setdefault("METRICS_ENABLED", "false")


@pytest.fixture
def mock_http_response():
    """Factory fixture for creating mock httpx responses."""

    def _make(data: dict | None = None, status_code: int = 200):
        mock = MagicMock()
        mock.status_code = status_code
        mock.json.return_value = data if data is not None else {}
        mock.text = str(data)
        mock.content = b"" if data is None else b"{...}"
        return mock

    return _make


def gemini_payload(text: str) -> dict:
    """A minimal successful generateContent response."""
    return {"candidates": [{"content": {"role": "model", "parts": [{"text": text}]}}]}


@pytest.fixture
def make_payload():
    return gemini_payload
