"""Google OAuth access-token refresh.

Sessions carry the tokens the login flow handed over (``access_token``,
``refresh_token``, ``expiry_date`` in epoch milliseconds).  When the access
token is about to expire, :class:`GoogleTokenRefresher` trades the refresh
token for a new one at Google's token endpoint.
"""

from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from vibe_calendar.config import GOOGLE_CLIENT_ID, GOOGLE_CLIENT_SECRET, GOOGLE_TOKEN_URL
from vibe_calendar.services.metrics import metrics

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT_SECONDS = 10.0


class TokenRefreshError(Exception):
    """Raised when Google refuses or fails to refresh a token."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class GoogleTokenRefresher:
    """Exchange refresh tokens for fresh access tokens."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        token_url: str = GOOGLE_TOKEN_URL,
    ):
        self._client_id = client_id
        self._client_secret = client_secret
        self._token_url = token_url
        self._client = httpx.Client(timeout=REQUEST_TIMEOUT_SECONDS)

    def refresh(self, tokens: dict[str, Any]) -> dict[str, Any]:
        """Return *tokens* with a new access token and expiry.

        The refresh token is kept unless Google rotates it.
        """
        refresh_token = tokens.get("refresh_token")
        if not refresh_token:
            raise TokenRefreshError("Session has no refresh token")

        t0 = time.perf_counter()
        try:
            response = self._client.post(
                self._token_url,
                data={
                    "grant_type": "refresh_token",
                    "refresh_token": refresh_token,
                    "client_id": self._client_id,
                    "client_secret": self._client_secret,
                },
            )
        except httpx.HTTPError as exc:
            metrics.record_failure("google_oauth", "refresh", error_type=type(exc).__name__)
            raise TokenRefreshError(f"Token endpoint unreachable: {exc}") from exc

        if response.status_code >= 400:
            metrics.record_failure("google_oauth", "refresh", error_type=f"{response.status_code}")
            raise TokenRefreshError(
                f"Token refresh rejected ({response.status_code}): {response.text}",
                status_code=response.status_code,
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise TokenRefreshError("Token endpoint returned invalid JSON") from exc
        if not data.get("access_token"):
            raise TokenRefreshError("Token endpoint returned no access token")

        metrics.record_success(
            "google_oauth", "refresh", latency_ms=(time.perf_counter() - t0) * 1000,
        )
        refreshed = {**tokens, "access_token": data["access_token"]}
        if data.get("expires_in"):
            refreshed["expiry_date"] = int(time.time() * 1000 + int(data["expires_in"]) * 1000)
        for key in ("refresh_token", "scope", "token_type", "id_token"):
            if data.get(key):
                refreshed[key] = data[key]
        return refreshed

    def close(self) -> None:
        self._client.close()


def get_token_refresher() -> GoogleTokenRefresher | None:
    """Build a refresher from configuration, or ``None`` when no OAuth client is set."""
    if not (GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET):
        logger.info("GOOGLE_CLIENT_ID/SECRET not set, token refresh disabled")
        return None
    return GoogleTokenRefresher(GOOGLE_CLIENT_ID, GOOGLE_CLIENT_SECRET)
