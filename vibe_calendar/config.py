"""Centralized configuration for the Vibe Calendar agent.

Secret resolution order (per variable):
  1. Environment variable / ``.env`` file  (local dev)
  2. AWS SSM Parameter Store SecureString  (when ``AWS_EXECUTION_ENV`` is set)

The SSM paths follow the convention ``/vibe-calendar/<VARIABLE_NAME>``.

Model selection is captured in an immutable :class:`ModelConfig` built once at
import time.  Nothing mutates it afterwards; discovery of the models the
backend actually serves produces a *new* config (see ``restricted_to``).
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

# ── Feature flag: running on AWS? ────────────────────────────────────
_ON_AWS = bool(os.getenv("AWS_EXECUTION_ENV"))


# ── Secret resolution ────────────────────────────────────────────────

def _get_ssm_parameter(name: str) -> str | None:
    """Fetch a SecureString from SSM Parameter Store.

    Returns ``None`` if the parameter does not exist or boto3 is
    unavailable.  Errors are logged but never raised so that local-dev
    fallback still works.
    """
    try:
        import boto3  # noqa: PLC0415 (lazy: boto3 is only needed on AWS)

        ssm = boto3.client("ssm")
        resp = ssm.get_parameter(Name=f"/vibe-calendar/{name}", WithDecryption=True)
        return resp["Parameter"]["Value"]
    except Exception:
        logger.debug("SSM lookup for %s failed (expected locally)", name)
        return None


def _require_env(name: str) -> str:
    """Return a config value from env-var or SSM, or raise a clear error."""
    value = os.getenv(name)
    if value and not value.startswith("your_"):
        return value

    if _ON_AWS:
        ssm_value = _get_ssm_parameter(name)
        if ssm_value:
            return ssm_value

    raise OSError(
        f"Missing required configuration: {name}. "
        f"Set it in .env (local) or SSM Parameter Store /vibe-calendar/{name} (AWS)."
    )


def _split_csv(raw: str) -> tuple[str, ...]:
    return tuple(item.strip() for item in raw.split(",") if item.strip())


# ── Model configuration ─────────────────────────────────────────────


@dataclass(frozen=True)
class ModelConfig:
    """Primary model plus an ordered, duplicate-free fallback list."""

    primary_model: str
    fallback_models: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not self.primary_model:
            raise ValueError("primary_model must be a non-empty model name")
        seen: set[str] = set()
        for model in self.fallback_models:
            if model in seen:
                raise ValueError(f"Duplicate fallback model: {model}")
            seen.add(model)

    @property
    def all_models(self) -> tuple[str, ...]:
        return (self.primary_model, *self.fallback_models)

    def fallbacks_after(self, model: str) -> tuple[str, ...]:
        """Return the fallback candidates positioned strictly after *model*.

        A model that is not itself a fallback (normally the primary) sits in
        front of the whole list, so every fallback is a candidate.
        """
        if model in self.fallback_models:
            index = self.fallback_models.index(model)
            return self.fallback_models[index + 1:]
        return self.fallback_models

    def restricted_to(self, available: list[str] | tuple[str, ...]) -> ModelConfig:
        """Build a new config limited to models the backend reports as served.

        Keeps the configured order.  If the primary is not served, the first
        available name takes its place.  An empty *available* list leaves the
        configuration untouched.
        """
        if not available:
            logger.warning("No available models reported, keeping current configuration")
            return self

        names = [name.removeprefix("models/") for name in available]
        primary = self.primary_model
        if primary not in names:
            logger.warning(
                "Primary model %s not available, switching to %s", primary, names[0],
            )
            primary = names[0]

        fallbacks = tuple(
            m for m in self.fallback_models if m in names and m != primary
        )
        return ModelConfig(primary_model=primary, fallback_models=fallbacks)


DEFAULT_PRIMARY_MODEL = "gemini-2.5-pro"
DEFAULT_FALLBACK_MODELS = (
    "gemini-2.5-flash,gemini-2.0-flash,gemini-2.0-pro,gemini-1.5-pro,"
    "gemini-1.5-flash,gemini-2.0-flash-lite,gemini-1.5-flash-latest,"
    "gemini-1.5-pro-latest"
)

# ── LLM ─────────────────────────────────────────────────────────────
GEMINI_API_KEY: str = _require_env("GEMINI_API_KEY")
GEMINI_BASE_URL: str = os.getenv(
    "GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta",
)

MODEL_CONFIG = ModelConfig(
    primary_model=os.getenv("PRIMARY_MODEL", DEFAULT_PRIMARY_MODEL),
    fallback_models=_split_csv(os.getenv("FALLBACK_MODELS", DEFAULT_FALLBACK_MODELS)),
)

# Ask the backend which models it serves at start-up and trim the config
MODEL_DISCOVERY: bool = os.getenv("MODEL_DISCOVERY", "false").lower() == "true"

# ── Google Calendar ─────────────────────────────────────────────────
CALENDAR_BASE_URL: str = "https://www.googleapis.com/calendar/v3"

# OAuth client used to refresh access tokens; refresh is off when unset
GOOGLE_CLIENT_ID: str | None = os.getenv("GOOGLE_CLIENT_ID") or None
GOOGLE_CLIENT_SECRET: str | None = os.getenv("GOOGLE_CLIENT_SECRET") or None
GOOGLE_TOKEN_URL: str = os.getenv("GOOGLE_TOKEN_URL", "https://oauth2.googleapis.com/token")
# Tokens this close to expiry are refreshed before use
TOKEN_REFRESH_MARGIN_SECONDS: int = int(os.getenv("TOKEN_REFRESH_MARGIN_SECONDS", "300"))

# ── Sessions ────────────────────────────────────────────────────────
SESSIONS_FILE: Path = Path(
    os.getenv("SESSIONS_FILE", str(Path.cwd() / "sessions.json"))
)

# ── Server ──────────────────────────────────────────────────────────
SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT: int = int(os.getenv("SERVER_PORT", "50001"))
CORS_ORIGINS: list[str] = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://localhost:5173",
).split(",")
