"""FastAPI server for the Vibe calendar agent.

Run with:
    uvicorn vibe_calendar.server:app --reload --host 0.0.0.0 --port 50001
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware

from vibe_calendar.agent import create_chat_agent
from vibe_calendar.api.routes import router
from vibe_calendar.config import (
    CORS_ORIGINS,
    MODEL_CONFIG,
    MODEL_DISCOVERY,
    SERVER_HOST,
    SERVER_PORT,
    SESSIONS_FILE,
)
from vibe_calendar.invoker import ModelInvoker
from vibe_calendar.services.compaction import HistoryCompactor
from vibe_calendar.services.gemini_client import ModelTransportError, get_gemini_client
from vibe_calendar.services.metrics import metrics
from vibe_calendar.services.oauth import get_token_refresher
from vibe_calendar.services.session_store import SessionStore

# ── Logging ──────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def _discover_models(client, config):
    """Restrict the configured models to what the API key can actually use."""
    try:
        available = client.list_models()
    except ModelTransportError as exc:
        logger.warning("Model discovery failed, keeping configured models: %s", exc)
        return config
    restricted = config.restricted_to(available)
    logger.info(
        "Model discovery: primary=%s, %d fallbacks (of %d configured)",
        restricted.primary_model, len(restricted.fallback_models), len(config.fallback_models),
    )
    return restricted


# ── Lifespan: initialise / tear-down shared resources ────────────────
@asynccontextmanager
async def lifespan(application: FastAPI):
    """Start-up: load sessions, build the invoker and agent once."""
    sessions = SessionStore(SESSIONS_FILE)
    loaded = sessions.load()
    logger.info("Loaded %d sessions from %s", loaded, SESSIONS_FILE)

    client = get_gemini_client()
    config = _discover_models(client, MODEL_CONFIG) if MODEL_DISCOVERY else MODEL_CONFIG
    invoker = ModelInvoker(config, client, sessions, HistoryCompactor(client))
    refresher = get_token_refresher()

    logger.info("Compiling LangGraph agent…")
    application.state.agent = create_chat_agent(
        invoker, sessions, token_refresher=refresher.refresh if refresher else None,
    )
    logger.info("Agent ready (primary model: %s).", config.primary_model)
    yield
    sessions.save_all()
    metrics.flush()
    client.close()
    if refresher is not None:
        refresher.close()


# ── FastAPI application ──────────────────────────────────────────────
app = FastAPI(
    title="Vibe Calendar Agent",
    description=(
        "AI calendar assistant: schedule, find, update and delete Google "
        "Calendar events in natural language."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Request-ID middleware ────────────────────────────────────────────
@app.middleware("http")
async def add_request_id(request: Request, call_next) -> Response:
    """Attach a request ID (``X-Request-ID``) to every request and response."""
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    logger.info(
        "[%s] %s %s", request_id, request.method, request.url.path,
    )
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# ── Register routes ──────────────────────────────────────────────────
app.include_router(router, prefix="/api")


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "service": "Vibe Calendar Agent",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/api/health",
    }


# ── CLI entry point ──────────────────────────────────────────────────

if __name__ == "__main__":
    logger.info("Starting Vibe Calendar API server on %s:%d", SERVER_HOST, SERVER_PORT)
    uvicorn.run(
        "vibe_calendar.server:app",
        host=SERVER_HOST,
        port=SERVER_PORT,
        reload=True,
    )
