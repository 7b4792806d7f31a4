"""FastAPI route definitions for the Vibe calendar agent API."""

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, HTTPException, Request

from vibe_calendar.agent import ChatAgent
from vibe_calendar.api.schemas import (
    AIHealthResponse,
    ChatRequest,
    ChatResponse,
    ConfirmRequest,
    ConfirmResponse,
    HealthResponse,
    ModelsResponse,
    SessionCreateRequest,
    SessionResponse,
    SmartScheduleRequest,
    SmartScheduleResponse,
)
from vibe_calendar.invoker import InvocationOptions, InvocationRequest
from vibe_calendar.scheduling import (
    CalendarNotConnectedError,
    ScheduleConstraints,
    ScheduleResponseError,
)
from vibe_calendar.services.calendar_client import CalendarAPIError
from vibe_calendar.services.gemini_client import ModelTransportError
from vibe_calendar.services.metrics import short_session

logger = logging.getLogger(__name__)

router = APIRouter()

HEALTH_CHECK_MESSAGE = "Hello, this is a test message."


def _get_agent(request: Request) -> ChatAgent:
    """Retrieve the chat agent built during the FastAPI lifespan."""
    agent = getattr(request.app.state, "agent", None)
    if agent is None:
        raise HTTPException(
            status_code=503,
            detail="The agent is still starting up. Please try again in a moment.",
        )
    return agent


def _session_not_found(session_id: str) -> HTTPException:
    return HTTPException(status_code=404, detail=f"Unknown session: {session_id}")


# ── Health ───────────────────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse()


@router.get("/health/ai", response_model=AIHealthResponse)
async def ai_health_check(http_request: Request):
    """One call to the primary model, with fallback switching disabled."""
    agent = _get_agent(http_request)
    model = agent.invoker.config.primary_model
    request_id = getattr(http_request.state, "request_id", "?")

    health_request = InvocationRequest(
        current_message=HEALTH_CHECK_MESSAGE,
        model=model,
        options=InvocationOptions(max_retries=1, enable_model_switching=False),
    )
    try:
        await asyncio.to_thread(agent.invoker.invoke, health_request)
    except ModelTransportError:
        logger.exception("[%s] AI health check failed for %s", request_id, model)
        return AIHealthResponse(
            status="unavailable",
            message="AI service is not responding",
            ai_available=False,
            model=model,
        )
    return AIHealthResponse(
        status="ok", message="AI service is available", ai_available=True, model=model,
    )


@router.get("/models", response_model=ModelsResponse)
async def list_models(http_request: Request):
    """Configured primary/fallback models and their recent health."""
    agent = _get_agent(http_request)
    config = agent.invoker.config
    return ModelsResponse(
        primary_model=config.primary_model,
        fallback_models=list(config.fallback_models),
        model_status=agent.invoker.model_status(),
    )


# ── Sessions ─────────────────────────────────────────────────────────


@router.post("/sessions", response_model=SessionResponse, status_code=201)
async def create_session(request: SessionCreateRequest, http_request: Request):
    agent = _get_agent(http_request)
    session = await asyncio.to_thread(
        agent.sessions.create, tokens=request.tokens, timezone=request.timezone,
    )
    return SessionResponse(
        session_id=session.session_id,
        timezone=session.timezone,
        preferred_model=session.preferred_model,
        created_at=session.created_at,
    )


# ── AI ───────────────────────────────────────────────────────────────


@router.post("/ai/chat", response_model=ChatResponse)
async def chat(request: ChatRequest, http_request: Request):
    """Send a message to the calendar agent and get a response.

    ``ChatAgent.chat`` blocks on the Gemini and Calendar APIs, so it runs in
    the default thread pool via ``asyncio.to_thread``.
    """
    agent = _get_agent(http_request)
    request_id = getattr(http_request.state, "request_id", "?")

    if not agent.sessions.has(request.session_id):
        raise _session_not_found(request.session_id)

    try:
        turn = await asyncio.to_thread(
            agent.chat, request.session_id, request.message, request.timezone,
        )
    except KeyError as e:
        raise _session_not_found(request.session_id) from e
    except ModelTransportError as e:
        logger.exception("[%s] All models failed for chat request", request_id)
        raise HTTPException(
            status_code=502,
            detail="The AI service is temporarily unavailable. Please try again.",
        ) from e
    except Exception as e:
        logger.exception("[%s] Error processing chat request", request_id)
        raise HTTPException(
            status_code=500,
            detail="An internal error occurred. Please try again.",
        ) from e

    if turn.switched:
        logger.info(
            "[%s] Session %s switched from %s to %s",
            request_id, short_session(request.session_id), turn.original_model, turn.model_used,
        )
    return ChatResponse(
        reply=turn.reply,
        session_id=turn.session_id,
        tool_results=turn.tool_results,
        pending_confirmations=turn.pending_confirmations,
        model_used=turn.model_used,
        switched=turn.switched,
        original_model=turn.original_model,
    )


@router.post("/ai/confirm", response_model=ConfirmResponse)
async def confirm(request: ConfirmRequest, http_request: Request):
    """Run a tool the user confirmed (update/delete)."""
    agent = _get_agent(http_request)
    request_id = getattr(http_request.state, "request_id", "?")

    if not agent.sessions.has(request.session_id):
        raise _session_not_found(request.session_id)

    try:
        result = await asyncio.to_thread(
            agent.confirm, request.session_id, request.tool, request.parameters,
        )
    except KeyError as e:
        raise _session_not_found(request.session_id) from e
    except Exception as e:
        logger.exception("[%s] Error confirming %s", request_id, request.tool)
        raise HTTPException(
            status_code=500,
            detail="An internal error occurred. Please try again.",
        ) from e

    return ConfirmResponse(
        success=result.success, message=result.message, result=result.to_dict(),
    )


@router.post("/ai/smart-schedule", response_model=SmartScheduleResponse)
async def smart_schedule(request: SmartScheduleRequest, http_request: Request):
    """Find free slots in the user's calendar and let the model pick one."""
    agent = _get_agent(http_request)
    request_id = getattr(http_request.state, "request_id", "?")

    if not agent.sessions.has(request.session_id):
        raise _session_not_found(request.session_id)

    requested = request.constraints
    constraints = ScheduleConstraints(
        start_date=requested.start_date,
        end_date=requested.end_date,
        duration_minutes=requested.duration,
        work_start_hour=requested.working_hours.start,
        work_end_hour=requested.working_hours.end,
    )
    try:
        result = await asyncio.to_thread(
            agent.smart_schedule,
            request.session_id,
            request.description,
            request.preferences,
            constraints,
            request.timezone,
        )
    except KeyError as e:
        raise _session_not_found(request.session_id) from e
    except CalendarNotConnectedError as e:
        raise HTTPException(status_code=401, detail=str(e)) from e
    except CalendarAPIError as e:
        logger.exception("[%s] Calendar lookup failed for smart scheduling", request_id)
        raise HTTPException(
            status_code=502,
            detail="Google Calendar is temporarily unavailable. Please try again.",
        ) from e
    except ModelTransportError as e:
        logger.exception("[%s] All models failed for smart scheduling", request_id)
        raise HTTPException(
            status_code=502,
            detail="The AI service is temporarily unavailable. Please try again.",
        ) from e
    except ScheduleResponseError as e:
        logger.error("[%s] Unreadable smart scheduling answer: %s", request_id, e)
        raise HTTPException(status_code=500, detail="AI response format error") from e
    except Exception as e:
        logger.exception("[%s] Error processing smart scheduling request", request_id)
        raise HTTPException(
            status_code=500,
            detail="An internal error occurred. Please try again.",
        ) from e

    if result is None:
        return SmartScheduleResponse(
            success=False, reasoning="No free time slots match these constraints.",
        )
    return SmartScheduleResponse(
        success=True,
        selected_time=result.selected_time,
        reasoning=result.reasoning,
        slots_considered=result.slots_considered,
        model_used=result.model_used,
        switched=result.switched,
        original_model=result.original_model,
    )
