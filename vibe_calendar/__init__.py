"""Vibe Calendar Agent: a natural-language assistant for Google Calendar.

Architecture Overview
=====================

The heart of the service is :class:`vibe_calendar.invoker.ModelInvoker`, a
resilient call pipeline in front of the Gemini ``generateContent`` API:

1. **resolve**: pick the session's preferred model (or the configured primary)
2. **invoke**: one call through ``GeminiClient`` (which retries the *same*
   model on timeouts and 5xx)
3. **fall back**: on failure, walk the ordered fallback list, compacting long
   histories first, and remember the first model that answers as the
   session's new preference

Around it, a **LangGraph** state machine with two nodes drives the chat:

1. **model**: invokes the model and parses its reply for JSON tool calls
2. **tools**: runs calendar tools; update/delete wait for user confirmation

Routing: model → (tool calls?) → tools → model (at most three rounds) → END

Key Design Decisions
--------------------
- **LLM**: Google Gemini over plain REST (``httpx``); tools are described in
  the system prompt and requested as a JSON object, not via native
  function calling.
- **Fallback order is configuration**: ``PRIMARY_MODEL`` / ``FALLBACK_MODELS``
  form an immutable ``ModelConfig``; a failed fallback is never retried within
  the same invocation.
- **Sessions**: a JSON file holds history, tokens and preferred model per
  session; written atomically after every mutation.
- **Calendar**: Google Calendar REST API v3 with exponential-backoff retries
  and a per-session rate limit on writes.
- **Dual Interface**: FastAPI server (production) + CLI chat loop (development).

Package Structure
-----------------
- ``vibe_calendar/invoker.py``: model selection, fallback, preference updates
- ``vibe_calendar/agent.py``: LangGraph StateGraph and ``ChatAgent``
- ``vibe_calendar/config.py``: centralized configuration from environment variables
- ``vibe_calendar/prompts.py``: system prompt built from the tool registry
- ``vibe_calendar/server.py``: FastAPI application
- ``vibe_calendar/main.py``: CLI chat interface
- ``vibe_calendar/services/``: Gemini and Calendar clients, sessions, compaction, metrics
- ``vibe_calendar/tools/``: tool-call parsing/dispatch and the calendar tools
- ``vibe_calendar/api/``: FastAPI routes and Pydantic schemas
"""
