"""CLI entry point for the Vibe calendar agent.

This provides a simple terminal-based chat interface for testing and
development. For production, use the FastAPI server (vibe_calendar/server.py).

Calendar tools need an OAuth access token; export ``GOOGLE_ACCESS_TOKEN`` to
use them from the terminal.

Usage:
    python -m vibe_calendar.main                        # normal mode (quiet)
    python -m vibe_calendar.main --debug                # debug mode (shows API calls)
    python -m vibe_calendar.main --timezone Europe/Lisbon
"""

from __future__ import annotations

import argparse
import logging
import os

from dotenv import load_dotenv

from vibe_calendar.agent import create_chat_agent
from vibe_calendar.config import MODEL_CONFIG
from vibe_calendar.invoker import ModelInvoker
from vibe_calendar.services.gemini_client import ModelTransportError, get_gemini_client
from vibe_calendar.services.session_store import SessionStore

logger = logging.getLogger(__name__)


def _configure_logging(debug: bool = False) -> None:
    """Set up logging: WARNING by default, DEBUG when --debug is passed."""
    root_level = logging.DEBUG if debug else logging.WARNING
    logging.basicConfig(
        level=root_level,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )

    if not debug:
        # Silence chatty HTTP loggers even if root is WARNING
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)

    logging.getLogger("vibe_calendar").setLevel(logging.DEBUG if debug else logging.INFO)


def _print_pending(pending: list[dict]) -> None:
    for item in pending:
        print(f"   (needs confirmation) {item['tool']} {item.get('parameters', {})}")


def main():
    """Run the interactive CLI chat loop."""
    parser = argparse.ArgumentParser(description="Vibe Calendar Agent CLI")
    parser.add_argument(
        "--debug", action="store_true",
        help="Show all log messages including HTTP requests",
    )
    parser.add_argument("--timezone", default="UTC", help="IANA timezone of the user")
    args = parser.parse_args()

    load_dotenv()
    _configure_logging(debug=args.debug)

    print("\n" + "=" * 60)
    print("  Vibe Calendar Agent - CLI Chat")
    print("=" * 60)
    print("  Type your message and press Enter.")
    print("  Commands: 'quit' to exit, 'new' for a new session,")
    print("            'yes' to run the tools waiting for confirmation.")
    print("=" * 60 + "\n")

    sessions = SessionStore()  # in-memory only
    invoker = ModelInvoker(MODEL_CONFIG, get_gemini_client(), sessions)
    agent = create_chat_agent(invoker, sessions)

    def new_session() -> str:
        token = os.getenv("GOOGLE_ACCESS_TOKEN")
        session = sessions.create(
            tokens={"access_token": token} if token else None, timezone=args.timezone,
        )
        return session.session_id

    session_id = new_session()
    logger.info("Started new session: %s", session_id)
    pending: list[dict] = []

    while True:
        try:
            user_input = input("You: ").strip()
        except (KeyboardInterrupt, EOFError):
            print("\n\nGoodbye!")
            break

        if not user_input:
            continue

        if user_input.lower() in ("exit", "quit", "q"):
            print("\nGoodbye!")
            break

        if user_input.lower() == "new":
            session_id = new_session()
            pending = []
            print(f"\n>> New session started: {session_id[:8]}...\n")
            continue

        if user_input.lower() == "yes" and pending:
            for item in pending:
                result = agent.confirm(session_id, item["tool"], item.get("parameters", {}))
                print(f"\nVibe: {result.message}\n")
            pending = []
            continue

        try:
            turn = agent.chat(session_id, user_input)
        except KeyboardInterrupt:
            print("\n\nGoodbye!")
            break
        except ModelTransportError as e:
            logger.debug("All models failed", exc_info=True)
            print(f"\nVibe: I'm sorry, the AI service is unavailable right now: {e}")
            print("     Please try again or type 'new' to start a fresh session.\n")
            continue
        except Exception as e:
            logger.exception("Error processing message")
            print(f"\nVibe: I'm sorry, something went wrong: {e}")
            print("     Please try again or type 'new' to start a fresh session.\n")
            continue

        if turn.switched:
            print(f"   [switched from {turn.original_model} to {turn.model_used}]")
        print(f"\nVibe: {turn.reply}\n")
        pending = turn.pending_confirmations
        _print_pending(pending)


if __name__ == "__main__":
    main()
