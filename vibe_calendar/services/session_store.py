"""Per-session state persisted to a JSON file.

A session holds the user's preferred model, the conversation history, the
Google OAuth tokens and the user's timezone.  The whole map is written to
disk on every ``save_all`` (write to a temp file, then ``os.replace``), which
gives at-least-once durability: a crash between a mutation and the next save
loses that mutation, nothing more.

Concurrency: the lock only protects the dict itself.  Two requests for the
same session id are not serialised against each other, so the last writer
wins on ``preferred_model`` and ``history`` (a known race for multi-tab use).
"""

from __future__ import annotations

import json
import logging
import os
import threading
import time
import uuid
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Callable

from vibe_calendar.config import TOKEN_REFRESH_MARGIN_SECONDS
from vibe_calendar.services.metrics import short_session

logger = logging.getLogger(__name__)


@dataclass
class Session:
    """Mutable per-user session record."""

    session_id: str
    preferred_model: str | None = None
    history: list[dict[str, Any]] = field(default_factory=list)
    tokens: dict[str, Any] = field(default_factory=dict)
    timezone: str = "UTC"
    created_at: str = field(
        default_factory=lambda: datetime.now(UTC).isoformat().replace("+00:00", "Z")
    )

    def is_expired(self, now_ms: float | None = None) -> bool:
        """True when the OAuth tokens carry an expiry that has passed."""
        expiry = self.tokens.get("expiry_date")
        if not expiry:
            return False
        now_ms = now_ms if now_ms is not None else time.time() * 1000
        return expiry <= now_ms

    def needs_refresh(self, margin_seconds: float, now_ms: float | None = None) -> bool:
        """True when the access token expires within *margin_seconds*."""
        expiry = self.tokens.get("expiry_date")
        if not expiry:
            return False
        now_ms = now_ms if now_ms is not None else time.time() * 1000
        return expiry <= now_ms + margin_seconds * 1000

    @classmethod
    def from_dict(cls, session_id: str, data: dict[str, Any]) -> Session:
        session = cls(
            session_id=session_id,
            preferred_model=data.get("preferred_model") or data.get("preferredModel"),
            history=list(data.get("history") or []),
            tokens=dict(data.get("tokens") or {}),
            timezone=data.get("timezone") or "UTC",
        )
        created_at = data.get("created_at") or data.get("createdAt")
        if created_at:
            session.created_at = str(created_at)
        return session


class SessionStore:
    """In-memory session map backed by a JSON file."""

    def __init__(self, path: str | Path | None = None) -> None:
        self._path = Path(path) if path else None
        self._sessions: dict[str, Session] = {}
        self._lock = threading.Lock()

    # ── Core operations ──────────────────────────────────────────────

    def has(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._sessions

    def get(self, session_id: str) -> Session:
        """Return the session or raise ``KeyError``."""
        with self._lock:
            return self._sessions[session_id]

    def set(self, session_id: str, session: Session) -> None:
        with self._lock:
            self._sessions[session_id] = session

    def delete(self, session_id: str) -> bool:
        with self._lock:
            return self._sessions.pop(session_id, None) is not None

    def create(
        self,
        *,
        tokens: dict[str, Any] | None = None,
        timezone: str = "UTC",
    ) -> Session:
        """Create, register and persist a fresh session with a random id."""
        session = Session(
            session_id=uuid.uuid4().hex,
            tokens=dict(tokens or {}),
            timezone=timezone or "UTC",
        )
        self.set(session.session_id, session)
        self.save_all()
        logger.info("Created session %s", short_session(session.session_id))
        return session

    def __len__(self) -> int:
        return len(self._sessions)

    # ── Persistence ──────────────────────────────────────────────────

    def load(self) -> int:
        """Load sessions from disk, skipping expired ones.  Returns count loaded."""
        if self._path is None:
            return 0
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            logger.info("No existing sessions file at %s, starting fresh", self._path)
            return 0
        except (OSError, ValueError):
            logger.exception("Error loading sessions from %s", self._path)
            return 0

        loaded = skipped = 0
        now_ms = time.time() * 1000
        with self._lock:
            for session_id, data in raw.items():
                session = Session.from_dict(session_id, data)
                if session.is_expired(now_ms):
                    skipped += 1
                    continue
                self._sessions[session_id] = session
                loaded += 1

        logger.info(
            "Loaded %d valid sessions from storage%s",
            loaded, f", skipped {skipped} expired" if skipped else "",
        )
        return loaded

    def save_all(self) -> bool:
        """Flush every session to disk.  Returns ``False`` if the write failed.

        Errors are logged rather than raised: a failed flush must not turn a
        successful model response into a failed request.
        """
        if self._path is None:
            return True
        with self._lock:
            snapshot = {
                sid: {k: v for k, v in asdict(s).items() if k != "session_id"}
                for sid, s in self._sessions.items()
            }
        tmp_path = self._path.with_name(f"{self._path.name}.{uuid.uuid4().hex}.tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(
                json.dumps(snapshot, ensure_ascii=False, indent=2), encoding="utf-8",
            )
            os.replace(tmp_path, self._path)
        except OSError:
            logger.exception("Error saving sessions to %s", self._path)
            tmp_path.unlink(missing_ok=True)
            return False
        logger.debug("Saved %d sessions to storage", len(snapshot))
        return True

    def refresh_tokens_if_needed(
        self,
        session_id: str,
        refresh: Callable[[dict[str, Any]], dict[str, Any]],
        *,
        margin_seconds: float = TOKEN_REFRESH_MARGIN_SECONDS,
    ) -> Session | None:
        """Refresh the session's OAuth tokens when they are close to expiry.

        Returns the (possibly updated) session.  When the refresh fails the
        session is dropped and ``None`` is returned; the user has to sign in
        again.  Raises ``KeyError`` for an unknown session.
        """
        session = self.get(session_id)
        if not session.needs_refresh(margin_seconds):
            return session

        logger.info("Refreshing token for session %s", short_session(session_id))
        try:
            session.tokens = refresh(session.tokens)
        except Exception as exc:
            logger.error(
                "Token refresh failed for session %s: %s", short_session(session_id), exc,
            )
            self.delete(session_id)
            self.save_all()
            return None

        self.set(session_id, session)
        self.save_all()
        logger.info("Token refreshed for session %s", short_session(session_id))
        return session

    def cleanup_expired(self) -> int:
        """Drop sessions whose tokens have expired.  Returns count removed."""
        now_ms = time.time() * 1000
        with self._lock:
            expired = [sid for sid, s in self._sessions.items() if s.is_expired(now_ms)]
            for sid in expired:
                del self._sessions[sid]
        if expired:
            self.save_all()
            logger.info("Cleaned up %d expired sessions", len(expired))
        return len(expired)
