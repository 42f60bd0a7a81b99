"""
Session store for form-filling sessions.

Each session pairs one saved form with one ResponseCollector. Sessions
are created when a filler (or the builder preview) opens a form, are
never shared, and are cleaned up after an idle timeout.
"""

import threading
import time
import uuid

from backend.core.form_state import ResponseCollector
from backend.core.schema import FormDefinition


# Default session timeout: 30 minutes
DEFAULT_SESSION_TIMEOUT_SECONDS = 30 * 60


class FillSession:
    """A single form-filling session.

    Holds the form snapshot and the collector for its answers.
    """

    def __init__(self, form: FormDefinition):
        self.form = form
        self.collector = ResponseCollector(form)
        self.created_at: float = time.time()
        self.last_accessed_at: float = time.time()

    def touch(self) -> None:
        """Update the last accessed timestamp."""
        self.last_accessed_at = time.time()

    def is_expired(self, timeout_seconds: int = DEFAULT_SESSION_TIMEOUT_SECONDS) -> bool:
        """Check if the session has expired."""
        return (time.time() - self.last_accessed_at) > timeout_seconds


class FillSessionStore:
    """In-memory store for form-filling sessions.

    Thread-safe for basic use. A session's collector is only ever used
    by the request currently handling that session.
    """

    def __init__(self, timeout_seconds: int = DEFAULT_SESSION_TIMEOUT_SECONDS):
        self._sessions: dict[str, FillSession] = {}
        self._timeout_seconds = timeout_seconds
        self._lock = threading.RLock()

    def create_session(
        self,
        form: FormDefinition,
        session_id: str | None = None,
    ) -> tuple[str, FillSession]:
        """Create a new session for a form.

        Args:
            form: The form to fill.
            session_id: Optional custom ID. Auto-generated if not provided.

        Returns:
            Tuple of (session_id, FillSession).
        """
        if session_id is None:
            session_id = str(uuid.uuid4())

        session = FillSession(form)
        with self._lock:
            self._sessions[session_id] = session
        return session_id, session

    def get_session(self, session_id: str) -> FillSession | None:
        """Retrieve a session by ID.

        Returns None if the session doesn't exist or has expired.
        Automatically cleans up expired sessions.
        """
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            return None

        if session.is_expired(self._timeout_seconds):
            with self._lock:
                self._sessions.pop(session_id, None)
            return None

        session.touch()
        return session

    def delete_session(self, session_id: str) -> bool:
        """Delete a session. Returns True if it existed."""
        with self._lock:
            return self._sessions.pop(session_id, None) is not None

    def delete_sessions_for_form(self, form_id: str) -> int:
        """Drop every session of a deleted form. Returns the count removed."""
        with self._lock:
            doomed = [
                sid for sid, session in self._sessions.items()
                if session.form.id == form_id
            ]
            for sid in doomed:
                del self._sessions[sid]
        return len(doomed)

    def cleanup_expired(self) -> int:
        """Remove all expired sessions. Returns the count of removed sessions."""
        with self._lock:
            expired = [
                sid for sid, session in self._sessions.items()
                if session.is_expired(self._timeout_seconds)
            ]
            for sid in expired:
                del self._sessions[sid]
        return len(expired)

    def count(self) -> int:
        """Return the number of active sessions."""
        with self._lock:
            return len(self._sessions)
