"""Explicit run-session tokens used for cooperative cancellation.

Exactly one session is current per registry. Starting a new session
supersedes the previous one; superseded sessions are never reused.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass

from knowledge_bootstrap.domain.ids import generate_session_id, validate_session_id


class SessionRegistry:
    """Tracks the single current session and answers ``is_session_valid``."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._current: str | None = None

    @property
    def current_id(self) -> str | None:
        with self._lock:
            return self._current

    def start(self, session_id: str | None = None) -> RunSession:
        """Create a new current session, superseding any previous one."""
        new_id = generate_session_id() if session_id is None else session_id
        validate_session_id(new_id)
        with self._lock:
            self._current = new_id
        return RunSession(id=new_id, registry=self)

    def supersede(self) -> None:
        with self._lock:
            self._current = None

    def is_session_valid(self, session_id: str) -> bool:
        with self._lock:
            return self._current is not None and self._current == session_id


@dataclass(frozen=True, slots=True)
class RunSession:
    id: str
    registry: SessionRegistry

    def is_valid(self) -> bool:
        return self.registry.is_session_valid(self.id)


__all__ = ["RunSession", "SessionRegistry"]
