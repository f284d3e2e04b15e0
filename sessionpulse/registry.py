"""In-memory registry of observed sessions."""
from __future__ import annotations

from pathlib import Path
from typing import Iterator

from sessionpulse.models import SessionState


class SessionRegistry:
    """Single owner of session state, mutated only by the watcher."""

    def __init__(self) -> None:
        self._sessions: dict[str, SessionState] = {}

    def get_all(self) -> list[SessionState]:
        return list(self._sessions.values())

    def get(self, session_id: str) -> SessionState | None:
        return self._sessions.get(session_id)

    def upsert(self, session: SessionState) -> None:
        self._sessions[session.sessionId] = session

    def delete(self, session_id: str) -> SessionState | None:
        return self._sessions.pop(session_id, None)

    def find_by_path(self, path: Path | str) -> SessionState | None:
        target = str(path)
        for session in self._sessions.values():
            if session.filepath == target:
                return session
        return None

    def working_sessions(self) -> list[SessionState]:
        return [s for s in self._sessions.values() if s.status.status == "working"]

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __iter__(self) -> Iterator[SessionState]:
        return iter(list(self._sessions.values()))
