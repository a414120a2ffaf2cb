from __future__ import annotations

from threading import Lock as ThreadLock
from typing import Any, List, Optional

from onechart.errors import SessionNotFound
from onechart.models import Session, transition


class SessionListStore:
    """
    One user's in-memory session list, newest first.

    Reads hand out copies; all writes go through the intents below and match
    entries by id, so concurrent pipelines writing different sessions never
    clobber each other.
    """

    def __init__(self) -> None:
        self._lock = ThreadLock()
        self._sessions: List[Session] = []
        self.loaded = False

    def _index(self, session_id: str) -> int:
        for i, s in enumerate(self._sessions):
            if s.id == session_id:
                return i
        return -1

    # -------------------------
    # Reads
    # -------------------------

    def list(self) -> List[Session]:
        with self._lock:
            return [s.model_copy(deep=True) for s in self._sessions]

    def find(self, session_id: str) -> Optional[Session]:
        with self._lock:
            idx = self._index(session_id)
            return self._sessions[idx].model_copy(deep=True) if idx >= 0 else None

    def get(self, session_id: str) -> Session:
        session = self.find(session_id)
        if session is None:
            raise SessionNotFound(session_id)
        return session

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    # -------------------------
    # Intents
    # -------------------------

    def load(self, sessions: List[Session]) -> None:
        with self._lock:
            self._sessions = sorted(
                (s.model_copy(deep=True) for s in sessions),
                key=lambda s: s.date,
                reverse=True,
            )
            self.loaded = True

    def insert_placeholder(self, session: Session) -> None:
        with self._lock:
            idx = self._index(session.id)
            if idx >= 0:
                self._sessions[idx] = session.model_copy(deep=True)
            else:
                self._sessions.insert(0, session.model_copy(deep=True))

    def replace(self, session: Session) -> bool:
        """Swap the entry with the same id. Unknown ids are ignored."""
        with self._lock:
            idx = self._index(session.id)
            if idx < 0:
                return False
            self._sessions[idx] = session.model_copy(deep=True)
            return True

    def update(self, session_id: str, **fields: Any) -> Session:
        """
        Patch fields on one entry. A status change must be a legal
        transition; InvalidStatusTransition leaves the entry untouched.
        """
        with self._lock:
            idx = self._index(session_id)
            if idx < 0:
                raise SessionNotFound(session_id)
            current = self._sessions[idx]
            if "status" in fields:
                fields["status"] = transition(current.status, fields["status"])
            data = current.model_dump()
            data.update(fields)
            updated = Session.model_validate(data)
            self._sessions[idx] = updated
            return updated.model_copy(deep=True)

    def remove(self, session_id: str) -> bool:
        with self._lock:
            idx = self._index(session_id)
            if idx < 0:
                return False
            del self._sessions[idx]
            return True
