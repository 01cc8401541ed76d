"""In-memory session registry."""

from __future__ import annotations

import logging
import uuid
from collections import OrderedDict
from typing import TYPE_CHECKING, Concatenate, ParamSpec

from imageid.errors import SessionNotFoundError
from imageid.session.state import SessionState

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)

P = ParamSpec("P")


class SessionStore:
    """Holds one ``SessionState`` per session id.

    Bounded by ``max_sessions``; the least recently used idle session is
    evicted first. Sessions with a classification running are never evicted.
    """

    def __init__(self, max_sessions: int) -> None:
        self._max_sessions = max_sessions
        self._sessions: OrderedDict[str, SessionState] = OrderedDict()

    def create(self) -> str:
        session_id = uuid.uuid4().hex
        self._sessions[session_id] = SessionState()
        self._evict()
        return session_id

    def get(self, session_id: str) -> SessionState:
        try:
            state = self._sessions[session_id]
        except KeyError:
            raise SessionNotFoundError(session_id) from None
        self._sessions.move_to_end(session_id)
        return state

    def update(
        self,
        session_id: str,
        reducer: Callable[Concatenate[SessionState, P], SessionState],
        *args: P.args,
        **kwargs: P.kwargs,
    ) -> SessionState:
        """Apply ``reducer`` to the session and store the new snapshot."""
        state = reducer(self.get(session_id), *args, **kwargs)
        self._sessions[session_id] = state
        return state

    def __len__(self) -> int:
        return len(self._sessions)

    def _evict(self) -> None:
        while len(self._sessions) > self._max_sessions:
            idle = next((sid for sid, state in self._sessions.items() if not state.running), None)
            if idle is None:
                return
            del self._sessions[idle]
            logger.debug("Evicted session %s", idle)
