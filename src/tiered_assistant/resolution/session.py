"""In-memory conversation context for streaming sessions."""

from __future__ import annotations

import logging
import time
import uuid
from collections import OrderedDict, deque
from collections.abc import Callable
from dataclasses import dataclass, field

from tiered_assistant.config import SessionConfig
from tiered_assistant.types import ConversationTurn

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class _Session:
    user_id: str
    turns: deque[ConversationTurn]
    touched_at: float = field(default=0.0)


class SessionStore:
    """Bounded recent-turn windows keyed by session id.

    Sessions are owned by the user that created them, expire after an idle
    period, and are evicted least-recently-used once `max_sessions` is reached.
    Nothing is persisted.
    """

    def __init__(
        self,
        config: SessionConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or SessionConfig()
        self._clock = clock
        self._sessions: OrderedDict[str, _Session] = OrderedDict()

    @staticmethod
    def new_session_id() -> str:
        return str(uuid.uuid4())

    def get_turns(self, session_id: str, user_id: str) -> list[ConversationTurn]:
        session = self._live_session(session_id)
        if session is None:
            return []
        if session.user_id != user_id:
            logger.warning("Session %s requested by a different user; ignoring its context", session_id)
            return []
        self._sessions.move_to_end(session_id)
        return list(session.turns)

    def append(self, session_id: str, user_id: str, turn: ConversationTurn) -> None:
        session = self._live_session(session_id)
        if session is not None and session.user_id != user_id:
            logger.warning("Refusing to append to session %s owned by another user", session_id)
            return
        if session is None:
            session = _Session(user_id=user_id, turns=deque(maxlen=self.config.max_turns))
            self._sessions[session_id] = session
            self._evict_overflow()
        session.turns.append(turn)
        session.touched_at = self._clock()
        self._sessions.move_to_end(session_id)

    def __len__(self) -> int:
        return len(self._sessions)

    def _live_session(self, session_id: str) -> _Session | None:
        session = self._sessions.get(session_id)
        if session is None:
            return None
        if self._clock() - session.touched_at > self.config.idle_ttl_seconds:
            del self._sessions[session_id]
            return None
        return session

    def _evict_overflow(self) -> None:
        while len(self._sessions) > self.config.max_sessions:
            evicted, _ = self._sessions.popitem(last=False)
            logger.debug("Evicted session %s", evicted)
