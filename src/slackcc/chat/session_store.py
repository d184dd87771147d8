"""In-memory per-conversation session state.

Sessions are created lazily on the first message for a conversation key,
mutated after each completed turn, and dropped entirely on reset. Nothing is
persisted; a restart starts every conversation fresh.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterator

from ..ai.ai_types import ExecutionMode, HistoryTurn

LOGGER = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 20


class BoundedHistory:
    """Ordered fast-path history capped at ``limit`` entries.

    Turns are stored as (user, assistant) pairs; when the cap is exceeded the
    oldest pair is evicted as a unit so role pairing is preserved.
    """

    def __init__(self, limit: int = DEFAULT_HISTORY_LIMIT) -> None:
        self._limit = max(2, limit - (limit % 2))
        self._turns: list[HistoryTurn] = []

    @property
    def limit(self) -> int:
        return self._limit

    def append_exchange(self, user: str, assistant: str) -> None:
        self._turns.append(HistoryTurn(role="user", content=user))
        self._turns.append(HistoryTurn(role="assistant", content=assistant))
        while len(self._turns) > self._limit:
            del self._turns[:2]

    def turns(self) -> tuple[HistoryTurn, ...]:
        return tuple(self._turns)

    def clear(self) -> None:
        self._turns.clear()

    def __len__(self) -> int:
        return len(self._turns)

    def __iter__(self) -> Iterator[HistoryTurn]:
        return iter(tuple(self._turns))


@dataclass(slots=True)
class ConversationSession:
    """State tracked for one conversation key."""

    key: str
    history: BoundedHistory
    generation: int = 0
    has_active_full_session: bool = False
    last_mode: ExecutionMode | None = None


class SessionStore:
    """Map of conversation key to :class:`ConversationSession`."""

    def __init__(self, *, history_limit: int = DEFAULT_HISTORY_LIMIT) -> None:
        self._history_limit = history_limit
        self._sessions: dict[str, ConversationSession] = {}
        self._generation = 0

    def get(self, key: str) -> ConversationSession:
        """Return the session for ``key``, creating it on first use.

        Every created session gets a fresh ``generation`` so results of turns
        that started before a reset can be told apart from current ones.
        """

        session = self._sessions.get(key)
        if session is None:
            self._generation += 1
            session = ConversationSession(
                key=key,
                history=BoundedHistory(self._history_limit),
                generation=self._generation,
            )
            self._sessions[key] = session
            LOGGER.debug("Created session for conversation %s", key)
        return session

    def peek(self, key: str) -> ConversationSession | None:
        return self._sessions.get(key)

    def reset(self, key: str) -> bool:
        """Drop every piece of state for ``key``; return whether any existed."""

        removed = self._sessions.pop(key, None)
        LOGGER.debug("Reset conversation %s (existed=%s)", key, removed is not None)
        return removed is not None

    def __contains__(self, key: object) -> bool:
        return key in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)


__all__ = ["BoundedHistory", "ConversationSession", "DEFAULT_HISTORY_LIMIT", "SessionStore"]
