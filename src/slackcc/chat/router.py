"""Per-message routing between the fast path and the worker."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from ..ai.ai_types import ExecutionMode, HistoryTurn, InvocationOutcome
from .commands import (
    DEFAULT_FAST_PREFIXES,
    WorkingContext,
    is_reset_command,
    match_working_context,
    split_fast_prefix,
)
from .session_store import SessionStore

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class RouteDecision:
    """How a single inbound message should be handled."""

    key: str
    text: str
    mode: ExecutionMode | None = None
    reset: bool = False
    working_context_override: WorkingContext | None = None
    continue_session: bool = False
    history: tuple[HistoryTurn, ...] = ()
    generation: int = 0


class SessionRouter:
    """Selects the execution mode and continuation state per conversation.

    Fast-mode history and full-mode continuability are tracked independently
    for each key, so quick exchanges can be interleaved with worker turns.
    """

    def __init__(
        self,
        store: SessionStore,
        *,
        fast_enabled: bool,
        default_working_dir: Path | str,
        working_contexts: Iterable[WorkingContext] = (),
        fast_prefixes: Iterable[str] = DEFAULT_FAST_PREFIXES,
    ) -> None:
        self._store = store
        self._fast_enabled = fast_enabled
        self._default_working_dir = Path(default_working_dir)
        self._working_contexts = tuple(working_contexts)
        self._fast_prefixes = tuple(fast_prefixes)

    @property
    def fast_enabled(self) -> bool:
        return self._fast_enabled

    @property
    def store(self) -> SessionStore:
        return self._store

    def route(self, key: str, raw_text: str) -> RouteDecision:
        text = (raw_text or "").strip()
        if is_reset_command(text):
            self._store.reset(key)
            return RouteDecision(key=key, text=text, reset=True)

        session = self._store.get(key)
        if self._fast_enabled:
            remainder = split_fast_prefix(text, self._fast_prefixes)
            if remainder is not None:
                return RouteDecision(
                    key=key,
                    text=remainder,
                    mode=ExecutionMode.FAST,
                    history=session.history.turns(),
                    generation=session.generation,
                )

        context = match_working_context(text, self._working_contexts)
        if context is not None:
            LOGGER.debug("Conversation %s using working context %s", key, context.name)
        return RouteDecision(
            key=key,
            text=text,
            mode=ExecutionMode.FULL,
            working_context_override=context,
            continue_session=session.has_active_full_session,
            generation=session.generation,
        )

    def working_dir_for(self, decision: RouteDecision) -> Path:
        if decision.working_context_override is not None:
            return decision.working_context_override.path
        return self._default_working_dir

    def record_success(self, decision: RouteDecision, outcome: InvocationOutcome) -> bool:
        """Fold a successful turn into session state.

        Results of turns that started before a reset of the same key are
        discarded. Returns whether the session was updated.
        """

        if decision.reset or decision.mode is None:
            return False
        session = self._store.peek(decision.key)
        if session is None or session.generation != decision.generation:
            LOGGER.debug("Dropping result for conversation %s reset mid-flight", decision.key)
            return False
        if decision.mode is ExecutionMode.FAST:
            session.history.append_exchange(decision.text, outcome.text)
        else:
            session.has_active_full_session = True
        session.last_mode = decision.mode
        return True


__all__ = ["RouteDecision", "SessionRouter"]
