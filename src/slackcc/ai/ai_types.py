"""Shared typing contracts for the execution layer."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Protocol

LOGGER = logging.getLogger(__name__)


class ExecutionMode(str, Enum):
    """Execution path used for a single message."""

    FAST = "fast"
    FULL = "full"


@dataclass(slots=True, frozen=True)
class HistoryTurn:
    """One entry of fast-path conversational history."""

    role: str
    content: str

    def as_message(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(slots=True, frozen=True)
class InvocationOutcome:
    """Terminal result of one worker or fast-path invocation."""

    text: str
    duration_ms: int
    cost_usd: float | None = None
    mode: ExecutionMode = ExecutionMode.FULL


class SnapshotListener(Protocol):
    """One-way channel receiving cumulative response snapshots."""

    def __call__(self, snapshot: str) -> None:  # pragma: no cover - protocol stub
        ...


class CancellationToken:
    """Single-shot cancellation signal shared by an invocation and its deadline.

    Callbacks run synchronously on the event loop the first time :meth:`cancel`
    is called; later calls are no-ops. Callbacks registered after cancellation
    run immediately.
    """

    def __init__(self) -> None:
        self._reason: str | None = None
        self._callbacks: list[Callable[[str], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._reason is not None

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> bool:
        if self._reason is not None:
            return False
        self._reason = reason
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            self._invoke(callback, reason)
        return True

    def add_callback(self, callback: Callable[[str], None]) -> None:
        if self._reason is not None:
            self._invoke(callback, self._reason)
            return
        self._callbacks.append(callback)

    def remove_callback(self, callback: Callable[[str], None]) -> None:
        try:
            self._callbacks.remove(callback)
        except ValueError:
            pass

    @staticmethod
    def _invoke(callback: Callable[[str], None], reason: str) -> None:
        try:
            callback(reason)
        except Exception:  # pragma: no cover - defensive guard
            LOGGER.exception("Cancellation callback failed (reason=%s)", reason)


__all__ = [
    "CancellationToken",
    "ExecutionMode",
    "HistoryTurn",
    "InvocationOutcome",
    "SnapshotListener",
]
