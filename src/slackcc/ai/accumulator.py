"""Cumulative response buffer shared by both execution paths."""

from __future__ import annotations

from typing import Iterable

from .ai_types import SnapshotListener


class ResponseAccumulator:
    """Append-only text buffer exposing the current snapshot.

    Each non-empty fragment is appended in arrival order and, when a listener
    is attached, the new snapshot is forwarded to it. The buffer never shrinks.
    """

    __slots__ = ("_text", "_listener")

    def __init__(self, listener: SnapshotListener | None = None) -> None:
        self._text = ""
        self._listener = listener

    def append(self, fragments: Iterable[str] | str) -> str:
        if isinstance(fragments, str):
            fragments = (fragments,)
        for fragment in fragments:
            if not fragment:
                continue
            self._text += fragment
            if self._listener is not None:
                self._listener(self._text)
        return self._text

    def snapshot(self) -> str:
        return self._text

    def __len__(self) -> int:
        return len(self._text)

    def __bool__(self) -> bool:
        return bool(self._text)
