"""Type definitions shared by the chat bridge and its surfaces."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Protocol


@dataclass(slots=True, frozen=True)
class InboundMessage:
    """Normalized inbound chat message."""

    channel: str
    user: str
    text: str
    ts: str
    thread_ts: str | None = None
    channel_type: str | None = None
    subtype: str | None = None

    @property
    def conversation_key(self) -> str:
        return self.thread_ts or self.ts

    @classmethod
    def from_event(cls, event: Mapping[str, Any]) -> "InboundMessage":
        return cls(
            channel=str(event.get("channel") or ""),
            user=str(event.get("user") or ""),
            text=str(event.get("text") or ""),
            ts=str(event.get("ts") or ""),
            thread_ts=event.get("thread_ts") or None,
            channel_type=event.get("channel_type") or None,
            subtype=event.get("subtype") or None,
        )


@dataclass(slots=True, frozen=True)
class MessageHandle:
    """Reference to a posted message that can later be updated."""

    channel: str
    ts: str


class ChatSurface(Protocol):
    """Outward chat operations; implementations swallow their own failures."""

    async def post_message(
        self, channel: str, text: str, *, thread_ts: str | None = None
    ) -> MessageHandle | None:
        ...

    async def update_message(self, handle: MessageHandle, text: str) -> bool:
        ...

    async def add_reaction(self, channel: str, message_ts: str, name: str) -> bool:
        ...


__all__ = ["ChatSurface", "InboundMessage", "MessageHandle"]
