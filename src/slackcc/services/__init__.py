"""Service layer helpers (bridge, settings, chat surface)."""

from .bridge_types import ChatSurface, InboundMessage, MessageHandle

__all__ = ["ChatSurface", "InboundMessage", "MessageHandle"]
