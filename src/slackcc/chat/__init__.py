"""Conversation routing, session state and live-update throttling."""

from .router import RouteDecision, SessionRouter
from .session_store import BoundedHistory, ConversationSession, SessionStore
from .throttle import UpdateThrottler

__all__ = [
    "BoundedHistory",
    "ConversationSession",
    "RouteDecision",
    "SessionRouter",
    "SessionStore",
    "UpdateThrottler",
]
