"""
Chat Relay Module

Session bookkeeping, SSE transport and the relay that drives chat turns.
"""

from .chat_relay import ChatRelay
from .models import ChatMessage, ChatTurnRequest, StreamEvent
from .session_registry import CancellableRequest, SessionRegistry
from .transport import SSETransport

__all__ = [
    "CancellableRequest",
    "ChatMessage",
    "ChatRelay",
    "ChatTurnRequest",
    "SSETransport",
    "SessionRegistry",
    "StreamEvent",
]
