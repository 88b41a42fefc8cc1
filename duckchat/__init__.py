"""
Streaming client for the DuckDuckGo AI chat API.

- ChatSession: async conversation with exclusive, rollback-safe sends
- Chat: blocking wrapper for code without an event loop
- DuckChatClient: the HTTP transport
"""

from __future__ import annotations

from duckchat.blocking import Chat
from duckchat.chat_session import ChatSession
from duckchat.config import Configuration
from duckchat.llm import (
    DEFAULT_MODEL,
    KNOWN_MODELS,
    DecodeError,
    DuckChatClient,
    DuckChatError,
    InvalidFramingError,
    InvalidPayloadError,
    MissingDataError,
    MissingRoleError,
    MissingTokenError,
    ModelLockedError,
    SessionBusyError,
    TransportError,
    TurnIndexError,
)
from duckchat.llm.streaming import TokenStream

__all__ = [
    "DEFAULT_MODEL",
    "KNOWN_MODELS",
    "Chat",
    "ChatSession",
    "Configuration",
    "DecodeError",
    "DuckChatClient",
    "DuckChatError",
    "InvalidFramingError",
    "InvalidPayloadError",
    "MissingDataError",
    "MissingRoleError",
    "MissingTokenError",
    "ModelLockedError",
    "SessionBusyError",
    "TokenStream",
    "TransportError",
    "TurnIndexError",
]
