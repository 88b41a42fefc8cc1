"""
Chat API integration.

This package provides:
- Pydantic wire models for requests, turns and streamed deltas
- The async HTTP client for the status and chat endpoints
- SSE decoding and the token channel
- The error taxonomy
"""

from __future__ import annotations

from .client import DuckChatClient
from .exceptions import (
    DecodeError,
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
from .models import (
    DEFAULT_MODEL,
    KNOWN_MODELS,
    ChatDelta,
    ChatMessage,
    ChatRequest,
    MessageRole,
)

__all__ = [
    "DEFAULT_MODEL",
    "KNOWN_MODELS",
    # Models
    "ChatDelta",
    "ChatMessage",
    "ChatRequest",
    "MessageRole",
    # Client
    "DuckChatClient",
    # Exceptions
    "DecodeError",
    "DuckChatError",
    "InvalidFramingError",
    "InvalidPayloadError",
    "MissingDataError",
    "MissingRoleError",
    "MissingTokenError",
    "ModelLockedError",
    "SessionBusyError",
    "TransportError",
    "TurnIndexError",
]
