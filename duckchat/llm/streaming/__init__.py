"""
Streaming functionality for the chat client.

This package contains:
- SSE framing
- Chat response decoding
- The token channel handed to consumers
"""

from __future__ import annotations

from .channel import TokenChannel, TokenStream
from .models import DecoderStats, SSEFrame, TokenMessage
from .parser import DONE_SENTINEL, ResponseDecoder, StreamingParser

__all__ = [
    "DONE_SENTINEL",
    "DecoderStats",
    "ResponseDecoder",
    "SSEFrame",
    "StreamingParser",
    "TokenChannel",
    "TokenMessage",
    "TokenStream",
]
