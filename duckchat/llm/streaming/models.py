"""
Streaming-specific dataclasses.
"""

from __future__ import annotations

from dataclasses import dataclass

from ..exceptions import DuckChatError


@dataclass(frozen=True)
class SSEFrame:
    """One dispatched Server-Sent Event. Framing only, no payload semantics."""
    event: str | None = None
    data: str | None = None
    id: str | None = None
    retry: int | None = None


@dataclass(frozen=True)
class TokenMessage:
    """A channel message: either a text fragment or the terminal error."""
    fragment: str | None = None
    error: DuckChatError | None = None

    @classmethod
    def ok(cls, fragment: str) -> TokenMessage:
        return cls(fragment=fragment)

    @classmethod
    def err(cls, error: DuckChatError) -> TokenMessage:
        return cls(error=error)

    @property
    def is_error(self) -> bool:
        return self.error is not None

    def unwrap(self) -> str:
        """Return the fragment or raise the carried error."""
        if self.error is not None:
            raise self.error
        return self.fragment or ""


@dataclass
class DecoderStats:
    """Counters for one decoded response."""
    frames: int = 0
    deltas: int = 0
    sentinel_seen: bool = False
