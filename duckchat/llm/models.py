"""
Wire models for the chat API.

This module provides the pydantic models exchanged with the server:
- Transcript turns
- The chat request body (the session token travels as a header only)
- Streamed response deltas
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, NonNegativeInt

DEFAULT_MODEL = "gpt-4o-mini"

# Identifiers the service has accepted. Others are passed through untouched.
KNOWN_MODELS: tuple[str, ...] = (
    "gpt-4o-mini",
    "gpt-4o",
    "claude-3-haiku-20240307",
    "claude-3-sonnet-20240229",
    "claude-3-5-sonnet-20240620",
    "meta-llama/Meta-Llama-3.1-70B-Instruct-Turbo",
    "mistralai/Mixtral-8x7B-Instruct-v0.1",
)


class MessageRole(Enum):
    """Roles a transcript turn can carry."""
    USER = "user"
    ASSISTANT = "assistant"


class ChatMessage(BaseModel):
    """One transcript turn."""
    role: str
    content: str

    def as_tuple(self) -> tuple[str, str]:
        return self.role, self.content


class ChatRequest(BaseModel):
    """
    Request state for one conversation.

    The vqd token is required to make requests but is not part of the
    JSON body; it is sent as the ``x-vqd-4`` header.
    """
    messages: list[ChatMessage] = Field(default_factory=list)
    model: str = DEFAULT_MODEL
    vqd: str | None = Field(default=None, exclude=True)

    def to_payload(self) -> dict:
        """Serialize the body sent to the chat endpoint."""
        return self.model_dump(mode="json")


class ChatDelta(BaseModel):
    """
    One decoded event of a streamed reply.

    Only ``role`` and ``message`` are interpreted and may be absent; the
    remaining fields are carried along as metadata but must be present.
    """
    model_config = ConfigDict(frozen=True)

    role: str | None = None
    message: str | None = None
    created: NonNegativeInt
    id: str
    action: str
    model: str
