"""
Error taxonomy for the chat client.

Every failure the client can report derives from DuckChatError:
- Transport failures (network errors, non-success HTTP statuses)
- Session token problems
- Malformed stream content (framing, missing data, bad payloads)
- Session state violations (busy, model locked, bad index)
"""

from __future__ import annotations


class DuckChatError(Exception):
    """Base chat client error with context."""

    def __init__(self, message: str, model: str | None = None):
        super().__init__(message)
        self.message = message
        self.model = model


class TransportError(DuckChatError):
    """Request could not be sent or the server answered with a failure status."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.status_code = status_code


class MissingTokenError(DuckChatError):
    """The session token header was absent."""

    def __init__(self, message: str = "missing session token", **kwargs):
        super().__init__(message, **kwargs)


class DecodeError(DuckChatError):
    """A streamed response could not be decoded. Terminal for that stream."""


class InvalidFramingError(DecodeError):
    """The SSE byte stream itself was malformed or broke off."""

    def __init__(self, message: str = "invalid sse event", **kwargs):
        super().__init__(message, **kwargs)


class MissingDataError(DecodeError):
    """An SSE event carried no data field."""

    def __init__(self, message: str = "sse event missing data", **kwargs):
        super().__init__(message, **kwargs)


class InvalidPayloadError(DecodeError):
    """An SSE event's data was not a valid chat payload."""

    def __init__(self, detail: str, **kwargs):
        super().__init__(f"invalid sse json data: {detail}", **kwargs)
        self.detail = detail


class MissingRoleError(DuckChatError):
    """The stream ended cleanly without ever naming a speaker role."""

    def __init__(self, message: str = "missing role", **kwargs):
        super().__init__(message, **kwargs)


class SessionBusyError(DuckChatError):
    """Another send is in flight. Retry once it has finished."""

    def __init__(self, message: str = "chat is busy", **kwargs):
        super().__init__(message, **kwargs)


class ModelLockedError(DuckChatError):
    """The model cannot change once an exchange has completed."""

    def __init__(
        self, message: str = "cannot change model of in-progress chat", **kwargs
    ):
        super().__init__(message, **kwargs)


class TurnIndexError(DuckChatError, IndexError):
    """Transcript access with an index outside the transcript."""

    def __init__(self, message: str = "message index out of range", **kwargs):
        super().__init__(message, **kwargs)
