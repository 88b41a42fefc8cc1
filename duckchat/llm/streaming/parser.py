"""
SSE framing and chat response decoding.

StreamingParser turns the raw response body into SSE frames; ResponseDecoder
turns those frames into chat deltas and recognizes the terminal sentinel.
"""

from __future__ import annotations

import codecs
import re
from collections.abc import AsyncGenerator, AsyncIterable, AsyncIterator

import httpx
from pydantic import ValidationError

from ..exceptions import (
    DecodeError,
    InvalidFramingError,
    InvalidPayloadError,
    MissingDataError,
)
from ..models import ChatDelta
from .models import DecoderStats, SSEFrame

# Constants
DONE_SENTINEL = "[DONE]"
DEFAULT_MAX_BUFFER_SIZE = 1024 * 1024

_LINE_BREAK = re.compile(r"\r\n|\r|\n")


class StreamingParser:
    """SSE frame parser over an async byte stream."""

    def __init__(self, max_buffer_size: int = DEFAULT_MAX_BUFFER_SIZE):
        self.max_buffer_size = max_buffer_size
        self.stats = {
            'total_frames': 0,
            'comment_lines': 0,
            'bytes_received': 0,
        }

    async def parse_sse_stream(
        self, chunks: AsyncIterable[bytes]
    ) -> AsyncGenerator[SSEFrame]:
        """
        Parse an SSE byte stream into frames.

        A frame is dispatched on each blank line that follows at least one
        field. An unterminated frame at end of stream is discarded.

        Raises:
            InvalidFramingError: The body is not valid UTF-8, an event grows
                past ``max_buffer_size``, or the underlying stream fails.
        """
        decoder = codecs.getincrementaldecoder("utf-8")()
        buffer = ""
        fields = _FrameBuilder()

        try:
            async for chunk in chunks:
                self.stats['bytes_received'] += len(chunk)
                buffer += decoder.decode(chunk)

                lines, buffer = _split_lines(buffer)
                for line in lines:
                    frame = self._feed_line(fields, line)
                    if frame is not None:
                        self.stats['total_frames'] += 1
                        yield frame

                if len(buffer) > self.max_buffer_size:
                    raise InvalidFramingError(
                        f"sse line exceeds {self.max_buffer_size} characters"
                    )

            buffer += decoder.decode(b"", final=True)
        except UnicodeDecodeError as e:
            raise InvalidFramingError(f"invalid utf-8 in sse stream: {e}") from e
        except (httpx.HTTPError, httpx.StreamError) as e:
            raise InvalidFramingError(f"sse stream error: {e}") from e

        # A trailing bare "\r" is a complete line ending.
        if buffer.endswith("\r"):
            frame = self._feed_line(fields, buffer[:-1])
            if frame is not None:
                self.stats['total_frames'] += 1
                yield frame

    def _feed_line(self, fields: _FrameBuilder, line: str) -> SSEFrame | None:
        if not line:
            return fields.dispatch()

        if line.startswith(":"):
            self.stats['comment_lines'] += 1
            return None

        name, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]
        fields.add(name, value)
        return None

    def get_stats(self) -> dict[str, int]:
        """Get parser statistics."""
        return self.stats.copy()

    def reset_stats(self) -> None:
        """Reset statistics counters."""
        self.stats = {
            'total_frames': 0,
            'comment_lines': 0,
            'bytes_received': 0,
        }


class _FrameBuilder:
    """Field accumulator for the frame currently being read."""

    def __init__(self) -> None:
        self._reset()

    def _reset(self) -> None:
        self.event: str | None = None
        self.data_lines: list[str] = []
        self.id: str | None = None
        self.retry: int | None = None
        self.seen = False

    def add(self, name: str, value: str) -> None:
        if name == "data":
            self.data_lines.append(value)
        elif name == "event":
            self.event = value
        elif name == "id":
            if "\0" not in value:
                self.id = value
        elif name == "retry":
            if value.isdigit():
                self.retry = int(value)
        else:
            # Unknown fields are ignored
            return
        self.seen = True

    def dispatch(self) -> SSEFrame | None:
        if not self.seen:
            return None
        frame = SSEFrame(
            event=self.event,
            data="\n".join(self.data_lines) if self.data_lines else None,
            id=self.id,
            retry=self.retry,
        )
        self._reset()
        return frame


def _split_lines(buffer: str) -> tuple[list[str], str]:
    """Split off complete lines, returning them and the unfinished remainder."""
    lines: list[str] = []
    start = 0
    for match in _LINE_BREAK.finditer(buffer):
        # "\r" at the very end may be the first half of "\r\n"
        if match.group() == "\r" and match.end() == len(buffer):
            break
        lines.append(buffer[start:match.start()])
        start = match.end()
    return lines, buffer[start:]


class ResponseDecoder:
    """
    Decode SSE frames into chat deltas.

    Iterating yields ChatDelta values. A ``[DONE]`` frame ends iteration
    cleanly, ignoring anything after it. A frame without data, a payload
    that does not match ChatDelta, or a framing failure raises the matching
    DecodeError. After either kind of termination the decoder is exhausted
    and every further ``__anext__`` raises StopAsyncIteration.
    """

    def __init__(self, frames: AsyncIterable[SSEFrame]):
        self._frames: AsyncIterator[SSEFrame] = frames.__aiter__()
        self._done = False
        self.stats = DecoderStats()

    @classmethod
    def from_byte_stream(
        cls,
        chunks: AsyncIterable[bytes],
        parser: StreamingParser | None = None,
    ) -> ResponseDecoder:
        parser = parser or StreamingParser()
        return cls(parser.parse_sse_stream(chunks))

    @property
    def done(self) -> bool:
        return self._done

    def __aiter__(self) -> ResponseDecoder:
        return self

    async def __anext__(self) -> ChatDelta:
        if self._done:
            raise StopAsyncIteration

        try:
            frame = await self._frames.__anext__()
        except StopAsyncIteration:
            self._done = True
            raise
        except DecodeError:
            self._done = True
            raise

        self.stats.frames += 1

        if frame.data is None:
            self._done = True
            raise MissingDataError()

        if frame.data == DONE_SENTINEL:
            self._done = True
            self.stats.sentinel_seen = True
            raise StopAsyncIteration

        try:
            delta = ChatDelta.model_validate_json(frame.data)
        except ValidationError as e:
            self._done = True
            raise InvalidPayloadError(str(e)) from e

        self.stats.deltas += 1
        return delta

    async def aclose(self) -> None:
        """Release the underlying frame source."""
        self._done = True
        aclose = getattr(self._frames, "aclose", None)
        if aclose is not None:
            await aclose()
