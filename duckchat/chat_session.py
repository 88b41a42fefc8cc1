"""
Chat session for the DuckDuckGo AI chat API.

This module holds the conversation state and drives one exchange at a time:
- Transcript ownership and model selection
- Non-blocking exclusive access (a second sender gets SessionBusyError)
- Tentative user turns that are committed or rolled back
- A background task that decodes the reply onto a token channel

A failure in the middle of a reply may leave the server's view of the
conversation out of sync with the local transcript. Callers should discard
the session and initialize a new one after such a failure instead of simply
retrying ``send``.
"""

from __future__ import annotations

import asyncio
import contextlib
import io
import threading
import uuid
from collections.abc import Iterator

import httpx

from duckchat.config import Configuration
from duckchat.llm.client import DuckChatClient
from duckchat.llm.exceptions import (
    DuckChatError,
    MissingRoleError,
    ModelLockedError,
    SessionBusyError,
    TurnIndexError,
)
from duckchat.llm.models import ChatDelta, ChatMessage, ChatRequest, MessageRole
from duckchat.llm.streaming.channel import TokenChannel, TokenStream
from duckchat.llm.streaming.models import TokenMessage
from duckchat.llm.streaming.parser import ResponseDecoder, StreamingParser
from duckchat.logging_utils import (
    ChatErrorHandler,
    ContextualLogger,
    log_operation,
    operation_context,
)

# The model may only change before the first exchange completes.
MODEL_LOCK_TURNS = 2

# --------------------------------------------------------------------------- #
# Utility helpers                                                             #
# --------------------------------------------------------------------------- #


class EfficientStringBuilder:
    """Accumulates streamed reply fragments without quadratic concatenation."""

    def __init__(self):
        self._buffer = io.StringIO()

    def append(self, text: str) -> None:
        self._buffer.write(text)

    def get_value(self) -> str:
        return self._buffer.getvalue()


class ExclusiveAccess:
    """
    Try-lock guarding the session state.

    Acquisition never waits: callers on a thread that cannot drive the event
    loop forward must not block on a reply they are not consuming. Release
    may happen from any thread.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()

    @property
    def locked(self) -> bool:
        return self._lock.locked()

    def try_acquire(self) -> bool:
        return self._lock.acquire(blocking=False)

    def release(self) -> None:
        self._lock.release()

    @contextlib.contextmanager
    def hold(self) -> Iterator[None]:
        """Hold access for a short synchronous operation or raise SessionBusyError."""
        if not self.try_acquire():
            raise SessionBusyError()
        try:
            yield
        finally:
            self.release()


class PendingExchange:
    """
    One in-flight exchange holding exclusive access to the session state.

    ``begin`` appends the user turn tentatively. ``commit`` appends the
    assembled assistant turn. ``close`` removes the tentative user turn
    unless the exchange was committed, then releases access. ``close`` runs
    on every exit path when the exchange is used as a context manager.
    """

    def __init__(self, state: ChatRequest, access: ExclusiveAccess):
        self._state = state
        self._access = access
        self._committed = False
        self._closed = False
        self.role: str | None = None
        self.fragments = 0
        self._content = EfficientStringBuilder()

    @classmethod
    def begin(
        cls, state: ChatRequest, access: ExclusiveAccess, content: str
    ) -> PendingExchange:
        """Acquire access and append the tentative user turn.

        Raises:
            SessionBusyError: Another exchange holds access.
        """
        if not access.try_acquire():
            raise SessionBusyError(model=state.model)
        exchange = cls(state, access)
        state.messages.append(
            ChatMessage(role=MessageRole.USER.value, content=content)
        )
        return exchange

    @property
    def committed(self) -> bool:
        return self._committed

    @property
    def content(self) -> str:
        return self._content.get_value()

    def absorb(self, delta: ChatDelta) -> str | None:
        """Fold one delta into the reply; returns the fragment to forward."""
        if delta.role:
            self.role = delta.role
        if delta.message:
            self._content.append(delta.message)
            self.fragments += 1
            return delta.message
        return None

    def commit(self) -> ChatMessage:
        """Append the assembled reply to the transcript.

        Raises:
            MissingRoleError: No delta ever named a role.
        """
        if self._closed or self._committed:
            raise RuntimeError("exchange already resolved")
        if not self.role:
            raise MissingRoleError(model=self._state.model)

        reply = ChatMessage(role=self.role, content=self.content)
        self._state.messages.append(reply)
        self._committed = True
        return reply

    def close(self) -> None:
        """Roll back unless committed and release access. Idempotent."""
        if self._closed:
            return
        self._closed = True
        try:
            if not self._committed:
                self._state.messages.pop()
        finally:
            self._access.release()

    def __enter__(self) -> PendingExchange:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


# --------------------------------------------------------------------------- #
# Chat session                                                                #
# --------------------------------------------------------------------------- #


class ChatSession:
    """
    Conversation state plus the operations that read and extend it.

    Create sessions with ``await ChatSession.initialize(client)``. All
    accessors are rejected with SessionBusyError while a reply is streaming.
    """

    def __init__(
        self,
        client: DuckChatClient,
        request: ChatRequest,
        *,
        max_buffer_size: int | None = None,
    ) -> None:
        self.client = client
        self.session_id = uuid.uuid4().hex[:12]
        self._state = request
        self._access = ExclusiveAccess()
        self._max_buffer_size = max_buffer_size
        self._tasks: set[asyncio.Task[None]] = set()
        self._logger = ContextualLogger({"session_id": self.session_id})

    @classmethod
    @log_operation("initialize_session")
    async def initialize(
        cls,
        client: DuckChatClient,
        model: str | None = None,
    ) -> ChatSession:
        """Fetch a session token and return a session with an empty transcript.

        Raises:
            MissingTokenError: The status response carried no token header.
            TransportError: The status request failed.
        """
        configuration: Configuration = client.configuration
        model = model or configuration.default_model
        request = await client.init_chat(model)
        streaming_config = configuration.get_streaming_config()

        session = cls(
            client,
            request,
            max_buffer_size=streaming_config.get("max_buffer_size"),
        )
        session._logger.info("Session initialized", model=request.model)
        return session

    # ------------------------------------------------------------------ #
    # Accessors                                                          #
    # ------------------------------------------------------------------ #

    @property
    def busy(self) -> bool:
        """True while a send is in flight."""
        return self._access.locked

    def get_model(self) -> str:
        with self._access.hold():
            return self._state.model

    def set_model(self, model: str) -> None:
        """Change the model before the first exchange completes.

        Raises:
            SessionBusyError: A send is in flight.
            ModelLockedError: The transcript already holds an exchange.
        """
        with self._access.hold():
            if len(self._state.messages) >= MODEL_LOCK_TURNS:
                raise ModelLockedError(model=self._state.model)
            self._state.model = model

    @property
    def model(self) -> str:
        return self.get_model()

    @model.setter
    def model(self, model: str) -> None:
        self.set_model(model)

    def turn_count(self) -> int:
        with self._access.hold():
            return len(self._state.messages)

    def get_turn(self, index: int) -> tuple[str, str]:
        """Return ``(role, content)`` of the turn at ``index``.

        Raises:
            TurnIndexError: ``index`` is outside ``0 <= index < turn_count()``.
        """
        with self._access.hold():
            if not 0 <= index < len(self._state.messages):
                raise TurnIndexError(model=self._state.model)
            return self._state.messages[index].as_tuple()

    def transcript(self) -> list[tuple[str, str]]:
        """Snapshot of every turn as ``(role, content)`` pairs."""
        with self._access.hold():
            return [message.as_tuple() for message in self._state.messages]

    def __len__(self) -> int:
        return self.turn_count()

    def __getitem__(self, index: int) -> tuple[str, str]:
        if not isinstance(index, int):
            raise TypeError(
                f"turn indices must be integers, not {type(index).__name__}"
            )
        if index < 0:
            index += self.turn_count()
        return self.get_turn(index)

    # ------------------------------------------------------------------ #
    # Sending                                                            #
    # ------------------------------------------------------------------ #

    async def send(self, text: str) -> TokenStream:
        """
        Append a user turn, post the conversation and stream the reply.

        Returns as soon as the server has accepted the request; the reply is
        decoded by a background task that keeps exclusive access until it
        has committed the assistant turn or rolled back the user turn.

        Raises:
            SessionBusyError: Another send is in flight.
            TransportError: The request failed (the user turn is rolled back).
            MissingTokenError: The session has no token (rolled back).
        """
        try:
            exchange = PendingExchange.begin(self._state, self._access, text)
        except SessionBusyError:
            self._logger.debug("Send rejected, session busy")
            raise

        try:
            async with operation_context(
                "open_chat_stream",
                context={
                    "session_id": self.session_id,
                    "turns": len(self._state.messages),
                },
            ):
                response = await self.client.open_chat_stream(self._state)
        except BaseException:
            exchange.close()
            raise

        channel = TokenChannel()
        task = asyncio.create_task(
            self._stream_reply(exchange, response, channel),
            name=f"duckchat-reply-{self.session_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._on_reply_done)
        return TokenStream(channel, task)

    async def _stream_reply(
        self,
        exchange: PendingExchange,
        response: httpx.Response,
        channel: TokenChannel,
    ) -> None:
        """Drain the reply and resolve the exchange.

        Cleanup order: the exchange is resolved first, then the response is
        released, then the terminal error (if any) is queued and the channel
        closed, so a consumer that sees the end of the stream also sees the
        final transcript.
        """
        parser = (
            StreamingParser(self._max_buffer_size)
            if self._max_buffer_size
            else StreamingParser()
        )
        decoder = ResponseDecoder.from_byte_stream(response.aiter_bytes(), parser)
        failures: list[DuckChatError] = []

        def finish_channel() -> None:
            if failures:
                channel.send(TokenMessage.err(failures[0]))
            channel.close()

        async with contextlib.AsyncExitStack() as stack:
            stack.callback(finish_channel)
            stack.push_async_callback(response.aclose)
            stack.push_async_callback(decoder.aclose)
            stack.enter_context(exchange)

            try:
                # Keep draining even if nobody is listening: the outcome
                # must not depend on the consumer.
                async for delta in decoder:
                    fragment = exchange.absorb(delta)
                    if fragment:
                        channel.send(TokenMessage.ok(fragment))
                exchange.commit()
            except DuckChatError as e:
                failures.append(e)
            except asyncio.CancelledError:
                failures.append(
                    DuckChatError("reply stream cancelled", model=self._state.model)
                )
                raise
            except Exception as e:
                error = DuckChatError(
                    f"unexpected stream failure: {e!s}", model=self._state.model
                )
                error.__cause__ = e
                failures.append(error)
                raise

            self._log_outcome(exchange, decoder, parser, failures)

    def _log_outcome(
        self,
        exchange: PendingExchange,
        decoder: ResponseDecoder,
        parser: StreamingParser,
        failures: list[DuckChatError],
    ) -> None:
        stream_stats = parser.get_stats()
        if failures:
            self._logger.warning(
                "Exchange rolled back",
                error_type=type(failures[0]).__name__,
                error_category=ChatErrorHandler.classify_error(failures[0]),
                error_message=str(failures[0]),
                fragments=exchange.fragments,
                bytes_received=stream_stats["bytes_received"],
            )
            return
        self._logger.info(
            "Exchange committed",
            role=exchange.role,
            fragments=exchange.fragments,
            content_length=len(exchange.content),
            frames=decoder.stats.frames,
            sentinel_seen=decoder.stats.sentinel_seen,
            comment_lines=stream_stats["comment_lines"],
            bytes_received=stream_stats["bytes_received"],
        )

    def _on_reply_done(self, task: asyncio.Task[None]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            self._logger.warning("Reply task cancelled")
            return
        error = task.exception()
        if error is not None:
            self._logger.error(
                "Reply task failed",
                error_type=type(error).__name__,
                error_message=str(error),
            )

    async def wait_idle(self) -> None:
        """Wait for every in-flight reply to be committed or rolled back."""
        while self._tasks:
            await asyncio.wait(list(self._tasks))
