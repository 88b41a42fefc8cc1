"""
Token channel between the decoding task and the consumer.

The producer is always a task on an asyncio event loop. The consumer may be
a coroutine (``async for``) or a plain thread (``for``), so the channel is
guarded by a threading.Condition and wakes async waiters through
``call_soon_threadsafe``.
"""

from __future__ import annotations

import asyncio
import threading
from collections import deque

from .models import TokenMessage


class TokenChannel:
    """Unbounded, ordered, single-producer/single-consumer message queue."""

    def __init__(self) -> None:
        self._messages: deque[TokenMessage] = deque()
        self._cond = threading.Condition()
        self._closed = False
        self._receiver_closed = False
        self._waiter: tuple[asyncio.AbstractEventLoop, asyncio.Future[None]] | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------ #
    # Producer side                                                      #
    # ------------------------------------------------------------------ #

    def send(self, message: TokenMessage) -> bool:
        """
        Queue a message without blocking.

        Returns False when the message was dropped because the channel is
        closed or the receiver has gone away.
        """
        with self._cond:
            if self._closed or self._receiver_closed:
                return False
            self._messages.append(message)
            self._cond.notify()
            waiter = self._take_waiter()
        _wake(waiter)
        return True

    def close(self) -> None:
        """Close the producer end. Queued messages remain readable."""
        with self._cond:
            if self._closed:
                return
            self._closed = True
            self._cond.notify_all()
            waiter = self._take_waiter()
        _wake(waiter)

    # ------------------------------------------------------------------ #
    # Consumer side                                                      #
    # ------------------------------------------------------------------ #

    async def recv(self) -> TokenMessage | None:
        """Wait for the next message; None once closed and drained."""
        loop = asyncio.get_running_loop()
        while True:
            with self._cond:
                if self._messages:
                    return self._messages.popleft()
                if self._closed:
                    return None
                future: asyncio.Future[None] = loop.create_future()
                self._waiter = (loop, future)
            await future

    def recv_blocking(self, timeout: float | None = None) -> TokenMessage | None:
        """
        Block the calling thread for the next message; None once closed and drained.

        Raises:
            TimeoutError: No message arrived within ``timeout`` seconds.
        """
        with self._cond:
            while not self._messages and not self._closed:
                if not self._cond.wait(timeout):
                    raise TimeoutError("no token received within timeout")
            if self._messages:
                return self._messages.popleft()
            return None

    def close_receiver(self) -> None:
        """Drop queued and future messages; the producer keeps running."""
        with self._cond:
            self._receiver_closed = True
            self._messages.clear()

    def _take_waiter(self):
        waiter, self._waiter = self._waiter, None
        return waiter


def _wake(waiter: tuple[asyncio.AbstractEventLoop, asyncio.Future[None]] | None) -> None:
    if waiter is None:
        return
    loop, future = waiter
    if loop.is_closed():
        return
    loop.call_soon_threadsafe(_resolve, future)


def _resolve(future: asyncio.Future[None]) -> None:
    if not future.done():
        future.set_result(None)


class TokenStream:
    """
    Consumer handle for one streamed reply.

    Supports ``async for`` on any event loop and plain ``for`` from a thread
    that is not running the producer's loop. Yields text fragments in order;
    a failed stream raises its error when the consumer reaches it.
    """

    def __init__(
        self,
        channel: TokenChannel,
        task: asyncio.Task[None] | None = None,
    ):
        self._channel = channel
        self._task = task
        self._finished = False

    @property
    def finished(self) -> bool:
        return self._finished

    def __aiter__(self) -> TokenStream:
        return self

    async def __anext__(self) -> str:
        if self._finished:
            raise StopAsyncIteration
        message = await self._channel.recv()
        if message is None:
            self._finished = True
            raise StopAsyncIteration
        return self._unwrap(message)

    def __iter__(self) -> TokenStream:
        return self

    def __next__(self) -> str:
        return self.next_blocking()

    def next_blocking(self, timeout: float | None = None) -> str:
        """Blocking pull of the next fragment; StopIteration at the end."""
        if self._finished:
            raise StopIteration
        self._check_not_on_producer_loop()
        message = self._channel.recv_blocking(timeout)
        if message is None:
            self._finished = True
            raise StopIteration
        return self._unwrap(message)

    def _unwrap(self, message: TokenMessage) -> str:
        if message.is_error:
            self._finished = True
        return message.unwrap()

    def _check_not_on_producer_loop(self) -> None:
        if self._task is None:
            return
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            return
        if running is self._task.get_loop():
            raise RuntimeError(
                "blocking iteration on the event loop that produces the "
                "tokens would deadlock; use 'async for' instead"
            )

    async def collect(self) -> str:
        """Drain the stream and return the assembled text."""
        parts = [fragment async for fragment in self]
        return "".join(parts)

    async def wait_finished(self) -> None:
        """Wait until the reply has been committed or rolled back."""
        if self._task is not None:
            await asyncio.shield(self._task)

    def close(self) -> None:
        """Stop receiving. The reply is still committed or rolled back."""
        self._finished = True
        self._channel.close_receiver()
