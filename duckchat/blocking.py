"""
Blocking interface for callers without an event loop.

A single process-wide event loop runs on a daemon thread and drives every
request and reply task. ``Chat`` mirrors ChatSession with plain methods and
the sequence protocol; ``send_message`` returns a TokenStream whose ``for``
iteration blocks the calling thread until the next fragment arrives.

    chat = Chat.init()
    for fragment in chat.send_message("Hello!"):
        print(fragment, end="", flush=True)
    role, content = chat[-1]
"""

from __future__ import annotations

import asyncio
import threading
from collections.abc import Coroutine
from typing import Any, TypeVar

import structlog

from duckchat.chat_session import ChatSession
from duckchat.llm.client import DuckChatClient
from duckchat.llm.streaming.channel import TokenStream

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class _LoopThread:
    """Event loop running forever on a daemon thread, started on first use."""

    def __init__(self, name: str = "duckchat-event-loop") -> None:
        self._name = name
        self._lock = threading.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None

    def get_loop(self) -> asyncio.AbstractEventLoop:
        with self._lock:
            if self._loop is None or not self._thread or not self._thread.is_alive():
                loop = asyncio.new_event_loop()
                ready = threading.Event()
                thread = threading.Thread(
                    target=self._run,
                    args=(loop, ready),
                    name=self._name,
                    daemon=True,
                )
                thread.start()
                ready.wait()
                self._loop, self._thread = loop, thread
                logger.debug("Event loop thread started", thread=self._name)
            return self._loop

    @staticmethod
    def _run(loop: asyncio.AbstractEventLoop, ready: threading.Event) -> None:
        asyncio.set_event_loop(loop)
        loop.call_soon(ready.set)
        loop.run_forever()

    def run(self, coro: Coroutine[Any, Any, T], timeout: float | None = None) -> T:
        """Run ``coro`` on the loop thread and block for its result."""
        loop = self.get_loop()
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is loop:
            coro.close()
            raise RuntimeError("cannot block on the duckchat event loop from itself")
        return asyncio.run_coroutine_threadsafe(coro, loop).result(timeout)


_RUNTIME = _LoopThread()
_default_client: DuckChatClient | None = None
_client_lock = threading.Lock()


def _get_default_client() -> DuckChatClient:
    global _default_client
    with _client_lock:
        if _default_client is None:
            _default_client = DuckChatClient()
        return _default_client


class Chat:
    """A chat with the AI, usable from ordinary synchronous code."""

    def __init__(self, session: ChatSession) -> None:
        self._session = session

    @staticmethod
    def init(
        model: str | None = None,
        *,
        client: DuckChatClient | None = None,
        timeout: float | None = None,
    ) -> Chat:
        """Create a new chat.

        Raises:
            MissingTokenError: The server did not hand out a session token.
            TransportError: The initialization request failed.
        """
        client = client or _get_default_client()
        session = _RUNTIME.run(ChatSession.initialize(client, model), timeout)
        return Chat(session)

    @property
    def session(self) -> ChatSession:
        return self._session

    @property
    def model(self) -> str:
        return self._session.get_model()

    @model.setter
    def model(self, model: str) -> None:
        self._session.set_model(model)

    def get_model(self) -> str:
        return self._session.get_model()

    def set_model(self, model: str) -> None:
        self._session.set_model(model)

    def __len__(self) -> int:
        return self._session.turn_count()

    def __getitem__(self, index: int) -> tuple[str, str]:
        return self._session[index]

    def send_message(self, content: str, timeout: float | None = None) -> TokenStream:
        """Create a user message and get the response stream.

        The request is sent before this returns; iterate the result to
        receive the reply. Iteration raises the stream's error, if any.

        Raises:
            SessionBusyError: A previous reply is still streaming.
            TransportError: The request failed.
        """
        return _RUNTIME.run(self._session.send(content), timeout)
