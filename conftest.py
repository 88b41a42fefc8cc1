"""
Shared fixtures: an in-process fake of the chat API served through
httpx.MockTransport, plus helpers for building SSE bodies.
"""

from __future__ import annotations

import asyncio
import copy
import json
import threading
from collections.abc import AsyncIterator
from typing import Any

import httpx
import pytest

from duckchat.config import Configuration
from duckchat.llm.client import DuckChatClient

STATUS_URL = "https://chat.test/duckchat/v1/status"
CHAT_URL = "https://chat.test/duckchat/v1/chat"
DONE = "[DONE]"

TEST_CONFIG: dict[str, Any] = {
    "api": {
        "status_url": STATUS_URL,
        "chat_url": CHAT_URL,
        "user_agent": "duckchat-tests/1.0",
        "token_request_header": "x-vqd-accept",
        "token_header": "x-vqd-4",
    },
    "chat": {"default_model": "gpt-4o-mini"},
    "http_client": {
        "connect_timeout": 5.0,
        "read_timeout": 5.0,
        "write_timeout": 5.0,
        "pool_timeout": 5.0,
    },
}


def sse_body(*events: dict[str, Any] | str | None) -> bytes:
    """Build an SSE body: dicts become JSON data, strings raw data, None a data-less event."""
    parts = []
    for event in events:
        if event is None:
            parts.append("event: message\n\n")
        elif isinstance(event, str):
            parts.append(f"data: {event}\n\n")
        else:
            parts.append(f"data: {json.dumps(event)}\n\n")
    return "".join(parts).encode()


def delta(message: str | None = None, role: str | None = None) -> dict[str, Any]:
    """A chat payload as the server sends it."""
    payload: dict[str, Any] = {
        "created": 1727000000,
        "id": "chatcmpl-test",
        "action": "success",
        "model": "gpt-4o-mini-2024-07-18",
    }
    if role is not None:
        payload["role"] = role
    if message is not None:
        payload["message"] = message
    return payload


class HeldStream(httpx.AsyncByteStream):
    """Response body that yields ``head``, waits for ``gate``, then yields ``tail``."""

    def __init__(self, head: bytes, tail: bytes, gate: threading.Event | None = None):
        self.head = head
        self.tail = tail
        self.gate = gate or threading.Event()

    async def __aiter__(self) -> AsyncIterator[bytes]:
        if self.head:
            yield self.head
        while not self.gate.is_set():
            await asyncio.sleep(0.005)
        if self.tail:
            yield self.tail


class FailingStream(httpx.AsyncByteStream):
    """Response body that yields ``head`` and then breaks off with a read error."""

    def __init__(self, head: bytes):
        self.head = head

    async def __aiter__(self) -> AsyncIterator[bytes]:
        yield self.head
        raise httpx.ReadError("connection reset by peer")


class FakeChatServer:
    """Scripted stand-in for the status and chat endpoints."""

    def __init__(self, token: str | None = "vqd-token-1"):
        self.token = token
        self.status_code = 200
        self.replies: list[tuple[int, bytes | httpx.AsyncByteStream]] = []
        self.chat_requests: list[httpx.Request] = []
        self.status_requests: list[httpx.Request] = []
        self.chat_error: Exception | None = None

    def queue_reply(
        self, body: bytes | httpx.AsyncByteStream, status_code: int = 200
    ) -> None:
        self.replies.append((status_code, body))

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url == STATUS_URL:
            self.status_requests.append(request)
            headers = {"x-vqd-4": self.token} if self.token else {}
            return httpx.Response(self.status_code, headers=headers, text="")

        if request.url == CHAT_URL:
            self.chat_requests.append(request)
            if self.chat_error is not None:
                raise self.chat_error
            status_code, body = self.replies.pop(0)
            headers = {"content-type": "text/event-stream"}
            if isinstance(body, bytes):
                return httpx.Response(status_code, headers=headers, content=body)
            return httpx.Response(status_code, headers=headers, stream=body)

        return httpx.Response(404)

    def client(self, configuration: Configuration) -> DuckChatClient:
        return DuckChatClient(
            configuration, transport=httpx.MockTransport(self.handler)
        )

    def chat_payloads(self) -> list[dict[str, Any]]:
        return [json.loads(request.content) for request in self.chat_requests]


@pytest.fixture
def configuration(monkeypatch) -> Configuration:
    for name in ("DUCKCHAT_MODEL", "DUCKCHAT_USER_AGENT", "DUCKCHAT_LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)
    return Configuration.from_dict(copy.deepcopy(TEST_CONFIG))


@pytest.fixture
def server() -> FakeChatServer:
    return FakeChatServer()


@pytest.fixture
def client(server: FakeChatServer, configuration: Configuration) -> DuckChatClient:
    return server.client(configuration)
