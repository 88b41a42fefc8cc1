#!/usr/bin/env python3
"""
Tests for ChatSession: initialization, exclusive sends, commit and rollback.
"""

from __future__ import annotations

import asyncio
from unittest.mock import Mock

import httpx
import pytest

from conftest import DONE, FailingStream, HeldStream, delta, sse_body
from duckchat.chat_session import ChatSession, ExclusiveAccess, PendingExchange
from duckchat.llm.exceptions import (
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
from duckchat.llm.models import ChatDelta, ChatRequest


class CrashingStream(httpx.AsyncByteStream):
    """Response body that yields ``head`` and then fails with ``error``."""

    def __init__(self, head: bytes, error: Exception):
        self.head = head
        self.error = error

    async def __aiter__(self):
        yield self.head
        raise self.error


def hello_reply() -> bytes:
    return sse_body(delta("Hel", role="assistant"), delta("lo"), DONE)


def chat_delta(message=None, role=None) -> ChatDelta:
    return ChatDelta(**delta(message, role=role))


async def new_session(client, model=None) -> ChatSession:
    return await ChatSession.initialize(client, model)


async def exchange(session: ChatSession, text: str) -> list[str]:
    stream = await session.send(text)
    return [fragment async for fragment in stream]


class TestInitialize:
    """The status exchange that yields the session token."""

    @pytest.mark.asyncio
    async def test_captures_token_and_starts_empty(self, server, client):
        session = await new_session(client)

        assert session.turn_count() == 0
        assert session.get_model() == "gpt-4o-mini"
        request = server.status_requests[0]
        assert request.headers["x-vqd-accept"] == "1"
        assert request.headers["user-agent"] == "duckchat-tests/1.0"

    @pytest.mark.asyncio
    async def test_explicit_model(self, client):
        session = await new_session(client, "claude-3-haiku-20240307")

        assert session.model == "claude-3-haiku-20240307"

    @pytest.mark.asyncio
    async def test_missing_token_header(self, server, client):
        server.token = None

        with pytest.raises(MissingTokenError):
            await new_session(client)

    @pytest.mark.asyncio
    async def test_failure_status(self, server, client):
        server.status_code = 503

        with pytest.raises(TransportError) as exc_info:
            await new_session(client)
        assert exc_info.value.status_code == 503


class TestSend:
    """Successful exchanges."""

    @pytest.mark.asyncio
    async def test_fragments_are_forwarded_and_reply_committed(self, server, client):
        server.queue_reply(hello_reply())
        session = await new_session(client)

        fragments = await exchange(session, "Hi there")

        assert fragments == ["Hel", "lo"]
        assert session.turn_count() == 2
        assert session.get_turn(0) == ("user", "Hi there")
        assert session.get_turn(1) == ("assistant", "Hello")

    @pytest.mark.asyncio
    async def test_turn_count_is_twice_the_exchanges(self, server, client):
        session = await new_session(client)

        for n in range(1, 4):
            server.queue_reply(hello_reply())
            await exchange(session, f"question {n}")
            assert session.turn_count() == 2 * n

    @pytest.mark.asyncio
    async def test_request_carries_transcript_model_and_token(self, server, client):
        server.queue_reply(hello_reply())
        server.queue_reply(hello_reply())
        session = await new_session(client)

        await exchange(session, "first")
        await exchange(session, "second")

        first, second = server.chat_payloads()
        assert first == {
            "messages": [{"role": "user", "content": "first"}],
            "model": "gpt-4o-mini",
        }
        assert second["messages"] == [
            {"role": "user", "content": "first"},
            {"role": "assistant", "content": "Hello"},
            {"role": "user", "content": "second"},
        ]
        for request in server.chat_requests:
            assert request.headers["x-vqd-4"] == "vqd-token-1"
            assert b"vqd-token-1" not in request.content

    @pytest.mark.asyncio
    async def test_frames_after_sentinel_are_ignored(self, server, client):
        server.queue_reply(
            sse_body(delta("Hi", role="assistant"), DONE, delta(" there"), "{oops")
        )
        session = await new_session(client)

        assert await exchange(session, "hey") == ["Hi"]
        assert session[1] == ("assistant", "Hi")

    @pytest.mark.asyncio
    async def test_latest_non_empty_role_wins(self, server, client):
        server.queue_reply(
            sse_body(
                delta("a", role="system"),
                delta("b", role="assistant"),
                delta("c", role=""),
                DONE,
            )
        )
        session = await new_session(client)

        await exchange(session, "x")

        assert session.get_turn(1) == ("assistant", "abc")

    @pytest.mark.asyncio
    async def test_role_only_reply_commits_empty_content(self, server, client):
        server.queue_reply(sse_body(delta(role="assistant"), DONE))
        session = await new_session(client)

        assert await exchange(session, "x") == []
        assert session.get_turn(1) == ("assistant", "")

    @pytest.mark.asyncio
    async def test_collect(self, server, client):
        server.queue_reply(hello_reply())
        session = await new_session(client)

        stream = await session.send("x")

        assert await stream.collect() == "Hello"

    @pytest.mark.asyncio
    async def test_reply_resolves_without_a_consumer(self, server, client):
        server.queue_reply(hello_reply())
        session = await new_session(client)

        stream = await session.send("nobody listens")
        stream.close()
        await stream.wait_finished()

        assert session.transcript() == [
            ("user", "nobody listens"),
            ("assistant", "Hello"),
        ]

    @pytest.mark.asyncio
    async def test_reply_resolves_when_stream_is_never_read(self, server, client):
        server.queue_reply(hello_reply())
        session = await new_session(client)

        await session.send("fire and forget")
        await session.wait_idle()

        assert session.turn_count() == 2

    @pytest.mark.asyncio
    async def test_commit_logs_stream_statistics(self, server, client):
        body = b": keep-alive\n\n" + hello_reply()
        server.queue_reply(body)
        session = await new_session(client)
        session._logger = Mock()

        await exchange(session, "x")

        session._logger.info.assert_called_once_with(
            "Exchange committed",
            role="assistant",
            fragments=2,
            content_length=5,
            frames=3,
            sentinel_seen=True,
            comment_lines=1,
            bytes_received=len(body),
        )

    @pytest.mark.asyncio
    async def test_rollback_logs_error_category(self, server, client):
        body = sse_body(delta("Hi", role="assistant"), "{bad")
        server.queue_reply(body)
        session = await new_session(client)
        session._logger = Mock()

        with pytest.raises(InvalidPayloadError):
            await exchange(session, "x")

        _, kwargs = session._logger.warning.call_args
        assert kwargs["error_category"] == "decode_error"
        assert kwargs["fragments"] == 1
        assert kwargs["bytes_received"] == len(body)


class TestRollback:
    """Failed exchanges leave the transcript as it was."""

    @pytest.mark.asyncio
    async def test_invalid_payload_mid_stream(self, server, client):
        server.queue_reply(sse_body(delta("Hi", role="assistant"), "{not json"))
        session = await new_session(client)

        stream = await session.send("hello")
        fragments = []
        with pytest.raises(InvalidPayloadError):
            async for fragment in stream:
                fragments.append(fragment)

        assert fragments == ["Hi"]
        assert session.turn_count() == 0
        assert not session.busy

    @pytest.mark.asyncio
    async def test_failure_after_earlier_exchange_keeps_history(self, server, client):
        server.queue_reply(hello_reply())
        server.queue_reply(sse_body(delta("x", role="assistant"), None))
        session = await new_session(client)
        await exchange(session, "first")
        before = session.transcript()

        with pytest.raises(MissingDataError):
            await exchange(session, "second")

        assert session.transcript() == before

    @pytest.mark.asyncio
    async def test_missing_role(self, server, client):
        server.queue_reply(sse_body(delta("orphan"), DONE))
        session = await new_session(client)

        stream = await session.send("x")
        assert await stream.__anext__() == "orphan"
        with pytest.raises(MissingRoleError):
            await stream.__anext__()

        assert session.turn_count() == 0

    @pytest.mark.asyncio
    async def test_broken_connection_mid_stream(self, server, client):
        server.queue_reply(FailingStream(sse_body(delta("par", role="assistant"))))
        session = await new_session(client)

        stream = await session.send("x")

        assert await stream.__anext__() == "par"
        with pytest.raises(InvalidFramingError):
            await stream.__anext__()
        assert session.turn_count() == 0

    @pytest.mark.asyncio
    async def test_failure_status_on_chat(self, server, client):
        server.queue_reply(b"rate limited", status_code=429)
        session = await new_session(client)

        with pytest.raises(TransportError) as exc_info:
            await session.send("x")

        assert exc_info.value.status_code == 429
        assert "rate limited" in str(exc_info.value)
        assert session.turn_count() == 0
        assert not session.busy

    @pytest.mark.asyncio
    async def test_network_error_on_chat(self, server, client):
        server.chat_error = httpx.ConnectError("unreachable")
        session = await new_session(client)

        with pytest.raises(TransportError):
            await session.send("x")

        assert session.turn_count() == 0

    @pytest.mark.asyncio
    async def test_session_is_usable_after_transport_failure(self, server, client):
        server.queue_reply(b"", status_code=500)
        server.queue_reply(hello_reply())
        session = await new_session(client)

        with pytest.raises(TransportError):
            await session.send("x")
        assert await exchange(session, "again") == ["Hel", "lo"]

        assert session.transcript() == [("user", "again"), ("assistant", "Hello")]

    @pytest.mark.asyncio
    async def test_cancelled_reply_task(self, server, client):
        held = HeldStream(sse_body(delta("par", role="assistant")), sse_body(DONE))
        server.queue_reply(held)
        session = await new_session(client)

        stream = await session.send("x")
        assert await stream.__anext__() == "par"
        stream._task.cancel()

        with pytest.raises(DuckChatError, match="cancelled") as exc_info:
            await stream.__anext__()

        assert type(exc_info.value) is DuckChatError
        assert session.turn_count() == 0
        assert not session.busy
        await session.wait_idle()
        assert stream._task.cancelled()

    @pytest.mark.asyncio
    async def test_unexpected_body_failure(self, server, client):
        cause = RuntimeError("decoder blew up")
        server.queue_reply(CrashingStream(sse_body(delta("par", role="assistant")), cause))
        session = await new_session(client)

        stream = await session.send("x")
        assert await stream.__anext__() == "par"
        with pytest.raises(DuckChatError, match="unexpected stream failure") as exc_info:
            await stream.__anext__()

        assert exc_info.value.__cause__ is cause
        assert session.turn_count() == 0
        assert not session.busy
        await session.wait_idle()
        assert stream._task.exception() is cause


class TestExclusivity:
    """Only one send per session at a time; the rest fail fast."""

    @pytest.mark.asyncio
    async def test_concurrent_send_is_busy(self, server, client):
        held = HeldStream(
            sse_body(delta("wait", role="assistant")),
            sse_body(delta(" for it"), DONE),
        )
        server.queue_reply(held)
        session = await new_session(client)

        stream = await session.send("first")
        assert await stream.__anext__() == "wait"

        with pytest.raises(SessionBusyError):
            await session.send("second")
        with pytest.raises(SessionBusyError):
            session.set_model("gpt-4o")
        with pytest.raises(SessionBusyError):
            session.turn_count()
        with pytest.raises(SessionBusyError):
            session.get_turn(0)
        assert session.busy

        held.gate.set()
        assert [f async for f in stream] == [" for it"]
        assert session.transcript() == [("user", "first"), ("assistant", "wait for it")]
        assert len(server.chat_requests) == 1

    @pytest.mark.asyncio
    async def test_many_concurrent_sends_only_one_proceeds(self, server, client):
        held = HeldStream(b"", sse_body(delta("ok", role="assistant"), DONE))
        server.queue_reply(held)
        session = await new_session(client)

        results = await asyncio.gather(
            *(session.send(f"msg {i}") for i in range(5)), return_exceptions=True
        )

        streams = [r for r in results if not isinstance(r, BaseException)]
        errors = [r for r in results if isinstance(r, BaseException)]
        assert len(streams) == 1
        assert len(errors) == 4
        assert all(isinstance(e, SessionBusyError) for e in errors)

        held.gate.set()
        assert await streams[0].collect() == "ok"
        assert session.turn_count() == 2


class TestModelAndIndexing:
    """Model changes and transcript access."""

    @pytest.mark.asyncio
    async def test_set_model_before_first_exchange(self, server, client):
        server.queue_reply(hello_reply())
        session = await new_session(client)

        session.set_model("mistralai/Mixtral-8x7B-Instruct-v0.1")
        await exchange(session, "x")

        assert server.chat_payloads()[0]["model"] == "mistralai/Mixtral-8x7B-Instruct-v0.1"

    @pytest.mark.asyncio
    async def test_set_model_after_exchange_is_locked(self, server, client):
        server.queue_reply(hello_reply())
        session = await new_session(client)
        await exchange(session, "x")

        with pytest.raises(ModelLockedError):
            session.set_model("gpt-4o")
        with pytest.raises(ModelLockedError):
            session.model = "gpt-4o"
        assert session.get_model() == "gpt-4o-mini"

    @pytest.mark.asyncio
    async def test_set_model_after_failed_exchange_is_allowed(self, server, client):
        server.queue_reply(sse_body("{bad"))
        session = await new_session(client)
        with pytest.raises(InvalidPayloadError):
            await exchange(session, "x")

        session.set_model("gpt-4o")

        assert session.get_model() == "gpt-4o"

    @pytest.mark.asyncio
    async def test_index_out_of_range(self, server, client):
        server.queue_reply(hello_reply())
        session = await new_session(client)
        await exchange(session, "x")

        with pytest.raises(TurnIndexError):
            session.get_turn(2)
        with pytest.raises(TurnIndexError):
            session.get_turn(-1)
        with pytest.raises(IndexError):
            session[5]
        assert session[-1] == ("assistant", "Hello")
        assert len(session) == 2

    @pytest.mark.asyncio
    async def test_non_integer_index(self, client):
        session = await new_session(client)

        with pytest.raises(TypeError):
            session["0"]


class TestPendingExchange:
    """The rollback guard on its own."""

    def test_close_without_commit_rolls_back_and_releases(self):
        state = ChatRequest(vqd="t")
        access = ExclusiveAccess()

        with PendingExchange.begin(state, access, "hi") as pending:
            assert [m.content for m in state.messages] == ["hi"]
            assert access.locked
            pending.absorb(chat_delta(role="assistant", message="partial"))

        assert state.messages == []
        assert not access.locked

    def test_commit_survives_close(self):
        state = ChatRequest(vqd="t")
        access = ExclusiveAccess()

        with PendingExchange.begin(state, access, "hi") as pending:
            pending.absorb(chat_delta(role="assistant", message="Hel"))
            pending.absorb(chat_delta(message="lo"))
            reply = pending.commit()

        assert reply.content == "Hello"
        assert [m.as_tuple() for m in state.messages] == [
            ("user", "hi"),
            ("assistant", "Hello"),
        ]
        assert not access.locked

    def test_rollback_on_exception(self):
        state = ChatRequest(vqd="t")
        access = ExclusiveAccess()

        with pytest.raises(ValueError):
            with PendingExchange.begin(state, access, "hi"):
                raise ValueError("boom")

        assert state.messages == []
        assert not access.locked

    def test_begin_while_held_is_busy(self):
        state = ChatRequest(vqd="t")
        access = ExclusiveAccess()

        with PendingExchange.begin(state, access, "one"):
            with pytest.raises(SessionBusyError):
                PendingExchange.begin(state, access, "two")
            assert len(state.messages) == 1

    def test_commit_without_role(self):
        state = ChatRequest(vqd="t")
        access = ExclusiveAccess()

        with PendingExchange.begin(state, access, "hi") as pending:
            pending.absorb(chat_delta(message="text"))
            with pytest.raises(MissingRoleError):
                pending.commit()

        assert state.messages == []
