"""
Async HTTP client for the chat API.

Handles the two exchanges the chat session needs:
- Initialization: fetch a session (vqd) token from the status endpoint
- Chat: post the transcript and hand back the open SSE response
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from ..config import Configuration
from .exceptions import MissingTokenError, TransportError
from .models import DEFAULT_MODEL, ChatRequest

logger = structlog.get_logger(__name__)


class DuckChatClient:
    """HTTP transport for the chat API."""

    def __init__(
        self,
        config: Configuration | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.configuration = config or Configuration()
        self.api_config: dict[str, Any] = self.configuration.get_api_config()
        timeouts = self.configuration.get_http_client_config()

        self.client: httpx.AsyncClient = httpx.AsyncClient(
            headers={"User-Agent": self.api_config["user_agent"]},
            timeout=httpx.Timeout(
                connect=timeouts["connect_timeout"],
                read=timeouts["read_timeout"],
                write=timeouts["write_timeout"],
                pool=timeouts["pool_timeout"],
            ),
            transport=transport,
        )

    @property
    def token_header(self) -> str:
        return self.api_config["token_header"]

    async def init_chat(self, model: str | None = None) -> ChatRequest:
        """Start a new conversation and capture its session token.

        Raises:
            TransportError: The request failed or returned a failure status.
            MissingTokenError: The response carried no session token header.
        """
        try:
            response = await self.client.get(
                self.api_config["status_url"],
                headers={self.api_config["token_request_header"]: "1"},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise TransportError(
                f"Status request failed with {e.response.status_code}",
                status_code=e.response.status_code,
                model=model,
            ) from e
        except httpx.HTTPError as e:
            logger.error("HTTP error during initialization", error=str(e))
            raise TransportError(f"HTTP error: {e!s}", model=model) from e

        vqd = response.headers.get(self.token_header)
        if not vqd:
            raise MissingTokenError(
                f"missing {self.token_header} header in status response",
                model=model,
            )

        return ChatRequest(model=model or DEFAULT_MODEL, vqd=vqd)

    async def open_chat_stream(self, request: ChatRequest) -> httpx.Response:
        """Post the conversation and return the open streaming response.

        The caller owns the returned response and must ``aclose()`` it.

        Raises:
            MissingTokenError: The request has no session token.
            TransportError: The request failed or returned a failure status.
        """
        if not request.vqd:
            raise MissingTokenError(model=request.model)

        http_request = self.client.build_request(
            "POST",
            self.api_config["chat_url"],
            headers={self.token_header: request.vqd},
            json=request.to_payload(),
        )
        try:
            response = await self.client.send(http_request, stream=True)
        except httpx.HTTPError as e:
            logger.error("HTTP error during chat request", error=str(e))
            raise TransportError(f"HTTP error: {e!s}", model=request.model) from e

        if not response.is_success:
            try:
                error_text = (await response.aread()).decode("utf-8", "replace")
            except httpx.HTTPError:
                error_text = ""
            finally:
                await response.aclose()
            raise TransportError(
                f"Chat API error {response.status_code}: {error_text}",
                status_code=response.status_code,
                model=request.model,
            )

        return response

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()

    async def __aenter__(self) -> DuckChatClient:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
