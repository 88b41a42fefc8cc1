"""Interactive command-line chat."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from collections.abc import Callable
from typing import TextIO

from duckchat.chat_session import ChatSession
from duckchat.config import Configuration
from duckchat.llm.client import DuckChatClient
from duckchat.llm.exceptions import (
    DecodeError,
    DuckChatError,
    MissingRoleError,
    ModelLockedError,
    TransportError,
)
from duckchat.llm.models import KNOWN_MODELS
from duckchat.logging_utils import configure_log_level

QUIT_COMMANDS = ("/quit", "/exit")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="duckchat",
        description="Chat with DuckDuckGo AI from the terminal.",
    )
    parser.add_argument("--model", help="model to start the chat with")
    parser.add_argument(
        "--list-models", action="store_true", help="print known models and exit"
    )
    parser.add_argument("--config", help="path to a config.yaml to use")
    return parser


async def chat_loop(
    client: DuckChatClient,
    model: str | None = None,
    *,
    input_func: Callable[[str], str] = input,
    output: TextIO = sys.stdout,
) -> None:
    """Read prompts until EOF or /quit, streaming each reply to ``output``."""
    session = await ChatSession.initialize(client, model)

    while True:
        try:
            prompt = await asyncio.to_thread(input_func, "> ")
        except EOFError:
            break

        prompt = prompt.strip()
        if not prompt:
            continue
        if prompt in QUIT_COMMANDS:
            break
        if prompt.startswith("/model "):
            try:
                session.set_model(prompt.removeprefix("/model ").strip())
                output.write(f"model: {session.get_model()}\n")
            except ModelLockedError as e:
                output.write(f"error: {e}\n")
            continue

        try:
            stream = await session.send(prompt)
            async for fragment in stream:
                output.write(fragment)
                output.flush()
            output.write("\n")
        except TransportError as e:
            # Nothing reached the transcript; the same session can retry.
            output.write(f"\nerror: {e}\n")
        except (DecodeError, MissingRoleError) as e:
            output.write(f"\nerror: {e}\nstarting a new chat\n")
            session = await ChatSession.initialize(client, session.get_model())


async def main(argv: list[str] | None = None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)

    if args.list_models:
        for name in KNOWN_MODELS:
            print(name)
        return 0

    config = Configuration(args.config)
    configure_log_level(config.get_logging_config()["level"])

    async with DuckChatClient(config) as client:
        try:
            await chat_loop(client, args.model)
        except DuckChatError as e:
            logging.getLogger(__name__).error("Chat failed: %s", e)
            print(f"error: {e}", file=sys.stderr)
            return 1
    return 0


def run() -> None:
    """Console script entry point."""
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    run()
