"""Entrypoint: python -m chat_sync <conversation_id>

Tails one conversation and sends each line typed on stdin.
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from chat_sync.app import create_client, open_backend
from chat_sync.application.dto.session import Session
from chat_sync.config import settings
from chat_sync.domain.entities.message import Message
from chat_sync.infrastructure.auth.factory import build_verifier

logger = logging.getLogger(__name__)


def _format(message: Message) -> str:
    marker = "" if not message.is_local else f" [{message.status}]"
    edited = " (edited)" if message.edited_at else ""
    reply = f" [re {message.replied_to[:8]}]" if message.replied_to else ""
    return (
        f"{message.created_at:%H:%M:%S} {message.sender_display_name}{reply}: "
        f"{message.content}{edited}{marker}"
    )


def _fingerprint(message: Message) -> tuple:
    return (message.id, message.content, message.status, message.edited_at)


async def _resolve_session(args: argparse.Namespace) -> Session:
    if args.token:
        return await build_verifier(settings).verify(args.token)
    if settings.DEMO_MODE:
        return Session(user_id=args.user, display_name=args.name or args.user)
    raise SystemExit("--token is required unless DEMO_MODE is set")


async def run(args: argparse.Namespace) -> None:
    session = await _resolve_session(args)
    async with open_backend(settings, session, conversation_id=args.conversation_id) as backend:
        client = create_client(settings, backend)
        await client.start(session)
        try:
            handle = await client.open_conversation(args.conversation_id)
            if handle.error is not None:
                logger.error("Could not load conversation: %s", handle.error.detail)
            for message in handle.messages():
                print(_format(message))

            seen = {_fingerprint(m) for m in handle.messages()}

            def _on_change(messages: list[Message]) -> None:
                for message in messages:
                    if _fingerprint(message) not in seen:
                        seen.add(_fingerprint(message))
                        print(_format(message))

            handle.reconciler.add_listener(_on_change)

            loop = asyncio.get_running_loop()
            while True:
                line = await loop.run_in_executor(None, sys.stdin.readline)
                if not line:
                    break
                result = await client.send(args.conversation_id, line)
                if not result.success and result.error is not None:
                    logger.warning("Send failed: %s", result.error.detail)
        finally:
            await client.stop()


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    parser = argparse.ArgumentParser(description="Tail a conversation and send from stdin")
    parser.add_argument("conversation_id", help="Conversation to open")
    parser.add_argument("--token", help="Session JWT")
    parser.add_argument("--user", default="demo-user", help="User id in demo mode")
    parser.add_argument("--name", help="Display name in demo mode")
    try:
        asyncio.run(run(parser.parse_args()))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
