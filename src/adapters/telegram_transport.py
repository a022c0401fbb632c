"""Telegram transport adapter.

Delivers replies into a chat, or into a forum topic when the subtopic is a
topic id, and shows the typing indicator while a turn runs.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional, Union

from telethon import TelegramClient

from core.topic_keys import GENERAL_TOPIC

TELEGRAM_MAX_CHARS = 4096
CHAT_ID_PREFIX = "chat_id:"
# Room kept free in each chunk for the "(continued N...)" suffix.
_SUFFIX_RESERVE = 32


def split_message(content: str, max_length: int = TELEGRAM_MAX_CHARS) -> list[str]:
    """Split long replies, preferring paragraph then line boundaries."""

    if len(content) <= max_length:
        return [content]

    limit = max(1, max_length - _SUFFIX_RESERVE)
    parts: list[str] = []
    remaining = content
    part_number = 1
    while remaining:
        if len(remaining) <= limit:
            chunk, remaining = remaining, ""
        else:
            split_at = remaining.rfind("\n\n", 0, limit)
            if split_at < limit * 0.3:
                split_at = remaining.rfind("\n", 0, limit)
            if split_at < limit * 0.3:
                split_at = limit
            chunk = remaining[:split_at]
            remaining = remaining[split_at:].lstrip()
        suffix = f"\n\n(continued {part_number}...)" if remaining else ""
        parts.append(chunk + suffix)
        part_number += 1
    return parts


def resolve_peer(channel: str) -> Union[str, int]:
    """Map a channel key (``@username`` or ``chat_id:<id>``) to a Telethon peer."""

    if channel.startswith(CHAT_ID_PREFIX):
        raw_id = channel[len(CHAT_ID_PREFIX):]
        try:
            return int(raw_id)
        except ValueError:
            return channel
    return channel


def topic_reply_id(subtopic: str) -> Optional[int]:
    """Forum topics are addressed by replying to their top message id."""

    if subtopic == GENERAL_TOPIC or not subtopic.isdigit():
        return None
    return int(subtopic)


class TelegramTransport:
    """TransportPort backed by a connected Telethon client."""

    def __init__(self, client: TelegramClient) -> None:
        self._client = client

    async def send(self, channel: str, subtopic: str, text: str) -> None:
        """Send text to the topic, split to Telegram's message limit."""

        peer = resolve_peer(channel)
        reply_to = topic_reply_id(subtopic)
        for part in split_message(text):
            await self._client.send_message(peer, part, reply_to=reply_to, link_preview=False)

    @asynccontextmanager
    async def typing(self, channel: str, subtopic: str) -> AsyncIterator[None]:
        async with self._client.action(resolve_peer(channel), "typing"):
            yield
