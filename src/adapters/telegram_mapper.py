"""Telegram-to-core message mapping adapter.

This keeps Telethon-specific details out of the core engine.
"""

from __future__ import annotations

from typing import Any, Optional

from telethon.tl.custom import Message

from core.models import InboundMessage
from core.topic_keys import GENERAL_TOPIC


def channel_key_from_message(message: Message) -> str:
    """Normalize a channel key using a single rule enforced across the app."""

    chat = getattr(message, "chat", None)
    username = getattr(chat, "username", None)

    if isinstance(username, str) and username:
        return f"@{username.lower()}"

    # Fallback: always stable and universal
    return f"chat_id:{message.chat_id}"


def _topic_id_from_message(message: Message) -> Optional[int]:
    reply_to = getattr(message, "reply_to", None)
    if not reply_to or not getattr(reply_to, "forum_topic", False):
        return None
    top_id = getattr(reply_to, "reply_to_top_id", None)
    if top_id:
        return top_id
    return getattr(reply_to, "reply_to_msg_id", None)


def subtopic_from_message(message: Message) -> str:
    topic_id = _topic_id_from_message(message)
    return str(topic_id) if topic_id is not None else GENERAL_TOPIC


def _sender_identity(sender: Any, fallback_id: Optional[int]) -> tuple[str, str]:
    """Return (user, display name) for a Telethon sender entity."""

    username = getattr(sender, "username", None)
    sender_id = getattr(sender, "id", None) or fallback_id
    user = f"@{username.lower()}" if isinstance(username, str) and username else f"user_id:{sender_id}"

    title = getattr(sender, "title", None)
    if title:
        return user, str(title)
    first = getattr(sender, "first_name", None)
    last = getattr(sender, "last_name", None)
    if first or last:
        return user, " ".join(part for part in [first, last] if part)
    return user, username or str(sender_id or "unknown")


def build_inbound(message: Message, sender: Any = None) -> InboundMessage:
    """Build a core InboundMessage from a Telethon Message and its sender."""

    user, user_name = _sender_identity(sender, getattr(message, "sender_id", None))
    return InboundMessage(
        message_id=message.id,
        channel=channel_key_from_message(message),
        subtopic=subtopic_from_message(message),
        user=user,
        user_name=user_name,
        text=message.raw_text or "",
        date=message.date,
        is_bot=bool(getattr(sender, "bot", False)),
    )
