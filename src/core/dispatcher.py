"""Host glue between intake (chat, scheduler) and the per-topic runners.

Two entry points share one :class:`TopicRegistry`:

- Direct chat messages are logged, then either run or answered with a busy
  notice (reject-and-notify).
- Scheduled events report ``EventOutcome.BUSY`` instead, letting the scheduler
  re-queue them silently.
"""

from __future__ import annotations

import logging
import re
import time
from functools import partial
from typing import Optional

from core.models import EventOutcome, InboundMessage, LogEntry, TurnContext, TurnMessage
from core.ports import TopicLogPort, TransportPort
from core.topic_keys import TopicIdentity
from core.topic_registry import TopicRegistry, TopicSlot

LOGGER = logging.getLogger(__name__)

BUSY_NOTICE = "Still working on a previous request..."
EVENT_USER = "system"
EVENT_USER_NAME = "event"


def strip_trigger_word(text: str, trigger_word: str) -> Optional[str]:
    """Return the text without its trigger word, or None if it is not addressed to us."""

    text = text.strip()
    if not trigger_word:
        return text
    pattern = re.compile(rf"^{re.escape(trigger_word)}\b", re.IGNORECASE)
    if not pattern.match(text):
        return None
    return pattern.sub("", text, count=1).strip()


class TopicDispatcher:
    """Implements the scheduler's handler interface and the chat message path."""

    def __init__(
        self,
        registry: TopicRegistry,
        transport: TransportPort,
        log_store: TopicLogPort,
        trigger_word: str = "",
    ) -> None:
        self._registry = registry
        self._transport = transport
        self._log_store = log_store
        self._trigger_word = trigger_word

    def is_running(self, topic_key: str) -> bool:
        return self._registry.is_running(topic_key)

    async def handle_event(self, channel: str, subtopic: str, text: str) -> EventOutcome:
        slot = self._registry.slot(channel, subtopic)
        if not self._registry.try_reserve(slot):
            return EventOutcome.BUSY

        LOGGER.info("[EVENT] [%s] %s", slot.identity, text[:80])
        ctx = TurnContext(
            message=TurnMessage(
                text=text,
                user=EVENT_USER,
                user_name=EVENT_USER_NAME,
                channel=channel,
                subtopic=subtopic,
                ts=str(int(time.time() * 1000)),
            ),
            respond=partial(self._transport.send, channel, subtopic),
        )
        try:
            await slot.runner.run(ctx)
        except Exception as exc:
            LOGGER.exception("[EVENT] [%s] Error", slot.identity)
            await self._notify(slot, f"Event error: {exc}")
            return EventOutcome.FAILED
        finally:
            self._registry.release(slot)
        return EventOutcome.COMPLETED

    async def handle_message(self, message: InboundMessage) -> None:
        """Run one inbound chat message, or tell the user the topic is busy."""

        if message.is_bot:
            return
        text = strip_trigger_word(message.text, self._trigger_word)
        if not text:
            return

        identity = TopicIdentity(message.channel, message.subtopic)
        preview = text if len(text) <= 100 else f"{text[:100]}..."
        LOGGER.info("[%s] %s: %s", identity, message.user_name, preview)

        entry = LogEntry(
            date=message.date.isoformat(),
            ts=str(message.message_id),
            user=message.user,
            user_name=message.user_name,
            text=text,
            is_bot=False,
        )
        try:
            self._log_store.log_message(identity, entry)
        except OSError:
            LOGGER.exception("[%s] Failed to log message %s", identity, entry.ts)

        slot = self._registry.slot(message.channel, message.subtopic)
        if not self._registry.try_reserve(slot):
            await self._notify(slot, BUSY_NOTICE)
            return

        ctx = TurnContext(
            message=TurnMessage(
                text=text,
                user=message.user,
                user_name=message.user_name,
                channel=message.channel,
                subtopic=message.subtopic,
                ts=entry.ts,
            ),
            respond=partial(self._transport.send, message.channel, message.subtopic),
        )
        try:
            async with self._transport.typing(message.channel, message.subtopic):
                await slot.runner.run(ctx)
            LOGGER.info("[%s] Done", identity)
        except Exception as exc:
            LOGGER.exception("[%s] Error", identity)
            await self._notify(slot, f"Error: {exc}")
        finally:
            self._registry.release(slot)

    async def _notify(self, slot: TopicSlot, text: str) -> None:
        try:
            await self._transport.send(slot.identity.channel, slot.identity.subtopic, text)
        except Exception:
            LOGGER.warning("[%s] Could not deliver notice", slot.identity, exc_info=True)
