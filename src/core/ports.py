"""Ports (interfaces) used by the core engine.

Ports define the minimal contracts for history, log, transport, model and
host adapters so that the core can be reused with different backends.
"""

from __future__ import annotations

from typing import AsyncContextManager, Callable, Optional, Protocol, Sequence

from core.models import ChatTurn, EventOutcome, LogEntry, TurnEvent
from core.topic_keys import TopicIdentity


class EventHandlerPort(Protocol):
    """What the scheduler needs from its host."""

    def is_running(self, topic_key: str) -> bool:
        ...

    async def handle_event(self, channel: str, subtopic: str, text: str) -> EventOutcome:
        ...


class HistoryPort(Protocol):
    """Persistent conversation history for one topic."""

    def turns(self) -> list[ChatTurn]:
        ...

    def append(self, turn: ChatTurn) -> None:
        ...


class TopicLogPort(Protocol):
    """Per-topic directories and the append-only message log."""

    def topic_dir(self, identity: TopicIdentity) -> str:
        ...

    def log_path(self, identity: TopicIdentity) -> str:
        ...

    def log_message(self, identity: TopicIdentity, entry: LogEntry) -> bool:
        ...

    def log_bot_response(self, identity: TopicIdentity, text: str) -> None:
        ...


class TransportPort(Protocol):
    """Outbound chat operations."""

    async def send(self, channel: str, subtopic: str, text: str) -> None:
        ...

    def typing(self, channel: str, subtopic: str) -> AsyncContextManager[None]:
        ...


class TurnExecutorPort(Protocol):
    """The reasoning engine that turns history plus a message into replies."""

    async def execute(
        self,
        system_prompt: str,
        history: Sequence[ChatTurn],
        message: ChatTurn,
        on_event: Optional[Callable[[TurnEvent], None]] = None,
    ) -> list[ChatTurn]:
        ...
