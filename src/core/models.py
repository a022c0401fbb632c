"""Core domain models.

These dataclasses are shared across the core and adapters to avoid tight
coupling to any integration-specific types.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Optional, Union


@dataclass(frozen=True)
class ImmediateEvent:
    """Trigger that fires as soon as its file is discovered."""

    channel: str
    subtopic: str
    text: str

    type_name = "immediate"

    @property
    def schedule_label(self) -> str:
        return ""


@dataclass(frozen=True)
class OneShotEvent:
    """Trigger that fires once at an absolute, offset-aware time."""

    channel: str
    subtopic: str
    text: str
    fires_at: datetime
    at: str

    type_name = "one-shot"

    @property
    def schedule_label(self) -> str:
        return self.at


@dataclass(frozen=True)
class PeriodicEvent:
    """Trigger that fires on every tick of a cron schedule."""

    channel: str
    subtopic: str
    text: str
    schedule: str
    timezone: str

    type_name = "periodic"

    @property
    def schedule_label(self) -> str:
        return self.schedule


TriggerEvent = Union[ImmediateEvent, OneShotEvent, PeriodicEvent]


@dataclass(frozen=True)
class LogEntry:
    """One line of a topic's append-only log.jsonl."""

    date: str
    ts: str
    user: str
    text: str
    is_bot: bool
    user_name: Optional[str] = None

    def to_record(self) -> dict:
        record = {"date": self.date, "ts": self.ts, "user": self.user}
        if self.user_name:
            record["userName"] = self.user_name
        record["text"] = self.text
        record["isBot"] = self.is_bot
        return record


@dataclass(frozen=True)
class ChatTurn:
    """One persisted turn of a topic's conversation history."""

    role: str
    content: str
    timestamp: float


@dataclass
class Usage:
    """Token and cost totals accumulated over one run."""

    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0

    def add(self, other: "Usage") -> None:
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens
        self.cost += other.cost


class TurnEventKind(Enum):
    """Closed set of progress events emitted by a turn executor."""

    MESSAGE_END = "message_end"
    RETRY = "retry"


@dataclass(frozen=True)
class TurnEvent:
    kind: TurnEventKind
    stop_reason: Optional[str] = None
    error_message: Optional[str] = None
    usage: Optional[Usage] = None
    attempt: int = 0
    max_attempts: int = 0


@dataclass(frozen=True)
class TurnMessage:
    """The live message a run submits, whether typed by a user or an event."""

    text: str
    user: str
    user_name: str
    channel: str
    subtopic: str
    ts: str


@dataclass
class TurnContext:
    """Everything a single run needs from its caller."""

    message: TurnMessage
    respond: Callable[[str], Awaitable[None]]


@dataclass(frozen=True)
class RunOutcome:
    stop_reason: str
    error_message: Optional[str] = None


class EventOutcome(Enum):
    """Result of handing a scheduled event to the host."""

    COMPLETED = "completed"
    BUSY = "busy"
    FAILED = "failed"


@dataclass(frozen=True)
class InboundMessage:
    """Minimal inbound chat message used by the dispatcher."""

    message_id: int
    channel: str
    subtopic: str
    user: str
    user_name: str
    text: str
    date: datetime
    is_bot: bool = False


@dataclass
class TopicRunState:
    """Busy flag for a single topic."""

    running: bool = False

