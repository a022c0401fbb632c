"""Process-wide topic table: busy flag plus cached runner per topic."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from core.models import TopicRunState
from core.runner import TopicRunExecutor
from core.topic_keys import TopicIdentity

RunnerFactory = Callable[[TopicIdentity, TopicRunState], TopicRunExecutor]


@dataclass
class TopicSlot:
    identity: TopicIdentity
    runner: TopicRunExecutor
    state: TopicRunState = field(default_factory=TopicRunState)

    @property
    def running(self) -> bool:
        return self.state.running


class TopicRegistry:
    """The single source of per-topic mutual exclusion.

    Everything here is synchronous: a check-and-set done through
    :meth:`try_reserve` can never be split by an ``await``.
    """

    def __init__(self, runner_factory: RunnerFactory) -> None:
        self._runner_factory = runner_factory
        self._slots: Dict[str, TopicSlot] = {}

    def slot(self, channel: str, subtopic: str) -> TopicSlot:
        identity = TopicIdentity(channel, subtopic)
        existing = self._slots.get(identity.key)
        if existing is not None:
            return existing
        state = TopicRunState()
        slot = TopicSlot(identity=identity, runner=self._runner_factory(identity, state), state=state)
        self._slots[identity.key] = slot
        return slot

    def get(self, topic_key: str) -> Optional[TopicSlot]:
        return self._slots.get(topic_key)

    def is_running(self, topic_key: str) -> bool:
        slot = self._slots.get(topic_key)
        return slot.running if slot is not None else False

    def try_reserve(self, slot: TopicSlot) -> bool:
        if slot.state.running:
            return False
        slot.state.running = True
        return True

    def release(self, slot: TopicSlot) -> None:
        slot.state.running = False

    def __len__(self) -> int:
        return len(self._slots)
