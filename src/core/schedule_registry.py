"""Arena of live schedule handles keyed by trigger filename."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterator, Optional, Union

LOGGER = logging.getLogger(__name__)


class HandleKind(Enum):
    TIMER = "timer"
    JOB = "job"


@dataclass
class ScheduledHandle:
    """One pending one-shot timer or one recurring cron job."""

    kind: HandleKind
    filename: str
    handle: Union[asyncio.TimerHandle, "asyncio.Task[None]"]

    def cancel(self) -> None:
        self.handle.cancel()


class ScheduleRegistry:
    """Holds at most one handle per trigger filename.

    Registering over an existing filename cancels the old handle first, and
    cancelling an unknown filename is a no-op, so both transitions are safe to
    repeat.
    """

    def __init__(self) -> None:
        self._handles: Dict[str, ScheduledHandle] = {}

    def add_timer(self, filename: str, handle: asyncio.TimerHandle) -> ScheduledHandle:
        return self._register(ScheduledHandle(HandleKind.TIMER, filename, handle))

    def add_job(self, filename: str, task: "asyncio.Task[None]") -> ScheduledHandle:
        return self._register(ScheduledHandle(HandleKind.JOB, filename, task))

    def _register(self, scheduled: ScheduledHandle) -> ScheduledHandle:
        self.cancel(scheduled.filename)
        self._handles[scheduled.filename] = scheduled
        return scheduled

    def get(self, filename: str) -> Optional[ScheduledHandle]:
        return self._handles.get(filename)

    def discard(self, filename: str) -> None:
        """Forget a handle that already fired, without cancelling it."""

        self._handles.pop(filename, None)

    def cancel(self, filename: str) -> bool:
        scheduled = self._handles.pop(filename, None)
        if scheduled is None:
            return False
        scheduled.cancel()
        LOGGER.debug("Cancelled %s handle for %s", scheduled.kind.value, filename)
        return True

    def cancel_all(self) -> int:
        count = len(self._handles)
        for scheduled in self._handles.values():
            scheduled.cancel()
        self._handles.clear()
        return count

    def __contains__(self, filename: object) -> bool:
        return filename in self._handles

    def __len__(self) -> int:
        return len(self._handles)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._handles))
