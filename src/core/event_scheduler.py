"""Filesystem-driven trigger scheduler.

The scheduler watches one directory for trigger files and turns each file into
an immediate firing, a one-shot timer or a recurring cron job. The filename is
the identity: rewriting a file reschedules it and removing it cancels it.

Watchdog delivers notifications on its own thread; they are marshalled onto
the event loop and debounced per filename, so all scheduler state is only ever
touched from the loop.
"""

from __future__ import annotations

import asyncio
import logging
import os
from datetime import datetime, timezone
from typing import Coroutine, Dict, Optional, Set

from watchdog.events import (
    EVENT_TYPE_CREATED,
    EVENT_TYPE_DELETED,
    EVENT_TYPE_MODIFIED,
    EVENT_TYPE_MOVED,
    FileSystemEvent,
    FileSystemEventHandler,
)
from watchdog.observers import Observer
from zoneinfo import ZoneInfo

from core.config import SchedulerConfig
from core.models import EventOutcome, ImmediateEvent, OneShotEvent, PeriodicEvent, TriggerEvent
from core.ports import EventHandlerPort
from core.schedule_registry import ScheduleRegistry
from core.topic_keys import TopicIdentity
from core.triggers import (
    ScheduleError,
    TriggerValidationError,
    format_wake_message,
    is_trigger_filename,
    next_tick,
    parse_trigger,
    resolve_schedule,
)

LOGGER = logging.getLogger(__name__)

# Busy re-queues are logged at warning level on every Nth consecutive retry.
BUSY_WARNING_EVERY = 30

_WATCHED_EVENT_TYPES = {EVENT_TYPE_CREATED, EVENT_TYPE_MODIFIED, EVENT_TYPE_DELETED, EVENT_TYPE_MOVED}


class _TriggerDirWatcher(FileSystemEventHandler):
    """Forward relevant watchdog notifications to the loop by filename."""

    def __init__(self, loop: asyncio.AbstractEventLoop, callback) -> None:
        self._loop = loop
        self._callback = callback

    def on_any_event(self, event: FileSystemEvent) -> None:
        # Opened/closed notifications would fire on our own reads.
        if event.is_directory or event.event_type not in _WATCHED_EVENT_TYPES:
            return
        for raw_path in (event.src_path, getattr(event, "dest_path", "")):
            if not raw_path:
                continue
            filename = os.path.basename(os.fsdecode(raw_path))
            if not is_trigger_filename(filename):
                continue
            try:
                self._loop.call_soon_threadsafe(self._callback, filename)
            except RuntimeError:
                LOGGER.debug("Event loop closed, dropping notification for %s", filename)


class EventScheduler:
    """Schedules trigger files and hands firings to an :class:`EventHandlerPort`."""

    def __init__(
        self,
        events_dir: str,
        handler: EventHandlerPort,
        config: Optional[SchedulerConfig] = None,
        registry: Optional[ScheduleRegistry] = None,
    ) -> None:
        self._events_dir = events_dir
        self._handler = handler
        self._config = config or SchedulerConfig()
        self.registry = registry if registry is not None else ScheduleRegistry()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._observer: Optional[Observer] = None
        self._debounce_timers: Dict[str, asyncio.TimerHandle] = {}
        self._file_tasks: Dict[str, "asyncio.Task[None]"] = {}
        # Busy retries still backed by their trigger file; removing or
        # rewriting the file cancels them along with the schedule handle.
        self._file_retries: Dict[str, Set[asyncio.TimerHandle]] = {}
        self._detached_retries: Set[asyncio.TimerHandle] = set()
        self._handoffs: Set["asyncio.Task[None]"] = set()
        self._start_time = 0.0
        self._stopped = False

    async def start(self) -> None:
        """Start watching for changes, then scan the trigger files already present.

        Watching first means a file written during the scan is still seen. A
        file both scanned and notified is rescheduled, never fired twice.
        """

        self._loop = asyncio.get_running_loop()
        self._stopped = False
        self._start_time = datetime.now(timezone.utc).timestamp()
        os.makedirs(self._events_dir, exist_ok=True)

        observer = Observer()
        observer.schedule(
            _TriggerDirWatcher(self._loop, self._on_fs_change),
            self._events_dir,
            recursive=False,
        )
        try:
            observer.start()
        except OSError:
            LOGGER.exception("Failed to start watcher for %s", self._events_dir)
        else:
            self._observer = observer
        LOGGER.info("Watching %s", self._events_dir)

        for filename in sorted(os.listdir(self._events_dir)):
            if is_trigger_filename(filename):
                await self._handle_file(filename)

    def stop(self) -> None:
        """Stop watching and cancel everything still pending."""

        if self._stopped:
            return
        self._stopped = True

        if self._observer is not None:
            self._observer.stop()
            self._observer.join(timeout=2)
            self._observer = None

        cancelled = self.registry.cancel_all()
        for timer in self._debounce_timers.values():
            timer.cancel()
        self._debounce_timers.clear()
        for task in self._file_tasks.values():
            task.cancel()
        self._file_tasks.clear()
        for retries in self._file_retries.values():
            for timer in retries:
                timer.cancel()
        self._file_retries.clear()
        for timer in self._detached_retries:
            timer.cancel()
        self._detached_retries.clear()
        LOGGER.info("Stopped, %s scheduled handle(s) cancelled", cancelled)

    # -- filesystem notifications -------------------------------------------------

    def _on_fs_change(self, filename: str) -> None:
        if self._stopped or self._loop is None:
            return
        existing = self._debounce_timers.pop(filename, None)
        if existing is not None:
            existing.cancel()
        self._debounce_timers[filename] = self._loop.call_later(
            self._config.debounce_seconds, self._debounced, filename
        )

    def _debounced(self, filename: str) -> None:
        self._debounce_timers.pop(filename, None)
        if self._stopped:
            return
        previous = self._file_tasks.pop(filename, None)
        if previous is not None:
            previous.cancel()
        task = self._spawn(self._handle_file_change(filename))
        self._file_tasks[filename] = task
        task.add_done_callback(lambda done, name=filename: self._forget_file_task(name, done))

    def _forget_file_task(self, filename: str, task: "asyncio.Task[None]") -> None:
        if self._file_tasks.get(filename) is task:
            del self._file_tasks[filename]

    def _spawn(self, coro: Coroutine) -> "asyncio.Task[None]":
        assert self._loop is not None
        return self._loop.create_task(coro)

    async def _handle_file_change(self, filename: str) -> None:
        if not os.path.exists(self._path(filename)):
            if self._cancel_file(filename):
                LOGGER.info("Trigger removed: %s", filename)
            return
        # An overwrite is a reschedule.
        self._cancel_file(filename)
        await self._handle_file(filename)

    def _cancel_file(self, filename: str) -> bool:
        cancelled = self.registry.cancel(filename)
        for timer in self._file_retries.pop(filename, set()):
            timer.cancel()
            cancelled = True
        return cancelled

    # -- parsing and dispatch -----------------------------------------------------

    async def _handle_file(self, filename: str) -> None:
        content = await self._read_with_retry(filename)
        if content is None:
            return
        try:
            event = parse_trigger(content, filename)
        except TriggerValidationError as exc:
            LOGGER.warning("Skipping invalid trigger: %s", exc)
            return

        if isinstance(event, ImmediateEvent):
            self._handle_immediate(filename, event)
        elif isinstance(event, OneShotEvent):
            self._handle_one_shot(filename, event)
        else:
            self._handle_periodic(filename, event)

    async def _read_with_retry(self, filename: str) -> Optional[str]:
        path = self._path(filename)
        attempts = self._config.read_attempts
        for attempt in range(1, attempts + 1):
            try:
                if os.path.getsize(path) > 0:
                    with open(path, "r", encoding="utf-8") as handle:
                        return handle.read()
            except OSError as exc:
                LOGGER.debug("Read attempt %s for %s failed: %s", attempt, filename, exc)
            if attempt < attempts:
                await asyncio.sleep(self._config.read_backoff_seconds * attempt)
        LOGGER.debug("Giving up on %s after %s attempts", filename, attempts)
        return None

    def _handle_immediate(self, filename: str, event: ImmediateEvent) -> None:
        LOGGER.info("Immediate: %s -> %s/%s", filename, event.channel, event.subtopic)
        self._execute(filename, event, delete_after=True)

    def _handle_one_shot(self, filename: str, event: OneShotEvent) -> None:
        assert self._loop is not None
        delay = (event.fires_at - datetime.now(timezone.utc)).total_seconds()
        if delay > 0:
            handle = self._loop.call_later(delay, self._fire_one_shot, filename, event)
            self.registry.add_timer(filename, handle)
            LOGGER.info("One-shot scheduled: %s in %ss", filename, round(delay))
            return

        try:
            modified_at = os.stat(self._path(filename)).st_mtime
        except OSError:
            self._delete_file(filename)
            return
        if modified_at > self._start_time:
            LOGGER.info("One-shot (past due): %s", filename)
            self._execute(filename, event, delete_after=True)
        else:
            LOGGER.info("One-shot expired before start, deleting: %s", filename)
            self._delete_file(filename)

    def _fire_one_shot(self, filename: str, event: OneShotEvent) -> None:
        self.registry.discard(filename)
        if self._stopped:
            return
        self._execute(filename, event, delete_after=True)

    def _handle_periodic(self, filename: str, event: PeriodicEvent) -> None:
        try:
            zone = resolve_schedule(event)
        except ScheduleError as exc:
            LOGGER.error("Invalid schedule in %s: %s", filename, exc)
            return
        task = self._spawn(self._run_periodic(filename, event, zone))
        self.registry.add_job(filename, task)
        LOGGER.info("Periodic scheduled: %s (%s %s)", filename, event.schedule, event.timezone)

    async def _run_periodic(self, filename: str, event: PeriodicEvent, zone: ZoneInfo) -> None:
        last_tick = datetime.now(zone)
        while not self._stopped:
            fire_at = next_tick(event, zone, max(datetime.now(zone), last_tick))
            await asyncio.sleep(_seconds_until(fire_at))
            if self._stopped:
                return
            last_tick = fire_at
            LOGGER.info("Periodic trigger: %s", filename)
            self._execute(filename, event, delete_after=False)

    # -- firing -------------------------------------------------------------------

    def _execute(
        self,
        filename: str,
        event: TriggerEvent,
        delete_after: bool,
        busy_attempts: int = 0,
        file_backed: bool = True,
    ) -> None:
        if self._stopped:
            return
        assert self._loop is not None
        identity = TopicIdentity(event.channel, event.subtopic)
        if self._handler.is_running(identity.key):
            self._requeue(filename, event, delete_after, busy_attempts + 1, file_backed)
            return

        message = format_wake_message(filename, event)
        task = self._spawn(self._hand_off(filename, event, message, busy_attempts))
        self._handoffs.add(task)
        task.add_done_callback(self._handoffs.discard)

        if delete_after:
            self._delete_file(filename)

    async def _hand_off(self, filename: str, event: TriggerEvent, message: str, busy_attempts: int) -> None:
        try:
            outcome = await self._handler.handle_event(event.channel, event.subtopic, message)
        except Exception:
            LOGGER.exception("Error executing %s", filename)
            return
        if outcome is EventOutcome.BUSY:
            # Lost the slot between the check and the hand-off; the file (if
            # any) is already gone, so retry from memory only.
            self._requeue(filename, event, False, busy_attempts + 1, file_backed=False)

    def _requeue(
        self,
        filename: str,
        event: TriggerEvent,
        delete_after: bool,
        busy_attempts: int,
        file_backed: bool,
    ) -> None:
        if self._stopped:
            return
        assert self._loop is not None
        topic_key = TopicIdentity(event.channel, event.subtopic).key
        limit = self._config.busy_retry_limit
        if limit is not None and busy_attempts > limit:
            LOGGER.error(
                "Dropping %s for %s after %s busy retries",
                filename,
                topic_key,
                busy_attempts - 1,
            )
            return
        if busy_attempts % BUSY_WARNING_EVERY == 0:
            LOGGER.warning("Agent still busy for %s, %s retries queued for %s", topic_key, busy_attempts, filename)
        else:
            LOGGER.info("Agent busy for %s, queueing %s", topic_key, filename)

        retries = self._file_retries.setdefault(filename, set()) if file_backed else self._detached_retries
        timer: Optional[asyncio.TimerHandle] = None

        def _retry() -> None:
            retries.discard(timer)
            self._execute(filename, event, delete_after, busy_attempts, file_backed)

        timer = self._loop.call_later(self._config.busy_retry_seconds, _retry)
        retries.add(timer)

    def _delete_file(self, filename: str) -> None:
        path = self._path(filename)
        try:
            if os.path.exists(path):
                os.remove(path)
        except OSError:
            LOGGER.exception("Failed to delete %s", filename)

    def _path(self, filename: str) -> str:
        return os.path.join(self._events_dir, filename)


def _seconds_until(when: datetime) -> float:
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())
