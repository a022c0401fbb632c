"""Per-topic turn controller.

One runner exists per topic and is reused for every turn. The run sequence is
strict:

1) Ensure the topic directory exists
2) Backfill log.jsonl into history (excluding the live message)
3) Reload the working history from the store
4) Rebuild the system prompt with current memory
5) Reset per-run accumulators
6) Compose and persist the timestamped user turn
7) Delegate to the turn executor
8) Extract the final assistant text
9) Suppress delivery on the [SILENT] sentinel
10) Otherwise deliver and log the reply
11) Surface a failed stop reason as a best-effort notice
12) Report usage
13) Clear the busy flag, whatever happened above

Callers reserve the topic's busy flag before calling :meth:`run`.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime
from typing import Callable, Optional

from core.log_sync import sync_log
from core.models import (
    ChatTurn,
    RunOutcome,
    TopicRunState,
    TurnContext,
    TurnEvent,
    TurnEventKind,
    Usage,
)
from core.ports import HistoryPort, TopicLogPort, TurnExecutorPort
from core.prompt import build_system_prompt, load_memory
from core.topic_keys import TopicIdentity

LOGGER = logging.getLogger(__name__)

SILENT_SENTINEL = "[SILENT]"
SNAPSHOT_FILENAME = "last_prompt.json"


def is_silent(text: str) -> bool:
    """True for replies that are, or begin with, the silence sentinel."""

    return text.strip().startswith(SILENT_SENTINEL)


def format_turn_timestamp(now: datetime) -> str:
    """Render ``2024-01-01 09:00:00+01:00`` in the local zone."""

    return now.astimezone().isoformat(sep=" ", timespec="seconds")


def final_assistant_text(turns: list[ChatTurn]) -> str:
    for turn in reversed(turns):
        if turn.role == "assistant":
            return turn.content
    return ""


class TopicRunExecutor:
    """Runs turns for one topic, keeping history and log consistent."""

    def __init__(
        self,
        identity: TopicIdentity,
        state: TopicRunState,
        history: HistoryPort,
        log_store: TopicLogPort,
        executor: TurnExecutorPort,
        workspace_dir: str,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._identity = identity
        self._state = state
        self._history = history
        self._log_store = log_store
        self._executor = executor
        self._workspace_dir = workspace_dir
        self._clock = clock or datetime.now
        self._messages: list[ChatTurn] = []
        self._usage = Usage()
        self._stop_reason = "stop"
        self._error_message: Optional[str] = None

    async def run(self, ctx: TurnContext) -> RunOutcome:
        self._state.running = True
        try:
            return await self._run(ctx)
        finally:
            self._state.running = False

    async def _run(self, ctx: TurnContext) -> RunOutcome:
        topic_dir = self._log_store.topic_dir(self._identity)

        synced = sync_log(self._history, self._log_store.log_path(self._identity), ctx.message.ts)
        if synced:
            LOGGER.info("[%s] Synced %s messages from log", self._identity, synced)

        self._messages = self._history.turns()

        memory = load_memory(self._workspace_dir, topic_dir)
        system_prompt = build_system_prompt(self._workspace_dir, self._identity, memory)

        self._usage = Usage()
        self._stop_reason = "stop"
        self._error_message = None

        now = self._clock()
        user_text = f"[{format_turn_timestamp(now)}] [{ctx.message.user_name or 'unknown'}]: {ctx.message.text}"
        user_turn = ChatTurn(role="user", content=user_text, timestamp=now.timestamp())
        self._write_snapshot(topic_dir, system_prompt, user_text)
        self._persist(user_turn)

        replies = await self._executor.execute(system_prompt, self._messages, user_turn, self._on_event)
        for reply in replies:
            self._persist(reply)
        self._messages = self._messages + [user_turn] + list(replies)

        final_text = final_assistant_text(list(replies))
        if is_silent(final_text):
            LOGGER.info("[%s] Silent response, output suppressed", self._identity)
        elif final_text.strip():
            await ctx.respond(final_text)
            try:
                self._log_store.log_bot_response(self._identity, final_text)
            except OSError:
                LOGGER.exception("[%s] Failed to log bot response", self._identity)

        if self._stop_reason == "error" and self._error_message:
            try:
                await ctx.respond(f"Error: {self._error_message}")
            except Exception:
                LOGGER.warning("[%s] Could not deliver error notice", self._identity, exc_info=True)

        if self._usage.cost > 0:
            LOGGER.info(
                "[%s] Usage: %s in / %s out, $%.4f",
                self._identity,
                self._usage.input_tokens,
                self._usage.output_tokens,
                self._usage.cost,
            )

        return RunOutcome(stop_reason=self._stop_reason, error_message=self._error_message)

    def _on_event(self, event: TurnEvent) -> None:
        if event.kind is TurnEventKind.MESSAGE_END:
            if event.stop_reason:
                self._stop_reason = event.stop_reason
            if event.error_message:
                self._error_message = event.error_message
            if event.usage is not None:
                self._usage.add(event.usage)
        elif event.kind is TurnEventKind.RETRY:
            LOGGER.info("[%s] Retrying (%s/%s)...", self._identity, event.attempt, event.max_attempts)

    def _persist(self, turn: ChatTurn) -> None:
        try:
            self._history.append(turn)
        except Exception:
            LOGGER.exception("[%s] Failed to persist %s turn", self._identity, turn.role)

    def _write_snapshot(self, topic_dir: str, system_prompt: str, user_text: str) -> None:
        snapshot = {
            "systemPrompt": system_prompt,
            "messageCount": len(self._messages),
            "newUserMessage": user_text,
        }
        try:
            with open(os.path.join(topic_dir, SNAPSHOT_FILENAME), "w", encoding="utf-8") as handle:
                json.dump(snapshot, handle, indent=2, ensure_ascii=False)
        except OSError:
            LOGGER.warning("[%s] Could not write prompt snapshot", self._identity)
