from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import pytest

from adapters.topic_log import TopicLogStore
from core.models import (
    ChatTurn,
    LogEntry,
    TopicRunState,
    TurnContext,
    TurnEvent,
    TurnEventKind,
    TurnMessage,
    Usage,
)
from core.runner import TopicRunExecutor, format_turn_timestamp, is_silent
from core.topic_keys import TopicIdentity

IDENTITY = TopicIdentity("@team", "general")
FIXED_NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeHistory:
    def __init__(self) -> None:
        self.items: list[ChatTurn] = []

    def turns(self) -> list[ChatTurn]:
        return list(self.items)

    def append(self, turn: ChatTurn) -> None:
        self.items.append(turn)


class FakeExecutor:
    def __init__(
        self,
        reply: Optional[str] = "Done.",
        stop_reason: str = "stop",
        error: Optional[str] = None,
        raises: Optional[Exception] = None,
    ) -> None:
        self.reply = reply
        self.stop_reason = stop_reason
        self.error = error
        self.raises = raises
        self.calls: list[tuple[str, list[ChatTurn], ChatTurn]] = []

    async def execute(self, system_prompt, history, message, on_event=None) -> list[ChatTurn]:
        self.calls.append((system_prompt, list(history), message))
        if self.raises is not None:
            raise self.raises
        on_event(TurnEvent(kind=TurnEventKind.RETRY, attempt=1, max_attempts=3))
        on_event(
            TurnEvent(
                kind=TurnEventKind.MESSAGE_END,
                stop_reason=self.stop_reason,
                error_message=self.error,
                usage=Usage(input_tokens=10, output_tokens=5, cost=0.01),
            )
        )
        if self.reply is None:
            return []
        return [ChatTurn(role="assistant", content=self.reply, timestamp=1.0)]


def _make_runner(tmp_path: Path, executor: FakeExecutor) -> tuple[TopicRunExecutor, FakeHistory, TopicLogStore, TopicRunState]:
    history = FakeHistory()
    log_store = TopicLogStore(str(tmp_path))
    state = TopicRunState()
    runner = TopicRunExecutor(
        identity=IDENTITY,
        state=state,
        history=history,
        log_store=log_store,
        executor=executor,
        workspace_dir=str(tmp_path),
        clock=lambda: FIXED_NOW,
    )
    return runner, history, log_store, state


def _context(text: str = "status?", ts: str = "100") -> tuple[TurnContext, list[str]]:
    sent: list[str] = []

    async def respond(reply: str) -> None:
        sent.append(reply)

    message = TurnMessage(
        text=text,
        user="@ann",
        user_name="Ann",
        channel=IDENTITY.channel,
        subtopic=IDENTITY.subtopic,
        ts=ts,
    )
    return TurnContext(message=message, respond=respond), sent


def _log_records(log_store: TopicLogStore) -> list[dict]:
    path = Path(log_store.log_path(IDENTITY))
    if not path.exists():
        return []
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines() if line]


def test_is_silent() -> None:
    assert is_silent("[SILENT]")
    assert is_silent("  [SILENT] nothing new")
    assert not is_silent("All quiet [SILENT]")
    assert not is_silent("")


def test_format_turn_timestamp_shape() -> None:
    stamp = format_turn_timestamp(FIXED_NOW)
    assert len(stamp) == len("2024-03-01 12:00:00+00:00")
    assert stamp[10] == " "


def test_reply_is_delivered_logged_and_persisted(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO, logger="core.runner")
    executor = FakeExecutor(reply="Build is green.")
    runner, history, log_store, state = _make_runner(tmp_path, executor)
    ctx, sent = _context()

    outcome = asyncio.run(runner.run(ctx))

    assert outcome.stop_reason == "stop"
    assert sent == ["Build is green."]
    assert state.running is False
    assert [turn.role for turn in history.items] == ["user", "assistant"]
    assert history.items[0].content.endswith("[Ann]: status?")
    assert history.items[0].content.startswith(f"[{format_turn_timestamp(FIXED_NOW)}]")
    records = _log_records(log_store)
    assert records[-1]["isBot"] is True
    assert records[-1]["text"] == "Build is green."
    assert "Usage: 10 in / 5 out, $0.0100" in caplog.text
    assert (tmp_path / "@team" / "general" / "last_prompt.json").exists()


def test_silent_reply_is_not_delivered_or_logged(tmp_path: Path) -> None:
    executor = FakeExecutor(reply="[SILENT]")
    runner, history, log_store, _ = _make_runner(tmp_path, executor)
    ctx, sent = _context()

    asyncio.run(runner.run(ctx))

    assert sent == []
    assert _log_records(log_store) == []
    # Still part of the conversation.
    assert history.items[-1].content == "[SILENT]"


def test_error_stop_reason_sends_notice(tmp_path: Path) -> None:
    executor = FakeExecutor(reply=None, stop_reason="error", error="overloaded")
    runner, _, _, _ = _make_runner(tmp_path, executor)
    ctx, sent = _context()

    outcome = asyncio.run(runner.run(ctx))

    assert outcome.stop_reason == "error"
    assert outcome.error_message == "overloaded"
    assert sent == ["Error: overloaded"]


def test_running_flag_cleared_after_exception(tmp_path: Path) -> None:
    executor = FakeExecutor(raises=RuntimeError("boom"))
    runner, _, _, state = _make_runner(tmp_path, executor)
    ctx, _ = _context()

    with pytest.raises(RuntimeError):
        asyncio.run(runner.run(ctx))
    assert state.running is False


def test_live_message_is_not_backfilled_twice(tmp_path: Path) -> None:
    executor = FakeExecutor()
    runner, history, log_store, _ = _make_runner(tmp_path, executor)
    log_store.log_message(
        IDENTITY,
        LogEntry(date="2024-03-01T11:00:00+00:00", ts="99", user="@bob", user_name="Bob", text="earlier", is_bot=False),
    )
    log_store.log_message(
        IDENTITY,
        LogEntry(date="2024-03-01T12:00:00+00:00", ts="100", user="@ann", user_name="Ann", text="status?", is_bot=False),
    )
    ctx, _ = _context(ts="100")

    asyncio.run(runner.run(ctx))

    _, seen_history, submitted = executor.calls[0]
    assert [turn.content for turn in seen_history] == ["[Bob]: earlier"]
    assert submitted.content.endswith("[Ann]: status?")
    user_turns = [turn.content for turn in history.items if turn.role == "user"]
    assert len(user_turns) == 2

    # A second run does not pull the live message back in from the log.
    ctx, _ = _context(text="and now?", ts="101")
    asyncio.run(runner.run(ctx))
    _, seen_history, _ = executor.calls[1]
    assert sum("status?" in turn.content for turn in seen_history) == 1


def test_memory_reaches_system_prompt(tmp_path: Path) -> None:
    (tmp_path / "MEMORY.md").write_text("Deploys happen on Fridays.", encoding="utf-8")
    executor = FakeExecutor()
    runner, _, _, _ = _make_runner(tmp_path, executor)
    ctx, _ = _context()

    asyncio.run(runner.run(ctx))

    system_prompt = executor.calls[0][0]
    assert "Deploys happen on Fridays." in system_prompt
    assert "[SILENT]" in system_prompt
    assert '"stream": "@team"' in system_prompt
