from __future__ import annotations

import json
from pathlib import Path

from adapters.topic_log import TopicLogStore
from core.log_sync import compose_log_text, normalize_turn_text, sync_log
from core.models import ChatTurn, LogEntry
from core.topic_keys import TopicIdentity


class FakeHistory:
    def __init__(self, turns: "list[ChatTurn] | None" = None) -> None:
        self.items: list[ChatTurn] = list(turns or [])

    def turns(self) -> list[ChatTurn]:
        return list(self.items)

    def append(self, turn: ChatTurn) -> None:
        self.items.append(turn)


def _write_log(path: Path, records: list) -> str:
    lines = [record if isinstance(record, str) else json.dumps(record) for record in records]
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return str(path)


def _record(ts: str, date: str, text: str, user_name: str = "Ann", is_bot: bool = False) -> dict:
    return {"date": date, "ts": ts, "user": "@ann", "userName": user_name, "text": text, "isBot": is_bot}


def test_normalize_strips_timestamp_prefix() -> None:
    assert normalize_turn_text("[2024-01-01 09:00:00+01:00] [Ann]: hi") == "[Ann]: hi"
    assert normalize_turn_text("[Ann]: hi") == "[Ann]: hi"


def test_compose_log_text_author_fallbacks() -> None:
    assert compose_log_text({"userName": "Ann", "user": "@ann", "text": "hi"}) == "[Ann]: hi"
    assert compose_log_text({"user": "@ann", "text": "hi"}) == "[@ann]: hi"
    assert compose_log_text({"text": "hi"}) == "[unknown]: hi"


def test_missing_log_is_a_no_op(tmp_path: Path) -> None:
    history = FakeHistory()
    assert sync_log(history, str(tmp_path / "log.jsonl")) == 0
    assert history.items == []


def test_sync_appends_in_timestamp_order(tmp_path: Path) -> None:
    log_path = _write_log(
        tmp_path / "log.jsonl",
        [
            _record("3", "2024-01-01T10:03:00+00:00", "third"),
            _record("1", "2024-01-01T10:01:00+00:00", "first"),
            _record("2", "2024-01-01T10:02:00+00:00", "second"),
        ],
    )
    history = FakeHistory()
    assert sync_log(history, log_path) == 3
    assert [turn.content for turn in history.items] == ["[Ann]: first", "[Ann]: second", "[Ann]: third"]
    assert all(turn.role == "user" for turn in history.items)


def test_sync_is_idempotent(tmp_path: Path) -> None:
    log_path = _write_log(
        tmp_path / "log.jsonl",
        [_record("1", "2024-01-01T10:01:00+00:00", "first")],
    )
    history = FakeHistory()
    assert sync_log(history, log_path) == 1
    assert sync_log(history, log_path) == 0
    assert len(history.items) == 1


def test_sync_only_appends_unseen_messages(tmp_path: Path) -> None:
    log_path = _write_log(
        tmp_path / "log.jsonl",
        [
            _record("1", "2024-01-01T10:01:00+00:00", "first"),
            _record("2", "2024-01-01T10:02:00+00:00", "second"),
        ],
    )
    history = FakeHistory(
        [ChatTurn(role="user", content="[2024-01-01 10:01:00+00:00] [Ann]: first", timestamp=1.0)]
    )
    assert sync_log(history, log_path) == 1
    assert history.items[-1].content == "[Ann]: second"


def test_sync_skips_excluded_bot_and_malformed_lines(tmp_path: Path) -> None:
    log_path = _write_log(
        tmp_path / "log.jsonl",
        [
            "{not json",
            '"just a string"',
            {"ts": "9", "text": "no date"},
            _record("4", "2024-01-01T10:04:00+00:00", "beep", user_name="bot", is_bot=True),
            _record("5", "2024-01-01T10:05:00+00:00", "live message"),
            _record("6", "2024-01-01T10:06:00+00:00", "kept"),
        ],
    )
    history = FakeHistory()
    assert sync_log(history, log_path, exclude_ts="5") == 1
    assert [turn.content for turn in history.items] == ["[Ann]: kept"]


def test_assistant_turns_do_not_count_as_seen(tmp_path: Path) -> None:
    log_path = _write_log(
        tmp_path / "log.jsonl",
        [_record("1", "2024-01-01T10:01:00+00:00", "hello")],
    )
    history = FakeHistory([ChatTurn(role="assistant", content="[Ann]: hello", timestamp=1.0)])
    assert sync_log(history, log_path) == 1


def test_line_separator_inside_text_stays_one_record(tmp_path: Path) -> None:
    store = TopicLogStore(str(tmp_path))
    identity = TopicIdentity("@team", "general")
    store.log_message(
        identity,
        LogEntry(
            date="2024-01-01T10:00:00+00:00",
            ts="1",
            user="@ann",
            user_name="Ann",
            text="line one\u2028line two\u0085line three",
            is_bot=False,
        ),
    )
    history = FakeHistory()
    assert sync_log(history, store.log_path(identity)) == 1
    assert history.items[0].content == "[Ann]: line one\u2028line two\u0085line three"


def test_undecodable_line_is_skipped(tmp_path: Path) -> None:
    log_path = tmp_path / "log.jsonl"
    valid = json.dumps(_record("1", "2024-01-01T10:01:00+00:00", "still here")).encode("utf-8")
    log_path.write_bytes(valid + b"\n" + b"\xff\xfe garbage\n")
    history = FakeHistory()
    assert sync_log(history, str(log_path)) == 1
    assert [turn.content for turn in history.items] == ["[Ann]: still here"]
