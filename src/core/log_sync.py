"""Backfill a topic's message log into its conversation history.

Messages can land in ``log.jsonl`` while no turn is running (busy topic,
restart, edits from tools). Before each turn we append every user message the
history has not seen yet, oldest first, so the model sees the whole thread.
"""

from __future__ import annotations

import json
import logging
import os
import re
from datetime import datetime, timezone
from typing import Optional

from core.models import ChatTurn
from core.ports import HistoryPort

LOGGER = logging.getLogger(__name__)

# Live turns are submitted as "[2024-01-01 09:00:00+01:00] [Name]: text"; the
# log only knows "[Name]: text", so the timestamp prefix is dropped to compare.
_TIMESTAMP_PREFIX = re.compile(r"^\[\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}[+-]\d{2}:\d{2}\] ")


def normalize_turn_text(text: str) -> str:
    return _TIMESTAMP_PREFIX.sub("", text, count=1)


def compose_log_text(record: dict) -> str:
    """Render a log record the way it appears in history."""

    author = record.get("userName") or record.get("user") or "unknown"
    return f"[{author}]: {record.get('text') or ''}"


def _parse_date(value: str) -> float:
    try:
        parsed = datetime.fromisoformat(value)
    except (TypeError, ValueError):
        return datetime.now(timezone.utc).timestamp()
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def sync_log(history: HistoryPort, log_path: str, exclude_ts: Optional[str] = None) -> int:
    """Append unseen user messages from ``log_path`` to ``history``.

    ``exclude_ts`` names the message the caller is about to submit live, so it
    is added exactly once by the caller rather than here. Returns the number of
    turns appended; 0 means history was left untouched.
    """

    if not os.path.exists(log_path):
        return 0

    known = {normalize_turn_text(turn.content) for turn in history.turns() if turn.role == "user"}

    # Undecodable bytes become U+FFFD so the damaged line fails JSON parsing on
    # its own. Only "\n" ends a record; U+2028 and friends are legal inside one.
    with open(log_path, "r", encoding="utf-8", errors="replace") as handle:
        lines = [line for line in handle.read().split("\n") if line.strip()]

    staged: list[ChatTurn] = []
    for line_number, line in enumerate(lines, start=1):
        try:
            record = json.loads(line)
        except json.JSONDecodeError:
            LOGGER.debug("Skipping malformed log line %s in %s", line_number, log_path)
            continue
        if not isinstance(record, dict):
            continue

        ts = record.get("ts")
        date = record.get("date")
        if not ts or not date:
            continue
        if exclude_ts is not None and str(ts) == exclude_ts:
            continue
        if record.get("isBot"):
            continue

        text = compose_log_text(record)
        if text in known:
            continue
        staged.append(ChatTurn(role="user", content=text, timestamp=_parse_date(date)))
        known.add(text)

    if not staged:
        return 0

    # Log order is not trusted; sort is stable so equal timestamps keep file order.
    staged.sort(key=lambda turn: turn.timestamp)
    for turn in staged:
        history.append(turn)
    return len(staged)
