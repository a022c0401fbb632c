"""Per-topic directories and the append-only log.jsonl.

Each chat topic gets its own directory under the workspace:
  <workspace>/<channel>/<subtopic>/log.jsonl
"""

from __future__ import annotations

import json
import os
import time
from datetime import datetime, timezone
from typing import Callable, Dict

from core.models import LogEntry
from core.topic_keys import TopicIdentity

LOG_FILENAME = "log.jsonl"
BOT_USER = "bot"
# Telegram can redeliver an update after a reconnect; repeats inside this
# window are dropped instead of logged twice.
DEDUPE_WINDOW_SECONDS = 60.0


class TopicLogStore:
    """Filesystem store that satisfies the TopicLogPort contract."""

    def __init__(self, workspace_dir: str, clock: Callable[[], float] = time.monotonic) -> None:
        self._workspace_dir = workspace_dir
        self._clock = clock
        self._recently_logged: Dict[str, float] = {}
        os.makedirs(self._workspace_dir, exist_ok=True)

    def topic_dir(self, identity: TopicIdentity) -> str:
        """Return (and create) the directory for a topic."""

        path = os.path.join(self._workspace_dir, identity.safe_channel, identity.safe_subtopic)
        os.makedirs(path, exist_ok=True)
        return path

    def log_path(self, identity: TopicIdentity) -> str:
        return os.path.join(self.topic_dir(identity), LOG_FILENAME)

    def log_message(self, identity: TopicIdentity, entry: LogEntry) -> bool:
        """Append one entry; returns False when it was logged moments ago."""

        now = self._clock()
        self._prune(now)
        dedupe_key = f"{identity.key}:{entry.ts}"
        if dedupe_key in self._recently_logged:
            return False
        self._recently_logged[dedupe_key] = now

        record = entry.to_record()
        if not record.get("date"):
            record["date"] = datetime.now(timezone.utc).isoformat()
        with open(self.log_path(identity), "a", encoding="utf-8") as handle:
            handle.write(json.dumps(record, ensure_ascii=False) + "\n")
        return True

    def log_bot_response(self, identity: TopicIdentity, text: str) -> None:
        now = datetime.now(timezone.utc)
        self.log_message(
            identity,
            LogEntry(
                date=now.isoformat(),
                ts=str(int(now.timestamp() * 1000)),
                user=BOT_USER,
                text=text,
                is_bot=True,
            ),
        )

    def _prune(self, now: float) -> None:
        expired = [key for key, seen in self._recently_logged.items() if now - seen > DEDUPE_WINDOW_SECONDS]
        for key in expired:
            del self._recently_logged[key]
