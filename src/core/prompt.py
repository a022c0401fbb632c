"""System instructions for a topic run.

Rebuilt before every turn so memory edits and new events docs take effect
immediately.
"""

from __future__ import annotations

import logging
import os
import time

from core.topic_keys import TopicIdentity

LOGGER = logging.getLogger(__name__)

MEMORY_FILENAME = "MEMORY.md"
NO_MEMORY = "(no working memory yet)"


def _read_memory(path: str) -> str:
    if not os.path.exists(path):
        return ""
    try:
        with open(path, "r", encoding="utf-8") as handle:
            return handle.read().strip()
    except OSError:
        LOGGER.warning("Could not read memory file %s", path)
        return ""


def load_memory(workspace_dir: str, topic_dir: str) -> str:
    """Return global and topic memory notes as one block."""

    parts = []
    global_memory = _read_memory(os.path.join(workspace_dir, MEMORY_FILENAME))
    if global_memory:
        parts.append(f"### Global Memory\n{global_memory}")
    topic_memory = _read_memory(os.path.join(topic_dir, MEMORY_FILENAME))
    if topic_memory:
        parts.append(f"### Topic Memory\n{topic_memory}")
    return "\n\n".join(parts) if parts else NO_MEMORY


def local_timezone_name() -> str:
    return time.tzname[time.localtime().tm_isdst > 0]


def build_system_prompt(workspace_dir: str, identity: TopicIdentity, memory: str) -> str:
    topic_path = os.path.join(workspace_dir, identity.safe_channel, identity.safe_subtopic)
    events_path = os.path.join(workspace_dir, "events")
    tz = local_timezone_name()
    channel = identity.channel
    subtopic = identity.subtopic

    return f"""You are a Telegram bot assistant. Be concise. No emojis.

## Context
- You see previous turns of this topic, including messages that arrived while you were busy.
- For older history beyond your context, search {topic_path}/log.jsonl.

## Workspace Layout
{workspace_dir}/
├── MEMORY.md                    # Global memory (all topics)
├── events/                      # Scheduled event files
└── {identity.safe_channel}/{identity.safe_subtopic}/
    ├── MEMORY.md                # Topic-specific memory
    └── log.jsonl                # Message history

## Events
Schedule events that wake you at specific times. Events are JSON files in `{events_path}/`.

Immediate, triggers right away:
{{"type": "immediate", "stream": "{channel}", "topic": "{subtopic}", "text": "New notification"}}

One-shot, triggers at a specific time (offset required), then deleted:
{{"type": "one-shot", "stream": "{channel}", "topic": "{subtopic}", "text": "Reminder", "at": "2025-12-15T09:00:00+08:00"}}

Periodic, triggers on a cron schedule until the file is deleted:
{{"type": "periodic", "stream": "{channel}", "topic": "{subtopic}", "text": "Check inbox", "schedule": "0 9 * * 1-5", "timezone": "{tz}"}}

Cron format is `minute hour day-of-month month day-of-week`. Use unique filenames.
The bot runs in {tz}; assume it when users don't name a timezone.

When an event fires you receive a message like:
`[EVENT:reminder.json:one-shot:2025-12-15T09:00:00+08:00] Reminder text`

### Silent Completion
For periodic events with nothing to report, respond with just `[SILENT]`.
This suppresses the output.

## Memory
Write to MEMORY.md files to persist context across conversations.
- Global ({workspace_dir}/MEMORY.md): preferences, project info
- Topic ({topic_path}/MEMORY.md): topic-specific decisions, ongoing work

### Current Memory
{memory}
"""
