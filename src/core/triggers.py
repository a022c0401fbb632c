"""Trigger file parsing (core domain).

A trigger file is one JSON object. Its ``type`` selects the variant:

- ``immediate``: fire as soon as the file is seen
- ``one-shot``: fire once at ``at`` (ISO 8601 with offset)
- ``periodic``: fire on every ``schedule`` tick in ``timezone``

Parsing only validates shape; cron/timezone problems are reported separately
by :func:`resolve_schedule` so the scheduler can tell them apart.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from core.models import ImmediateEvent, OneShotEvent, PeriodicEvent, TriggerEvent

TRIGGER_SUFFIX = ".json"
REQUIRED_FIELDS = ("type", "stream", "topic", "text")
KNOWN_TYPES = (ImmediateEvent.type_name, OneShotEvent.type_name, PeriodicEvent.type_name)


class TriggerValidationError(ValueError):
    """Raised when a trigger file is malformed or declares an unknown type."""


class ScheduleError(ValueError):
    """Raised when a periodic trigger's cron expression or timezone is invalid."""


def is_trigger_filename(filename: str) -> bool:
    return filename.endswith(TRIGGER_SUFFIX) and not filename.startswith(".")


def parse_trigger(content: str, filename: str) -> TriggerEvent:
    """Decode a trigger file body into its typed variant."""

    try:
        data = json.loads(content)
    except json.JSONDecodeError as exc:
        raise TriggerValidationError(f"{filename}: invalid JSON ({exc.msg})") from exc
    if not isinstance(data, dict):
        raise TriggerValidationError(f"{filename}: expected a JSON object")

    missing = [name for name in REQUIRED_FIELDS if not data.get(name)]
    if missing:
        raise TriggerValidationError(f"{filename}: missing required fields: {', '.join(missing)}")

    event_type = data["type"]
    if event_type not in KNOWN_TYPES:
        raise TriggerValidationError(f"{filename}: unknown event type {event_type!r}")

    channel = str(data["stream"])
    subtopic = str(data["topic"])
    text = str(data["text"])

    if event_type == ImmediateEvent.type_name:
        return ImmediateEvent(channel=channel, subtopic=subtopic, text=text)

    if event_type == OneShotEvent.type_name:
        at = data.get("at")
        if not isinstance(at, str) or not at:
            raise TriggerValidationError(f"{filename}: one-shot events need an 'at' timestamp")
        try:
            fires_at = datetime.fromisoformat(at)
        except ValueError as exc:
            raise TriggerValidationError(f"{filename}: cannot parse 'at' value {at!r}") from exc
        if fires_at.tzinfo is None:
            raise TriggerValidationError(f"{filename}: 'at' must include a UTC offset")
        return OneShotEvent(channel=channel, subtopic=subtopic, text=text, fires_at=fires_at, at=at)

    schedule = data.get("schedule")
    timezone_name = data.get("timezone")
    if not schedule or not timezone_name:
        raise TriggerValidationError(f"{filename}: periodic events need 'schedule' and 'timezone'")
    return PeriodicEvent(
        channel=channel,
        subtopic=subtopic,
        text=text,
        schedule=str(schedule),
        timezone=str(timezone_name),
    )


def resolve_schedule(event: PeriodicEvent) -> ZoneInfo:
    """Validate a periodic trigger's cron expression and return its zone."""

    try:
        zone = ZoneInfo(event.timezone)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ScheduleError(f"unknown timezone {event.timezone!r}") from exc
    if not croniter.is_valid(event.schedule):
        raise ScheduleError(f"invalid cron expression {event.schedule!r}")
    return zone


def next_tick(event: PeriodicEvent, zone: ZoneInfo, after: datetime) -> datetime:
    """Return the first schedule tick strictly after ``after``."""

    return croniter(event.schedule, after.astimezone(zone)).get_next(datetime)


def format_wake_message(filename: str, event: TriggerEvent) -> str:
    """Return the message a firing event submits to its topic."""

    return f"[EVENT:{filename}:{event.type_name}:{event.schedule_label}] {event.text}"


def describe_next_fire(event: TriggerEvent, now: datetime) -> Optional[datetime]:
    """Best-effort next fire time, used by the ``events`` listing."""

    if isinstance(event, ImmediateEvent):
        return None
    if isinstance(event, OneShotEvent):
        return event.fires_at
    try:
        zone = resolve_schedule(event)
    except ScheduleError:
        return None
    return next_tick(event, zone, now)
