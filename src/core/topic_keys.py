"""Helpers for working with telewake topic identities."""

from __future__ import annotations

import re
from dataclasses import dataclass, field

KEY_SEPARATOR = ":"
MAX_COMPONENT_CHARS = 100
GENERAL_TOPIC = "general"

_UNSAFE_CHARS = re.compile(r'[<>:"/\\|?*]')
_WHITESPACE = re.compile(r"\s+")


def sanitize_component(name: str) -> str:
    """Return a filesystem-safe, lower-cased, length-bounded token."""

    safe = _UNSAFE_CHARS.sub("_", name)
    safe = _WHITESPACE.sub("-", safe)
    return safe.lower()[:MAX_COMPONENT_CHARS]


@dataclass(frozen=True)
class TopicIdentity:
    """Stable identity of one conversation thread.

    The raw names are kept for delivery; everything that keys state or touches
    the filesystem goes through the sanitized parts.
    """

    channel: str
    subtopic: str
    safe_channel: str = field(init=False, compare=False)
    safe_subtopic: str = field(init=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "safe_channel", sanitize_component(self.channel))
        object.__setattr__(self, "safe_subtopic", sanitize_component(self.subtopic))

    @property
    def key(self) -> str:
        return f"{self.safe_channel}{KEY_SEPARATOR}{self.safe_subtopic}"

    def __hash__(self) -> int:
        return hash(self.key)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, TopicIdentity):
            return NotImplemented
        return self.key == other.key

    def __str__(self) -> str:
        return f"{self.channel}/{self.subtopic}"
