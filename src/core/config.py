"""Core configuration dataclasses.

We keep config parsing outside the core, but these dataclasses define the
shape the core expects so adapters and app layers can build safely.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class SchedulerConfig:
    """Timing settings for the trigger-file scheduler."""

    debounce_seconds: float = 0.1
    busy_retry_seconds: float = 10.0
    # None keeps re-queuing a busy event forever.
    busy_retry_limit: Optional[int] = None
    read_attempts: int = 3
    read_backoff_seconds: float = 0.1


@dataclass(frozen=True)
class ModelConfig:
    """Model settings consumed by the turn executor adapter."""

    name: str
    base_url: Optional[str]
    max_tokens: int
    input_cost_per_mtok: float
    output_cost_per_mtok: float
    max_attempts: int = 3
    retry_base_seconds: float = 2.0

