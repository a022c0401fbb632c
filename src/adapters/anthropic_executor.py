"""Anthropic turn executor adapter.

Implements the core TurnExecutorPort on top of the Messages API. API failures
are reported through a MESSAGE_END event with stop reason "error" rather than
raised, so the runner can surface them as a notice.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Optional, Sequence

import anthropic

from core.config import ModelConfig
from core.models import ChatTurn, TurnEvent, TurnEventKind, Usage

LOGGER = logging.getLogger(__name__)

_RETRYABLE = (
    anthropic.APIConnectionError,
    anthropic.RateLimitError,
    anthropic.InternalServerError,
)

EventCallback = Callable[[TurnEvent], None]


def to_api_messages(history: Sequence[ChatTurn], message: ChatTurn) -> list[dict[str, Any]]:
    """Map history to Messages API turns.

    Consecutive turns of the same role are merged (backfilled user messages
    arrive back to back) and leading assistant turns are dropped, since the
    conversation has to open with a user turn.
    """

    merged: list[dict[str, Any]] = []
    for turn in [*history, message]:
        if turn.role not in ("user", "assistant") or not turn.content:
            continue
        if merged and merged[-1]["role"] == turn.role:
            merged[-1]["content"] = f"{merged[-1]['content']}\n\n{turn.content}"
        else:
            merged.append({"role": turn.role, "content": turn.content})
    while merged and merged[0]["role"] != "user":
        merged.pop(0)
    return merged


class AnthropicTurnExecutor:
    """TurnExecutorPort backed by ``anthropic.AsyncAnthropic``."""

    def __init__(self, api_key: str, config: ModelConfig, client: Optional[Any] = None) -> None:
        self._config = config
        # Retries are ours so each one can be reported as a RETRY event.
        self._client = client or anthropic.AsyncAnthropic(
            api_key=api_key,
            base_url=config.base_url,
            max_retries=0,
        )

    def _usage(self, response: Any) -> Usage:
        usage = getattr(response, "usage", None)
        input_tokens = int(getattr(usage, "input_tokens", 0) or 0)
        output_tokens = int(getattr(usage, "output_tokens", 0) or 0)
        cost = (
            input_tokens * self._config.input_cost_per_mtok
            + output_tokens * self._config.output_cost_per_mtok
        ) / 1_000_000
        return Usage(input_tokens=input_tokens, output_tokens=output_tokens, cost=cost)

    async def execute(
        self,
        system_prompt: str,
        history: Sequence[ChatTurn],
        message: ChatTurn,
        on_event: Optional[EventCallback] = None,
    ) -> list[ChatTurn]:
        emit = on_event or (lambda event: None)
        messages = to_api_messages(history, message)
        max_attempts = max(1, self._config.max_attempts)

        for attempt in range(1, max_attempts + 1):
            try:
                response = await self._client.messages.create(
                    model=self._config.name,
                    max_tokens=self._config.max_tokens,
                    system=system_prompt,
                    messages=messages,
                )
                break
            except _RETRYABLE as exc:
                if attempt == max_attempts:
                    return self._fail(exc, emit)
                LOGGER.warning("Model call failed (%s), retrying", exc)
                emit(TurnEvent(kind=TurnEventKind.RETRY, attempt=attempt, max_attempts=max_attempts))
                await asyncio.sleep(self._config.retry_base_seconds * 2 ** (attempt - 1))
            except anthropic.APIError as exc:
                return self._fail(exc, emit)

        text = "\n".join(
            block.text for block in response.content if getattr(block, "type", None) == "text"
        )
        emit(
            TurnEvent(
                kind=TurnEventKind.MESSAGE_END,
                stop_reason="stop",
                usage=self._usage(response),
            )
        )
        return [ChatTurn(role="assistant", content=text, timestamp=time.time())]

    def _fail(self, exc: Exception, emit: EventCallback) -> list[ChatTurn]:
        LOGGER.error("Model call failed: %s", exc)
        emit(TurnEvent(kind=TurnEventKind.MESSAGE_END, stop_reason="error", error_message=str(exc)))
        return []
