"""Bounded-retry model invocation shared by turns and summarization passes."""

from __future__ import annotations

import asyncio
from typing import Any

import structlog

from book_teacher.config.app_config import TutorConfig
from book_teacher.core.errors import TransientServiceError
from book_teacher.llm.client import LLMClient, LLMError, Message, ModelStep

logger = structlog.get_logger(__name__)


async def call_model(
    llm: LLMClient,
    messages: list[Message],
    tools: list[dict[str, Any]] | None,
    model: str,
    tutor_config: TutorConfig,
) -> ModelStep:
    """Run one model step off the event loop, retrying transient failures.

    The blocking client call runs in a worker thread so other sessions keep
    progressing. Backoff doubles after every failed attempt.

    Raises:
        TransientServiceError: After max_retries failed attempts
    """
    attempts = max(tutor_config.max_retries, 1)
    last_error: LLMError | None = None

    for attempt in range(1, attempts + 1):
        try:
            return await asyncio.to_thread(llm.step, messages, tools, model)
        except LLMError as e:
            last_error = e
            logger.warning(
                "model.call_failed",
                attempt=attempt,
                max_attempts=attempts,
                model=model,
                error=str(e),
            )
            if attempt < attempts:
                await asyncio.sleep(tutor_config.retry_backoff_seconds * 2 ** (attempt - 1))

    logger.error("model.unavailable", attempts=attempts, model=model)
    raise TransientServiceError(attempts, last_error)
