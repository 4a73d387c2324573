"""Exponential backoff retry for async operations."""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, TypeVar

from tenacity import AsyncRetrying, RetryCallState, RetryError, stop_after_attempt, wait_exponential

from vaultindex.config import RetryConfig
from vaultindex.errors import RetryExhaustedError

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
    LOGGER.info(
        "Operation attempt %d failed (%s), retrying in %.2fs",
        retry_state.attempt_number,
        exc,
        delay,
    )


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig | None = None,
) -> T:
    """Run ``operation`` until it succeeds or ``max_retries`` retries are spent.

    The first retry waits ``initial_delay`` seconds; each following wait is
    multiplied by ``factor`` and capped at ``max_delay``. Raises
    ``RetryExhaustedError`` chained to the last failure.
    """
    config = config or RetryConfig()
    attempts = config.max_retries + 1
    retrying = AsyncRetrying(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(
            multiplier=config.initial_delay,
            exp_base=config.factor,
            max=config.max_delay,
        ),
        before_sleep=_log_retry,
    )
    try:
        return await retrying(operation)
    except RetryError as exc:
        last_error = exc.last_attempt.exception()
        raise RetryExhaustedError(attempts, last_error) from last_error
