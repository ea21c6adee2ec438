"""Bounded retry for completion calls.

Only ``UpstreamServerError`` is retried. Attempt N is followed by a wait of
``base_delay * N`` seconds (0.5 s, then 1.0 s with the defaults), and the wait
itself is abandoned as soon as the request's cancellation token fires.
A new ``AsyncRetrying`` is built per call, so no state is shared between
requests.
"""

import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_incrementing,
)

from app.exceptions.llm import UpstreamServerError
from app.shared.cancellation import CancellationToken, cancellable_sleep

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 2
DEFAULT_BASE_DELAY = 0.5


async def call_with_retry(
    operation: Callable[[], Awaitable[T]],
    token: CancellationToken,
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
) -> T:
    """Run ``operation`` with up to ``max_retries`` retries.

    Args:
        operation: Zero-argument coroutine factory; called once per attempt.
        token: Request cancellation token, checked before every attempt and
            raced against every backoff wait.
        max_retries: Retries after the first attempt.
        base_delay: Backoff unit in seconds.

    Returns:
        The operation's result.

    Raises:
        RequestAbortedError: The token fired before an attempt or during a wait.
        UpstreamServerError: Every attempt failed with an upstream fault.
        Exception: Any other error from the operation, unretried.
    """

    async def _sleep(seconds: float) -> None:
        await cancellable_sleep(seconds, token)

    retrying = AsyncRetrying(
        retry=retry_if_exception_type(UpstreamServerError),
        stop=stop_after_attempt(max_retries + 1),
        wait=wait_incrementing(start=base_delay, increment=base_delay),
        sleep=_sleep,
        before=_log_attempt,
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )

    result = None
    async for attempt in retrying:
        with attempt:
            token.raise_if_cancelled()
            result = await operation()
    return result


def _log_attempt(retry_state: RetryCallState) -> None:
    logger.debug(f"Completion attempt {retry_state.attempt_number}")
