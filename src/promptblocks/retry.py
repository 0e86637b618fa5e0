"""Bounded retry for delegated retrieval.

Retry decisions read structured fields on ``RetrievalError`` (``retryable``,
``status_code``) and fall back to recognising timeouts and transport errors
anywhere in the exception chain. Message text is never inspected.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import random
import time
from typing import TYPE_CHECKING, TypeVar

import httpx

from promptblocks.errors import ConfigurationError, RetrievalError, _walk_exception_chain

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

T = TypeVar("T")

logger = logging.getLogger(__name__)

#: Statuses an agent may recover from on its own (throttling, overload, gateways).
RETRYABLE_STATUS_CODES: frozenset[int] = frozenset({408, 409, 429, 500, 502, 503, 504})


@dataclass(frozen=True)
class RetryPolicy:
    """How often, and how patiently, a delegate retries one block.

    ``max_attempts`` counts the first try, so ``1`` disables retries.
    Sleeps grow by ``backoff_multiplier`` up to ``max_delay_s``; with
    ``jitter`` each sleep is drawn uniformly from ``[0, delay]``.
    ``max_elapsed_s`` caps the total time spent across attempts.
    """

    max_attempts: int = 2
    initial_delay_s: float = 0.25
    backoff_multiplier: float = 2.0
    max_delay_s: float = 2.0
    jitter: bool = True
    max_elapsed_s: float | None = 10.0

    def __post_init__(self) -> None:
        problems = []
        if self.max_attempts < 1:
            problems.append("max_attempts must be >= 1")
        if self.initial_delay_s < 0:
            problems.append("initial_delay_s must be >= 0")
        if self.backoff_multiplier <= 0:
            problems.append("backoff_multiplier must be > 0")
        if self.max_delay_s < 0:
            problems.append("max_delay_s must be >= 0")
        if self.max_elapsed_s is not None and self.max_elapsed_s < 0:
            problems.append("max_elapsed_s must be >= 0 or None")
        if problems:
            raise ConfigurationError(
                "Invalid RetryPolicy: " + "; ".join(problems),
                hint="Use RetryPolicy(max_attempts=1) to disable retries.",
            )

    def delay_for(self, retry_index: int) -> float:
        """Seconds to sleep before retry number *retry_index* (1-based)."""
        ceiling = min(
            self.max_delay_s,
            self.initial_delay_s * self.backoff_multiplier ** max(0, retry_index - 1),
        )
        if ceiling <= 0:
            return 0.0
        return random.uniform(0.0, ceiling) if self.jitter else ceiling  # noqa: S311


def should_retry_retrieval(exc: BaseException) -> bool:
    """Decide whether a failed retrieval is worth another attempt.

    An explicit ``retryable`` on ``RetrievalError`` wins, then its
    ``status_code``. Otherwise only timeouts and httpx transport errors
    (anywhere in the chain) qualify. Cancellation never does.
    """
    if isinstance(exc, asyncio.CancelledError):
        return False
    if isinstance(exc, RetrievalError):
        if exc.retryable is not None:
            return exc.retryable
        if exc.status_code is not None:
            return exc.status_code in RETRYABLE_STATUS_CODES
    return any(
        isinstance(e, (TimeoutError, httpx.TransportError))
        for e in _walk_exception_chain(exc)
    )


async def retry_async(
    factory: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    should_retry: Callable[[BaseException], bool] = should_retry_retrieval,
) -> T:
    """Await ``factory()`` until it succeeds or *policy* is exhausted.

    The last exception propagates unchanged.
    """
    deadline = (
        None if policy.max_elapsed_s is None else time.monotonic() + policy.max_elapsed_s
    )
    attempt = 1
    while True:
        try:
            return await factory()
        except Exception as exc:
            if attempt >= policy.max_attempts or not should_retry(exc):
                raise
            delay = policy.delay_for(attempt)
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise
                delay = min(delay, remaining)
            logger.debug(
                "Attempt %d/%d failed (%s); retrying in %.2fs",
                attempt,
                policy.max_attempts,
                type(exc).__name__,
                delay,
            )
        if delay > 0:
            await asyncio.sleep(delay)
        attempt += 1
