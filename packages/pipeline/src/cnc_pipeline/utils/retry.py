"""
utils/retry.py — Bounded exponential-backoff retry for async transport calls.

Uses tenacity under the hood. Retries are always bounded: a source that keeps
failing surfaces its last error so the orchestrator can fall back to the
other adapter instead of hammering the same one.

Usage:
    from cnc_pipeline.utils.retry import with_retry

    @with_retry(max_attempts=2, base_delay=1.0, retry_on=httpx.TransportError)
    async def download(url: str) -> bytes:
        r = await client.get(url)
        r.raise_for_status()
        return r.content

    # Attempts known only at runtime:
    fetch = with_retry(max_attempts=settings.http_max_attempts)(self._get)
"""

from __future__ import annotations

import functools
from collections.abc import Callable, Coroutine
from typing import Any, TypeVar

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

log = structlog.get_logger(__name__)

F = TypeVar("F", bound=Callable[..., Coroutine[Any, Any, Any]])


def with_retry(
    max_attempts: int = 2,
    base_delay: float = 1.0,
    max_delay: float = 10.0,
    retry_on: type[Exception] | tuple[type[Exception], ...] = httpx.TransportError,
) -> Callable[[F], F]:
    """
    Decorator that retries an async function with exponential backoff.

    Delays: base_delay * 2^(attempt-1), capped at max_delay. Only
    exceptions matching *retry_on* are retried; anything else, and the last
    matching error once attempts run out, propagates unchanged.

    Args:
        max_attempts: Total attempts before raising.
        base_delay:   Initial delay in seconds.
        max_delay:    Maximum delay cap in seconds.
        retry_on:     Exception type(s) that trigger a retry.

    Returns:
        Decorated async function.
    """

    def decorator(fn: F) -> F:
        @functools.wraps(fn)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            attempt_log = log.bind(function=fn.__qualname__)
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(max_attempts),
                wait=wait_exponential(multiplier=base_delay, max=max_delay),
                retry=retry_if_exception_type(retry_on),
                reraise=True,
            ):
                with attempt:
                    attempt_num = attempt.retry_state.attempt_number
                    if attempt_num > 1:
                        outcome = attempt.retry_state.outcome
                        attempt_log.warning(
                            "retry_attempt",
                            attempt=attempt_num,
                            max_attempts=max_attempts,
                            last_error=str(outcome.exception()) if outcome else None,
                        )
                    try:
                        return await fn(*args, **kwargs)
                    except retry_on as exc:
                        if attempt_num >= max_attempts:
                            attempt_log.error(
                                "retry_exhausted",
                                max_attempts=max_attempts,
                                error=str(exc),
                            )
                        raise

        return wrapper  # type: ignore[return-value]

    return decorator
