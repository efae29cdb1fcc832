"""Retry an async operation with exponential backoff.

Used by the API client to ride out server cold starts and transient network
failures. ``max_retries`` is the total number of attempts. The delay before
attempt ``n + 1`` is ``base_delay_ms * 2 ** (n - 1)``, optionally with
full jitter.

A per-attempt timeout cancels the in-flight coroutine (and with it the
underlying httpx request) and surfaces as :class:`AttemptTimeout`; both
timeouts and ordinary failures consume one attempt.
"""
from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, Optional, Protocol, Tuple, Type, TypeVar

from agentdesk.core.errors import AttemptTimeout

logger = logging.getLogger("agentdesk.retry")

T = TypeVar("T")


class ProgressNotifier(Protocol):
    """Shows one coalesced progress message per ``notify_id``."""

    def show(self, notify_id: str, text: str) -> None: ...

    def dismiss(self, notify_id: str) -> None: ...


def backoff_delay_ms(attempt: int, base_delay_ms: int, jitter: bool = False) -> float:
    delay = base_delay_ms * (2 ** (attempt - 1))
    if jitter:
        delay = random.uniform(0, delay)
    return delay


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    *,
    max_retries: int = 3,
    base_delay_ms: int = 1000,
    attempt_timeout: Optional[float] = None,
    jitter: bool = False,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    on_retry: Optional[Callable[[int, int, BaseException], None]] = None,
    notifier: Optional[ProgressNotifier] = None,
    notify_id: Optional[str] = None,
) -> T:
    if max_retries < 1:
        raise ValueError("max_retries must be at least 1")

    try:
        for attempt in range(1, max_retries + 1):
            try:
                if attempt_timeout is not None:
                    try:
                        return await asyncio.wait_for(operation(), timeout=attempt_timeout)
                    except asyncio.TimeoutError as exc:
                        raise AttemptTimeout(
                            f"attempt {attempt} timed out after {attempt_timeout}s"
                        ) from exc
                return await operation()
            except retry_on as exc:
                if attempt >= max_retries:
                    raise
                delay = backoff_delay_ms(attempt, base_delay_ms, jitter)
                logger.warning(
                    "Attempt %d/%d failed (%s); retrying in %.0fms",
                    attempt, max_retries, exc, delay,
                )
                if on_retry:
                    on_retry(attempt, max_retries, exc)
                if notifier and notify_id:
                    notifier.show(notify_id, f"Connection issue - retrying... ({attempt}/{max_retries})")
                await asyncio.sleep(delay / 1000)
    finally:
        if notifier and notify_id:
            notifier.dismiss(notify_id)
