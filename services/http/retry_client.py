# services/http/retry_client.py
"""
Retrying send wrapper shared by the LLM and market-data clients.

Only HTTP 429 and transport errors are retried. Every other response, 2xx or
not, goes back to the caller untouched so each client keeps its own status
handling. Backoff is exponential without jitter; the loop itself is tenacity.

A deadline can be opened around a unit of work with ``deadline_scope``; while
it is active no retry is scheduled whose wait would overrun it.
"""
from __future__ import annotations

import asyncio
import contextvars
import logging
import os
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterator, Optional

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
)

logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]

# Absolute monotonic deadline for the current task tree (None = unbounded).
_deadline: contextvars.ContextVar[Optional[float]] = contextvars.ContextVar(
    "http_retry_deadline", default=None
)


class RateLimitError(Exception):
    """Upstream kept answering 429 after the retry budget was spent."""

    def __init__(self, url: str, attempts: int, retry_after_s: Optional[float] = None):
        self.url = url
        self.attempts = attempts
        self.retry_after_s = retry_after_s
        super().__init__(f"Rate limit exceeded after {attempts} attempts: {url}")


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 3
    initial_backoff_ms: int = 1000

    @staticmethod
    def from_env() -> "RetryPolicy":
        return RetryPolicy(
            max_retries=int(os.getenv("HTTP_MAX_RETRIES", "3")),
            initial_backoff_ms=int(os.getenv("HTTP_INITIAL_BACKOFF_MS", "1000")),
        )


@contextmanager
def deadline_scope(timeout_s: Optional[float]) -> Iterator[Optional[float]]:
    """Bound every retry wait inside the block to ``timeout_s`` from now.

    Nested scopes keep the tighter of the two deadlines.
    """
    if timeout_s is None:
        yield _deadline.get()
        return
    new_deadline = time.monotonic() + max(0.0, float(timeout_s))
    current = _deadline.get()
    if current is not None:
        new_deadline = min(current, new_deadline)
    token = _deadline.set(new_deadline)
    try:
        yield new_deadline
    finally:
        _deadline.reset(token)


def remaining_budget_s() -> Optional[float]:
    deadline = _deadline.get()
    if deadline is None:
        return None
    return max(0.0, deadline - time.monotonic())


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Seconds from a Retry-After header; HTTP-date values are ignored."""
    if not value:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    return seconds if seconds >= 0 else None


def backoff_seconds(attempt: int, initial_backoff_ms: int) -> float:
    return (initial_backoff_ms * (2 ** attempt)) / 1000.0


def _fits_budget(wait_s: float) -> bool:
    budget = remaining_budget_s()
    return budget is None or wait_s < budget


def _is_rate_limited(response: httpx.Response) -> bool:
    return response.status_code == 429


def _retry_after(rs: RetryCallState) -> Optional[float]:
    if rs.outcome is None or rs.outcome.failed:
        return None
    return parse_retry_after(rs.outcome.result().headers.get("Retry-After"))


async def send_with_retry(
    client: httpx.AsyncClient,
    request: httpx.Request,
    *,
    max_retries: int = 3,
    initial_backoff_ms: int = 1000,
    sleep: SleepFn = asyncio.sleep,
) -> httpx.Response:
    """
    Send ``request`` and retry on 429 / transport errors.

    Sends at most ``max_retries + 1`` times. Raises RateLimitError when the
    last attempt is still 429; re-raises the last transport error otherwise.
    """
    # no query string: FMP passes its apikey there
    url = f"{request.url.scheme}://{request.url.host}{request.url.path}"

    def wait(rs: RetryCallState) -> float:
        retry_after = _retry_after(rs)
        if retry_after is not None:
            return retry_after
        return backoff_seconds(rs.attempt_number - 1, initial_backoff_ms)

    def out_of_budget(rs: RetryCallState) -> bool:
        return not _fits_budget(wait(rs))

    def log_retry(rs: RetryCallState) -> None:
        wait_s = rs.next_action.sleep if rs.next_action else 0.0
        if rs.outcome.failed:
            logger.warning(
                "transport error, retrying method=%s url=%s attempt=%d wait_s=%.2f err=%s",
                request.method, url, rs.attempt_number, wait_s, type(rs.outcome.exception()).__name__,
            )
        else:
            logger.warning(
                "429 from upstream, retrying method=%s url=%s attempt=%d wait_s=%.2f",
                request.method, url, rs.attempt_number, wait_s,
            )

    def give_up(rs: RetryCallState) -> httpx.Response:
        if rs.outcome.failed:
            if rs.attempt_number <= max_retries:
                logger.warning("retry budget exhausted after transport error url=%s", url)
            # re-raises the last transport error
            return rs.outcome.result()
        raise RateLimitError(url, attempts=rs.attempt_number, retry_after_s=_retry_after(rs))

    async def attempt() -> httpx.Response:
        response = await client.send(request)
        if response.status_code == 429:
            await response.aclose()
        return response

    retrying = AsyncRetrying(
        retry=retry_if_exception_type(httpx.TransportError) | retry_if_result(_is_rate_limited),
        stop=stop_after_attempt(max_retries + 1) | out_of_budget,
        wait=wait,
        sleep=sleep,
        before_sleep=log_retry,
        retry_error_callback=give_up,
    )
    return await retrying(attempt)


async def request_with_retry(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    policy: Optional[RetryPolicy] = None,
    sleep: SleepFn = asyncio.sleep,
    **kwargs,
) -> httpx.Response:
    """``client.request`` equivalent that goes through ``send_with_retry``."""
    p = policy or RetryPolicy()
    request = client.build_request(method, url, **kwargs)
    return await send_with_retry(
        client,
        request,
        max_retries=p.max_retries,
        initial_backoff_ms=p.initial_backoff_ms,
        sleep=sleep,
    )
