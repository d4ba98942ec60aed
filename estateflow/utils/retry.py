"""Retry helpers for outbound HTTP calls."""

from __future__ import annotations

import asyncio
import functools
import logging
import random
from collections.abc import Awaitable, Callable

import httpx

logger = logging.getLogger(__name__)

RETRY_EXCEPTIONS = (httpx.TransportError, OSError, asyncio.TimeoutError)


def retry_async(func: Callable[..., Awaitable], *, attempts: int = 3, base_delay: float = 1.0):
    """Retry ``func`` on transport-level failures with exponential backoff and jitter.

    HTTP status errors are not retried here; callers decide what a 4xx/5xx means.
    """

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        delay = base_delay
        for attempt in range(attempts):
            try:
                return await func(*args, **kwargs)
            except RETRY_EXCEPTIONS as exc:
                if attempt == attempts - 1:
                    raise
                logger.debug(
                    "Retrying %s after %s (attempt %d/%d)", getattr(func, "__name__", func), exc, attempt + 1, attempts
                )
                await asyncio.sleep(delay + random.random())
                delay *= 2

    return wrapper
