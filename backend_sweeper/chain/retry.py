"""Bounded retry with exponential backoff for retryable (NetworkError) chain calls."""

from __future__ import annotations

import time
from typing import Callable, TypeVar

from backend_sweeper.core.exceptions import NetworkError
from backend_sweeper.sweeper_logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def call_with_retry(
    fn: Callable[[], T],
    *,
    op: str,
    max_retries: int = 3,
    backoff_base_sec: float = 0.5,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call fn(); on NetworkError retry up to max_retries times, sleeping
    backoff_base_sec * 2**attempt between attempts. Any other exception
    (RevertedError included) propagates immediately.
    """
    for attempt in range(max_retries + 1):
        try:
            return fn()
        except NetworkError as e:
            if attempt >= max_retries:
                logger.error("rpc_retries_exhausted", op=op, attempts=attempt + 1, error=str(e))
                raise
            backoff = backoff_base_sec * (2 ** attempt)
            logger.warning(
                "rpc_call_failed",
                op=op,
                attempt=attempt + 1,
                error=str(e),
                backoff_sec=round(backoff, 2),
            )
            sleep(backoff)
    raise AssertionError("unreachable")
