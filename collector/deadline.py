"""
Wall-clock deadlines for blocking calls.

Socket timeouts in requests and the OpenAI SDK bound each connect and
each read, not the call as a whole: a peer that keeps trickling bytes
holds the call open past its budget. call_with_deadline bounds the
whole call from the caller's side.
"""

import concurrent.futures
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Calls that overrun keep their worker until the socket timeout fires
_executor = ThreadPoolExecutor(max_workers=8, thread_name_prefix="deadline")


class DeadlineExceeded(Exception):
    """The call did not finish within its wall-clock budget."""

    def __init__(self, timeout_s: float):
        super().__init__(f"Call exceeded its {timeout_s:.1f}s deadline")
        self.timeout_s = timeout_s


def call_with_deadline(fn: Callable[..., T], timeout_s: float, *args: Any, **kwargs: Any) -> T:
    """Run fn(*args, **kwargs) and raise DeadlineExceeded if it outlives timeout_s."""
    future = _executor.submit(fn, *args, **kwargs)
    try:
        return future.result(timeout=timeout_s)
    except concurrent.futures.TimeoutError:
        if future.done():
            raise
        future.cancel()
        logger.warning(f"{getattr(fn, '__name__', 'call')} abandoned after {timeout_s:.1f}s")
        raise DeadlineExceeded(timeout_s) from None
