"""
Retry Helpers
=============

Exponential backoff and per-call timeouts for pipeline stages.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Callable, Optional, TypeVar

from core.exceptions import CallTimeout

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int, base_seconds: float, max_seconds: float) -> float:
    """
    Delay before retry number ``attempt`` (1-based): base * 2^(attempt-1),
    capped at max_seconds.
    """
    if attempt < 1:
        return 0.0
    return min(max_seconds, base_seconds * (2 ** (attempt - 1)))


class CallRunner:
    """
    Runs calls under a timeout on a small worker pool.

    A call that times out keeps running in its worker; callers must only act
    on results they received, never on side effects of an abandoned call.
    """

    def __init__(self, name: str, max_workers: int = 2):
        self.name = name
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix=f"{name}-call")

    def call(self, func: Callable[..., T], timeout_seconds: Optional[float], *args, **kwargs) -> T:
        if not timeout_seconds:
            return func(*args, **kwargs)

        future = self._executor.submit(func, *args, **kwargs)
        try:
            return future.result(timeout=timeout_seconds)
        except FutureTimeout as e:
            future.cancel()
            raise CallTimeout(
                f"{getattr(func, '__name__', 'call')} exceeded {timeout_seconds}s",
                context={"runner": self.name},
                original_exception=e
            )

    def shutdown(self):
        self._executor.shutdown(wait=False)
