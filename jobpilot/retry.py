"""Retry policies with exponential backoff.

A policy is a value: which failures count as transient, how many attempts to
make, and how long to back off (``base_delay * 2 ** attempt``). The same
policy object wraps any call site, either through ``policy.call`` or the
``retry`` decorator.
"""
from __future__ import annotations

import functools
import time
from dataclasses import dataclass
from typing import Any, Callable, Tuple, Type

import openai
import requests
from playwright.sync_api import Error as PlaywrightError
from sqlalchemy.exc import IntegrityError, OperationalError

from jobpilot.cancellation import CancelToken, OperationCancelled
from jobpilot.log import get_logger

logger = get_logger(__name__)

NETWORK_ERROR_MARKERS: tuple[str, ...] = (
    "network",
    "connection reset",
    "connection refused",
    "connection aborted",
    "econnreset",
    "timed out",
    "net::err_",
    "request was cancelled",
    "request canceled",
)


def is_browser_fault(exc: BaseException) -> bool:
    """Navigation timeouts and any other Playwright-level failure."""
    return isinstance(exc, PlaywrightError)


def is_network_fault(exc: BaseException) -> bool:
    if isinstance(exc, OperationCancelled):
        return False
    if isinstance(
        exc,
        (
            ConnectionError,
            TimeoutError,
            requests.ConnectionError,
            requests.Timeout,
            openai.APIConnectionError,
            openai.APITimeoutError,
        ),
    ):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in NETWORK_ERROR_MARKERS)


def is_store_fault(exc: BaseException) -> bool:
    return isinstance(exc, (OperationalError, IntegrityError, TimeoutError))


@dataclass(frozen=True)
class RetryPolicy:
    name: str
    max_attempts: int
    base_delay: float
    predicate: Callable[[BaseException], bool]

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number *attempt* (0-based)."""
        return self.base_delay * (2 ** attempt)

    def with_base_delay(self, base_delay: float) -> "RetryPolicy":
        return RetryPolicy(self.name, self.max_attempts, base_delay, self.predicate)

    def call(self, fn: Callable[..., Any], *args: Any, cancel: CancelToken | None = None, **kwargs: Any) -> Any:
        label = getattr(fn, "__qualname__", repr(fn))
        for attempt in range(self.max_attempts):
            try:
                return fn(*args, **kwargs)
            except OperationCancelled:
                raise
            except Exception as exc:
                if not self.predicate(exc):
                    raise
                if attempt == self.max_attempts - 1:
                    logger.error(
                        "%s failed after %d attempts (%s policy): %s",
                        label, self.max_attempts, self.name, exc,
                    )
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    "%s attempt %d/%d failed (%s), retrying in %.1fs",
                    label, attempt + 1, self.max_attempts, exc, delay,
                )
                if cancel is not None:
                    cancel.sleep(delay)
                elif delay > 0:
                    time.sleep(delay)
        raise RuntimeError("unreachable")  # pragma: no cover


BROWSER_POLICY = RetryPolicy("browser", max_attempts=3, base_delay=1.0, predicate=is_browser_fault)
NETWORK_POLICY = RetryPolicy("network", max_attempts=5, base_delay=1.0, predicate=is_network_fault)
STORE_POLICY = RetryPolicy("store", max_attempts=3, base_delay=0.5, predicate=is_store_fault)


def retry(
    policy: RetryPolicy | None = None,
    *,
    max_attempts: int = 3,
    base_delay: float = 1.0,
    retryable: Tuple[Type[BaseException], ...] = (Exception,),
) -> Callable:
    """Decorator: retries the wrapped function under *policy* (or an ad-hoc one)."""
    if policy is None:
        policy = RetryPolicy(
            "adhoc",
            max_attempts=max_attempts,
            base_delay=base_delay,
            predicate=lambda exc: isinstance(exc, retryable),
        )

    def decorator(fn: Callable) -> Callable:
        @functools.wraps(fn)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            return policy.call(fn, *args, **kwargs)

        return wrapper

    return decorator
