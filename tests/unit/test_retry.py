"""Unit tests for retry policies."""

import pytest
from playwright.sync_api import Error as PlaywrightError
from sqlalchemy.exc import OperationalError

from jobpilot.cancellation import CancelToken, OperationCancelled
from jobpilot.retry import (
    BROWSER_POLICY,
    NETWORK_POLICY,
    STORE_POLICY,
    RetryPolicy,
    is_browser_fault,
    is_network_fault,
    is_store_fault,
    retry,
)


class Flaky:
    def __init__(self, failures, exc):
        self.failures = failures
        self.exc = exc
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc
        return "ok"


@pytest.mark.unit
def test_backoff_doubles_without_jitter():
    assert [BROWSER_POLICY.delay_for(i) for i in range(3)] == [1.0, 2.0, 4.0]
    assert STORE_POLICY.delay_for(2) == 2.0


@pytest.mark.unit
def test_policy_attempt_counts():
    assert BROWSER_POLICY.max_attempts == 3
    assert NETWORK_POLICY.max_attempts == 5
    assert STORE_POLICY.max_attempts == 3


@pytest.mark.unit
def test_transient_fault_is_retried_until_success():
    fn = Flaky(2, ConnectionError("connection reset"))
    assert NETWORK_POLICY.with_base_delay(0).call(fn) == "ok"
    assert fn.calls == 3


@pytest.mark.unit
def test_exhaustion_reraises_original_error():
    fn = Flaky(10, ConnectionError("connection refused"))
    with pytest.raises(ConnectionError):
        NETWORK_POLICY.with_base_delay(0).call(fn)
    assert fn.calls == 5


@pytest.mark.unit
def test_non_matching_error_is_not_retried():
    fn = Flaky(1, ValueError("bad input"))
    with pytest.raises(ValueError):
        NETWORK_POLICY.with_base_delay(0).call(fn)
    assert fn.calls == 1


@pytest.mark.unit
def test_cancelled_is_never_retried():
    fn = Flaky(1, OperationCancelled("stop"))
    policy = RetryPolicy("catch-all", max_attempts=3, base_delay=0, predicate=lambda exc: True)
    with pytest.raises(OperationCancelled):
        policy.call(fn)
    assert fn.calls == 1


@pytest.mark.unit
def test_backoff_wait_is_abortable():
    token = CancelToken()
    token.cancel()
    fn = Flaky(1, PlaywrightError("Timeout 30000ms exceeded"))
    with pytest.raises(OperationCancelled):
        BROWSER_POLICY.with_base_delay(60).call(fn, cancel=token)
    assert fn.calls == 1


@pytest.mark.unit
def test_fault_classifiers():
    assert is_browser_fault(PlaywrightError("boom"))
    assert not is_browser_fault(ValueError("boom"))
    assert is_network_fault(TimeoutError())
    assert is_network_fault(RuntimeError("Network is unreachable"))
    assert is_network_fault(RuntimeError("the request was cancelled"))
    assert not is_network_fault(RuntimeError("invalid api key"))
    assert not is_network_fault(OperationCancelled("network wait cancelled"))
    assert is_store_fault(OperationalError("INSERT", {}, Exception("database is locked")))
    assert not is_store_fault(ValueError("x"))


@pytest.mark.unit
def test_retry_decorator_with_exception_tuple():
    calls = []

    @retry(max_attempts=3, base_delay=0, retryable=(KeyError,))
    def lookup():
        calls.append(1)
        if len(calls) < 3:
            raise KeyError("missing")
        return len(calls)

    assert lookup() == 3
