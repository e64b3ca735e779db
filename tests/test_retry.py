"""
Retry Helper Tests
==================
"""

import threading

import pytest

from core.exceptions import CallTimeout, RetryableError
from ingestion.retry import CallRunner, backoff_delay


def test_backoff_doubles_up_to_cap():
    assert [backoff_delay(n, 1.0, 10.0) for n in range(1, 6)] == [1.0, 2.0, 4.0, 8.0, 10.0]
    assert backoff_delay(0, 1.0, 10.0) == 0.0


def test_call_runner_returns_value():
    runner = CallRunner("t")
    try:
        assert runner.call(lambda a, b: a + b, 5, 2, 3) == 5
        assert runner.call(lambda: "inline", None) == "inline"
    finally:
        runner.shutdown()


def test_call_runner_times_out():
    release = threading.Event()
    runner = CallRunner("t")
    try:
        with pytest.raises(CallTimeout) as exc:
            runner.call(release.wait, 0.05, 5)
        assert isinstance(exc.value, RetryableError)
    finally:
        release.set()
        runner.shutdown()


def test_call_runner_propagates_errors():
    def boom():
        raise KeyError("missing")

    runner = CallRunner("t")
    try:
        with pytest.raises(KeyError):
            runner.call(boom, 5)
    finally:
        runner.shutdown()
