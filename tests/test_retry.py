# tests/test_retry.py

import asyncio
import gzip

import pytest

from unityfs import (
    BadMagic,
    CorruptStream,
    RetryExhausted,
    RetryPolicy,
    TransientIOError,
    aretry_with_backoff,
    is_retryable,
    retry_with_backoff,
)


class Flaky:
    """Fails with `exc` for the first `failures` calls, then returns `value`."""

    def __init__(self, failures, exc=TransientIOError, value="done"):
        self.failures = failures
        self.exc = exc
        self.value = value
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc(f"failure {self.calls}")
        return self.value


# -----------------------------------------------------------------------------
# POLICY
# -----------------------------------------------------------------------------
def test_delays_grow_and_cap():
    p = RetryPolicy(max_attempts=6, base_delay=0.5, max_delay=3.0, backoff_factor=2.0)
    assert [p.delay_for(n) for n in range(1, 6)] == [0.5, 1.0, 2.0, 3.0, 3.0]


@pytest.mark.parametrize("kwargs", [
    {"max_attempts": 0},
    {"base_delay": -1},
    {"max_delay": -0.5},
    {"backoff_factor": 0.5},
])
def test_invalid_policy(kwargs):
    with pytest.raises(ValueError):
        RetryPolicy(**kwargs)


def test_classification():
    assert is_retryable(TransientIOError("busy"))
    assert is_retryable(ConnectionResetError())
    assert is_retryable(TimeoutError())
    assert is_retryable(OSError(5, "EIO"))
    assert not is_retryable(FileNotFoundError())
    assert not is_retryable(PermissionError())
    assert not is_retryable(gzip.BadGzipFile())
    assert not is_retryable(BadMagic("x"))
    assert not is_retryable(CorruptStream("x"))
    assert not is_retryable(ValueError())


# -----------------------------------------------------------------------------
# SYNC
# -----------------------------------------------------------------------------
def test_transient_then_success():
    slept = []
    seen = []
    op = Flaky(2)
    policy = RetryPolicy(max_attempts=3, base_delay=0.25)
    res = retry_with_backoff(op, policy, sleep=slept.append,
                             on_retry=lambda n, e, d: seen.append((n, type(e).__name__, d)))
    assert res == "done"
    assert op.calls == 3
    assert slept == [0.25, 0.5]
    assert seen == [(1, "TransientIOError", 0.25), (2, "TransientIOError", 0.5)]


def test_permanent_error_is_not_retried():
    slept = []
    op = Flaky(5, exc=BadMagic)
    with pytest.raises(BadMagic):
        retry_with_backoff(op, RetryPolicy(max_attempts=4), sleep=slept.append)
    assert op.calls == 1
    assert slept == []


def test_exhausted_keeps_last_error():
    op = Flaky(10)
    with pytest.raises(RetryExhausted) as info:
        retry_with_backoff(op, RetryPolicy(max_attempts=3, base_delay=0), sleep=lambda d: None)
    assert op.calls == 3
    assert info.value.attempts == 3
    assert isinstance(info.value.last_error, TransientIOError)
    assert str(info.value.last_error) == "failure 3"
    assert not is_retryable(info.value)


def test_single_attempt_policy():
    op = Flaky(1)
    with pytest.raises(RetryExhausted):
        retry_with_backoff(op, RetryPolicy(max_attempts=1), sleep=lambda d: None)
    assert op.calls == 1


# -----------------------------------------------------------------------------
# ASYNC
# -----------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_async_retry():
    slept = []

    async def fake_sleep(d):
        slept.append(d)

    op = Flaky(2)

    async def attempt():
        await asyncio.sleep(0)
        return op()

    res = await aretry_with_backoff(attempt, RetryPolicy(max_attempts=3, base_delay=0.1),
                                    sleep=fake_sleep)
    assert res == "done"
    assert slept == [0.1, 0.2]


@pytest.mark.asyncio
async def test_async_permanent_error():
    op = Flaky(1, exc=CorruptStream)

    async def attempt():
        return op()

    with pytest.raises(CorruptStream):
        await aretry_with_backoff(attempt, RetryPolicy(max_attempts=5))
    assert op.calls == 1
