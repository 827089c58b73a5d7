import pytest
from unittest.mock import AsyncMock

from src.core.exceptions import PermanentRemoteError, TransientRemoteError
from src.engines.compositing.retry import RetryExecutor, is_retryable


def rate_limited():
    return TransientRemoteError("Compositing API: rate limited", http_status=429)


@pytest.mark.asyncio
async def test_rate_limit_retried_with_growing_delays():
    # Arrange
    sleep = AsyncMock()
    fn = AsyncMock(side_effect=[rate_limited(), rate_limited(), b"done"])
    executor = RetryExecutor(max_attempts=3, base_delay=2.0, sleep=sleep)

    # Act
    result = await executor.execute(fn, context="Processing a.png")

    # Assert
    assert result == b"done"
    assert fn.await_count == 3
    delays = [call.args[0] for call in sleep.await_args_list]
    assert delays == [4.0, 8.0]
    assert delays[0] < delays[1]


@pytest.mark.asyncio
async def test_permanent_error_fails_on_first_attempt():
    sleep = AsyncMock()
    error = PermanentRemoteError("Compositing API: invalid image", http_status=400)
    fn = AsyncMock(side_effect=error)
    executor = RetryExecutor(max_attempts=3, base_delay=2.0, sleep=sleep)

    with pytest.raises(PermanentRemoteError) as exc_info:
        await executor.execute(fn)

    assert exc_info.value is error
    assert fn.await_count == 1
    sleep.assert_not_awaited()


@pytest.mark.asyncio
async def test_exhausted_attempts_raise_last_error():
    sleep = AsyncMock()
    errors = [rate_limited(), rate_limited(), TransientRemoteError("HTTP 503", http_status=503)]
    fn = AsyncMock(side_effect=errors)
    executor = RetryExecutor(max_attempts=3, base_delay=0.5, sleep=sleep)

    with pytest.raises(TransientRemoteError) as exc_info:
        await executor.execute(fn)

    assert exc_info.value is errors[-1]
    assert fn.await_count == 3
    assert sleep.await_count == 2


@pytest.mark.asyncio
async def test_unclassified_errors_are_not_retried():
    sleep = AsyncMock()
    fn = AsyncMock(side_effect=RuntimeError("boom"))
    executor = RetryExecutor(max_attempts=3, sleep=sleep)

    with pytest.raises(RuntimeError):
        await executor.execute(fn)

    assert fn.await_count == 1
    sleep.assert_not_awaited()


@pytest.mark.asyncio
async def test_each_call_gets_a_fresh_attempt_budget():
    sleep = AsyncMock()
    executor = RetryExecutor(max_attempts=2, base_delay=1.0, sleep=sleep)

    first = AsyncMock(side_effect=[rate_limited(), b"one"])
    second = AsyncMock(side_effect=[rate_limited(), b"two"])

    assert await executor.execute(first) == b"one"
    assert await executor.execute(second) == b"two"
    assert [call.args[0] for call in sleep.await_args_list] == [2.0, 2.0]


def test_single_attempt_is_allowed_but_zero_is_not():
    assert RetryExecutor(max_attempts=1).max_attempts == 1
    with pytest.raises(ValueError):
        RetryExecutor(max_attempts=0)


def test_retryable_flag_is_read_from_the_error():
    assert is_retryable(rate_limited())
    assert not is_retryable(PermanentRemoteError("nope"))
    assert not is_retryable(ValueError("plain"))
