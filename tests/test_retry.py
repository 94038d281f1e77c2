import asyncio

import pytest

from karatapp.core.config import RetryConfig
from karatapp.core.errors import NotFoundError, StorageError
from karatapp.core.retry import (
    RetryPolicy,
    retry_async,
    should_retry_auth_error,
    should_retry_error,
    should_retry_image_error,
    with_retry,
)

FAST = RetryPolicy(max_retries=3, initial_delay=0.0, multiplier=1.0, max_delay=0.0, jitter=0.0)


def test_policy_presets():
    assert RetryPolicy.network() == RetryPolicy(max_retries=3, initial_delay=1.0, multiplier=2.0, max_delay=10.0)
    assert RetryPolicy.auth().max_retries == 2
    assert RetryPolicy.image().multiplier == 1.5
    assert RetryPolicy.from_config(RetryConfig(max_retries=5)).max_retries == 5


def test_delay_grows_and_is_capped():
    policy = RetryPolicy(initial_delay=1.0, multiplier=2.0, max_delay=5.0, jitter=0.0)

    assert policy.delay_for(1) == 1.0
    assert policy.delay_for(2) == 2.0
    assert policy.delay_for(3) == 4.0
    assert policy.delay_for(4) == 5.0


def test_delay_jitter_stays_within_bounds():
    policy = RetryPolicy(initial_delay=1.0, multiplier=2.0, max_delay=30.0, jitter=0.1)
    for _ in range(20):
        assert 2.0 <= policy.delay_for(2) <= 2.2


@pytest.mark.parametrize(
    ("error", "expected"),
    [
        (asyncio.TimeoutError(), True),
        (ConnectionError("reset"), True),
        (StorageError("upstream"), True),
        (NotFoundError("missing"), False),
        (RuntimeError("HTTP 503 from backend"), True),
        (RuntimeError("status: 429"), True),
        (RuntimeError("Network unreachable"), True),
        (ValueError("bad input"), False),
    ],
)
def test_should_retry_error(error, expected):
    assert should_retry_error(error) is expected


def test_auth_and_image_predicates():
    assert not should_retry_auth_error(RuntimeError("network: invalid password"))
    assert should_retry_auth_error(RuntimeError("connection reset"))
    assert not should_retry_image_error(RuntimeError("timeout: file does not exist"))
    assert should_retry_image_error(RuntimeError("timeout while uploading"))


@pytest.mark.asyncio
async def test_retry_async_retries_transient_errors():
    calls = 0

    async def flaky() -> str:
        nonlocal calls
        calls += 1
        if calls < 3:
            raise ConnectionError("reset")
        return "ok"

    assert await retry_async(flaky, FAST, operation="test.flaky") == "ok"
    assert calls == 3


@pytest.mark.asyncio
async def test_retry_async_gives_up_and_reraises():
    calls = 0

    async def always_down() -> None:
        nonlocal calls
        calls += 1
        raise ConnectionError("down")

    with pytest.raises(ConnectionError, match="down"):
        await retry_async(always_down, FAST)
    assert calls == FAST.max_retries + 1


@pytest.mark.asyncio
async def test_retry_async_does_not_retry_permanent_errors():
    calls = 0

    async def missing() -> None:
        nonlocal calls
        calls += 1
        raise NotFoundError("gone")

    with pytest.raises(NotFoundError):
        await retry_async(missing, FAST)
    assert calls == 1


@pytest.mark.asyncio
async def test_with_retry_uses_instance_policy():
    class Service:
        retry_policy = FAST

        def __init__(self):
            self.calls = 0

        @with_retry()
        async def fetch(self, value: int) -> int:
            self.calls += 1
            if self.calls == 1:
                raise TimeoutError()
            return value * 2

    service = Service()
    assert await service.fetch(21) == 42
    assert service.calls == 2
