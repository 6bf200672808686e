import asyncio

import pytest

from anvilnotify.rate_limiter import MailRateLimiter, RateLimitConfig, TokenResult


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.mark.asyncio
async def test_passthrough_when_disabled():
    rl = MailRateLimiter(RateLimitConfig(emails_per_second=0, burst_size=1))
    assert rl.is_disabled()
    shutdown = asyncio.Event()
    assert await rl.wait_for_token(shutdown) == TokenResult.ACQUIRED


@pytest.mark.asyncio
async def test_burst_passes_immediately():
    rl = MailRateLimiter(RateLimitConfig(emails_per_second=5, burst_size=5))
    assert not rl.is_disabled()
    shutdown = asyncio.Event()
    for _ in range(5):
        assert await rl.wait_for_token(shutdown) == TokenResult.ACQUIRED


@pytest.mark.asyncio
async def test_throttle_returns_acquired_after_wait():
    rl = MailRateLimiter(RateLimitConfig(emails_per_second=100, burst_size=1))
    shutdown = asyncio.Event()
    assert await rl.wait_for_token(shutdown) == TokenResult.ACQUIRED
    assert await rl.wait_for_token(shutdown) == TokenResult.ACQUIRED_AFTER_WAIT


@pytest.mark.asyncio
async def test_shutdown_interrupts_wait():
    rl = MailRateLimiter(RateLimitConfig(emails_per_second=1, burst_size=1))
    shutdown = asyncio.Event()
    assert await rl.wait_for_token(shutdown) == TokenResult.ACQUIRED
    shutdown.set()
    assert await rl.wait_for_token(shutdown) == TokenResult.SHUTDOWN


@pytest.mark.asyncio
async def test_shutdown_set_while_waiting():
    rl = MailRateLimiter(RateLimitConfig(emails_per_second=1, burst_size=1))
    shutdown = asyncio.Event()
    assert await rl.wait_for_token(shutdown) == TokenResult.ACQUIRED
    asyncio.get_running_loop().call_later(0.05, shutdown.set)
    result = await asyncio.wait_for(rl.wait_for_token(shutdown), timeout=2)
    assert result == TokenResult.SHUTDOWN


@pytest.mark.asyncio
async def test_zero_burst_is_treated_as_one():
    rl = MailRateLimiter(RateLimitConfig(emails_per_second=50, burst_size=0))
    shutdown = asyncio.Event()
    assert await rl.wait_for_token(shutdown) == TokenResult.ACQUIRED
    assert await rl.wait_for_token(shutdown) == TokenResult.ACQUIRED_AFTER_WAIT


@pytest.mark.asyncio
async def test_bucket_refills_over_time():
    clock = FakeClock()
    rl = MailRateLimiter(RateLimitConfig(emails_per_second=1, burst_size=1), clock=clock)
    shutdown = asyncio.Event()
    assert await rl.wait_for_token(shutdown) == TokenResult.ACQUIRED
    clock.now += 1.0
    assert await rl.wait_for_token(shutdown) == TokenResult.ACQUIRED


@pytest.mark.asyncio
async def test_refill_is_capped_at_burst_size():
    clock = FakeClock()
    rl = MailRateLimiter(RateLimitConfig(emails_per_second=1, burst_size=2), clock=clock)
    shutdown = asyncio.Event()
    assert await rl.wait_for_token(shutdown) == TokenResult.ACQUIRED
    assert await rl.wait_for_token(shutdown) == TokenResult.ACQUIRED
    clock.now += 100.0
    assert await rl.wait_for_token(shutdown) == TokenResult.ACQUIRED
    assert await rl.wait_for_token(shutdown) == TokenResult.ACQUIRED
    shutdown.set()
    assert await rl.wait_for_token(shutdown) == TokenResult.SHUTDOWN


def test_default_config_values():
    cfg = RateLimitConfig()
    assert (cfg.emails_per_second, cfg.burst_size) == (10, 20)
    assert not MailRateLimiter().is_disabled()


def test_negative_rate_rejected():
    with pytest.raises(ValueError):
        RateLimitConfig(emails_per_second=-1)