import pytest

from core.errors import AppError, ErrorCode
from repositories.memory import InMemoryRateLimitRepository
from services.rate_limit import RateLimitService


@pytest.fixture
def repository():
    return InMemoryRateLimitRepository()


@pytest.fixture
def limiter(repository, settings, clock):
    return RateLimitService(repository, settings, clock=clock)


async def test_window_allows_max_then_denies(limiter, clock):
    """Five calls pass with remaining 4..0, the sixth is denied until the window resets."""
    remaining = []
    for _ in range(5):
        result = await limiter.check_rate_limit("test:key", max_requests=5, window_ms=1000)
        assert result.allowed
        remaining.append(result.remaining)
    assert remaining == [4, 3, 2, 1, 0]

    denied = await limiter.check_rate_limit("test:key", max_requests=5, window_ms=1000)
    assert not denied.allowed
    assert denied.remaining == 0
    assert denied.retry_after == 1

    clock.advance(milliseconds=1000)
    result = await limiter.check_rate_limit("test:key", max_requests=5, window_ms=1000)
    assert result.allowed
    assert result.remaining == 4


async def test_denied_calls_do_not_extend_window(limiter, repository, clock):
    await limiter.check_rate_limit("test:key", max_requests=1, window_ms=60_000)
    first_reset = (await repository.get("test:key")).reset_time

    clock.advance(seconds=30)
    denied = await limiter.check_rate_limit("test:key", max_requests=1, window_ms=60_000)
    assert not denied.allowed
    assert denied.reset_time == first_reset
    assert denied.retry_after == 30
    assert (await repository.get("test:key")).count == 1


async def test_keys_are_independent(limiter):
    await limiter.check_rate_limit("a", max_requests=1, window_ms=1000)
    assert not (await limiter.check_rate_limit("a", max_requests=1, window_ms=1000)).allowed
    assert (await limiter.check_rate_limit("b", max_requests=1, window_ms=1000)).allowed


async def test_enforce_raises_with_retry_details(limiter):
    await limiter.enforce_rate_limit("test:key", max_requests=1, window_ms=10_000)

    with pytest.raises(AppError) as exc_info:
        await limiter.enforce_rate_limit("test:key", max_requests=1, window_ms=10_000)

    error = exc_info.value
    assert error.code == ErrorCode.RATE_LIMIT_EXCEEDED
    assert error.status_code == 429
    assert error.details["retryAfter"] == 10
    assert "resetTime" in error.details


async def test_defaults_come_from_settings(make_settings, repository, clock):
    limiter = RateLimitService(repository, make_settings(RATE_LIMIT_MAX_REQUESTS=2), clock=clock)
    assert (await limiter.check_rate_limit("k")).remaining == 1
    assert (await limiter.check_rate_limit("k")).remaining == 0
    assert not (await limiter.check_rate_limit("k")).allowed


async def test_cooldown_blocks_until_window_elapses(limiter, clock):
    await limiter.check_otp_cooldown("user@example.com")

    clock.advance(seconds=20)
    with pytest.raises(AppError) as exc_info:
        await limiter.check_otp_cooldown("user@example.com")
    assert exc_info.value.code == ErrorCode.OTP_COOLDOWN_ACTIVE
    assert exc_info.value.status_code == 429
    assert exc_info.value.retry_after == 40

    clock.advance(seconds=40)
    await limiter.check_otp_cooldown("user@example.com")


async def test_cooldown_is_per_email(limiter):
    await limiter.check_otp_cooldown("a@example.com")
    await limiter.check_otp_cooldown("b@example.com")


async def test_reset_rate_limit(limiter):
    await limiter.check_rate_limit("k", max_requests=1, window_ms=60_000)
    await limiter.reset_rate_limit("k")
    assert (await limiter.check_rate_limit("k", max_requests=1, window_ms=60_000)).allowed


async def test_cleanup_removes_only_expired(limiter, repository, clock):
    await limiter.check_rate_limit("short", max_requests=5, window_ms=1000)
    await limiter.check_rate_limit("long", max_requests=5, window_ms=60_000)

    clock.advance(seconds=2)
    assert await limiter.cleanup_expired_records() == 1
    assert await repository.get("short") is None
    assert await repository.get("long") is not None


async def test_cleanup_failures_are_swallowed(settings, clock):
    class BrokenRepository(InMemoryRateLimitRepository):
        async def delete_expired(self, now):
            raise RuntimeError("store unavailable")

    limiter = RateLimitService(BrokenRepository(), settings, clock=clock)
    assert await limiter.cleanup_expired_records() == 0
