import asyncio

import pytest

from conftest import wrong_code
from core.errors import AppError, ErrorCode
from repositories.memory import InMemoryOTPRepository
from services.otp_service import OtpService

EMAIL = "user@example.com"


@pytest.fixture
def repository():
    return InMemoryOTPRepository()


@pytest.fixture
def otp_service(repository, settings, clock):
    return OtpService(repository, settings, clock=clock)


async def expect_error(coro, code: ErrorCode) -> AppError:
    with pytest.raises(AppError) as exc_info:
        await coro
    assert exc_info.value.code == code
    return exc_info.value


async def test_generate_stores_hash_not_code(otp_service, repository, clock):
    code = await otp_service.generate_otp(EMAIL)

    record = await repository.find_active_by_email(EMAIL, clock())
    assert len(code) == 6
    assert record.attempts == 0
    assert record.is_used is False
    assert record.code_hash != code
    assert (record.expires_at - record.created_at).total_seconds() == 10 * 60


async def test_new_code_invalidates_previous(otp_service, repository, clock):
    first = await otp_service.generate_otp(EMAIL)
    second = await otp_service.generate_otp(EMAIL)

    assert len(repository._records) == 1
    if first != second:
        await expect_error(otp_service.verify_otp(EMAIL, first), ErrorCode.OTP_INVALID)
    await otp_service.verify_otp(EMAIL, second)


async def test_verify_consumes_code(otp_service, repository, clock):
    code = await otp_service.generate_otp(EMAIL)

    await otp_service.verify_otp(EMAIL, code)
    assert await repository.find_unused_by_email(EMAIL) is None

    await expect_error(otp_service.verify_otp(EMAIL, code), ErrorCode.OTP_NOT_FOUND)


async def test_verify_without_request(otp_service):
    await expect_error(otp_service.verify_otp(EMAIL, "123456"), ErrorCode.OTP_NOT_FOUND)


async def test_wrong_code_counts_attempts(otp_service, repository, clock):
    code = await otp_service.generate_otp(EMAIL)

    error = await expect_error(otp_service.verify_otp(EMAIL, wrong_code(code)), ErrorCode.OTP_INVALID)
    assert error.status_code == 400
    assert error.details == {"attemptsRemaining": 4}
    assert (await repository.find_active_by_email(EMAIL, clock())).attempts == 1


async def test_max_attempts_locks_out_even_correct_code(otp_service, repository):
    code = await otp_service.generate_otp(EMAIL)

    for _ in range(5):
        await expect_error(otp_service.verify_otp(EMAIL, wrong_code(code)), ErrorCode.OTP_INVALID)

    await expect_error(otp_service.verify_otp(EMAIL, code), ErrorCode.OTP_MAX_ATTEMPTS_EXCEEDED)
    assert await repository.find_unused_by_email(EMAIL) is None


async def test_code_expires_at_deadline(otp_service, repository, clock):
    code = await otp_service.generate_otp(EMAIL)

    clock.advance(minutes=10)
    await expect_error(otp_service.verify_otp(EMAIL, code), ErrorCode.OTP_EXPIRED)

    # The stale record is gone afterwards
    assert await repository.find_unused_by_email(EMAIL) is None
    await expect_error(otp_service.verify_otp(EMAIL, code), ErrorCode.OTP_NOT_FOUND)


async def test_code_valid_just_before_deadline(otp_service, clock):
    code = await otp_service.generate_otp(EMAIL)
    clock.advance(minutes=9, seconds=59)
    await otp_service.verify_otp(EMAIL, code)


async def test_concurrent_verifies_single_winner(otp_service):
    code = await otp_service.generate_otp(EMAIL)

    results = await asyncio.gather(
        otp_service.verify_otp(EMAIL, code),
        otp_service.verify_otp(EMAIL, code),
        return_exceptions=True,
    )

    successes = [r for r in results if r is None]
    failures = [r for r in results if isinstance(r, AppError)]
    assert len(successes) == 1
    assert len(failures) == 1
    assert failures[0].code == ErrorCode.OTP_NOT_FOUND


async def test_concurrent_wrong_guesses_respect_attempt_limit(otp_service, repository):
    code = await otp_service.generate_otp(EMAIL)
    bad = wrong_code(code)

    results = await asyncio.gather(
        *(otp_service.verify_otp(EMAIL, bad) for _ in range(15)),
        return_exceptions=True,
    )

    codes = [r.code for r in results]
    assert codes.count(ErrorCode.OTP_INVALID) == 5
    assert ErrorCode.OTP_MAX_ATTEMPTS_EXCEEDED in codes
    assert set(codes) <= {
        ErrorCode.OTP_INVALID,
        ErrorCode.OTP_MAX_ATTEMPTS_EXCEEDED,
        ErrorCode.OTP_NOT_FOUND,
    }

    # The locked-out record is gone, so the real code no longer works
    assert await repository.find_unused_by_email(EMAIL) is None
    await expect_error(otp_service.verify_otp(EMAIL, code), ErrorCode.OTP_NOT_FOUND)


async def test_attempt_reservation_stops_at_limit(repository, clock):
    now = clock()
    record = await repository.create(EMAIL, "hash", now, now)

    reserved = [await repository.try_consume_attempt(record.id, 3) for _ in range(5)]
    assert reserved == [1, 2, 3, None, None]
    assert record.attempts == 3

    await repository.mark_used(record.id)
    assert await repository.try_consume_attempt(record.id, 10) is None


async def test_cleanup_expired_otps(otp_service, repository, clock):
    await otp_service.generate_otp("a@example.com")
    clock.advance(minutes=5)
    await otp_service.generate_otp("b@example.com")

    clock.advance(minutes=6)
    assert await otp_service.cleanup_expired_otps() == 1
    assert await repository.find_unused_by_email("a@example.com") is None
    assert await repository.find_unused_by_email("b@example.com") is not None
