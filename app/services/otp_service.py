from datetime import datetime, timedelta
from typing import Callable, Optional
import logging

from starlette.concurrency import run_in_threadpool

from core.config import Settings, settings as default_settings
from core.errors import AppError, ErrorCode
from core.security import generate_otp_code, hash_otp_code, verify_otp_code
from repositories.base import OTPRepository
from utils.helpers import mask_email, utcnow

logger = logging.getLogger(__name__)


class OtpService:
    """Issues and verifies one-time codes; one outstanding code per email."""

    def __init__(
        self,
        repository: OTPRepository,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.settings = settings or default_settings
        self.clock = clock

    async def generate_otp(self, email: str) -> str:
        """Replace any outstanding code for ``email`` and return the new plaintext code."""
        await self.repository.delete_by_email(email)

        code = generate_otp_code(self.settings.OTP_LENGTH)
        code_hash = await run_in_threadpool(hash_otp_code, code)

        now = self.clock()
        expires_at = now + timedelta(minutes=self.settings.OTP_EXPIRE_MINUTES)
        await self.repository.create(email, code_hash, expires_at, now)

        logger.info(f"OTP generated for {mask_email(email)}, expires at {expires_at.isoformat()}")
        return code

    async def verify_otp(self, email: str, code: str) -> None:
        """
        Check ``code`` against the outstanding record for ``email``.

        Returns normally only for the single caller that consumes the code.
        Raises AppError with one of OTP_NOT_FOUND, OTP_EXPIRED,
        OTP_MAX_ATTEMPTS_EXCEEDED or OTP_INVALID otherwise.
        """
        now = self.clock()
        record = await self.repository.find_active_by_email(email, now)

        if record is None:
            stale = await self.repository.find_unused_by_email(email)
            if stale is not None:
                await self.repository.delete(stale.id)
                logger.warning(f"OTP verification failed for {mask_email(email)}: expired")
                raise AppError.bad_request(ErrorCode.OTP_EXPIRED, "OTP has expired, please request a new code")

            logger.warning(f"OTP verification failed for {mask_email(email)}: not found")
            raise AppError.bad_request(ErrorCode.OTP_NOT_FOUND, "No OTP found for this email, please request a code")

        # Stores differ in how eagerly they drop expired rows
        if now >= record.expires_at:
            await self.repository.delete(record.id)
            logger.warning(f"OTP verification failed for {mask_email(email)}: expired")
            raise AppError.bad_request(ErrorCode.OTP_EXPIRED, "OTP has expired, please request a new code")

        # At most OTP_MAX_VERIFY_ATTEMPTS guesses ever reach the hash comparison
        max_attempts = self.settings.OTP_MAX_VERIFY_ATTEMPTS
        attempts = await self.repository.try_consume_attempt(record.id, max_attempts)
        if attempts is None:
            current = await self.repository.find_unused_by_email(email)
            if current is None or current.id != record.id:
                logger.warning(f"OTP verification failed for {mask_email(email)}: consumed concurrently")
                raise AppError.bad_request(ErrorCode.OTP_NOT_FOUND, "No OTP found for this email, please request a code")

            await self.repository.delete(record.id)
            logger.warning(f"OTP verification failed for {mask_email(email)}: max attempts ({current.attempts})")
            raise AppError.bad_request(
                ErrorCode.OTP_MAX_ATTEMPTS_EXCEEDED,
                "Too many verification attempts, please request a new code",
            )

        is_valid = await run_in_threadpool(verify_otp_code, code, record.code_hash)
        if not is_valid:
            remaining = max(0, max_attempts - attempts)
            logger.warning(f"OTP verification failed for {mask_email(email)}: invalid code (attempt {attempts})")
            raise AppError.bad_request(
                ErrorCode.OTP_INVALID,
                "Invalid OTP code",
                {"attemptsRemaining": remaining},
            )

        if not await self.repository.mark_used(record.id):
            # Consumed by a concurrent request
            logger.warning(f"OTP verification lost race for {mask_email(email)}")
            raise AppError.bad_request(ErrorCode.OTP_NOT_FOUND, "No OTP found for this email, please request a code")

        await self.repository.delete(record.id)
        logger.info(f"OTP verified for {mask_email(email)}")

    async def cleanup_expired_otps(self) -> int:
        try:
            deleted = await self.repository.delete_expired(self.clock())
        except Exception as e:
            logger.error(f"Failed to clean up expired OTPs: {e}")
            return 0
        if deleted:
            logger.info(f"Cleaned up {deleted} expired OTP(s)")
        return deleted
