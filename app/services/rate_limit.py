from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional
import logging
import math

from core.config import Settings, settings as default_settings
from core.errors import AppError, ErrorCode
from repositories.base import RateLimitRepository
from utils.helpers import mask_email, mask_key, utcnow

logger = logging.getLogger(__name__)

COOLDOWN_PREFIX = "otp_cooldown:"


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_time: datetime
    retry_after: Optional[int] = None


def seconds_until(reset_time: datetime, now: datetime) -> int:
    return max(0, math.ceil((reset_time - now).total_seconds()))


class RateLimitService:
    """Fixed-window request counting plus the per-email resend cooldown."""

    def __init__(
        self,
        repository: RateLimitRepository,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.settings = settings or default_settings
        self.clock = clock

    async def check_rate_limit(
        self,
        key: str,
        max_requests: Optional[int] = None,
        window_ms: Optional[int] = None,
    ) -> RateLimitResult:
        if max_requests is None:
            max_requests = self.settings.RATE_LIMIT_MAX_REQUESTS
        if window_ms is None:
            window_ms = self.settings.RATE_LIMIT_WINDOW_MS

        now = self.clock()
        window_end = now + timedelta(milliseconds=window_ms)
        record, allowed = await self.repository.consume(key, max_requests, window_end, now)

        if not allowed:
            retry_after = seconds_until(record.reset_time, now)
            logger.warning(
                f"Rate limit exceeded for {mask_key(key)}: "
                f"{record.count}/{max_requests}, retry after {retry_after}s"
            )
            return RateLimitResult(
                allowed=False,
                remaining=0,
                reset_time=record.reset_time,
                retry_after=retry_after,
            )

        return RateLimitResult(
            allowed=True,
            remaining=max(0, max_requests - record.count),
            reset_time=record.reset_time,
        )

    async def enforce_rate_limit(
        self,
        key: str,
        max_requests: Optional[int] = None,
        window_ms: Optional[int] = None,
    ) -> RateLimitResult:
        """Like check_rate_limit but raises RATE_LIMIT_EXCEEDED when denied."""
        result = await self.check_rate_limit(key, max_requests, window_ms)
        if not result.allowed:
            raise AppError.too_many_requests(
                ErrorCode.RATE_LIMIT_EXCEEDED,
                f"Too many requests, please try again in {result.retry_after} seconds",
                {
                    "retryAfter": result.retry_after,
                    "resetTime": result.reset_time.isoformat(),
                },
            )
        return result

    async def check_otp_cooldown(self, email: str) -> None:
        """
        Allow one code request per email per cooldown window.

        Starts a new cooldown when none is active, otherwise raises
        OTP_COOLDOWN_ACTIVE with the seconds left.
        """
        key = f"{COOLDOWN_PREFIX}{email}"
        now = self.clock()
        window_end = now + timedelta(seconds=self.settings.OTP_RESEND_COOLDOWN_SECONDS)

        record, allowed = await self.repository.consume(key, 1, window_end, now)
        if allowed:
            return

        remaining = seconds_until(record.reset_time, now)
        logger.warning(f"OTP cooldown active for {mask_email(email)}: {remaining}s left")
        raise AppError.too_many_requests(
            ErrorCode.OTP_COOLDOWN_ACTIVE,
            f"Please wait {remaining} seconds before requesting another OTP",
            {
                "retryAfter": remaining,
                "resetTime": record.reset_time.isoformat(),
            },
        )

    async def reset_rate_limit(self, key: str) -> None:
        await self.repository.delete(key)
        logger.info(f"Rate limit reset for {mask_key(key)}")

    async def cleanup_expired_records(self) -> int:
        try:
            deleted = await self.repository.delete_expired(self.clock())
        except Exception as e:
            logger.error(f"Failed to clean up rate limit records: {e}")
            return 0
        if deleted:
            logger.info(f"Cleaned up {deleted} expired rate limit record(s)")
        return deleted
