"""
Storage interfaces used by the services.

Each store has an in-memory implementation (single process, used in tests and
development) and a SQLAlchemy implementation. Rate limiting can also run on
Redis.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, Tuple

from models.otp_code import OTPCode
from models.rate_limit import RateLimitRecord
from models.refresh_token import RefreshToken
from models.user import User


class OTPRepository(ABC):
    """Outstanding OTP codes, keyed by email."""

    @abstractmethod
    async def create(self, email: str, code_hash: str, expires_at: datetime, created_at: datetime) -> OTPCode:
        pass

    @abstractmethod
    async def find_active_by_email(self, email: str, now: datetime) -> Optional[OTPCode]:
        """Return the record for ``email`` only if it is unused and not expired."""
        pass

    @abstractmethod
    async def find_unused_by_email(self, email: str) -> Optional[OTPCode]:
        """Return the unused record for ``email`` whatever its expiry."""
        pass

    @abstractmethod
    async def increment_attempts(self, otp_id: str) -> int:
        """Add one failed attempt and return the new count."""
        pass

    @abstractmethod
    async def try_consume_attempt(self, otp_id: str, max_attempts: int) -> Optional[int]:
        """
        Reserve one verification attempt in a single step.

        Returns the new count, or None when the record is gone, already used
        or has no attempts left.
        """
        pass

    @abstractmethod
    async def mark_used(self, otp_id: str) -> bool:
        """Flag the record as used. Only the caller that flips it gets True."""
        pass

    @abstractmethod
    async def delete(self, otp_id: str) -> None:
        pass

    @abstractmethod
    async def delete_by_email(self, email: str) -> int:
        pass

    @abstractmethod
    async def delete_expired(self, now: datetime) -> int:
        pass


class RateLimitRepository(ABC):
    """Fixed-window counters keyed by arbitrary strings."""

    @abstractmethod
    async def get(self, key: str) -> Optional[RateLimitRecord]:
        pass

    @abstractmethod
    async def consume(
        self,
        key: str,
        max_requests: int,
        reset_time: datetime,
        now: datetime,
    ) -> Tuple[RateLimitRecord, bool]:
        """
        Count one hit against ``key`` as a single atomic step.

        A missing or expired window restarts at count 1 ending at
        ``reset_time``; a window under ``max_requests`` is incremented; a full
        window is left untouched. Returns the record and whether the hit was
        allowed.
        """
        pass

    @abstractmethod
    async def delete(self, key: str) -> None:
        pass

    @abstractmethod
    async def delete_expired(self, now: datetime) -> int:
        pass


class RefreshTokenRepository(ABC):
    """Issued refresh tokens. Revoking a row invalidates the token."""

    @abstractmethod
    async def create(self, token_id: str, user_id: str, expires_at: datetime, created_at: datetime) -> RefreshToken:
        pass

    @abstractmethod
    async def get(self, token_id: str) -> Optional[RefreshToken]:
        pass

    @abstractmethod
    async def touch(self, token_id: str, now: datetime) -> None:
        pass

    @abstractmethod
    async def revoke(self, token_id: str) -> bool:
        """Revoke one token. Returns False if it was unknown or already revoked."""
        pass

    @abstractmethod
    async def revoke_all_for_user(self, user_id: str) -> int:
        pass

    @abstractmethod
    async def delete_expired(self, now: datetime) -> int:
        pass


class UserRepository(ABC):

    @abstractmethod
    async def get_by_id(self, user_id: str) -> Optional[User]:
        pass

    @abstractmethod
    async def get_by_email(self, email: str) -> Optional[User]:
        pass

    @abstractmethod
    async def get_or_create(self, email: str, now: datetime) -> Tuple[User, bool]:
        """Return the user for ``email``, creating it if needed, and whether it was created."""
        pass

    @abstractmethod
    async def update_last_login(self, user_id: str, now: datetime) -> Optional[User]:
        pass
