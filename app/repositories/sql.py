"""
SQLAlchemy-backed stores.

Each call opens its own session from the shared ``async_sessionmaker``.
Read-modify-write steps are single conditional UPDATE statements so concurrent
requests cannot both win.
"""
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncIterator, Optional, Tuple
import logging
import uuid

from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.attributes import set_committed_value

from core.errors import AppError, ErrorCode
from models.otp_code import OTPCode
from models.rate_limit import RateLimitRecord
from models.refresh_token import RefreshToken
from models.user import User
from repositories.base import (
    OTPRepository,
    RateLimitRepository,
    RefreshTokenRepository,
    UserRepository,
)
from utils.helpers import ensure_utc

logger = logging.getLogger(__name__)


def _as_utc(instance, *fields):
    """Some drivers (SQLite) hand back naive datetimes; tag them as UTC."""
    if instance is None:
        return None
    for field in fields:
        set_committed_value(instance, field, ensure_utc(getattr(instance, field)))
    return instance


class SqlRepository:

    def __init__(self, session_maker: async_sessionmaker):
        self.session_maker = session_maker

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        async with self.session_maker() as session:
            try:
                yield session
            except IntegrityError:
                await session.rollback()
                raise
            except SQLAlchemyError as exc:
                await session.rollback()
                logger.error(f"{type(self).__name__} query failed: {exc}")
                raise AppError.internal(ErrorCode.DATABASE_ERROR, "A database error occurred") from exc


class SqlOTPRepository(SqlRepository, OTPRepository):

    async def create(self, email: str, code_hash: str, expires_at: datetime, created_at: datetime) -> OTPCode:
        record = OTPCode(
            id=uuid.uuid4().hex,
            email=email,
            code_hash=code_hash,
            attempts=0,
            is_used=False,
            expires_at=expires_at,
            created_at=created_at,
        )
        async with self._session() as session:
            session.add(record)
            await session.commit()
        return record

    async def find_active_by_email(self, email: str, now: datetime) -> Optional[OTPCode]:
        async with self._session() as session:
            result = await session.execute(
                select(OTPCode)
                .where(
                    OTPCode.email == email,
                    OTPCode.is_used.is_(False),
                    OTPCode.expires_at > now,
                )
                .order_by(OTPCode.created_at.desc())
                .limit(1)
            )
            return _as_utc(result.scalar_one_or_none(), "expires_at", "created_at")

    async def find_unused_by_email(self, email: str) -> Optional[OTPCode]:
        async with self._session() as session:
            result = await session.execute(
                select(OTPCode)
                .where(OTPCode.email == email, OTPCode.is_used.is_(False))
                .order_by(OTPCode.created_at.desc())
                .limit(1)
            )
            return _as_utc(result.scalar_one_or_none(), "expires_at", "created_at")

    async def increment_attempts(self, otp_id: str) -> int:
        async with self._session() as session:
            result = await session.execute(
                update(OTPCode)
                .where(OTPCode.id == otp_id)
                .values(attempts=OTPCode.attempts + 1)
                .returning(OTPCode.attempts)
            )
            attempts = result.scalar_one_or_none()
            await session.commit()
        return attempts or 0

    async def try_consume_attempt(self, otp_id: str, max_attempts: int) -> Optional[int]:
        async with self._session() as session:
            result = await session.execute(
                update(OTPCode)
                .where(
                    OTPCode.id == otp_id,
                    OTPCode.is_used.is_(False),
                    OTPCode.attempts < max_attempts,
                )
                .values(attempts=OTPCode.attempts + 1)
                .returning(OTPCode.attempts)
            )
            attempts = result.scalar_one_or_none()
            await session.commit()
        return attempts

    async def mark_used(self, otp_id: str) -> bool:
        async with self._session() as session:
            result = await session.execute(
                update(OTPCode)
                .where(OTPCode.id == otp_id, OTPCode.is_used.is_(False))
                .values(is_used=True)
            )
            await session.commit()
        return result.rowcount == 1

    async def delete(self, otp_id: str) -> None:
        async with self._session() as session:
            await session.execute(delete(OTPCode).where(OTPCode.id == otp_id))
            await session.commit()

    async def delete_by_email(self, email: str) -> int:
        async with self._session() as session:
            result = await session.execute(delete(OTPCode).where(OTPCode.email == email))
            await session.commit()
        return result.rowcount

    async def delete_expired(self, now: datetime) -> int:
        async with self._session() as session:
            result = await session.execute(
                delete(OTPCode).where(or_(OTPCode.expires_at <= now, OTPCode.is_used.is_(True)))
            )
            await session.commit()
        return result.rowcount


class SqlRateLimitRepository(SqlRepository, RateLimitRepository):

    async def get(self, key: str) -> Optional[RateLimitRecord]:
        async with self._session() as session:
            record = await session.get(RateLimitRecord, key)
            return _as_utc(record, "reset_time", "created_at")

    async def consume(
        self,
        key: str,
        max_requests: int,
        reset_time: datetime,
        now: datetime,
    ) -> Tuple[RateLimitRecord, bool]:
        while True:
            async with self._session() as session:
                # Expired window: restart it
                result = await session.execute(
                    update(RateLimitRecord)
                    .where(RateLimitRecord.key == key, RateLimitRecord.reset_time <= now)
                    .values(count=1, reset_time=reset_time, created_at=now)
                )
                allowed = result.rowcount == 1

                # Live window with room left
                if not allowed:
                    result = await session.execute(
                        update(RateLimitRecord)
                        .where(RateLimitRecord.key == key, RateLimitRecord.count < max_requests)
                        .values(count=RateLimitRecord.count + 1)
                    )
                    allowed = result.rowcount == 1
                await session.commit()

                record = await session.get(RateLimitRecord, key, populate_existing=True)
                if record is not None:
                    return _as_utc(record, "reset_time", "created_at"), allowed

                # First hit for this key
                record = RateLimitRecord(key=key, count=1, reset_time=reset_time, created_at=now)
                session.add(record)
                try:
                    await session.commit()
                except IntegrityError:
                    # Lost the insert race, go round again
                    continue
                return record, True

    async def delete(self, key: str) -> None:
        async with self._session() as session:
            await session.execute(delete(RateLimitRecord).where(RateLimitRecord.key == key))
            await session.commit()

    async def delete_expired(self, now: datetime) -> int:
        async with self._session() as session:
            result = await session.execute(delete(RateLimitRecord).where(RateLimitRecord.reset_time <= now))
            await session.commit()
        return result.rowcount


class SqlRefreshTokenRepository(SqlRepository, RefreshTokenRepository):

    async def create(self, token_id: str, user_id: str, expires_at: datetime, created_at: datetime) -> RefreshToken:
        token = RefreshToken(
            id=token_id,
            user_id=user_id,
            is_revoked=False,
            expires_at=expires_at,
            created_at=created_at,
        )
        async with self._session() as session:
            session.add(token)
            await session.commit()
        return token

    async def get(self, token_id: str) -> Optional[RefreshToken]:
        async with self._session() as session:
            token = await session.get(RefreshToken, token_id)
            return _as_utc(token, "expires_at", "created_at", "last_used")

    async def touch(self, token_id: str, now: datetime) -> None:
        async with self._session() as session:
            await session.execute(update(RefreshToken).where(RefreshToken.id == token_id).values(last_used=now))
            await session.commit()

    async def revoke(self, token_id: str) -> bool:
        async with self._session() as session:
            result = await session.execute(
                update(RefreshToken)
                .where(RefreshToken.id == token_id, RefreshToken.is_revoked.is_(False))
                .values(is_revoked=True)
            )
            await session.commit()
        return result.rowcount == 1

    async def revoke_all_for_user(self, user_id: str) -> int:
        async with self._session() as session:
            result = await session.execute(
                update(RefreshToken)
                .where(RefreshToken.user_id == user_id, RefreshToken.is_revoked.is_(False))
                .values(is_revoked=True)
            )
            await session.commit()
        return result.rowcount

    async def delete_expired(self, now: datetime) -> int:
        async with self._session() as session:
            result = await session.execute(delete(RefreshToken).where(RefreshToken.expires_at <= now))
            await session.commit()
        return result.rowcount


class SqlUserRepository(SqlRepository, UserRepository):

    _datetime_fields = ("created_at", "updated_at", "last_login_at")

    async def get_by_id(self, user_id: str) -> Optional[User]:
        async with self._session() as session:
            user = await session.get(User, user_id)
            return _as_utc(user, *self._datetime_fields)

    async def get_by_email(self, email: str) -> Optional[User]:
        async with self._session() as session:
            result = await session.execute(select(User).where(User.email == email))
            return _as_utc(result.scalar_one_or_none(), *self._datetime_fields)

    async def get_or_create(self, email: str, now: datetime) -> Tuple[User, bool]:
        existing = await self.get_by_email(email)
        if existing is not None:
            return existing, False

        user = User(id=str(uuid.uuid4()), email=email, created_at=now, updated_at=now)
        try:
            async with self._session() as session:
                session.add(user)
                await session.commit()
        except IntegrityError:
            # Created concurrently by another request
            existing = await self.get_by_email(email)
            if existing is None:
                raise
            return existing, False
        return user, True

    async def update_last_login(self, user_id: str, now: datetime) -> Optional[User]:
        async with self._session() as session:
            await session.execute(
                update(User).where(User.id == user_id).values(last_login_at=now, updated_at=now)
            )
            await session.commit()
        return await self.get_by_id(user_id)
