"""
In-process stores backed by dicts.

State lives in one Python process, so these are only correct for a single
instance. Every method completes without awaiting in between its read and its
write, which makes each call atomic on the event loop.
"""
from datetime import datetime
from typing import Dict, Optional, Tuple
import uuid

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


class InMemoryOTPRepository(OTPRepository):

    def __init__(self):
        self._records: Dict[str, OTPCode] = {}

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
        self._records[record.id] = record
        return record

    def _unused(self, email: str):
        return [r for r in self._records.values() if r.email == email and not r.is_used]

    async def find_active_by_email(self, email: str, now: datetime) -> Optional[OTPCode]:
        active = [r for r in self._unused(email) if r.expires_at > now]
        return max(active, key=lambda r: r.created_at, default=None)

    async def find_unused_by_email(self, email: str) -> Optional[OTPCode]:
        return max(self._unused(email), key=lambda r: r.created_at, default=None)

    async def increment_attempts(self, otp_id: str) -> int:
        record = self._records.get(otp_id)
        if record is None:
            return 0
        record.attempts += 1
        return record.attempts

    async def try_consume_attempt(self, otp_id: str, max_attempts: int) -> Optional[int]:
        record = self._records.get(otp_id)
        if record is None or record.is_used or record.attempts >= max_attempts:
            return None
        record.attempts += 1
        return record.attempts

    async def mark_used(self, otp_id: str) -> bool:
        record = self._records.get(otp_id)
        if record is None or record.is_used:
            return False
        record.is_used = True
        return True

    async def delete(self, otp_id: str) -> None:
        self._records.pop(otp_id, None)

    async def delete_by_email(self, email: str) -> int:
        ids = [r.id for r in self._records.values() if r.email == email]
        for otp_id in ids:
            del self._records[otp_id]
        return len(ids)

    async def delete_expired(self, now: datetime) -> int:
        ids = [r.id for r in self._records.values() if r.expires_at <= now or r.is_used]
        for otp_id in ids:
            del self._records[otp_id]
        return len(ids)


class InMemoryRateLimitRepository(RateLimitRepository):

    def __init__(self):
        self._records: Dict[str, RateLimitRecord] = {}

    async def get(self, key: str) -> Optional[RateLimitRecord]:
        return self._records.get(key)

    async def consume(
        self,
        key: str,
        max_requests: int,
        reset_time: datetime,
        now: datetime,
    ) -> Tuple[RateLimitRecord, bool]:
        record = self._records.get(key)
        if record is None or now >= record.reset_time:
            record = RateLimitRecord(key=key, count=1, reset_time=reset_time, created_at=now)
            self._records[key] = record
            return record, True

        if record.count < max_requests:
            record.count += 1
            return record, True

        return record, False

    async def delete(self, key: str) -> None:
        self._records.pop(key, None)

    async def delete_expired(self, now: datetime) -> int:
        keys = [k for k, r in self._records.items() if r.reset_time <= now]
        for key in keys:
            del self._records[key]
        return len(keys)


class InMemoryRefreshTokenRepository(RefreshTokenRepository):

    def __init__(self):
        self._tokens: Dict[str, RefreshToken] = {}

    async def create(self, token_id: str, user_id: str, expires_at: datetime, created_at: datetime) -> RefreshToken:
        token = RefreshToken(
            id=token_id,
            user_id=user_id,
            is_revoked=False,
            expires_at=expires_at,
            created_at=created_at,
            last_used=None,
        )
        self._tokens[token_id] = token
        return token

    async def get(self, token_id: str) -> Optional[RefreshToken]:
        return self._tokens.get(token_id)

    async def touch(self, token_id: str, now: datetime) -> None:
        token = self._tokens.get(token_id)
        if token is not None:
            token.last_used = now

    async def revoke(self, token_id: str) -> bool:
        token = self._tokens.get(token_id)
        if token is None or token.is_revoked:
            return False
        token.is_revoked = True
        return True

    async def revoke_all_for_user(self, user_id: str) -> int:
        revoked = 0
        for token in self._tokens.values():
            if token.user_id == user_id and not token.is_revoked:
                token.is_revoked = True
                revoked += 1
        return revoked

    async def delete_expired(self, now: datetime) -> int:
        ids = [t.id for t in self._tokens.values() if t.expires_at <= now]
        for token_id in ids:
            del self._tokens[token_id]
        return len(ids)


class InMemoryUserRepository(UserRepository):

    def __init__(self):
        self._users: Dict[str, User] = {}

    async def get_by_id(self, user_id: str) -> Optional[User]:
        return self._users.get(user_id)

    async def get_by_email(self, email: str) -> Optional[User]:
        return next((u for u in self._users.values() if u.email == email), None)

    async def get_or_create(self, email: str, now: datetime) -> Tuple[User, bool]:
        existing = next((u for u in self._users.values() if u.email == email), None)
        if existing is not None:
            return existing, False

        user = User(
            id=str(uuid.uuid4()),
            email=email,
            created_at=now,
            updated_at=now,
            last_login_at=None,
        )
        self._users[user.id] = user
        return user, True

    async def update_last_login(self, user_id: str, now: datetime) -> Optional[User]:
        user = self._users.get(user_id)
        if user is not None:
            user.last_login_at = now
            user.updated_at = now
        return user
