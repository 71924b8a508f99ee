"""
Access and refresh token handling.

Tokens are HS256 JWTs. Every refresh token has a row in the refresh token
store keyed by its ``jti``; access tokens carry that id in ``sid``. Revoking
the row therefore invalidates the refresh token and every access token minted
from it.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Tuple
import logging

from jose import JWTError

from core.config import Settings, settings as default_settings
from core.errors import AppError, ErrorCode
from core.security import create_token, decode_token, generate_token_id
from models.user import User
from repositories.base import RefreshTokenRepository
from utils.helpers import mask_token, utcnow

logger = logging.getLogger(__name__)

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"


@dataclass
class TokenClaims:
    user_id: str
    email: str
    token_type: str
    token_id: str
    session_id: str
    issued_at: datetime
    expires_at: datetime


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    refresh_expires_in: int
    token_type: str = "bearer"


@dataclass
class AccessGrant:
    access_token: str
    expires_in: int
    refresh_token: Optional[str] = None
    refresh_expires_in: Optional[int] = None


class TokenService:

    def __init__(
        self,
        repository: RefreshTokenRepository,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.repository = repository
        self.settings = settings or default_settings
        self.clock = clock

    @property
    def access_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.ACCESS_TOKEN_EXPIRE_MINUTES)

    @property
    def refresh_ttl(self) -> timedelta:
        return timedelta(days=self.settings.REFRESH_TOKEN_EXPIRE_DAYS)

    def _encode(self, claims: dict, issued_at: datetime, expires_at: datetime) -> str:
        return create_token(claims, issued_at, expires_at, self.settings.SECRET_KEY, self.settings.ALGORITHM)

    def _create_access_token(self, user_id: str, email: str, session_id: str, now: datetime) -> str:
        return self._encode(
            {
                "sub": user_id,
                "email": email,
                "type": ACCESS_TOKEN_TYPE,
                "jti": generate_token_id(),
                "sid": session_id,
            },
            now,
            now + self.access_ttl,
        )

    async def _create_refresh_token(self, user_id: str, email: str, now: datetime) -> Tuple[str, str]:
        token_id = generate_token_id()
        expires_at = now + self.refresh_ttl
        await self.repository.create(token_id, user_id, expires_at, now)
        token = self._encode(
            {
                "sub": user_id,
                "email": email,
                "type": REFRESH_TOKEN_TYPE,
                "jti": token_id,
            },
            now,
            expires_at,
        )
        return token, token_id

    async def issue(self, user: User) -> TokenPair:
        """Mint a refresh session and an access token bound to it."""
        now = self.clock()
        refresh_token, session_id = await self._create_refresh_token(user.id, user.email, now)
        access_token = self._create_access_token(user.id, user.email, session_id, now)

        logger.info(f"Issued tokens for user {user.id}")
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=int(self.access_ttl.total_seconds()),
            refresh_expires_in=int(self.refresh_ttl.total_seconds()),
        )

    def _decode(self, token: str, expected_type: str, invalid_code: ErrorCode) -> TokenClaims:
        """Check signature, type and expiry against the service clock."""
        try:
            payload = decode_token(token, self.settings.SECRET_KEY, self.settings.ALGORITHM)
        except JWTError:
            raise AppError.unauthorized(invalid_code, "Invalid token")

        try:
            claims = TokenClaims(
                user_id=str(payload["sub"]),
                email=payload.get("email", ""),
                token_type=payload["type"],
                token_id=payload["jti"],
                session_id=payload.get("sid") or payload["jti"],
                issued_at=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
                expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            )
        except (KeyError, TypeError, ValueError):
            raise AppError.unauthorized(invalid_code, "Invalid token")

        if claims.token_type != expected_type:
            raise AppError.unauthorized(invalid_code, "Invalid token type")

        if self.clock() >= claims.expires_at:
            raise AppError.unauthorized(ErrorCode.TOKEN_EXPIRED, "Token has expired")

        return claims

    async def _check_session(self, claims: TokenClaims, invalid_code: ErrorCode):
        session = await self.repository.get(claims.session_id)
        if session is None or session.is_revoked or session.user_id != claims.user_id:
            raise AppError.unauthorized(invalid_code, "Token has been revoked")
        return session

    async def verify_access(self, token: str) -> TokenClaims:
        claims = self._decode(token, ACCESS_TOKEN_TYPE, ErrorCode.TOKEN_INVALID)
        await self._check_session(claims, ErrorCode.TOKEN_INVALID)
        return claims

    async def verify_refresh(self, token: str) -> TokenClaims:
        """Validate a refresh token without changing any state."""
        claims = self._decode(token, REFRESH_TOKEN_TYPE, ErrorCode.REFRESH_TOKEN_INVALID)
        await self._check_session(claims, ErrorCode.REFRESH_TOKEN_INVALID)
        return claims

    async def rotate(self, refresh_token: str) -> AccessGrant:
        """
        Exchange a refresh token for a new access token.

        With REFRESH_TOKEN_ROTATION enabled the presented refresh token is
        revoked and a new one is returned alongside.
        """
        claims = await self.verify_refresh(refresh_token)
        now = self.clock()

        if not self.settings.REFRESH_TOKEN_ROTATION:
            await self.repository.touch(claims.token_id, now)
            return AccessGrant(
                access_token=self._create_access_token(claims.user_id, claims.email, claims.token_id, now),
                expires_in=int(self.access_ttl.total_seconds()),
            )

        if not await self.repository.revoke(claims.token_id):
            # Already rotated by a concurrent request
            raise AppError.unauthorized(ErrorCode.REFRESH_TOKEN_INVALID, "Token has been revoked")

        new_refresh, session_id = await self._create_refresh_token(claims.user_id, claims.email, now)
        logger.info(f"Rotated refresh token {mask_token(refresh_token)} for user {claims.user_id}")
        return AccessGrant(
            access_token=self._create_access_token(claims.user_id, claims.email, session_id, now),
            expires_in=int(self.access_ttl.total_seconds()),
            refresh_token=new_refresh,
            refresh_expires_in=int(self.refresh_ttl.total_seconds()),
        )

    async def _revoke_session_of(self, token: str, token_type: str, claim: str) -> bool:
        # Expiry is not checked: an expired token may still end its session
        try:
            payload = decode_token(token, self.settings.SECRET_KEY, self.settings.ALGORITHM)
        except JWTError:
            logger.info(f"Ignoring revoke of invalid token {mask_token(token)}")
            return False

        session_id = payload.get(claim)
        if payload.get("type") != token_type or not session_id:
            return False

        revoked = await self.repository.revoke(session_id)
        if revoked:
            logger.info(f"Revoked session {mask_token(session_id)} via {token_type} token")
        return revoked

    async def revoke(self, refresh_token: str) -> bool:
        """Revoke a refresh token. Invalid, expired or unknown tokens are ignored."""
        return await self._revoke_session_of(refresh_token, REFRESH_TOKEN_TYPE, "jti")

    async def revoke_by_access_token(self, access_token: str) -> bool:
        """Revoke the session an access token was minted from (its ``sid``)."""
        return await self._revoke_session_of(access_token, ACCESS_TOKEN_TYPE, "sid")

    async def revoke_all_for_user(self, user_id: str) -> int:
        count = await self.repository.revoke_all_for_user(user_id)
        logger.info(f"Revoked {count} session(s) for user {user_id}")
        return count

    async def cleanup_expired_sessions(self) -> int:
        try:
            deleted = await self.repository.delete_expired(self.clock())
        except Exception as e:
            logger.error(f"Failed to clean up refresh tokens: {e}")
            return 0
        if deleted:
            logger.info(f"Cleaned up {deleted} expired refresh token(s)")
        return deleted
