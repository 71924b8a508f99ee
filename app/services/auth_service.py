"""
Passwordless sign-in flow: request a code by email, exchange it for tokens,
refresh and log out.

Per email the flow moves idle -> code requested -> authenticated. A resend
stays in "code requested" (subject to the cooldown). Expiry or running out of
attempts drops back to idle and a new code has to be requested.

The service never touches HTTP. In cookie transport it returns
``CookieDirective`` values that the route layer writes onto the response.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional
import asyncio
import logging
import re

from core.config import Settings, settings as default_settings
from core.email_utils import EmailSender, build_otp_email
from core.errors import AppError, ErrorCode
from models.user import User
from services.otp_service import OtpService
from services.rate_limit import RateLimitService
from services.token_service import TokenService, TokenPair
from services.user_service import UserService
from utils.helpers import is_valid_email, mask_email, mask_ip, mask_token, normalize_email, utcnow

logger = logging.getLogger(__name__)

ACCESS_COOKIE = "accessToken"
REFRESH_COOKIE = "refreshToken"


class TokenTransport(str, Enum):
    BODY = "body"
    COOKIE = "cookie"


@dataclass
class CookieDirective:
    """A cookie to set, or to clear when ``value`` is None."""
    name: str
    value: Optional[str]
    max_age: int
    path: str = "/"


@dataclass
class CodeRequestResult:
    email: str
    expires_in_minutes: int
    cooldown_seconds: int


@dataclass
class AuthResult:
    user: User
    tokens: Optional[TokenPair]
    cookies: List[CookieDirective] = field(default_factory=list)


@dataclass
class RefreshResult:
    access_token: Optional[str]
    expires_in: int
    refresh_token: Optional[str] = None
    cookies: List[CookieDirective] = field(default_factory=list)


class AuthService:

    def __init__(
        self,
        otp_service: OtpService,
        rate_limit_service: RateLimitService,
        token_service: TokenService,
        user_service: UserService,
        email_sender: EmailSender,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.otp_service = otp_service
        self.rate_limit_service = rate_limit_service
        self.token_service = token_service
        self.user_service = user_service
        self.email_sender = email_sender
        self.settings = settings or default_settings
        self.clock = clock
        self._code_pattern = re.compile(rf"[0-9]{{{self.settings.OTP_LENGTH}}}")

    # Validation
    def _validate_email(self, email: str) -> str:
        normalized = normalize_email(email or "")
        if not is_valid_email(normalized):
            raise AppError.bad_request(ErrorCode.INVALID_EMAIL, "Please provide a valid email address")
        return normalized

    def _validate_code(self, code: str) -> str:
        code = (code or "").strip()
        if not self._code_pattern.fullmatch(code):
            raise AppError.bad_request(
                ErrorCode.INVALID_OTP_CODE,
                f"Code must be exactly {self.settings.OTP_LENGTH} digits",
            )
        return code

    # Request code
    async def request_code(self, email: str, client_ip: str) -> CodeRequestResult:
        email = self._validate_email(email)

        await self.rate_limit_service.check_otp_cooldown(email)
        await self.rate_limit_service.enforce_rate_limit(
            f"otp_request:email:{email}",
            self.settings.OTP_REQUEST_MAX_PER_EMAIL,
            self.settings.OTP_REQUEST_WINDOW_MS,
        )
        await self.rate_limit_service.enforce_rate_limit(
            f"otp_request:ip:{client_ip}",
            self.settings.OTP_REQUEST_MAX_PER_IP,
            self.settings.OTP_REQUEST_WINDOW_MS,
        )

        code = await self.otp_service.generate_otp(email)
        await self._send_code(email, code)

        logger.info(f"OTP requested for {mask_email(email)} from {mask_ip(client_ip)}")
        return CodeRequestResult(
            email=email,
            expires_in_minutes=self.settings.OTP_EXPIRE_MINUTES,
            cooldown_seconds=self.settings.OTP_RESEND_COOLDOWN_SECONDS,
        )

    async def _send_code(self, email: str, code: str):
        message = build_otp_email(email, code, self.settings.OTP_EXPIRE_MINUTES, self.settings.APP_NAME)
        try:
            await asyncio.wait_for(
                self.email_sender.send(message),
                timeout=self.settings.EMAIL_SEND_TIMEOUT_SECONDS,
            )
        except asyncio.TimeoutError:
            logger.error(f"Timed out sending OTP email to {mask_email(email)}")
            raise AppError.internal(ErrorCode.EMAIL_SEND_FAILED, "Failed to send verification code, please try again")
        except Exception as e:
            logger.error(f"Failed to send OTP email to {mask_email(email)}: {e}")
            raise AppError.internal(ErrorCode.EMAIL_SEND_FAILED, "Failed to send verification code, please try again")

    # Verify code
    async def verify_code(
        self,
        email: str,
        code: str,
        client_ip: str,
        transport: TokenTransport = TokenTransport.BODY,
    ) -> AuthResult:
        email = self._validate_email(email)
        code = self._validate_code(code)

        await self.rate_limit_service.enforce_rate_limit(
            f"otp_verify:ip:{client_ip}",
            self.settings.OTP_VERIFY_MAX_PER_IP,
            self.settings.OTP_VERIFY_WINDOW_MS,
        )

        await self.otp_service.verify_otp(email, code)

        user = await self.user_service.get_or_create_user(email)
        user = await self.user_service.record_login(user)
        tokens = await self.token_service.issue(user)

        logger.info(f"User {user.id} authenticated ({mask_email(email)}, {mask_ip(client_ip)})")

        if transport == TokenTransport.COOKIE:
            return AuthResult(user=user, tokens=None, cookies=self._token_cookies(tokens.access_token, tokens.refresh_token))
        return AuthResult(user=user, tokens=tokens)

    # Refresh
    async def refresh(self, refresh_token: Optional[str], transport: TokenTransport = TokenTransport.BODY) -> RefreshResult:
        if not refresh_token:
            raise AppError.unauthorized(ErrorCode.REFRESH_TOKEN_INVALID, "Refresh token is required")

        claims = await self.token_service.verify_refresh(refresh_token)
        if await self.user_service.find_user(claims.user_id) is None:
            raise AppError.unauthorized(ErrorCode.REFRESH_TOKEN_INVALID, "Account no longer exists")

        grant = await self.token_service.rotate(refresh_token)
        logger.info(f"Access token refreshed for user {claims.user_id}")

        if transport == TokenTransport.COOKIE:
            return RefreshResult(
                access_token=None,
                expires_in=grant.expires_in,
                cookies=self._token_cookies(grant.access_token, grant.refresh_token),
            )
        return RefreshResult(
            access_token=grant.access_token,
            expires_in=grant.expires_in,
            refresh_token=grant.refresh_token,
        )

    # Logout
    async def logout(
        self,
        refresh_token: Optional[str],
        transport: TokenTransport = TokenTransport.BODY,
        access_token: Optional[str] = None,
    ) -> List[CookieDirective]:
        """
        End the caller's session. Never fails.

        The refresh token names the session when present. Otherwise the
        access token's session is revoked, which covers cookie clients whose
        refresh cookie is scoped away from this endpoint.
        """
        revoked = False
        if refresh_token:
            revoked = await self.token_service.revoke(refresh_token)
            logger.info(f"Logged out session {mask_token(refresh_token)}")
        if not revoked and access_token:
            revoked = await self.token_service.revoke_by_access_token(access_token)
            logger.info(f"Logged out session of access token {mask_token(access_token)}")

        if transport == TokenTransport.COOKIE:
            return self._clear_cookies()
        return []

    async def logout_all(self, access_token: Optional[str]) -> int:
        claims = await self._verify_access(access_token)
        return await self.token_service.revoke_all_for_user(claims.user_id)

    # Profile
    async def get_profile(self, access_token: Optional[str]) -> User:
        claims = await self._verify_access(access_token)
        return await self.user_service.get_user(claims.user_id)

    async def _verify_access(self, access_token: Optional[str]):
        if not access_token:
            raise AppError.unauthorized(ErrorCode.UNAUTHORIZED, "Authentication required")
        return await self.token_service.verify_access(access_token)

    # Cookies
    def _token_cookies(self, access_token: str, refresh_token: Optional[str]) -> List[CookieDirective]:
        cookies = [
            CookieDirective(
                name=ACCESS_COOKIE,
                value=access_token,
                max_age=int(self.token_service.access_ttl.total_seconds()),
            )
        ]
        if refresh_token:
            cookies.append(CookieDirective(
                name=REFRESH_COOKIE,
                value=refresh_token,
                max_age=int(self.token_service.refresh_ttl.total_seconds()),
                path=self.settings.REFRESH_COOKIE_PATH,
            ))
        return cookies

    def _clear_cookies(self) -> List[CookieDirective]:
        return [
            CookieDirective(name=ACCESS_COOKIE, value=None, max_age=0),
            CookieDirective(name=REFRESH_COOKIE, value=None, max_age=0, path=self.settings.REFRESH_COOKIE_PATH),
        ]

    # Maintenance
    async def run_cleanup_tasks(self) -> Dict[str, int]:
        """Sweep expired codes, rate limit windows and sessions. Never raises."""
        results = {
            "otps": await self.otp_service.cleanup_expired_otps(),
            "rate_limits": await self.rate_limit_service.cleanup_expired_records(),
            "sessions": await self.token_service.cleanup_expired_sessions(),
        }
        logger.debug(f"Cleanup finished: {results}")
        return results
