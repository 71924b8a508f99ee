from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional
import asyncio
import logging

import redis.asyncio as redis

from core.config import Settings
from core.email_utils import EmailSender, get_email_sender
from db.database import Database, close_redis, create_redis_client
from repositories.base import (
    OTPRepository,
    RateLimitRepository,
    RefreshTokenRepository,
    UserRepository,
)
from repositories.memory import (
    InMemoryOTPRepository,
    InMemoryRateLimitRepository,
    InMemoryRefreshTokenRepository,
    InMemoryUserRepository,
)
from repositories.redis_store import RedisRateLimitRepository
from repositories.sql import (
    SqlOTPRepository,
    SqlRateLimitRepository,
    SqlRefreshTokenRepository,
    SqlUserRepository,
)
from services.auth_service import AuthService
from services.otp_service import OtpService
from services.rate_limit import RateLimitService
from services.token_service import TokenService
from services.user_service import UserService
from utils.helpers import utcnow

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    auth_service: AuthService
    email_sender: EmailSender
    database: Optional[Database] = None
    redis_client: Optional[redis.Redis] = None

    async def startup(self):
        if self.database is not None:
            await self.database.init()

    async def shutdown(self):
        if self.database is not None:
            await self.database.close()
        await close_redis(self.redis_client)


def build_container(
    settings: Settings,
    clock: Callable[[], datetime] = utcnow,
    email_sender: Optional[EmailSender] = None,
) -> ServiceContainer:
    """Wire repositories and services for the configured backends."""
    storage = settings.STORAGE_BACKEND.lower()
    database = None
    redis_client = None

    otp_repo: OTPRepository
    rate_repo: RateLimitRepository
    token_repo: RefreshTokenRepository
    user_repo: UserRepository

    if storage == "memory":
        otp_repo = InMemoryOTPRepository()
        token_repo = InMemoryRefreshTokenRepository()
        user_repo = InMemoryUserRepository()
    elif storage == "database":
        database = Database.from_settings(settings)
        otp_repo = SqlOTPRepository(database.session_maker)
        token_repo = SqlRefreshTokenRepository(database.session_maker)
        user_repo = SqlUserRepository(database.session_maker)
    else:
        raise ValueError(f"Unsupported STORAGE_BACKEND '{settings.STORAGE_BACKEND}'")

    rate_backend = settings.rate_limit_backend
    if rate_backend == "memory":
        rate_repo = InMemoryRateLimitRepository()
    elif rate_backend == "database":
        if database is None:
            database = Database.from_settings(settings)
        rate_repo = SqlRateLimitRepository(database.session_maker)
    elif rate_backend == "redis":
        redis_client = create_redis_client(settings)
        rate_repo = RedisRateLimitRepository(redis_client)
    else:
        raise ValueError(f"Unsupported RATE_LIMIT_BACKEND '{rate_backend}'")

    sender = email_sender or get_email_sender(settings)

    user_service = UserService(user_repo, clock=clock)
    auth_service = AuthService(
        otp_service=OtpService(otp_repo, settings, clock=clock),
        rate_limit_service=RateLimitService(rate_repo, settings, clock=clock),
        token_service=TokenService(token_repo, settings, clock=clock),
        user_service=user_service,
        email_sender=sender,
        settings=settings,
        clock=clock,
    )

    logger.info(f"Services ready (storage={storage}, rate_limits={rate_backend}, email={type(sender).__name__})")
    return ServiceContainer(
        settings=settings,
        auth_service=auth_service,
        email_sender=sender,
        database=database,
        redis_client=redis_client,
    )


async def run_periodic_cleanup(auth_service: AuthService, interval_seconds: int):
    """Run the cleanup sweep every ``interval_seconds`` until cancelled."""
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            await auth_service.run_cleanup_tasks()
        except Exception as e:
            logger.error(f"Periodic cleanup failed: {e}")
