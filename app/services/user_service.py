from datetime import datetime
from typing import Callable, Optional
import logging

from core.errors import AppError, ErrorCode
from models.user import User
from repositories.base import UserRepository
from utils.helpers import mask_email, utcnow

logger = logging.getLogger(__name__)


class UserService:

    def __init__(self, repository: UserRepository, clock: Callable[[], datetime] = utcnow):
        self.repository = repository
        self.clock = clock

    async def get_or_create_user(self, email: str) -> User:
        user, created = await self.repository.get_or_create(email, self.clock())
        if created:
            logger.info(f"Created user {user.id} for {mask_email(email)}")
        return user

    async def find_user(self, user_id: str) -> Optional[User]:
        return await self.repository.get_by_id(user_id)

    async def get_user(self, user_id: str) -> User:
        """Load a user or raise USER_NOT_FOUND."""
        user = await self.repository.get_by_id(user_id)
        if user is None:
            raise AppError.not_found(ErrorCode.USER_NOT_FOUND, "User not found")
        return user

    async def record_login(self, user: User) -> User:
        updated = await self.repository.update_last_login(user.id, self.clock())
        return updated or user
