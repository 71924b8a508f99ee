from enum import Enum
from typing import Any, Optional

from fastapi import status


class ErrorCode(str, Enum):
    # Authentication
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    TOKEN_INVALID = "TOKEN_INVALID"
    REFRESH_TOKEN_INVALID = "REFRESH_TOKEN_INVALID"
    UNAUTHORIZED = "UNAUTHORIZED"

    # OTP lifecycle
    OTP_INVALID = "OTP_INVALID"
    OTP_EXPIRED = "OTP_EXPIRED"
    OTP_MAX_ATTEMPTS_EXCEEDED = "OTP_MAX_ATTEMPTS_EXCEEDED"
    OTP_COOLDOWN_ACTIVE = "OTP_COOLDOWN_ACTIVE"
    OTP_NOT_FOUND = "OTP_NOT_FOUND"

    # Validation
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_EMAIL = "INVALID_EMAIL"
    INVALID_OTP_CODE = "INVALID_OTP_CODE"

    # Accounts
    USER_NOT_FOUND = "USER_NOT_FOUND"

    # Rate limiting
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"

    # Upstream / system
    EMAIL_SEND_FAILED = "EMAIL_SEND_FAILED"
    DATABASE_ERROR = "DATABASE_ERROR"
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"
    ENDPOINT_NOT_FOUND = "ENDPOINT_NOT_FOUND"


class AppError(Exception):
    """Domain error that reaches the client unchanged.

    Raised at the point of detection with its code and HTTP status; the
    exception handler in ``main`` serializes it into the error envelope.
    """

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR,
        details: Optional[Any] = None,
    ):
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details

    def __repr__(self):
        return f"<AppError(code='{self.code.value}', status_code={self.status_code})>"

    @property
    def retry_after(self) -> Optional[int]:
        if isinstance(self.details, dict):
            return self.details.get("retryAfter")
        return None

    @classmethod
    def bad_request(cls, code: ErrorCode, message: str, details: Optional[Any] = None) -> "AppError":
        return cls(code, message, status.HTTP_400_BAD_REQUEST, details)

    @classmethod
    def unauthorized(cls, code: ErrorCode, message: str, details: Optional[Any] = None) -> "AppError":
        return cls(code, message, status.HTTP_401_UNAUTHORIZED, details)

    @classmethod
    def not_found(cls, code: ErrorCode, message: str, details: Optional[Any] = None) -> "AppError":
        return cls(code, message, status.HTTP_404_NOT_FOUND, details)

    @classmethod
    def too_many_requests(cls, code: ErrorCode, message: str, details: Optional[Any] = None) -> "AppError":
        return cls(code, message, status.HTTP_429_TOO_MANY_REQUESTS, details)

    @classmethod
    def internal(cls, code: ErrorCode, message: str, details: Optional[Any] = None) -> "AppError":
        return cls(code, message, status.HTTP_500_INTERNAL_SERVER_ERROR, details)
