# Models module
from .user import User
from .refresh_token import RefreshToken
from .otp_code import OTPCode
from .rate_limit import RateLimitRecord

__all__ = [
    "User",
    "RefreshToken",
    "OTPCode",
    "RateLimitRecord",
]
