from datetime import datetime
from typing import Any, Dict, Optional
from jose import jwt
from passlib.context import CryptContext
import secrets
import uuid

from core.config import settings

# OTP hashing. Codes only have 10^length possible values, so they get the same
# adaptive hash a password would.
otp_context = CryptContext(
    schemes=["bcrypt"],
    deprecated="auto",
    bcrypt__rounds=settings.OTP_HASH_ROUNDS,
)

OTP_DIGITS = "0123456789"


def generate_otp_code(length: int = 6) -> str:
    """Generate a numeric OTP code of the given length."""
    if length < 1:
        raise ValueError("OTP length must be positive")
    return "".join(secrets.choice(OTP_DIGITS) for _ in range(length))


def hash_otp_code(code: str) -> str:
    """Hash an OTP code for storage."""
    return otp_context.hash(code)


def verify_otp_code(code: str, code_hash: str) -> bool:
    """Verify an OTP code against its stored hash."""
    try:
        return otp_context.verify(code, code_hash)
    except (ValueError, TypeError):
        return False


def generate_token_id() -> str:
    """Generate a unique token identifier (jti)."""
    return uuid.uuid4().hex


def create_token(
    claims: Dict[str, Any],
    issued_at: datetime,
    expires_at: datetime,
    secret_key: Optional[str] = None,
    algorithm: Optional[str] = None,
) -> str:
    """Sign a JWT, by default with the configured secret."""
    to_encode = claims.copy()
    to_encode.update({
        "iat": int(issued_at.timestamp()),
        "exp": int(expires_at.timestamp()),
    })
    return jwt.encode(
        to_encode,
        secret_key or settings.SECRET_KEY,
        algorithm=algorithm or settings.ALGORITHM,
    )


def decode_token(
    token: str,
    secret_key: Optional[str] = None,
    algorithm: Optional[str] = None,
) -> Dict[str, Any]:
    """Verify a JWT signature and return its claims.

    Expiry is left to the caller so it can be checked against the service
    clock. Raises ``jose.JWTError`` on a bad signature or malformed token.
    """
    return jwt.decode(
        token,
        secret_key or settings.SECRET_KEY,
        algorithms=[algorithm or settings.ALGORITHM],
        options={"verify_exp": False},
    )
