from datetime import datetime, timezone
from fastapi import Request
from typing import Optional
import re

EMAIL_REGEX = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
MAX_EMAIL_LENGTH = 255


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from the database."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def normalize_email(email: str) -> str:
    return email.strip().lower()


def is_valid_email(email: str) -> bool:
    return 0 < len(email) <= MAX_EMAIL_LENGTH and EMAIL_REGEX.match(email) is not None


def get_client_ip(request: Request, trust_proxy_headers: bool = False) -> str:
    """
    Extract the client IP address.

    Proxy headers are client-controlled unless a proxy rewrites them, so they
    are read only when ``trust_proxy_headers`` is set.
    """
    ip_address = request.client.host if request.client else None
    if not trust_proxy_headers:
        return ip_address or "unknown"

    # Check for forwarded IP (behind proxy)
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        ip_address = forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        ip_address = real_ip

    return ip_address or "unknown"


def mask_email(email: str) -> str:
    """Mask the local part of an email for logging."""
    local, sep, domain = email.partition("@")
    if not sep or len(local) <= 2:
        return email
    return f"{local[:2]}***@{domain}"


def mask_ip(ip_address: str) -> str:
    parts = ip_address.split(".")
    if len(parts) == 4:
        return f"{parts[0]}.{parts[1]}.***.***"
    return ip_address[:4] + "***"


def mask_token(token: str) -> str:
    if len(token) <= 8:
        return "***"
    return f"{token[:4]}***{token[-4:]}"


def mask_key(key: str) -> str:
    """Mask the subject of a rate limit key such as ``otp_request:ip:1.2.3.4``."""
    prefix, sep, value = key.rpartition(":")
    if len(value) <= 4:
        return key
    masked = f"{value[:2]}***{value[-2:]}"
    return f"{prefix}{sep}{masked}" if sep else masked
