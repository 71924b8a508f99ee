from pydantic import BaseModel, ConfigDict, EmailStr, field_validator
from pydantic.alias_generators import to_camel
from typing import Any, Dict, Generic, List, Optional, TypeVar
from datetime import datetime

T = TypeVar("T")


class CamelModel(BaseModel):
    """JSON keys are camelCase; Python attributes stay snake_case."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


# Request schemas
class OTPRequest(CamelModel):
    email: EmailStr

    @field_validator("email", mode="before")
    @classmethod
    def normalize_email(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower()
        return value


class OTPVerify(OTPRequest):
    code: str


class TokenRefresh(CamelModel):
    refresh_token: Optional[str] = None


# Response payloads
class UserResponse(CamelModel):
    id: str
    email: str
    last_login_at: Optional[datetime] = None


class TokenResponse(CamelModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    refresh_expires_in: int


class OTPRequestData(CamelModel):
    email: str
    expires_in_minutes: int
    cooldown_seconds: int


class VerifyData(CamelModel):
    user: UserResponse
    tokens: Optional[TokenResponse] = None


class RefreshData(CamelModel):
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_in: int


class UserData(CamelModel):
    user: UserResponse


class LogoutData(CamelModel):
    """Logout carries no payload."""


class LogoutAllData(CamelModel):
    revoked: int


class HealthData(CamelModel):
    status: str
    environment: str
    version: str


# Envelopes
class ApiResponse(CamelModel, Generic[T]):
    success: bool = True
    message: Optional[str] = None
    data: Optional[T] = None


class ErrorDetail(CamelModel):
    code: str
    message: str
    details: Optional[Any] = None


class ErrorResponse(CamelModel):
    success: bool = False
    error: ErrorDetail


def error_body(code: str, message: str, details: Optional[Any] = None) -> Dict[str, Any]:
    """Serialized error envelope, omitting ``details`` when there are none."""
    return ErrorResponse(error=ErrorDetail(code=code, message=message, details=details)).model_dump(
        by_alias=True,
        exclude_none=True,
    )


def validation_details(errors: List[Dict[str, Any]]) -> List[Dict[str, str]]:
    """Flatten pydantic errors into ``{field, message}`` pairs."""
    details = []
    for error in errors:
        loc = [str(part) for part in error.get("loc", ()) if part != "body"]
        details.append({"field": ".".join(loc) or "body", "message": error.get("msg", "Invalid value")})
    return details
