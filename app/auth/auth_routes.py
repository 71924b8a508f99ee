from fastapi import APIRouter, Depends, Request, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from typing import List, Optional

from core.config import Settings
from schemas.auth import (
    ApiResponse, LogoutAllData, LogoutData, OTPRequest, OTPRequestData, OTPVerify,
    RefreshData, TokenRefresh, TokenResponse, UserData, UserResponse, VerifyData,
)
from services.auth_service import (
    ACCESS_COOKIE, REFRESH_COOKIE, AuthService, CookieDirective, TokenTransport,
)
from utils.helpers import get_client_ip

router = APIRouter()

bearer_scheme = HTTPBearer(auto_error=False)


# Dependencies
def get_auth_service(request: Request) -> AuthService:
    return request.app.state.container.auth_service


def get_settings(request: Request) -> Settings:
    return request.app.state.container.settings


def get_transport(request: Request) -> TokenTransport:
    """Cookie transport is opted into per request."""
    if request.headers.get("X-Auth-Method", "").lower() == "cookie":
        return TokenTransport.COOKIE
    if request.query_params.get("authMethod", "").lower() == "cookie":
        return TokenTransport.COOKIE
    return TokenTransport.BODY


def get_access_token(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Optional[str]:
    """Bearer header first, then the access token cookie."""
    if credentials and credentials.credentials:
        return credentials.credentials
    return request.cookies.get(ACCESS_COOKIE)


def apply_cookies(response: Response, cookies: List[CookieDirective], settings: Settings):
    for cookie in cookies:
        if cookie.value is None:
            response.delete_cookie(
                key=cookie.name,
                path=cookie.path,
                secure=settings.COOKIE_SECURE,
                httponly=settings.COOKIE_HTTPONLY,
                samesite=settings.COOKIE_SAMESITE,
            )
        else:
            response.set_cookie(
                key=cookie.name,
                value=cookie.value,
                max_age=cookie.max_age,
                path=cookie.path,
                secure=settings.COOKIE_SECURE,
                httponly=settings.COOKIE_HTTPONLY,
                samesite=settings.COOKIE_SAMESITE,
            )


@router.post("/request-otp", response_model=ApiResponse[OTPRequestData], response_model_exclude_none=True)
async def request_otp(
    otp_request: OTPRequest,
    request: Request,
    auth_service: AuthService = Depends(get_auth_service),
    settings: Settings = Depends(get_settings),
):
    """Email a sign-in code."""
    client_ip = get_client_ip(request, settings.TRUST_PROXY_HEADERS)
    result = await auth_service.request_code(otp_request.email, client_ip)

    return ApiResponse(
        message="Verification code sent to your email",
        data=OTPRequestData(
            email=result.email,
            expires_in_minutes=result.expires_in_minutes,
            cooldown_seconds=result.cooldown_seconds,
        ),
    )


@router.post("/verify-otp", response_model=ApiResponse[VerifyData], response_model_exclude_none=True)
async def verify_otp(
    otp_data: OTPVerify,
    request: Request,
    response: Response,
    transport: TokenTransport = Depends(get_transport),
    auth_service: AuthService = Depends(get_auth_service),
    settings: Settings = Depends(get_settings),
):
    """Exchange a sign-in code for tokens."""
    client_ip = get_client_ip(request, settings.TRUST_PROXY_HEADERS)
    result = await auth_service.verify_code(otp_data.email, otp_data.code, client_ip, transport)
    apply_cookies(response, result.cookies, settings)

    tokens = None
    if result.tokens is not None:
        tokens = TokenResponse(
            access_token=result.tokens.access_token,
            refresh_token=result.tokens.refresh_token,
            token_type=result.tokens.token_type,
            expires_in=result.tokens.expires_in,
            refresh_expires_in=result.tokens.refresh_expires_in,
        )

    return ApiResponse(
        message="Authentication successful",
        data=VerifyData(user=UserResponse.model_validate(result.user), tokens=tokens),
    )


@router.post("/refresh", response_model=ApiResponse[RefreshData], response_model_exclude_none=True)
async def refresh_token(
    request: Request,
    response: Response,
    token_data: Optional[TokenRefresh] = None,
    transport: TokenTransport = Depends(get_transport),
    auth_service: AuthService = Depends(get_auth_service),
    settings: Settings = Depends(get_settings),
):
    """Refresh access token using refresh token."""
    token = token_data.refresh_token if token_data else None
    if not token:
        token = request.cookies.get(REFRESH_COOKIE)

    result = await auth_service.refresh(token, transport)
    apply_cookies(response, result.cookies, settings)

    return ApiResponse(
        message="Token refreshed successfully",
        data=RefreshData(
            access_token=result.access_token,
            refresh_token=result.refresh_token,
            expires_in=result.expires_in,
        ),
    )


@router.get("/me", response_model=ApiResponse[UserData], response_model_exclude_none=True)
async def get_current_user(
    access_token: Optional[str] = Depends(get_access_token),
    auth_service: AuthService = Depends(get_auth_service),
):
    """Get current user information."""
    user = await auth_service.get_profile(access_token)
    return ApiResponse(data=UserData(user=UserResponse.model_validate(user)))


@router.post("/logout", response_model=ApiResponse[LogoutData])
async def logout(
    request: Request,
    response: Response,
    token_data: Optional[TokenRefresh] = None,
    access_token: Optional[str] = Depends(get_access_token),
    transport: TokenTransport = Depends(get_transport),
    auth_service: AuthService = Depends(get_auth_service),
    settings: Settings = Depends(get_settings),
):
    """Revoke the current session. Always succeeds."""
    token = token_data.refresh_token if token_data else None
    if not token:
        token = request.cookies.get(REFRESH_COOKIE)

    # Browsers that sent auth cookies get them cleared even in body mode
    if REFRESH_COOKIE in request.cookies or ACCESS_COOKIE in request.cookies:
        transport = TokenTransport.COOKIE

    cookies = await auth_service.logout(token, transport, access_token)
    apply_cookies(response, cookies, settings)

    return ApiResponse(message="Logged out successfully", data=LogoutData())


@router.post("/logout-all", response_model=ApiResponse[LogoutAllData])
async def logout_all(
    access_token: Optional[str] = Depends(get_access_token),
    auth_service: AuthService = Depends(get_auth_service),
):
    """Revoke every session of the current user."""
    revoked = await auth_service.logout_all(access_token)
    return ApiResponse(message="All sessions logged out", data=LogoutAllData(revoked=revoked))
