from __future__ import annotations

from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, Request, Response
from fastapi.responses import RedirectResponse

from shelfkeeper.api.schemas import (
    AuthResponse,
    EmailVerificationRequest,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    MessageResponse,
    OAuthStartResponse,
    PasswordChangeRequest,
    PasswordResetConfirm,
    SignupRequest,
    TokenRefreshRequest,
    TokenResponse,
    UpdateUserRoleRequest,
    UserListResponse,
    UserResponse,
)
from shelfkeeper.config import TokenDelivery
from shelfkeeper.logging import get_logger
from shelfkeeper.service.auth import AuthContext, AuthResult
from shelfkeeper.service.errors import OAuthLinkError
from shelfkeeper.service.runtime import check_rate_limit, get_runtime
from shelfkeeper.storage.models import Role, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


class RateLimitInfo:
    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Consume one request from ``key``'s bucket or raise 429."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        logger.info("rate_limited", bucket=key.split(":", 1)[0], retry_after=reset_seconds)
        raise _http_error(
            "rate_limited",
            "too many requests, please try again later",
            status_code=429,
            details={"retry_after": reset_seconds},
        )
    return info


def _client_host(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _user_response(user: User) -> UserResponse:
    return UserResponse(**user.to_public())


def _auth_response(result: AuthResult) -> AuthResponse:
    tokens = result.tokens
    return AuthResponse(
        user=_user_response(result.user),
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        token_type=tokens.token_type,
        access_expires_at=tokens.access_expires_at,
        refresh_expires_at=tokens.refresh_expires_at,
        verification_email_sent=result.verification_email_sent,
    )


# authentication dependencies


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    return await get_runtime().gate.admit(authorization)


async def get_admin_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    return await get_runtime().gate.admit(authorization, required_role=Role.ADMIN.value)


# auth


@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(body: SignupRequest, request: Request, response: Response):
    """Register an email/password account and return a token pair.

    The account starts unverified; a verification link is mailed. If mailing
    fails the account still exists and ``verification_email_sent`` is false.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"signup:{_client_host(request)}",
        runtime.settings.signup_rate_limit,
        runtime.settings.signup_rate_window_seconds,
        response=response,
    )
    result = await runtime.auth.signup(body.email, body.password)
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.email}",
        runtime.settings.login_rate_limit,
        runtime.settings.login_rate_window_seconds,
        response=response,
    )
    result = await runtime.auth.login(body.email, body.password)
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest, request: Request, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"refresh:{_client_host(request)}",
        runtime.settings.refresh_rate_limit,
        runtime.settings.refresh_rate_window_seconds,
        response=response,
    )
    tokens = await runtime.auth.refresh(body.refresh_token)
    return Envelope(
        status="ok",
        data=TokenResponse(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            token_type=tokens.token_type,
            access_expires_at=tokens.access_expires_at,
            refresh_expires_at=tokens.refresh_expires_at,
        ),
    )


@router.get("/auth/profile", response_model=Envelope, tags=["auth"])
async def get_profile(principal: AuthContext = Depends(get_user)):
    user = await get_runtime().auth.get_profile(principal.user_id)
    return Envelope(status="ok", data=_user_response(user))


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: EmailVerificationRequest):
    user = await get_runtime().auth.verify_email(body.token)
    return Envelope(status="ok", data=_user_response(user))


@router.post("/auth/verify-email/resend", response_model=Envelope, tags=["auth"])
async def resend_verification(response: Response, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"verify-resend:{principal.user_id}",
        runtime.settings.forgot_password_rate_limit,
        runtime.settings.forgot_password_rate_window_seconds,
        response=response,
    )
    await runtime.auth.request_email_verification(principal.user_id)
    return Envelope(status="ok", data=MessageResponse(message="verification email sent"))


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest, response: Response):
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"forgot:{body.email}",
        runtime.settings.forgot_password_rate_limit,
        runtime.settings.forgot_password_rate_window_seconds,
        response=response,
    )
    await runtime.auth.forgot_password(body.email)
    return Envelope(
        status="ok",
        data=MessageResponse(message="if the account exists, a reset link has been sent"),
    )


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetConfirm):
    await get_runtime().auth.reset_password(body.token, body.new_password)
    return Envelope(status="ok", data=MessageResponse(message="password has been reset"))


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest, principal: AuthContext = Depends(get_user)
):
    await get_runtime().auth.change_password(
        principal.user_id, body.current_password, body.new_password
    )
    return Envelope(status="ok", data=MessageResponse(message="password changed"))


@router.get("/auth/oauth/{provider}/start", response_model=Envelope, tags=["auth"])
async def oauth_start(request: Request, provider: str = Path(..., max_length=32)):
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, f"oauth:start:{_client_host(request)}", 20, 60)
    start = await runtime.auth.start_oauth(provider)
    return Envelope(status="ok", data=OAuthStartResponse(**start))


def _oauth_redirect(params: dict[str, str]) -> RedirectResponse:
    settings = get_runtime().settings
    base = f"{settings.frontend_url.rstrip('/')}/oauth/callback"
    separator = "#" if settings.oauth_token_delivery == TokenDelivery.FRAGMENT else "?"
    response = RedirectResponse(f"{base}{separator}{urlencode(params)}", status_code=302)
    response.headers["Cache-Control"] = "no-store"
    response.headers["Referrer-Policy"] = "no-referrer"
    return response


@router.get("/auth/oauth/{provider}/callback", tags=["auth"])
async def oauth_callback(
    request: Request,
    provider: str = Path(..., max_length=32),
    code: str = Query(..., max_length=512),
    state: str = Query(..., max_length=128),
):
    """Finish the provider handshake and hand the token pair to the front end."""
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, f"oauth:callback:{_client_host(request)}", 10, 60)
    try:
        result = await runtime.auth.complete_oauth(provider, code, state)
    except OAuthLinkError as exc:
        logger.warning("oauth_callback_failed", provider=provider, reason=exc.message)
        return _oauth_redirect({"error": "oauth_failed"})
    return _oauth_redirect(
        {
            "accessToken": result.tokens.access_token,
            "refreshToken": result.tokens.refresh_token,
        }
    )


# admin


@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def admin_list_users(
    limit: int = Query(100, ge=1, le=500),
    principal: AuthContext = Depends(get_admin_user),
):
    users = await get_runtime().auth.list_users(limit=limit)
    return Envelope(
        status="ok", data=UserListResponse(items=[_user_response(u) for u in users])
    )


@router.patch("/admin/users/{user_id}/role", response_model=Envelope, tags=["admin"])
async def admin_set_role(
    body: UpdateUserRoleRequest,
    user_id: str = Path(..., max_length=64),
    principal: AuthContext = Depends(get_admin_user),
):
    user = await get_runtime().auth.set_user_role(principal.user_id, user_id, body.role)
    return Envelope(status="ok", data=_user_response(user))
