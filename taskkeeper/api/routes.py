from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request, Response

from taskkeeper.api.schemas import (
    AuthResponse,
    Envelope,
    ForgotPasswordRequest,
    LoginRequest,
    ResetPasswordRequest,
    SignupRequest,
    StatusResponse,
    UserResponse,
    VerifyEmailRequest,
)
from taskkeeper.logging import get_logger
from taskkeeper.service import rate_limit
from taskkeeper.service.auth import AuthResult
from taskkeeper.service.errors import AuthenticationError, RateLimitedError
from taskkeeper.service.runtime import Runtime
from taskkeeper.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

DEFAULT_CLIENT_IP = "127.0.0.1"


@dataclass
class AuthContext:
    user_id: str
    token: str


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def client_ip(request: Request) -> str:
    """Client address as seen through the reverse proxy."""
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",", 1)[0].strip()
    if request.client and request.client.host:
        return request.client.host
    return DEFAULT_CLIENT_IP


def _enforce_rate_limit(runtime: Runtime, name: str, key: str, response: Response) -> None:
    """Admit or reject ``key`` against the named limiter.

    Raises:
        RateLimitedError with the seconds until the window resets
    """
    limiter = runtime.limiters.get(name)
    if not limiter.is_allowed(key):
        raise RateLimitedError(
            "too many requests, please wait before retrying",
            retry_after=limiter.retry_after(key) or limiter.policy.window_seconds,
        )
    response.headers["X-RateLimit-Limit"] = str(limiter.policy.max_requests)
    response.headers["X-RateLimit-Remaining"] = str(limiter.get_remaining(key))


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_user(
    authorization: Optional[str] = Header(None),
    runtime: Runtime = Depends(get_runtime),
) -> AuthContext:
    token = _bearer_token(authorization)
    if token is None:
        raise AuthenticationError("not authenticated")
    user_id = await runtime.auth.authenticate(token)
    return AuthContext(user_id=user_id, token=token)


def _user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id, email=user.email, name=user.name, email_verified=user.email_verified
    )


def _auth_response(result: AuthResult) -> AuthResponse:
    return AuthResponse(
        token=result.session.token,
        expires_at=result.session.expires_at,
        user=_user_response(result.user),
    )


@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(
    body: SignupRequest,
    request: Request,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
):
    """Create an account and open its first session.

    Raises:
        400: invalid email, password or name
        409: email already registered
        429: too many signups from this address
    """
    _enforce_rate_limit(runtime, rate_limit.SIGNUP, client_ip(request), response)
    result = await runtime.auth.signup(body.email, body.password, body.name)
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
):
    """Authenticate with email and password.

    Raises:
        401: unknown email or wrong password (indistinguishable)
        429: too many attempts from this address
    """
    _enforce_rate_limit(runtime, rate_limit.LOGIN, client_ip(request), response)
    result = await runtime.auth.login(body.email, body.password)
    return Envelope(status="ok", data=_auth_response(result))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    principal: AuthContext = Depends(get_user),
    runtime: Runtime = Depends(get_runtime),
):
    await runtime.auth.logout(principal.token)
    return Envelope(status="ok", data=StatusResponse(status="logged out"))


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(
    principal: AuthContext = Depends(get_user),
    runtime: Runtime = Depends(get_runtime),
):
    await runtime.auth.logout_all(principal.user_id)
    return Envelope(status="ok", data=StatusResponse(status="all sessions revoked"))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(
    principal: AuthContext = Depends(get_user),
    runtime: Runtime = Depends(get_runtime),
):
    user = await runtime.auth.get_user(principal.user_id)
    return Envelope(status="ok", data=_user_response(user))


@router.post("/auth/verify-email", response_model=Envelope, tags=["auth"])
async def verify_email(body: VerifyEmailRequest, runtime: Runtime = Depends(get_runtime)):
    await runtime.auth.verify_email(body.code)
    return Envelope(status="ok", data=StatusResponse(status="email verified"))


@router.post("/auth/resend-verification", response_model=Envelope, tags=["auth"])
async def resend_verification(
    principal: AuthContext = Depends(get_user),
    runtime: Runtime = Depends(get_runtime),
):
    await runtime.auth.resend_verification(principal.user_id)
    return Envelope(status="ok", data=StatusResponse(status="verification code sent"))


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(
    body: ForgotPasswordRequest,
    request: Request,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
):
    _enforce_rate_limit(runtime, rate_limit.FORGOT_PASSWORD, client_ip(request), response)
    await runtime.auth.forgot_password(body.email)
    # Same answer whether or not the account exists
    return Envelope(
        status="ok",
        data=StatusResponse(status="if the email exists, a reset link has been sent"),
    )


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest, runtime: Runtime = Depends(get_runtime)):
    await runtime.auth.reset_password(body.token, body.new_password)
    return Envelope(status="ok", data=StatusResponse(status="password reset"))
