from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Request, Response

from sessionvault.api.schemas import (
    AuthResponse,
    Envelope,
    LoginRequest,
    LogoutRequest,
    SessionListResponse,
    SessionResponse,
    TokenRefreshRequest,
    VerifyRefreshTokenRequest,
)
from sessionvault.logging import get_logger
from sessionvault.service.auth import AuthContext
from sessionvault.service.diagnostics import token_storage_report, verify_refresh_token
from sessionvault.service.errors import ForbiddenError, RateLimitedError
from sessionvault.service.rate_limit import RateLimitStatus
from sessionvault.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def _client_context(request: Request) -> tuple[str, Optional[str]]:
    device_info = request.headers.get("user-agent") or "Unknown device"
    ip_address = request.client.host if request.client else None
    return device_info, ip_address


def _apply_rate_limit_headers(response: Response, status: RateLimitStatus) -> None:
    response.headers["X-RateLimit-Limit"] = str(status.limit)
    response.headers["X-RateLimit-Remaining"] = str(status.remaining)
    response.headers["X-RateLimit-Reset"] = str(status.reset_seconds)


async def _enforce_rate_limit(
    runtime, request: Request, response: Response, *, scope: str = "login"
) -> RateLimitStatus:
    """Count the request against the client IP; raise 429 once over the limit.

    Login and refresh share one counter per IP.
    """
    client = request.client.host if request.client else "unknown"
    status = await runtime.rate_limiter.hit(scope, client)
    _apply_rate_limit_headers(response, status)
    if not status.allowed:
        raise RateLimitedError(
            "too many attempts, try again later",
            detail={"retry_after": status.reset_seconds},
        )
    return status


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    return await runtime.auth.authenticate(_bearer_token(authorization))


async def get_admin_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    ctx = await get_user(authorization)
    if ctx.role != "admin":
        raise ForbiddenError("admin access required")
    return ctx


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password.

    A refresh token is issued only while the credential store is reachable;
    otherwise the response carries an access token alone.

    Raises:
        401: If credentials are invalid (details carry attempts_remaining)
        423: If the account is locked after repeated failures
        429: If the client IP exceeded the login rate limit
    """
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, request, response)
    device_info, ip_address = _client_context(request)
    result = await runtime.auth.login(
        body.email,
        body.password,
        device_info=device_info,
        ip_address=ip_address,
    )
    return Envelope(status="ok", data=AuthResponse(**result))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(
    body: TokenRefreshRequest,
    request: Request,
    response: Response,
    authorization: Optional[str] = Header(None),
):
    """Rotate a refresh token and mint a new access token.

    The (possibly expired) access token identifies the user.

    Raises:
        400: If the access token is missing or not validly signed
        401: If the refresh token is invalid or expired
        404: If the user no longer exists
        429: If the client IP exceeded the login rate limit
        500: If the rotated token could not be stored
        503: If the credential store is unreachable
    """
    runtime = get_runtime()
    await _enforce_rate_limit(runtime, request, response)
    device_info, ip_address = _client_context(request)
    result = await runtime.auth.refresh(
        _bearer_token(authorization),
        body.refresh_token,
        device_info=device_info,
        ip_address=ip_address,
    )
    return Envelope(status="ok", data=AuthResponse(**result))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    body: Optional[LogoutRequest] = None,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    refresh_token = body.refresh_token if body else None
    result = await runtime.auth.logout(principal, refresh_token)
    return Envelope(status="ok", data={"message": "logged out", **result})


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    result = await runtime.auth.logout_all(principal)
    return Envelope(status="ok", data={"message": "logged out from all devices", **result})


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    sessions, tracking_available = await runtime.auth.list_sessions(principal)
    items = [SessionResponse(**session.to_dict()) for session in sessions]
    return Envelope(
        status="ok",
        data=SessionListResponse(items=items, tracking_available=tracking_available),
    )


@router.post("/auth/sessions/verify", response_model=Envelope, tags=["auth"])
async def verify_own_refresh_token(
    body: VerifyRefreshTokenRequest,
    principal: AuthContext = Depends(get_user),
):
    """Raw storage state of one of the caller's refresh tokens."""
    runtime = get_runtime()
    verification = await verify_refresh_token(
        runtime.store, principal.user_id, body.refresh_token
    )
    return Envelope(status="ok", data=verification)


@router.get("/admin/diagnostics/token-storage", response_model=Envelope, tags=["admin"])
async def token_storage_diagnostics(principal: AuthContext = Depends(get_admin_user)):
    runtime = get_runtime()
    report = await token_storage_report(runtime.store)
    logger.info("token_storage_diagnostics_requested", user_id=principal.user_id)
    return Envelope(status="ok", data=report)


__all__ = ["router", "get_user", "get_admin_user"]
