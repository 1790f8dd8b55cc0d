from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, List, Optional, Tuple

from sessionvault.logging import get_logger, mask_email
from sessionvault.service.errors import (
    AccountLockedError,
    AuthenticationError,
    NotFoundError,
    ServerError,
    ServiceUnavailableError,
    ValidationError,
)
from sessionvault.service.token_service import TokenService
from sessionvault.service.tokens import AccessTokenCodec
from sessionvault.storage.errors import StoreError
from sessionvault.storage.models import LockoutStatus, SessionInfo
from sessionvault.storage.users import UserDirectory

logger = get_logger(__name__)


@dataclass
class AuthContext:
    user_id: str
    role: str
    email: str
    access_token: str


def _expires_at(exp: int) -> str:
    return datetime.fromtimestamp(exp, tz=timezone.utc).isoformat()


class AuthService:
    """Login, refresh and logout flows on top of the credential managers."""

    def __init__(
        self,
        tokens: TokenService,
        codec: AccessTokenCodec,
        directory: UserDirectory,
    ) -> None:
        self.tokens = tokens
        self.codec = codec
        self.directory = directory
        self.logger = logger

    def _locked_error(self, status: LockoutStatus) -> AccountLockedError:
        return AccountLockedError(
            "account temporarily locked after repeated failed logins",
            detail={
                "lock_until": status.lock_until.isoformat() if status.lock_until else None,
            },
        )

    async def login(
        self,
        email: str,
        password: str,
        *,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> dict[str, Any]:
        if not email or not password:
            raise ValidationError("email and password are required")
        status = await self.tokens.is_account_locked(email)
        if status.locked:
            self.logger.warning("login_rejected_locked", account=mask_email(email))
            raise self._locked_error(status)

        user = self.directory.verify_credentials(email, password)
        if not user:
            status = await self.tokens.record_failed_login(email)
            if status.locked:
                raise self._locked_error(status)
            raise AuthenticationError(
                "invalid credentials",
                detail={"attempts_remaining": status.attempts_remaining},
            )

        await self.tokens.clear_failed_logins(email)
        access_token, exp = self.codec.mint(user.id, user.role, user.email)
        refresh_token: Optional[str] = None
        if self.tokens.is_available():
            refresh_token = await self.tokens.issue_refresh_token(
                user.id, device_info, ip_address
            )
        if refresh_token is None:
            # Access-token-only login; the client re-authenticates on expiry
            self.logger.warning("login_without_refresh_token", user_id=user.id)
        self.logger.info("login_succeeded", user_id=user.id)
        return {
            "access_token": access_token,
            "refresh_token": refresh_token,
            "token_type": "bearer",
            "expires_at": _expires_at(exp),
            "user_id": user.id,
            "role": user.role,
        }

    async def refresh(
        self,
        access_token: Optional[str],
        refresh_token: Optional[str],
        *,
        device_info: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> dict[str, Any]:
        if not refresh_token:
            raise ValidationError("refresh_token is required")
        if not access_token:
            raise ValidationError(
                "access token required for refresh", error_code="access_token_required"
            )
        # Expired is fine here; the signature still has to match
        payload = self.codec.decode(access_token, verify_exp=False)
        if not payload:
            raise ValidationError("invalid access token", error_code="invalid_access_token")
        user_id = str(payload["sub"])

        try:
            record = await self.tokens.validate_refresh_token(user_id, refresh_token)
        except StoreError as exc:
            self.logger.error("refresh_validation_unavailable", user_id=user_id, error=exc.message)
            raise ServiceUnavailableError(
                "token validation service temporarily unavailable"
            ) from exc
        if record is None:
            self.logger.warning("refresh_token_invalid", user_id=user_id)
            raise AuthenticationError("invalid or expired refresh token")

        try:
            new_refresh = await self.tokens.rotate_refresh_token(
                user_id, refresh_token, device_info, ip_address
            )
        except StoreError as exc:
            self.logger.error("refresh_rotation_unavailable", user_id=user_id, error=exc.message)
            raise ServiceUnavailableError(
                "token refresh service temporarily unavailable"
            ) from exc
        if not new_refresh:
            self.logger.error("refresh_rotation_failed", user_id=user_id)
            raise ServerError(
                "failed to rotate refresh token", error_code="token_rotation_failed"
            )

        user = self.directory.get_user(user_id)
        if not user:
            raise NotFoundError("user not found")
        new_access, exp = self.codec.mint(user.id, user.role, user.email)
        self.logger.info("token_refreshed", user_id=user_id)
        return {
            "access_token": new_access,
            "refresh_token": new_refresh,
            "token_type": "bearer",
            "expires_at": _expires_at(exp),
            "user_id": user.id,
            "role": user.role,
        }

    async def authenticate(self, access_token: Optional[str]) -> AuthContext:
        if not access_token:
            raise AuthenticationError("missing bearer token")
        payload = self.codec.decode(access_token)
        if not payload:
            raise AuthenticationError("invalid or expired access token")
        if await self.tokens.is_blacklisted(access_token):
            raise AuthenticationError("access token has been revoked")
        return AuthContext(
            user_id=str(payload["sub"]),
            role=str(payload.get("role") or "user"),
            email=str(payload.get("email") or ""),
            access_token=access_token,
        )

    async def logout(
        self, ctx: AuthContext, refresh_token: Optional[str] = None
    ) -> dict[str, bool]:
        remaining = self.codec.seconds_remaining(ctx.access_token)
        blacklisted = await self.tokens.blacklist(ctx.access_token, remaining)
        refresh_revoked = False
        if refresh_token:
            refresh_revoked = await self.tokens.revoke_refresh_token(ctx.user_id, refresh_token)
        self.logger.info(
            "logout",
            user_id=ctx.user_id,
            blacklisted=blacklisted,
            refresh_revoked=refresh_revoked,
        )
        return {"blacklisted": blacklisted, "refresh_revoked": refresh_revoked}

    async def logout_all(self, ctx: AuthContext) -> dict[str, bool]:
        remaining = self.codec.seconds_remaining(ctx.access_token)
        blacklisted = await self.tokens.blacklist(ctx.access_token, remaining)
        sessions_revoked = await self.tokens.revoke_all_refresh_tokens(ctx.user_id)
        self.logger.info(
            "logout_all",
            user_id=ctx.user_id,
            blacklisted=blacklisted,
            sessions_revoked=sessions_revoked,
        )
        return {"blacklisted": blacklisted, "sessions_revoked": sessions_revoked}

    async def list_sessions(self, ctx: AuthContext) -> Tuple[List[SessionInfo], bool]:
        """Return ``(sessions, tracking_available)``."""
        if not self.tokens.is_available():
            return [], False
        return await self.tokens.list_sessions(ctx.user_id), True


__all__ = ["AuthService", "AuthContext"]
